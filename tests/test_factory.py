# tests/test_factory.py
from dataclasses import replace

from sigengine.builders.core import SignatureBuilder
from sigengine.builders.factory import create_builder, create_prn_builder, select_policy
from sigengine.builders.prn import RangedPRNBuilder
from sigengine.builders.tapering import TaperingBuilder
from sigengine.types import DoseInput, ScoringType, TimingInput


def test_factory_routing(metformin, half_scored, amoxicillin_suspension, estradiol_topiclick,
                         fluticasone_spray, combination_liquid):
    """Each profile lands on the policy its flags and dose form call for."""
    expected = [
        (metformin, "SimpleTabletBuilder"),
        (half_scored, "FractionalTabletBuilder"),
        (replace(metformin, is_fractional=True), "FractionalTabletBuilder"),
        (amoxicillin_suspension, "SimpleLiquidBuilder"),
        (replace(amoxicillin_suspension, dose_form="Ointment"), "SimpleLiquidBuilder"),
        (estradiol_topiclick, "TopiclickBuilder"),
        (fluticasone_spray, "NasalSprayBuilder"),
        (combination_liquid, "MultiIngredientBuilder"),
    ]
    for med, name in expected:
        builder = create_builder(med)
        assert isinstance(builder, SignatureBuilder)
        assert builder.policy.name == name, med.name


def test_multi_ingredient_wins_over_taper(combination_liquid):
    builder = create_builder(replace(combination_liquid, is_taper=True))
    assert isinstance(builder, SignatureBuilder)
    assert builder.policy.name == "MultiIngredientBuilder"


def test_taper_flag_returns_tapering_builder(prednisone):
    assert isinstance(create_builder(prednisone), TaperingBuilder)


def test_unknown_form_falls_back_to_tablet(metformin):
    """The builder runs on a copy forced to 'tablet'; the caller's profile is untouched."""
    powder = replace(metformin, dose_form="Powder")
    builder = create_builder(powder)

    assert builder.policy.name == "SimpleTabletBuilder"
    assert builder.medication.dose_form == "tablet"
    assert powder.dose_form == "Powder"
    assert [a.code for a in builder.warnings] == ["FALLBACK_DOSE_FORM"]

    [sig] = builder.add_dose(DoseInput(1, "tablet")).add_timing(TimingInput(1, 1, "d")).add_route("oral").render()
    assert sig.text == "Take 1 tablet by mouth once daily."


def test_select_policy_is_pure(half_scored):
    a = select_policy(half_scored)
    b = select_policy(half_scored)
    assert a.policy.name == b.policy.name == "FractionalTabletBuilder"
    assert a.medication is half_scored and a.advisories == ()


def test_prn_factory_uses_form_policy(half_scored):
    builder = create_prn_builder(replace(half_scored, is_scored=ScoringType.QUARTER))
    assert isinstance(builder, RangedPRNBuilder)
    assert builder.core.policy.name == "FractionalTabletBuilder"
