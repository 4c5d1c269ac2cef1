# tests/test_prn.py
import numpy as np
import pytest

from sigengine.builders.prn import RangedPRNBuilder
from sigengine.errors import DoseRangeViolationError, FractionalDoseError, FrequencyRangeViolationError
from sigengine.types import (
    AsNeeded, DoseInput, DoseRangeInput, FrequencyRangeInput, MaxDailyDoseConstraint, Quantity, TimingInput,
)


def _ibuprofen_prn(med):
    builder = RangedPRNBuilder(med)
    return (builder
            .set_dose_range(DoseRangeInput(1, 2, "tablet"))
            .set_frequency_range(FrequencyRangeInput(1, 3, 1, "d"))
            .set_max_daily_dose_constraint(MaxDailyDoseConstraint(Quantity(6, "tablet")))
            .add_route("oral")
            .add_as_needed(AsNeeded("pain")))


def test_prn_text_carries_both_ranges_and_daily_cap(metformin):
    builder = _ibuprofen_prn(metformin)
    [sig] = builder.render()

    assert sig.text == ("Take 1-2 tablets by mouth 1-3 times daily as needed for pain. "
                        "Do not exceed 6 tablet in 24 hours.")
    assert "Do not exceed 6 tablet in 24 hours" in sig.additional_instructions
    assert "Wait at least 8 hours between doses" in sig.additional_instructions
    assert sig.as_needed is True and sig.as_needed_for == "pain"


def test_prn_structured_output(metformin):
    [sig] = _ibuprofen_prn(metformin).render()
    dose_range = sig.dose_and_rate[0].dose_range
    assert np.isclose(dose_range.low.value, 1.0) and np.isclose(dose_range.high.value, 2.0)
    assert sig.timing.repeat.frequency == 1 and sig.timing.repeat.frequency_max == 3
    assert np.isclose(sig.max_dose_per_period.numerator.value, 6.0)
    assert sig.max_dose_per_period.numerator.code == "{tbl}"
    assert sig.max_dose_per_period.numerator.system == sig.dose_and_rate[0].dose_range.low.system
    assert sig.max_dose_per_period.denominator.unit == "d"

    out = sig.to_dict()
    assert out["doseAndRate"][0]["doseRange"]["high"]["value"] == 2.0
    assert out["timing"]["repeat"]["frequencyMax"] == 3


def test_prn_timing_envelope(metformin):
    builder = _ibuprofen_prn(metformin)
    t = builder.prn_timing
    assert np.isclose(t.min_interval_hours, 8.0)
    assert np.isclose(t.max_interval_hours, 24.0)
    assert t.max_administrations_per_day == 3
    assert builder.validate_complex_regimen() == []


def test_dose_outside_active_range_fails(metformin):
    builder = RangedPRNBuilder(metformin).set_dose_range(DoseRangeInput(1, 2, "tablet"))
    with pytest.raises(DoseRangeViolationError):
        builder.add_dose(DoseInput(3, "tablet"))


def test_in_range_fraction_still_obeys_scoring(metformin, half_scored):
    """1.5 tablets sits inside 1-2 tablets; the tablet's scoring still decides."""
    unscored = RangedPRNBuilder(metformin).set_dose_range(DoseRangeInput(1, 2, "tablet"))
    with pytest.raises(FractionalDoseError):
        unscored.add_dose(DoseInput(1.5, "tablet"))

    scored = RangedPRNBuilder(half_scored).set_dose_range(DoseRangeInput(1, 2, "tablet"))
    scored.add_dose(DoseInput(1.5, "tablet"))
    assert [e.dose.value for e in scored.core.snapshot().doses] == [1, 1.5]


def test_timing_outside_frequency_range_fails(metformin):
    builder = RangedPRNBuilder(metformin).set_frequency_range(FrequencyRangeInput(1, 3, 1, "d"))
    builder.add_timing(TimingInput(2, 1, "d"))
    with pytest.raises(FrequencyRangeViolationError):
        builder.add_timing(TimingInput(4, 1, "d"))


def test_max_daily_mismatch_is_advisory(metformin):
    builder = (RangedPRNBuilder(metformin)
               .set_dose_range(DoseRangeInput(1, 2, "tablet"))
               .set_frequency_range(FrequencyRangeInput(1, 3, 1, "d"))
               .set_max_daily_dose_constraint(MaxDailyDoseConstraint(Quantity(4, "tablet"))))
    assert "MAX_DAILY_MISMATCH" in [a.code for a in builder.warnings]


def test_missing_daily_cap_is_reported(metformin):
    builder = RangedPRNBuilder(metformin).set_dose_range(DoseRangeInput(1, 2, "tablet"))
    assert builder.validate_complex_regimen() == [
        "Dose range specified but no maximum daily dose constraint provided"
    ]


def test_prn_render_is_idempotent_and_serializable(metformin):
    builder = _ibuprofen_prn(metformin)
    assert builder.render() == builder.render()
    data = builder.serialize()
    assert data["builderType"] == "RangedPRNBuilder"
    assert data["prn"]["doseRange"] == {"min_value": 1, "max_value": 2, "unit": "tablet"}
    assert data["prn"]["prnTiming"]["max_administrations_per_day"] == 3
    assert "--- Complex PRN Features ---" in builder.explain()
