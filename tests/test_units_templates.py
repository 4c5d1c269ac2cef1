# tests/test_units_templates.py
import numpy as np
import pytest

from sigengine.templates import (
    fmt_number, format_dose, format_dose_range, format_fraction, format_frequency, format_frequency_range,
    format_tablet_text, is_one, pluralize, render_template,
)
from sigengine.types import DoseInput, Duration, Quantity
from sigengine.units import (
    clicks_to_mass, clicks_to_ml, dual_dose, duration_to_days, ingredient_breakdown, mcg_per_spray, ml_to_clicks,
    period_to_hours, round_to_quarter, to_mg,
)


def test_clicks_round_trip_and_linear_mass(estradiol_topiclick):
    """
    N clicks -> mL -> clicks recovers N, and the delivered mass is linear
    in N (4 clicks = 1 mL = 10 mg for a 10 mg/mL cream).
    """
    per_ml = 4.0
    for n in (1, 3, 4, 7.5, 12):
        assert np.isclose(ml_to_clicks(clicks_to_ml(n, per_ml), per_ml), n)

    mass_one = clicks_to_mass(1, estradiol_topiclick, per_ml)
    assert np.isclose(clicks_to_mass(4, estradiol_topiclick, per_ml), 10.0)
    for n in (2, 5, 9):
        assert np.isclose(clicks_to_mass(n, estradiol_topiclick, per_ml), n * mass_one)


def test_ingredient_breakdown_scales_by_concentration(combination_liquid):
    """250mg/5mL and 125mg/5mL at 10 mL deliver 500 mg and 250 mg."""
    parts = ingredient_breakdown(combination_liquid, DoseInput(10, "mL"))
    assert [p.name for p in parts] == ["Amoxicillin", "Clavulanate"]
    assert np.isclose(parts[0].amount, 500.0)
    assert np.isclose(parts[1].amount, 250.0)
    assert parts[0].display == "Amoxicillin 500.0mg"


def test_dual_dose_and_mass_conversions(amoxicillin_suspension, metformin):
    mg = dual_dose(amoxicillin_suspension, DoseInput(5, "mL"))
    assert mg.unit == "mg" and np.isclose(mg.value, 250.0)
    ml = dual_dose(amoxicillin_suspension, DoseInput(500, "mg"))
    assert ml.unit == "mL" and np.isclose(ml.value, 10.0)

    assert np.isclose(to_mg(Quantity(2, "tablet"), metformin), 1000.0)
    assert np.isclose(to_mg(Quantity(250, "mcg")), 0.25)
    assert to_mg(Quantity(5, "mL"), metformin) is None


def test_spray_strength(fluticasone_spray):
    assert np.isclose(mcg_per_spray(fluticasone_spray), 50.0)


def test_time_conversions():
    assert np.isclose(period_to_hours(1, "d"), 24.0)
    assert np.isclose(period_to_hours(2, "wk"), 336.0)
    assert np.isclose(duration_to_days(Duration(2, "weeks")), 14.0)
    assert np.isclose(duration_to_days(Duration(1, "month")), 30.0)
    assert np.isclose(round_to_quarter(0.3), 0.25)
    assert np.isclose(round_to_quarter(1.6), 1.5)


def test_number_and_unit_formatting():
    assert fmt_number(1.0) == "1"
    assert fmt_number(0.5) == "0.5"
    assert pluralize("tablet", 1) == "tablet"
    assert pluralize("tablet", 2) == "tablets"
    assert pluralize("mL", 5) == "mL"
    assert format_dose(2, "capsule") == "2 capsules"
    assert format_dose_range(1, 2, "tablet") == "1-2 tablets"
    assert is_one(1.0) and is_one(1 + 1e-12)
    assert not is_one(0.5) and not is_one(2)


def test_fraction_formatting():
    """Slash fractions for the tablet strategy, Unicode for the fractional builder."""
    assert format_tablet_text(0.5, "tablet") == "1/2 tablet"
    assert format_tablet_text(1.5, "tablet") == "1 and 1/2 tablets"
    assert format_tablet_text(2, "tablet") == "2 tablets"
    assert format_tablet_text(1, "tablet") == "1 tablet"
    assert format_fraction(0.5) == "½"
    assert format_fraction(1.25) == "1¼"
    assert format_dose(0.5, "tablet", "unicode") == "½ tablet"
    assert format_dose(1.5, "tablet", "unicode") == "1½ tablets"


def test_frequency_phrases():
    assert format_frequency(1, 1, "d") == "once daily"
    assert format_frequency(2, 1, "d") == "twice daily"
    assert format_frequency(1, 8, "h") == "every 8 hours"
    assert format_frequency(1, 2, "d") == "every other day"
    assert format_frequency(1, 1, "wk") == "once weekly"
    assert format_frequency(1, 1, "d", ("HS",)) == "once daily at bedtime"
    assert format_frequency_range(1, 3, 1, "d") == "1-3 times daily"


def test_render_template_normalizes_missing_fields():
    """Missing fields render empty and leave no doubled spaces before punctuation."""
    text = render_template("ORAL_TABLET_TEMPLATE",
                           {"verb": "Take", "doseValue": 2, "doseUnit": "tablet", "route": "by mouth",
                            "frequency": "twice daily"})
    assert text == "Take 2 tablets by mouth twice daily."

    with pytest.raises(KeyError):
        render_template("NOT_A_TEMPLATE", {})
