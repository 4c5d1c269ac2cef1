# tests/test_rules.py
from dataclasses import replace

import numpy as np
import pytest

from sigengine.config import EngineSettings
from sigengine.errors import (
    DoseRangeViolationError, ErrorCode, FractionalDoseError, FrequencyRangeViolationError, InvalidInputError,
    TaperingScheduleError,
)
from sigengine.rules import (
    check_dose_progression, check_in_dose_range, check_in_frequency_range, check_max_daily,
    check_phase_sequence, check_range_against_medication, check_tablet_fraction, derive_prn_timing,
    validate_dose, validate_timing,
)
from sigengine.types import (
    DoseInput, DoseRangeInput, DosageConstraints, Duration, FrequencyRangeInput, MaxDailyDoseConstraint,
    Quantity, ScoringType, TaperingPhase, TimingInput,
)

SETTINGS = EngineSettings()


def _codes(advisories):
    return [a.code for a in advisories]


def _phase(n, value, unit="mg"):
    return TaperingPhase(name=f"Step {n}", sequence_number=n, dose=DoseInput(value, unit),
                         timing=TimingInput(1, 1, "d"), duration=Duration(1, "week"))


def test_below_quarter_tablet_always_fails():
    """A tablet dose under 1/4 fails for every scoring type."""
    for scoring in ScoringType:
        with pytest.raises(FractionalDoseError) as exc:
            check_tablet_fraction(DoseInput(0.2, "tablet"), scoring, SETTINGS)
        assert exc.value.code == ErrorCode.DOSE_BELOW_FRACTION_FLOOR


def test_fractions_follow_scoring():
    """Unscored: whole only. Half: remainder 0 or 0.5. Quarter: remainder on the quarter grid."""
    allowed = {
        ScoringType.NONE: (1, 2, 3),
        ScoringType.HALF: (0.5, 1, 1.5, 2.5),
        ScoringType.QUARTER: (0.25, 0.5, 0.75, 1.25, 2.75),
    }
    rejected = {
        ScoringType.NONE: (0.5, 1.5, 2.25),
        ScoringType.HALF: (0.75, 1.25, 1.3),
        ScoringType.QUARTER: (1.3, 0.6),
    }
    for scoring, values in allowed.items():
        for v in values:
            check_tablet_fraction(DoseInput(v, "tablet"), scoring, SETTINGS)
    for scoring, values in rejected.items():
        for v in values:
            with pytest.raises(FractionalDoseError):
                check_tablet_fraction(DoseInput(v, "tablet"), scoring, SETTINGS)


def test_weight_doses_skip_the_fraction_rule():
    check_tablet_fraction(DoseInput(0.1, "mg"), ScoringType.NONE, SETTINGS)


def test_input_validators_reject_bad_values():
    for bad in (0, -1, float("nan"), "1"):
        with pytest.raises(InvalidInputError):
            validate_dose(DoseInput(bad, "tablet"))
    with pytest.raises(InvalidInputError):
        validate_dose(DoseInput(1, " "))
    with pytest.raises(InvalidInputError):
        validate_timing(TimingInput(0, 1, "d"))
    with pytest.raises(InvalidInputError):
        validate_timing(TimingInput(2, 1, ""))


def test_prn_timing_from_frequency_range():
    """1-3 times daily -> 8 h minimum interval, 24 h maximum, 3 administrations per day."""
    t = derive_prn_timing(FrequencyRangeInput(1, 3, 1, "d"))
    assert np.isclose(t.min_interval_hours, 8.0)
    assert np.isclose(t.max_interval_hours, 24.0)
    assert t.max_administrations_per_day == 3


def test_range_checks_against_medication_limits(metformin):
    med = replace(metformin, dosage_constraints=DosageConstraints(min_dose=Quantity(500, "mg"),
                                                                  max_dose=Quantity(2000, "mg")))
    advisories = check_range_against_medication(DoseRangeInput(1, 6, "tablet"), med, SETTINGS)
    assert "RANGE_ABOVE_MEDICATION_MAX" in _codes(advisories)

    with pytest.raises(DoseRangeViolationError) as exc:
        check_range_against_medication(DoseRangeInput(0.5, 2, "tablet"), med, SETTINGS)
    assert exc.value.code == ErrorCode.PRN_RANGE_CONFLICT

    with pytest.raises(DoseRangeViolationError):
        check_range_against_medication(DoseRangeInput(5, 6, "tablet"), med, SETTINGS)


def test_max_daily_against_theoretical_maximum():
    r = DoseRangeInput(1, 2, "tablet")
    timing = derive_prn_timing(FrequencyRangeInput(1, 3, 1, "d"))
    assert check_max_daily(r, timing, MaxDailyDoseConstraint(Quantity(6, "tablet"))) == []

    [advisory] = check_max_daily(r, timing, MaxDailyDoseConstraint(Quantity(4, "tablet")))
    assert advisory.message == "Max daily dose (4) less than theoretical maximum (6.0)"

    [advisory] = check_max_daily(r, timing, MaxDailyDoseConstraint(Quantity(400, "mg")))
    assert advisory.code == "MAX_DAILY_UNIT_MISMATCH"


def test_active_ranges_are_enforced():
    check_in_dose_range(DoseInput(1.5, "tablet"), DoseRangeInput(1, 2, "tablets"))
    with pytest.raises(DoseRangeViolationError):
        check_in_dose_range(DoseInput(3, "tablet"), DoseRangeInput(1, 2, "tablet"))
    with pytest.raises(DoseRangeViolationError):
        check_in_dose_range(DoseInput(1, "capsule"), DoseRangeInput(1, 2, "tablet"))
    with pytest.raises(FrequencyRangeViolationError):
        check_in_frequency_range(TimingInput(4, 1, "d"), FrequencyRangeInput(1, 3, 1, "d"))


def test_phase_sequence_must_be_contiguous():
    with pytest.raises(TaperingScheduleError) as exc:
        check_phase_sequence([])
    assert exc.value.code == ErrorCode.TAPER_NO_PHASES

    with pytest.raises(TaperingScheduleError) as exc:
        check_phase_sequence([_phase(1, 20), _phase(3, 10)])
    assert exc.value.code == ErrorCode.TAPER_SEQUENCE_GAP
    assert "Missing sequence number 2" in exc.value.message


def test_dose_progression_advisories():
    """Direction changes and jumps over 50% between adjacent phases are flagged."""
    assert check_dose_progression([_phase(1, 40), _phase(2, 20), _phase(3, 10)], SETTINGS) == []

    advisories = check_dose_progression([_phase(1, 40), _phase(2, 10)], SETTINGS)
    assert advisories[0].message == "Large dose change detected between phases 1 and 2: 75.0% change"

    advisories = check_dose_progression([_phase(1, 10), _phase(2, 12), _phase(3, 11)], SETTINGS)
    assert _codes(advisories) == ["INCONSISTENT_DIRECTION"]
