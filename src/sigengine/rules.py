# src/sigengine/rules.py
"""
Stateless validation rules.

Two kinds of checks live here:
  - validators / `check_*` functions that raise a SignatureError subclass (fatal tier)
  - `check_*` functions that return a list of Advisory (advisory tier)
The docstring of each check says which tier it belongs to.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from numbers import Real
from typing import List, Optional, Sequence

import numpy as np

from .audit import Advisory
from .config import EngineSettings, ReferenceTables
from .errors import (
    DispenserLimitError, DoseRangeViolationError, ErrorCode, FractionalDoseError,
    FrequencyRangeViolationError, IncompleteBuilderError, InvalidInputError, TaperingScheduleError,
)
from .types import (
    DoseInput, DoseRangeInput, FrequencyRangeInput, MaxDailyDoseConstraint, MedicationProfile,
    Quantity, ScoringType, TaperingPhase, TimingInput,
)
from .units import duration_to_days, fractional_remainder, is_tablet_unit, is_volume_unit, period_to_hours, to_mg

ALLOWED_FRACTIONS = {
    ScoringType.NONE: (),
    ScoringType.HALF: (0.5,),
    ScoringType.QUARTER: (0.25, 0.5, 0.75),
}


# --------------------------
# Small input validators (fatal)
# --------------------------
def _is_number(x) -> bool:
    return isinstance(x, Real) and not isinstance(x, bool) and math.isfinite(float(x))


def _validate_positive(name: str, x, code: ErrorCode = ErrorCode.DOSE_INVALID) -> None:
    if not (_is_number(x) and x > 0):
        raise InvalidInputError(f"{name} must be > 0 (got {x}).", code)


def _validate_positive_int(name: str, x, code: ErrorCode = ErrorCode.TIMING_INVALID) -> None:
    if not (isinstance(x, (int, np.integer)) and not isinstance(x, bool) and x > 0):
        raise InvalidInputError(f"{name} must be a positive integer (got {x}).", code)


def _validate_text(name: str, x, code: ErrorCode) -> None:
    if not (isinstance(x, str) and x.strip()):
        raise InvalidInputError(f"{name} must be a non-empty string (got {x!r}).", code)


def validate_dose(dose: DoseInput) -> None:
    if not isinstance(dose, DoseInput):
        raise InvalidInputError(f"Invalid dose input: {dose!r}")
    _validate_positive("dose value", dose.value)
    _validate_text("dose unit", dose.unit, ErrorCode.DOSE_INVALID)
    if dose.max_value is not None:
        _validate_positive("dose max_value", dose.max_value)
        if dose.max_value < dose.value:
            raise InvalidInputError(f"dose max_value must be >= value (got {dose.max_value} < {dose.value}).")


def validate_timing(timing: TimingInput) -> None:
    if not isinstance(timing, TimingInput):
        raise InvalidInputError(f"Invalid timing input: {timing!r}", ErrorCode.TIMING_INVALID)
    _validate_positive_int("frequency", timing.frequency)
    _validate_positive("period", timing.period, ErrorCode.TIMING_INVALID)
    _validate_text("period_unit", timing.period_unit, ErrorCode.TIMING_INVALID)
    if not isinstance(timing.when, (tuple, list)) or not all(isinstance(w, str) for w in timing.when):
        raise InvalidInputError(f"when must be a sequence of strings (got {timing.when!r}).", ErrorCode.TIMING_INVALID)
    if timing.duration is not None:
        _validate_positive("duration value", timing.duration.value, ErrorCode.TIMING_INVALID)
        _validate_text("duration unit", timing.duration.unit, ErrorCode.TIMING_INVALID)


def validate_route(route: str) -> None:
    _validate_text("route", route, ErrorCode.ROUTE_INVALID)


def validate_dose_range(r: DoseRangeInput) -> None:
    if not isinstance(r, DoseRangeInput):
        raise InvalidInputError(f"Invalid dose range input: {r!r}", ErrorCode.PRN_RANGE_INVALID)
    _validate_positive("dose range minimum", r.min_value, ErrorCode.PRN_RANGE_INVALID)
    _validate_positive("dose range maximum", r.max_value, ErrorCode.PRN_RANGE_INVALID)
    _validate_text("dose range unit", r.unit, ErrorCode.PRN_RANGE_INVALID)
    if r.max_value < r.min_value:
        raise InvalidInputError(
            f"dose range maximum must be >= minimum (got {r.min_value}-{r.max_value}).", ErrorCode.PRN_RANGE_INVALID
        )


def validate_frequency_range(r: FrequencyRangeInput) -> None:
    if not isinstance(r, FrequencyRangeInput):
        raise InvalidInputError(f"Invalid frequency range input: {r!r}", ErrorCode.PRN_RANGE_INVALID)
    _validate_positive_int("minimum frequency", r.min_frequency, ErrorCode.PRN_RANGE_INVALID)
    _validate_positive_int("maximum frequency", r.max_frequency, ErrorCode.PRN_RANGE_INVALID)
    _validate_positive("frequency range period", r.period, ErrorCode.PRN_RANGE_INVALID)
    _validate_text("frequency range period unit", r.period_unit, ErrorCode.PRN_RANGE_INVALID)
    if r.max_frequency < r.min_frequency:
        raise InvalidInputError(
            f"maximum frequency must be >= minimum (got {r.min_frequency}-{r.max_frequency}).",
            ErrorCode.PRN_RANGE_INVALID,
        )


def require_complete(snapshot) -> None:
    """Fatal. A snapshot needs at least one dose, a timing and a route to render."""
    if not snapshot.doses:
        raise IncompleteBuilderError("No doses configured")
    if snapshot.timing is None:
        raise IncompleteBuilderError("No timing configured")
    if not snapshot.route:
        raise IncompleteBuilderError("No route configured")


# --------------------------
# Dose-form rules
# --------------------------
def check_tablet_fraction(dose: DoseInput, scoring: ScoringType, settings: EngineSettings) -> None:
    """
    Fatal. Tablet/capsule doses must respect the fraction floor and the
    tablet's scoring. Weight units (mg, mcg) are not checked.
    """
    if not is_tablet_unit(dose.unit):
        return
    tol = settings.fraction_tolerance
    floor = settings.tablet_fraction_floor
    if dose.value < floor - tol:
        raise FractionalDoseError(
            f"Dose cannot be less than 1/4 tablet (got {dose.value})", ErrorCode.DOSE_BELOW_FRACTION_FLOOR
        )
    remainder = fractional_remainder(dose.value)
    if np.isclose(remainder, 0.0, atol=tol) or np.isclose(remainder, 1.0, atol=tol):
        return
    allowed = ALLOWED_FRACTIONS.get(ScoringType(scoring), ())
    if not allowed:
        raise FractionalDoseError(f"Fractional dose {dose.value} not allowed for unscored tablet")
    if not any(np.isclose(remainder, a, atol=tol) for a in allowed):
        if scoring == ScoringType.HALF:
            raise FractionalDoseError(f"Only half-tablet doses allowed for half-scored tablet, got {dose.value}")
        raise FractionalDoseError(
            f"Invalid fraction {remainder:g} for quarter-scored tablet. Allowed: 0.25, 0.5, 0.75"
        )


def check_route_family(route: str, allowed: Sequence[str], tables: ReferenceTables, label: str) -> List[Advisory]:
    """Advisory. Unusual route for the dose form."""
    canon = tables.canonical_route(route)
    if canon in allowed:
        return []
    expected = " or ".join(allowed)
    return [Advisory("UNUSUAL_ROUTE", f"Unusual route for {label}: {route}. Expected {expected} route.")]


def check_oral_route(route: str, tables: ReferenceTables) -> List[Advisory]:
    return check_route_family(route, tables.oral_routes, tables, "tablet")


def check_liquid_route(route: str, tables: ReferenceTables) -> List[Advisory]:
    return check_route_family(route, tables.liquid_routes, tables, "liquid medication")


def check_large_volume(dose: DoseInput, settings: EngineSettings) -> List[Advisory]:
    """Advisory. Very large volume doses are allowed but flagged."""
    if is_volume_unit(dose.unit) and dose.value > settings.large_volume_ml:
        return [Advisory("LARGE_VOLUME", f"Large volume dose: {dose.value} {dose.unit}. Please verify.")]
    return []


def check_dispenser_limit(count: float, limit: Optional[float], unit: str) -> None:
    """Fatal. Device count per dose above the dispenser's configured maximum."""
    if limit is not None and count > limit:
        raise DispenserLimitError(f"{unit.capitalize()} count {count:g} exceeds maximum {limit:g} per dose",
                                  details={"count": count, "limit": limit})


# --------------------------
# PRN rules
# --------------------------
@dataclass(frozen=True)
class PRNTiming:
    """
    Interval envelope derived from a frequency range.

    min_interval_hours        : shortest allowed gap between doses
    max_interval_hours        : longest suggested gap
    max_administrations_per_day
    """
    min_interval_hours: float
    max_interval_hours: float
    max_administrations_per_day: int


def derive_prn_timing(r: FrequencyRangeInput) -> PRNTiming:
    hours = period_to_hours(r.period, r.period_unit)
    min_interval = hours / r.max_frequency
    max_interval = hours / r.min_frequency
    max_admin = int(np.floor(24.0 / min_interval + 1e-9)) if min_interval > 0 else 0
    return PRNTiming(min_interval, max_interval, max_admin)


def _same_unit(a: str, b: str) -> bool:
    a, b = a.strip().lower(), b.strip().lower()
    return a == b or a.rstrip("s") == b.rstrip("s")


def _fmt_quantity(q: Quantity) -> str:
    return f"{q.value:g} {q.unit}"


def check_range_against_medication(r: DoseRangeInput, medication: MedicationProfile,
                                   settings: EngineSettings) -> List[Advisory]:
    """
    Mixed tier. The range minimum is checked against the medication's
    limits (fatal); a range maximum above the medication maximum and very
    wide ranges are advisory.
    """
    advisories: List[Advisory] = []
    limits = medication.dosage_constraints
    if limits is not None and (limits.min_dose is not None or limits.max_dose is not None):
        lo = to_mg(Quantity(r.min_value, r.unit), medication)
        hi = to_mg(Quantity(r.max_value, r.unit), medication)
        if lo is None or hi is None:
            advisories.append(Advisory("UNIT_NOT_CONVERTIBLE",
                                       f"Unit conversion not supported for unit: {r.unit}"))
        else:
            med_min = to_mg(limits.min_dose, medication) if limits.min_dose is not None else None
            med_max = to_mg(limits.max_dose, medication) if limits.max_dose is not None else None
            if med_min is not None and lo < med_min - settings.fraction_tolerance:
                raise DoseRangeViolationError(
                    f"Dose range minimum {r.min_value:g} {r.unit} below medication minimum "
                    f"{_fmt_quantity(limits.min_dose)}", ErrorCode.PRN_RANGE_CONFLICT)
            if med_max is not None:
                if lo > med_max + settings.fraction_tolerance:
                    raise DoseRangeViolationError(
                        f"Dose range minimum {r.min_value:g} {r.unit} exceeds medication maximum "
                        f"{_fmt_quantity(limits.max_dose)}", ErrorCode.PRN_RANGE_CONFLICT)
                if hi > med_max + settings.fraction_tolerance:
                    advisories.append(Advisory(
                        "RANGE_ABOVE_MEDICATION_MAX",
                        f"Dose range maximum {r.max_value:g} {r.unit} exceeds medication maximum "
                        f"{_fmt_quantity(limits.max_dose)} - verify with prescriber"))
    if r.max_value > settings.prn_large_range_factor * r.min_value:
        advisories.append(Advisory("LARGE_DOSE_RANGE", "Large dose range detected - verify dosing requirements"))
    return advisories


def check_frequency_interval(timing: PRNTiming, r: FrequencyRangeInput, settings: EngineSettings) -> List[Advisory]:
    """Advisory. Very short intervals and very wide frequency ranges."""
    advisories: List[Advisory] = []
    if timing.min_interval_hours < settings.prn_min_interval_hours:
        advisories.append(Advisory("VERY_FREQUENT_DOSING", "Very frequent dosing interval - verify safety"))
    if r.max_frequency > settings.prn_wide_frequency_factor * r.min_frequency:
        advisories.append(Advisory("WIDE_FREQUENCY_RANGE",
                                   "Wide frequency range detected - provide clear guidelines to patient"))
    return advisories


def check_max_daily(r: Optional[DoseRangeInput], timing: Optional[PRNTiming],
                    constraint: MaxDailyDoseConstraint) -> List[Advisory]:
    """Advisory. Declared daily cap vs. the theoretical maximum of range x administrations."""
    if r is None or timing is None:
        return []
    cap = constraint.max_dose_per_day
    if not _same_unit(cap.unit, r.unit):
        return [Advisory("MAX_DAILY_UNIT_MISMATCH",
                         f"Max daily dose unit {cap.unit} differs from dose range unit {r.unit}; not compared")]
    theoretical = r.max_value * timing.max_administrations_per_day
    if np.isclose(theoretical, cap.value):
        return []
    if cap.value < theoretical:
        msg = f"Max daily dose ({cap.value:g}) less than theoretical maximum ({theoretical:.1f})"
    else:
        msg = f"Max daily dose ({cap.value:g}) exceeds theoretical maximum ({theoretical:.1f})"
    return [Advisory("MAX_DAILY_MISMATCH", msg)]


def check_in_dose_range(dose: DoseInput, r: DoseRangeInput, tol: float = 1e-9) -> None:
    """Fatal. A dose added after a range is active must sit inside it."""
    inside = _same_unit(dose.unit, r.unit) and (r.min_value - tol) <= dose.value <= (r.max_value + tol)
    if not inside:
        raise DoseRangeViolationError(
            f"Dose {dose.value:g} {dose.unit} outside configured range {r.min_value:g}-{r.max_value:g} {r.unit}")


def check_in_frequency_range(timing: TimingInput, r: FrequencyRangeInput) -> None:
    """Fatal. Timing added after a frequency range is active must sit inside it."""
    if not (r.min_frequency <= timing.frequency <= r.max_frequency):
        raise FrequencyRangeViolationError(
            f"Frequency {timing.frequency} outside configured range {r.min_frequency}-{r.max_frequency}")


# --------------------------
# Tapering rules
# --------------------------
def check_phase_sequence(phases: Sequence[TaperingPhase]) -> None:
    """Fatal. At least one phase; sequence numbers contiguous from 1."""
    if not phases:
        raise TaperingScheduleError("At least one tapering phase is required", ErrorCode.TAPER_NO_PHASES)
    numbers = {p.sequence_number for p in phases}
    for i in range(1, len(phases) + 1):
        if i not in numbers:
            raise TaperingScheduleError(f"Missing sequence number {i} in tapering phases", ErrorCode.TAPER_SEQUENCE_GAP)


def check_phase_durations(phases: Sequence[TaperingPhase], settings: EngineSettings) -> List[Advisory]:
    """Fatal for non-positive durations; advisory for very short phases."""
    advisories: List[Advisory] = []
    for p in phases:
        if not (_is_number(p.duration.value) and p.duration.value > 0):
            raise TaperingScheduleError(f"Phase {p.sequence_number} has invalid duration: {p.duration.value}")
        days = duration_to_days(p.duration)
        if days < settings.taper_short_phase_days:
            advisories.append(Advisory("SHORT_PHASE",
                                       f"Phase {p.sequence_number} has very short duration: {days:g} days"))
    return advisories


def check_schedule_length(phases: Sequence[TaperingPhase]) -> List[Advisory]:
    if len(phases) < 2:
        return [Advisory("SINGLE_PHASE", "Tapering schedule should have at least 2 phases for gradual reduction")]
    return []


def check_dose_progression(phases: Sequence[TaperingPhase], settings: EngineSettings) -> List[Advisory]:
    """Advisory. Non-monotonic schedules and large jumps between adjacent phases."""
    if len(phases) < 2:
        return []
    units = {p.dose.unit.strip().lower().rstrip("s") for p in phases}
    if len(units) > 1:
        return [Advisory("MIXED_PHASE_UNITS", "Tapering phases use different dose units; progression not checked")]
    doses = np.array([float(p.dose.value) for p in phases])
    steps = np.diff(doses)
    advisories: List[Advisory] = []
    if not (np.all(steps < 0) or np.all(steps > 0)):
        advisories.append(Advisory("INCONSISTENT_DIRECTION",
                                   "Inconsistent dose progression - doses should consistently increase or decrease"))
    pct = np.abs(steps) / doses[:-1] * 100.0
    for i, change in enumerate(pct, start=1):
        if change > settings.taper_large_change_pct:
            advisories.append(Advisory("LARGE_DOSE_CHANGE",
                                       f"Large dose change detected between phases {i} and {i + 1}: {change:.1f}% change"))
    return advisories


def check_timing_consistency(phases: Sequence[TaperingPhase]) -> List[Advisory]:
    """Advisory. Every phase should share the first phase's timing pattern."""
    if not phases:
        return []
    first = phases[0].timing
    return [
        Advisory("TIMING_MISMATCH", f"Phase {p.sequence_number} has different timing pattern than initial phase")
        for p in phases[1:]
        if p.timing.frequency != first.frequency or p.timing.period_unit != first.period_unit
    ]


def check_phase_bounds_against_medication(phases: Sequence[TaperingPhase], medication: MedicationProfile) -> List[Advisory]:
    """Advisory. Phase doses outside the medication's configured limits."""
    limits = medication.dosage_constraints
    if limits is None:
        return []
    advisories: List[Advisory] = []
    for p in phases:
        value = to_mg(Quantity(p.dose.value, p.dose.unit), medication)
        if limits.min_dose is not None:
            bound = to_mg(limits.min_dose, medication)
            if value is not None and bound is not None and value < bound:
                advisories.append(Advisory("PHASE_BELOW_MINIMUM",
                                           f"Phase {p.sequence_number} dose below medication minimum: "
                                           f"{p.dose.value:g} < {limits.min_dose.value:g}"))
        if limits.max_dose is not None:
            bound = to_mg(limits.max_dose, medication)
            if value is not None and bound is not None and value > bound:
                advisories.append(Advisory("PHASE_ABOVE_MAXIMUM",
                                           f"Phase {p.sequence_number} dose above medication maximum: "
                                           f"{p.dose.value:g} > {limits.max_dose.value:g}"))
    return advisories
