# src/sigengine/types.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Sequence, Tuple

SNOMED_SYSTEM = "http://snomed.info/sct"
UCUM_SYSTEM = "http://unitsofmeasure.org"
DOSE_RATE_TYPE_SYSTEM = "http://terminology.hl7.org/CodeSystem/dose-rate-type"


class ScoringType(str, Enum):
    NONE = "NONE"
    HALF = "HALF"
    QUARTER = "QUARTER"


class MedicationType(str, Enum):
    MEDICATION = "medication"
    SUPPLEMENT = "supplement"
    COMPOUND = "compound"


class RelationshipType(str, Enum):
    SEQUENTIAL = "SEQUENTIAL"
    CONCURRENT = "CONCURRENT"
    CONDITIONAL = "CONDITIONAL"


# --------------------------
# Medication profile (read-only reference data)
# --------------------------
@dataclass(frozen=True)
class Quantity:
    value: float
    unit: str
    system: Optional[str] = None
    code: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"value": self.value, "unit": self.unit}
        if self.system:
            out["system"] = self.system
        if self.code:
            out["code"] = self.code
        return out


@dataclass(frozen=True)
class Ratio:
    """
    Amount of one quantity per amount of another.

    numerator   : e.g. 500 mg
    denominator : e.g. 1 tablet, 5 mL, 1 spray
    """
    numerator: Quantity
    denominator: Quantity

    def to_dict(self) -> dict[str, Any]:
        return {"numerator": self.numerator.to_dict(), "denominator": self.denominator.to_dict()}


@dataclass(frozen=True)
class Ingredient:
    name: str
    strength_ratio: Optional[Ratio] = None
    code: Optional[str] = None


@dataclass(frozen=True)
class DispenserInfo:
    """
    Device that meters a dose in its own unit.

    type                : "Topiclick", "NasalSpray", ...
    unit / plural_unit  : display unit ("click" / "clicks")
    conversion_ratio    : device units per mL, or mcg per spray for sprays
    max_amount_per_dose : hard per-dose cap in device units (optional)
    """
    type: str
    unit: str
    plural_unit: str
    conversion_ratio: float
    max_amount_per_dose: Optional[float] = None


@dataclass(frozen=True)
class DispenserMetadata:
    type: str
    prime_volume: Optional[Quantity] = None
    delivery_precision: Optional[float] = None
    air_gap_volume: Optional[Quantity] = None
    dead_volume: Optional[Quantity] = None


@dataclass(frozen=True)
class DosageConstraints:
    min_dose: Optional[Quantity] = None
    max_dose: Optional[Quantity] = None
    step: Optional[float] = None


@dataclass(frozen=True)
class MedicationProfile:
    """
    Immutable description of a medication as it comes from the catalog.

    dose_form   : "Tablet", "Solution", "Cream", ...
    ingredients : one entry per active ingredient; the first one drives
                  strength-based conversions
    is_scored   : how a tablet may be split (NONE / HALF / QUARTER)
    The is_* flags steer builder selection; the engine never mutates a profile.
    """
    id: str
    name: str
    dose_form: str
    ingredients: Tuple[Ingredient, ...] = ()
    type: MedicationType = MedicationType.MEDICATION
    is_active: bool = True
    code: Optional[str] = None
    is_fractional: bool = False
    is_taper: bool = False
    is_multi_ingredient: bool = False
    is_scored: ScoringType = ScoringType.NONE
    is_controlled: bool = False
    concentration_ratio: Optional[Ratio] = None
    dispenser_info: Optional[DispenserInfo] = None
    dispenser_metadata: Optional[DispenserMetadata] = None
    dosage_constraints: Optional[DosageConstraints] = None
    allowed_routes: Tuple[str, ...] = ()
    default_route: Optional[str] = None
    sku: Optional[str] = None

    @property
    def primary_strength(self) -> Optional[Ratio]:
        if self.ingredients and self.ingredients[0].strength_ratio is not None:
            return self.ingredients[0].strength_ratio
        return None

    @property
    def dispenser_type(self) -> str:
        if self.dispenser_info is not None:
            return self.dispenser_info.type
        if self.dispenser_metadata is not None:
            return self.dispenser_metadata.type
        return ""


# --------------------------
# Builder inputs
# --------------------------
@dataclass(frozen=True)
class DoseInput:
    """
    One dose as entered by the prescriber.

    value     : amount (> 0)
    unit      : "tablet", "mL", "mg", "click", "spray", ...
    max_value : optional upper bound for "1-2 tablets" style entries
    """
    value: float
    unit: str
    max_value: Optional[float] = None


@dataclass(frozen=True)
class DoseRangeInput:
    min_value: float
    max_value: float
    unit: str


@dataclass(frozen=True)
class Duration:
    value: float
    unit: str


@dataclass(frozen=True)
class TimingInput:
    """
    frequency   : administrations per period (e.g. 2)
    period      : length of the period (e.g. 1)
    period_unit : "min", "h", "d", "wk", "mo"
    when        : optional tags such as "MORN", "EVE", "HS"
    duration    : optional total course length
    """
    frequency: int
    period: float
    period_unit: str
    when: Tuple[str, ...] = ()
    duration: Optional[Duration] = None


@dataclass(frozen=True)
class FrequencyRangeInput:
    min_frequency: int
    max_frequency: int
    period: float
    period_unit: str


@dataclass(frozen=True)
class AsNeeded:
    indication: Optional[str] = None


@dataclass(frozen=True)
class MaxDosePerPeriod:
    dose: Quantity
    period: Duration


@dataclass(frozen=True)
class DoseConstraints:
    max_dose_per_period: Optional[MaxDosePerPeriod] = None
    min_dose: Optional[Quantity] = None
    max_dose: Optional[Quantity] = None


@dataclass(frozen=True)
class MaxDailyDoseConstraint:
    max_dose_per_day: Quantity
    max_administrations_per_day: Optional[int] = None
    warning_message: Optional[str] = None


@dataclass(frozen=True)
class TaperingPhase:
    """
    One step of a tapering schedule.

    sequence_number : 1-based position; a schedule must be contiguous
    duration        : how long the phase lasts (days / weeks / months)
    transition_note : free text shown as "Next phase: ..."
    """
    name: str
    sequence_number: int
    dose: DoseInput
    timing: TimingInput
    duration: Duration
    special_instructions: Tuple[str, ...] = ()
    transition_note: Optional[str] = None


@dataclass(frozen=True)
class DoseEntry:
    """
    A dose as stored by a builder.

    dose    : clinical value used for structured output (clicks become mL)
    display : what the prescriber entered, used for the sentence text
    """
    dose: DoseInput
    display: DoseInput

    @classmethod
    def plain(cls, dose: DoseInput) -> "DoseEntry":
        return cls(dose=dose, display=dose)


# --------------------------
# Dispatcher inputs
# --------------------------
@dataclass(frozen=True)
class PatientContext:
    id: str
    age: Optional[float] = None
    weight: Optional[Quantity] = None


@dataclass(frozen=True)
class RequestContext:
    """
    Everything a strategy may look at for one request.

    frequency : phrase such as "twice daily" or "every 8 hours"
    """
    medication: MedicationProfile
    dose: Optional[Quantity] = None
    frequency: Optional[str] = None
    route: Optional[str] = None
    special_instructions: Optional[str] = None
    as_needed: Optional[str] = None
    patient: Optional[PatientContext] = None


# --------------------------
# Output (FHIR-shaped Dosage)
# --------------------------
@dataclass(frozen=True)
class Coding:
    system: str
    code: str
    display: str

    def to_dict(self) -> dict[str, Any]:
        return {"coding": [{"system": self.system, "code": self.code, "display": self.display}]}


ORDERED = Coding(system=DOSE_RATE_TYPE_SYSTEM, code="ordered", display="Ordered")


@dataclass(frozen=True)
class Range:
    low: Quantity
    high: Quantity


@dataclass(frozen=True)
class DoseAndRate:
    dose_quantity: Optional[Quantity] = None
    dose_range: Optional[Range] = None
    type: Coding = ORDERED

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"type": self.type.to_dict()}
        if self.dose_quantity is not None:
            out["doseQuantity"] = self.dose_quantity.to_dict()
        if self.dose_range is not None:
            out["doseRange"] = {"low": self.dose_range.low.to_dict(), "high": self.dose_range.high.to_dict()}
        return out


@dataclass(frozen=True)
class TimingRepeat:
    frequency: int
    period: float
    period_unit: str
    when: Tuple[str, ...] = ()
    frequency_max: Optional[int] = None
    bounds_duration: Optional[Duration] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"frequency": self.frequency, "period": self.period, "periodUnit": self.period_unit}
        if self.frequency_max is not None:
            out["frequencyMax"] = self.frequency_max
        if self.when:
            out["when"] = list(self.when)
        if self.bounds_duration is not None:
            out["boundsDuration"] = {"value": self.bounds_duration.value, "unit": self.bounds_duration.unit}
        return out


@dataclass(frozen=True)
class Period:
    start: str
    end: str


@dataclass(frozen=True)
class Timing:
    repeat: Optional[TimingRepeat] = None
    bounds: Optional[Period] = None
    code_text: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.repeat is not None:
            out["repeat"] = self.repeat.to_dict()
            if self.bounds is not None:
                out["repeat"]["boundsPeriod"] = {"start": self.bounds.start, "end": self.bounds.end}
        elif self.bounds is not None:
            out["boundsPeriod"] = {"start": self.bounds.start, "end": self.bounds.end}
        if self.code_text:
            out["code"] = {"text": self.code_text}
        return out


@dataclass(frozen=True)
class Relationship:
    type: RelationshipType
    target_id: str
    condition: Optional[str] = None


@dataclass(frozen=True)
class SignatureInstruction:
    """
    The only artifact the engine hands back to callers.

    text                    : patient-facing sentence
    dose_and_rate           : one entry per configured dose (quantity or range)
    additional_instructions : extra lines ("Shake well before use", ...)
    relationships           : links to sibling instructions of one regimen
    """
    text: str
    dose_and_rate: Tuple[DoseAndRate, ...] = ()
    timing: Optional[Timing] = None
    route: Optional[Coding] = None
    id: Optional[str] = None
    sequence: Optional[int] = None
    additional_instructions: Tuple[str, ...] = ()
    as_needed: Optional[bool] = None
    as_needed_for: Optional[str] = None
    method: Optional[Coding] = None
    site: Optional[str] = None
    max_dose_per_period: Optional[Ratio] = None
    relationships: Tuple[Relationship, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"text": self.text}
        if self.id is not None:
            out["id"] = self.id
        if self.sequence is not None:
            out["sequence"] = self.sequence
        if self.additional_instructions:
            out["additionalInstruction"] = [{"text": t} for t in self.additional_instructions]
        if self.timing is not None:
            out["timing"] = self.timing.to_dict()
        if self.as_needed is not None:
            out["asNeededBoolean"] = self.as_needed
        if self.as_needed_for:
            out["asNeededFor"] = [{"text": self.as_needed_for}]
        if self.site:
            out["site"] = {"text": self.site}
        if self.route is not None:
            out["route"] = self.route.to_dict()
        if self.method is not None:
            out["method"] = self.method.to_dict()
        if self.dose_and_rate:
            out["doseAndRate"] = [d.to_dict() for d in self.dose_and_rate]
        if self.max_dose_per_period is not None:
            out["maxDosePerPeriod"] = self.max_dose_per_period.to_dict()
        if self.relationships:
            out["relationship"] = [
                {"type": r.type.value, "targetId": r.target_id, **({"condition": r.condition} if r.condition else {})}
                for r in self.relationships
            ]
        return out


def as_tuple(items: Optional[Sequence[str]]) -> Tuple[str, ...]:
    """Normalize an optional list of strings to a tuple."""
    return tuple(items) if items else ()
