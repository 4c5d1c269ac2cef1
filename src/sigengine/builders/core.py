# src/sigengine/builders/core.py
"""
The builder core.

A SignatureBuilder accumulates dose / timing / route state for one request
and delegates everything form-specific to a DoseFormPolicy (see
policies.py). Rendering goes through `render_snapshot`, a pure function of
an immutable BuilderSnapshot, so calling `render()` twice gives the same
result and never touches builder state.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from ..audit import Advisory, AuditTrail
from ..config import EngineConfig, ReferenceTables, resolve_config
from ..rules import require_complete, validate_dose, validate_route, validate_timing
from ..templates import Renderer, canonical_period_unit, fmt_number, render_template
from ..types import (
    SNOMED_SYSTEM, UCUM_SYSTEM, AsNeeded, Coding, DoseAndRate, DoseConstraints, DoseEntry, DoseInput,
    Duration, MedicationProfile, Period, Quantity, Range, Ratio, SignatureInstruction, Timing,
    TimingInput, TimingRepeat,
)
from ..units import unit_code

if TYPE_CHECKING:
    from .policies import DoseFormPolicy

logger = logging.getLogger(__name__)

BUILDER_VERSION = "1.0.0"


@dataclass(frozen=True)
class BuilderSnapshot:
    """
    Everything `render_snapshot` needs, frozen at render time.

    doses                : ordered dose entries; the first one drives the text
    special_instructions : free text, also echoed as additional instructions
    """
    medication: MedicationProfile
    doses: Tuple[DoseEntry, ...] = ()
    timing: Optional[TimingInput] = None
    route: Optional[str] = None
    constraints: Optional[DoseConstraints] = None
    as_needed: Optional[AsNeeded] = None
    special_instructions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DoseContext:
    """What a policy hook may consult (and record into) while preparing input."""
    medication: MedicationProfile
    config: EngineConfig
    audit: AuditTrail


# --------------------------
# Structured output pieces (shared with regimens and strategies)
# --------------------------
def dose_quantity(value: float, unit: str, tables: ReferenceTables) -> Quantity:
    return Quantity(value=float(value), unit=unit, system=UCUM_SYSTEM, code=unit_code(unit, tables))


def dose_and_rate_for(dose: DoseInput, tables: ReferenceTables) -> DoseAndRate:
    if dose.max_value is not None and dose.max_value != dose.value:
        return DoseAndRate(dose_range=Range(low=dose_quantity(dose.value, dose.unit, tables),
                                            high=dose_quantity(dose.max_value, dose.unit, tables)))
    return DoseAndRate(dose_quantity=dose_quantity(dose.value, dose.unit, tables))


def timing_for(timing: TimingInput, frequency_max: Optional[int] = None,
               bounds: Optional[Period] = None) -> Timing:
    repeat = TimingRepeat(
        frequency=timing.frequency,
        period=timing.period,
        period_unit=canonical_period_unit(timing.period_unit),
        when=tuple(timing.when),
        frequency_max=frequency_max,
        bounds_duration=timing.duration,
    )
    return Timing(repeat=repeat, bounds=bounds)


def route_coding(route: Optional[str], tables: ReferenceTables) -> Coding:
    """
    SNOMED coding for a route. Unknown names take the default route's code
    and keep the caller's text as the display; no route means the default.
    """
    canon = tables.canonical_route(route or tables.default_route)
    if canon in tables.route_codes:
        code, display = tables.route_codes[canon]
        return Coding(system=SNOMED_SYSTEM, code=code, display=display)
    code, _ = tables.route_codes[tables.default_route]
    return Coding(system=SNOMED_SYSTEM, code=code, display=route)


def max_dose_ratio(constraints: Optional[DoseConstraints]) -> Optional[Ratio]:
    if constraints is None or constraints.max_dose_per_period is None:
        return None
    cap = constraints.max_dose_per_period
    return Ratio(numerator=cap.dose, denominator=Quantity(value=cap.period.value, unit=cap.period.unit))


def describe_dose(dose: DoseInput) -> str:
    if dose.max_value is not None:
        return f"{fmt_number(dose.value)}-{fmt_number(dose.max_value)} {dose.unit}"
    return f"{fmt_number(dose.value)} {dose.unit}"


def build_instruction(snapshot: BuilderSnapshot, config: EngineConfig, text: str,
                      additional: Sequence[str], **overrides) -> SignatureInstruction:
    """Assemble the structured instruction around an already rendered sentence."""
    tables = config.tables
    fields: Dict[str, Any] = dict(
        text=text,
        dose_and_rate=tuple(dose_and_rate_for(e.dose, tables) for e in snapshot.doses),
        timing=timing_for(snapshot.timing) if snapshot.timing is not None else None,
        route=route_coding(snapshot.route, tables),
        additional_instructions=tuple(additional),
        as_needed=True if snapshot.as_needed is not None else None,
        as_needed_for=snapshot.as_needed.indication if snapshot.as_needed is not None else None,
        max_dose_per_period=max_dose_ratio(snapshot.constraints),
    )
    fields.update(overrides)
    return SignatureInstruction(**fields)


def render_snapshot(snapshot: BuilderSnapshot, policy: "DoseFormPolicy", config: Optional[EngineConfig] = None,
                    renderer: Renderer = render_template) -> List[SignatureInstruction]:
    """
    Render one instruction from a snapshot. Pure: raises IncompleteBuilderError
    when dose, timing or route is missing, otherwise returns a fresh list.
    """
    config = resolve_config(config)
    require_complete(snapshot)
    text = renderer(policy.template_id, policy.template_data(snapshot, config))
    additional = policy.additional_instructions(snapshot, config)
    return [build_instruction(snapshot, config, text, additional)]


# --------------------------
# The builder
# --------------------------
class SignatureBuilder:
    """
    Chainable builder for a single-dose-form signature.

        builder = SignatureBuilder(med, tablet_policy())
        builder.add_dose(DoseInput(1, "tablet")).add_timing(bid).add_route("oral")
        [instruction] = builder.render()

    The policy decides what a valid dose is for the medication; the builder
    only keeps order, state and the audit trail.
    """

    def __init__(self, medication: MedicationProfile, policy: "DoseFormPolicy",
                 config: Optional[EngineConfig] = None, renderer: Renderer = render_template,
                 clock: Optional[Callable[[], datetime]] = None):
        self.medication = medication
        self.policy = policy
        self.config = resolve_config(config)
        self.renderer = renderer
        self.audit = AuditTrail(policy.name, clock) if clock is not None else AuditTrail(policy.name)
        self._doses: List[DoseEntry] = []
        self._timing: Optional[TimingInput] = None
        self._route: Optional[str] = None
        self._constraints: Optional[DoseConstraints] = None
        self._as_needed: Optional[AsNeeded] = None
        self._special: List[str] = []

        self.audit.record(f"{policy.name} builder initialized for {medication.name}")
        policy.check_medication(self.context)

    @property
    def context(self) -> DoseContext:
        return DoseContext(self.medication, self.config, self.audit)

    # ---- accumulation ----
    def add_dose(self, dose: DoseInput) -> "SignatureBuilder":
        validate_dose(dose)
        entry = self.policy.prepare_dose(dose, self.context)
        self._doses.append(entry)
        self.audit.record(f"Added dose: {describe_dose(entry.display)}")
        return self

    def add_timing(self, timing: TimingInput) -> "SignatureBuilder":
        validate_timing(timing)
        self._timing = timing
        self.audit.record(f"Set timing: {timing.frequency} per {fmt_number(timing.period)} {timing.period_unit}")
        return self

    def add_route(self, route: str) -> "SignatureBuilder":
        validate_route(route)
        self.policy.check_route(route, self.context)
        self._route = route
        self.audit.record(f"Set route: {route}")
        return self

    def add_constraints(self, constraints: DoseConstraints) -> "SignatureBuilder":
        self._constraints = constraints
        if constraints.max_dose_per_period is not None:
            cap = constraints.max_dose_per_period
            self.audit.record(f"Set maximum dose: {fmt_number(cap.dose.value)} {cap.dose.unit} per "
                              f"{fmt_number(cap.period.value)} {cap.period.unit}")
        else:
            self.audit.record("Set dose constraints")
        return self

    def add_as_needed(self, as_needed: AsNeeded) -> "SignatureBuilder":
        self._as_needed = as_needed
        self.audit.record(f"Set as needed: {as_needed.indication or 'true'}")
        return self

    def add_special_instructions(self, instructions: Union[str, Sequence[str]]) -> "SignatureBuilder":
        if isinstance(instructions, str):
            instructions = [instructions]
        added = [s.strip() for s in instructions if s and s.strip()]
        self._special.extend(added)
        self.audit.record(f"Added {len(added)} special instructions")
        return self

    # ---- output ----
    def snapshot(self) -> BuilderSnapshot:
        return BuilderSnapshot(
            medication=self.medication,
            doses=tuple(self._doses),
            timing=self._timing,
            route=self._route,
            constraints=self._constraints,
            as_needed=self._as_needed,
            special_instructions=tuple(self._special),
        )

    def render(self) -> List[SignatureInstruction]:
        instructions = render_snapshot(self.snapshot(), self.policy, self.config, self.renderer)
        logger.debug("%s rendered %d instruction(s) for %s", self.policy.name, len(instructions), self.medication.name)
        return instructions

    def explain(self) -> str:
        return self.audit.text()

    @property
    def warnings(self) -> Tuple[Advisory, ...]:
        return self.audit.advisories

    def serialize(self) -> Dict[str, Any]:
        """Debug snapshot of the builder. Not a wire format."""
        snap = self.snapshot()
        return {
            "builderType": self.policy.name,
            "version": BUILDER_VERSION,
            "features": list(self.policy.features),
            "medication": {"id": self.medication.id, "name": self.medication.name,
                           "doseForm": self.medication.dose_form},
            "state": {
                "doses": [{"dose": asdict(e.dose), "display": asdict(e.display)} for e in snap.doses],
                "timing": asdict(snap.timing) if snap.timing is not None else None,
                "route": snap.route,
                "constraints": asdict(snap.constraints) if snap.constraints is not None else None,
                "asNeeded": asdict(snap.as_needed) if snap.as_needed is not None else None,
                "specialInstructions": list(snap.special_instructions),
            },
            "warnings": [a.message for a in self.warnings],
            "auditTrail": self.audit.lines(),
        }


def phase_snapshot(medication: MedicationProfile, dose: DoseEntry, timing: TimingInput, route: str,
                   special: Sequence[str] = (), as_needed: Optional[AsNeeded] = None) -> BuilderSnapshot:
    """Snapshot for a single dose/timing pair, used by regimen builders."""
    return BuilderSnapshot(medication=medication, doses=(dose,), timing=timing, route=route,
                           as_needed=as_needed, special_instructions=tuple(special))


def duration_text(duration: Duration) -> str:
    return f"{fmt_number(duration.value)} {duration.unit}"
