# src/sigengine/builders/tapering.py
"""
Tapering schedules: an ordered list of phases, each rendered as its own
instruction and linked to the next one.

Every phase is rendered from its own BuilderSnapshot, so producing the
schedule never changes the builder's dose or timing.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from ..audit import Advisory
from ..config import EngineConfig, resolve_config
from ..errors import ErrorCode, SignatureError, TaperingScheduleError
from ..rules import (
    check_dose_progression, check_phase_bounds_against_medication, check_phase_durations, check_phase_sequence,
    check_schedule_length, check_timing_consistency, validate_dose, validate_timing,
)
from ..templates import Renderer, fmt_number, render_template
from ..types import (
    AsNeeded, DoseConstraints, DoseEntry, DoseInput, MedicationProfile, Period, Relationship, RelationshipType,
    SignatureInstruction, TaperingPhase, TimingInput,
)
from ..units import duration_to_days
from .core import SignatureBuilder, describe_dose, duration_text, phase_snapshot, render_snapshot
from .policies import DoseFormPolicy, tablet_policy

logger = logging.getLogger(__name__)

DESCENDING = "descending"
ASCENDING = "ascending"


def total_duration_text(days: float, weeks_threshold_days: float = 7.0) -> str:
    """Under the threshold the total stays in days, otherwise weeks rounded to one decimal."""
    if days < weeks_threshold_days:
        return f"{fmt_number(days)} {'day' if days == 1 else 'days'}"
    weeks = round(days / 7.0, 1)
    return f"{fmt_number(weeks)} {'week' if weeks == 1 else 'weeks'}"


class TaperingBuilder:
    """
    Builder for multi-phase tapering regimens.

    start : datetime the first phase begins; phase bounds are chained from
            it. Defaults to the audit clock's "now" at render time.
    """

    def __init__(self, medication: MedicationProfile, policy: Optional[DoseFormPolicy] = None,
                 config: Optional[EngineConfig] = None, renderer: Renderer = render_template,
                 clock: Optional[Callable[[], datetime]] = None, start: Optional[datetime] = None):
        self.config = resolve_config(config)
        self.core = SignatureBuilder(medication, policy or tablet_policy(self.config), self.config, renderer, clock)
        self.renderer = renderer
        self.start = start
        self._phases: Tuple[TaperingPhase, ...] = ()
        self._entries: Tuple[DoseEntry, ...] = ()
        self._current: Optional[int] = None
        self._direction: Optional[str] = None
        self._total_days: float = 0.0
        self._monitoring: List[str] = []
        self._discontinuation: List[str] = []

        name = medication.name.lower()
        if any(m in name for m in self.config.tables.tapering_medications):
            self.add_monitoring_requirement("Monitor for withdrawal symptoms during tapering")
            self.add_discontinuation_warning("Do not discontinue abruptly without medical supervision")

    @property
    def medication(self) -> MedicationProfile:
        return self.core.medication

    @property
    def audit(self):
        return self.core.audit

    @property
    def phases(self) -> Tuple[TaperingPhase, ...]:
        return self._phases

    @property
    def direction(self) -> Optional[str]:
        return self._direction

    @property
    def total_days(self) -> float:
        return self._total_days

    # ---- schedule ----
    def set_sequential_phases(self, phases: Sequence[TaperingPhase]) -> "TaperingBuilder":
        settings = self.config.settings
        check_phase_sequence(phases)
        ordered = tuple(sorted(phases, key=lambda p: p.sequence_number))
        advisories: List[Advisory] = check_phase_durations(ordered, settings)

        entries = []
        for p in ordered:
            try:
                validate_dose(p.dose)
                validate_timing(p.timing)
                entries.append(self.core.policy.prepare_dose(p.dose, self.core.context))
            except SignatureError as exc:
                raise TaperingScheduleError(f"Phase {p.sequence_number} ({p.name}) is invalid: {exc.message}",
                                            ErrorCode.TAPER_PHASE_INVALID,
                                            details={"phase": p.sequence_number, "cause": exc.code.value}) from exc

        advisories += check_schedule_length(ordered)
        advisories += check_dose_progression(ordered, settings)
        advisories += check_timing_consistency(ordered)
        advisories += check_phase_bounds_against_medication(ordered, self.medication)

        self._phases = ordered
        self._entries = tuple(entries)
        self._current = None
        first, last = ordered[0].dose.value, ordered[-1].dose.value
        self._direction = DESCENDING if first > last else ASCENDING
        self._total_days = sum(duration_to_days(p.duration) for p in ordered)

        self.audit.record(f"Added {len(ordered)} sequential tapering phases")
        self.audit.record(f"Tapering direction: {self._direction}; total duration "
                          f"{total_duration_text(self._total_days, settings.taper_weeks_threshold_days)}")
        self.audit.extend(advisories)
        return self

    def set_current_phase(self, phase_number: int) -> "TaperingBuilder":
        if not any(p.sequence_number == phase_number for p in self._phases):
            raise TaperingScheduleError(f"Phase {phase_number} not found in tapering schedule",
                                        ErrorCode.TAPER_PHASE_NOT_FOUND)
        self._current = phase_number
        self.audit.record(f"Set current phase to {phase_number}: {self._phases[phase_number - 1].name}")
        return self

    def add_monitoring_requirement(self, requirement: str) -> "TaperingBuilder":
        if requirement not in self._monitoring:
            self._monitoring.append(requirement)
            self.audit.record(f"Added monitoring requirement: {requirement}")
        return self

    def add_discontinuation_warning(self, warning: str) -> "TaperingBuilder":
        if warning not in self._discontinuation:
            self._discontinuation.append(warning)
            self.audit.record(f"Added discontinuation warning: {warning}")
        return self

    # ---- chainable contract (used when no schedule is set) ----
    def add_dose(self, dose: DoseInput) -> "TaperingBuilder":
        self.core.add_dose(dose)
        return self

    def add_timing(self, timing: TimingInput) -> "TaperingBuilder":
        self.core.add_timing(timing)
        return self

    def add_route(self, route: str) -> "TaperingBuilder":
        self.core.add_route(route)
        return self

    def add_constraints(self, constraints: DoseConstraints) -> "TaperingBuilder":
        self.core.add_constraints(constraints)
        return self

    def add_as_needed(self, as_needed: AsNeeded) -> "TaperingBuilder":
        self.core.add_as_needed(as_needed)
        return self

    def add_special_instructions(self, instructions: Union[str, Sequence[str]]) -> "TaperingBuilder":
        self.core.add_special_instructions(instructions)
        return self

    # ---- rendering ----
    def _route(self) -> str:
        route = self.core.snapshot().route
        return route or self.medication.default_route or self.config.tables.default_route

    def _phase_starts(self) -> List[datetime]:
        start = self.start if self.start is not None else self.audit.now()
        starts = []
        for p in self._phases:
            starts.append(start)
            start = start + timedelta(days=duration_to_days(p.duration))
        return starts

    def _render_phase(self, index: int, start: datetime) -> SignatureInstruction:
        phase = self._phases[index]
        base = self.core.snapshot()
        snap = phase_snapshot(self.medication, self._entries[index], phase.timing, self._route(),
                              base.special_instructions, base.as_needed)
        [instruction] = render_snapshot(snap, self.core.policy, self.config, self.renderer)

        end = start + timedelta(days=duration_to_days(phase.duration))
        extra = [f"Continue for {duration_text(phase.duration)}"]
        extra.extend(phase.special_instructions)
        if phase.transition_note:
            extra.append(f"Next phase: {phase.transition_note}")
        relationships: Tuple[Relationship, ...] = ()
        if index + 1 < len(self._phases):
            nxt = self._phases[index + 1]
            relationships = (Relationship(type=RelationshipType.SEQUENTIAL, target_id=f"phase-{nxt.sequence_number}"),)

        return replace(
            instruction,
            id=f"phase-{phase.sequence_number}",
            sequence=phase.sequence_number,
            text=f"Phase {phase.sequence_number} ({phase.name}): {instruction.text}",
            timing=replace(instruction.timing, bounds=Period(start=start.isoformat(), end=end.isoformat())),
            additional_instructions=instruction.additional_instructions + tuple(extra),
            relationships=relationships,
        )

    def _general_instructions(self) -> List[str]:
        settings = self.config.settings
        lines = [f"Complete tapering schedule: {len(self._phases)} phases over "
                 f"{total_duration_text(self._total_days, settings.taper_weeks_threshold_days)}"]
        if self._direction == DESCENDING:
            lines.append("Do not stop abruptly - follow tapering schedule exactly")
        lines.extend(self._monitoring)
        lines.extend(self._discontinuation)
        name = self.medication.name.lower()
        if any(m in name for m in self.config.tables.slow_taper_markers):
            lines.append("This medication requires gradual dose reduction to prevent withdrawal symptoms")
        return lines

    def _context_instructions(self, index: int) -> List[str]:
        phase = self._phases[index]
        lines = [f"Current phase: {phase.name} ({phase.sequence_number} of {len(self._phases)})",
                 f"Phase duration: {duration_text(phase.duration)}"]
        if index + 1 < len(self._phases):
            verb = "Reduce" if self._direction == DESCENDING else "Increase"
            lines.append(f"Next phase: {verb} to {describe_dose(self._phases[index + 1].dose)}")
        else:
            lines.append("Final phase - complete tapering schedule")
        return lines

    def render(self) -> List[SignatureInstruction]:
        if not self._phases:
            return self.core.render()
        starts = self._phase_starts()
        if self._current is not None:
            index = self._current - 1
            instruction = self._render_phase(index, starts[index])
            instruction = replace(instruction, relationships=(),
                                  additional_instructions=instruction.additional_instructions
                                  + tuple(self._context_instructions(index)))
            return [instruction]

        instructions = [self._render_phase(i, s) for i, s in enumerate(starts)]
        first = instructions[0]
        instructions[0] = replace(first, additional_instructions=first.additional_instructions
                                  + tuple(self._general_instructions()))
        logger.debug("TaperingBuilder rendered %d phases for %s", len(instructions), self.medication.name)
        return instructions

    def explain(self) -> str:
        lines = [self.core.explain(), "", "--- Tapering Schedule ---",
                 f"Phase count: {len(self._phases)}"]
        if self._phases:
            lines.append(f"Direction: {self._direction}")
            lines.append("Total duration: "
                         f"{total_duration_text(self._total_days, self.config.settings.taper_weeks_threshold_days)}")
            for p in self._phases:
                lines.append(f"  {p.sequence_number}. {p.name}: {describe_dose(p.dose)} for {duration_text(p.duration)}")
        lines.append(f"Current phase: {self._current or 'Not set'}")
        return "\n".join(lines)

    @property
    def warnings(self) -> Tuple[Advisory, ...]:
        return self.core.warnings

    def serialize(self) -> Dict[str, Any]:
        out = self.core.serialize()
        out["builderType"] = "TaperingBuilder"
        out["tapering"] = {
            "phases": [
                {"sequence": p.sequence_number, "name": p.name, "dose": describe_dose(p.dose),
                 "duration": duration_text(p.duration)}
                for p in self._phases
            ],
            "direction": self._direction,
            "totalDays": self._total_days,
            "currentPhase": self._current,
            "monitoring": list(self._monitoring),
            "discontinuationWarnings": list(self._discontinuation),
        }
        return out
