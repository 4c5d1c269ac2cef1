# src/sigengine/builders/prn.py
"""
Ranged PRN ("as needed") regimens: dose ranges, frequency ranges and a
maximum daily dose, layered over a single-form SignatureBuilder.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from ..audit import Advisory
from ..config import EngineConfig, resolve_config
from ..rules import (
    PRNTiming, check_frequency_interval, check_in_dose_range, check_in_frequency_range, check_max_daily,
    check_range_against_medication, derive_prn_timing, require_complete, validate_dose, validate_dose_range,
    validate_frequency_range, validate_timing,
)
from ..templates import Renderer, fmt_number, format_dose_range, format_frequency_range, render_template
from ..types import (
    AsNeeded, DoseAndRate, DoseConstraints, DoseInput, DoseRangeInput, FrequencyRangeInput,
    MaxDailyDoseConstraint, MedicationProfile, Quantity, Range, Ratio, SignatureInstruction, TimingInput,
)
from .core import SignatureBuilder, build_instruction, dose_quantity, timing_for
from .policies import DoseFormPolicy, tablet_policy

logger = logging.getLogger(__name__)

PRN_TEMPLATE = "PRN_INSTRUCTION_TEMPLATE"


class RangedPRNBuilder:
    """
    PRN builder with dose / frequency ranges.

    set_dose_range      : validates against the medication limits, then uses
                          the range minimum as the base dose
    set_frequency_range : derives the dosing interval envelope, then uses the
                          minimum frequency as the base timing
    Once a range is active, add_dose / add_timing must stay inside it.
    """

    def __init__(self, medication: MedicationProfile, policy: Optional[DoseFormPolicy] = None,
                 config: Optional[EngineConfig] = None, renderer: Renderer = render_template,
                 clock: Optional[Callable[[], datetime]] = None):
        self.config = resolve_config(config)
        self.core = SignatureBuilder(medication, policy or tablet_policy(self.config), self.config, renderer, clock)
        self.renderer = renderer
        self._dose_range: Optional[DoseRangeInput] = None
        self._frequency_range: Optional[FrequencyRangeInput] = None
        self._prn_timing: Optional[PRNTiming] = None
        self._max_daily: List[MaxDailyDoseConstraint] = []
        self._safety: List[str] = []
        self.audit.record(f"Validated PRN medication: {medication.name}")

    @property
    def medication(self) -> MedicationProfile:
        return self.core.medication

    @property
    def audit(self):
        return self.core.audit

    @property
    def prn_timing(self) -> Optional[PRNTiming]:
        return self._prn_timing

    def _advise(self, advisories: Sequence[Advisory], safety: bool = True) -> None:
        self.audit.extend(advisories)
        if safety:
            for a in advisories:
                if a.message not in self._safety:
                    self._safety.append(a.message)

    # ---- ranges ----
    def set_dose_range(self, dose_range: DoseRangeInput) -> "RangedPRNBuilder":
        validate_dose_range(dose_range)
        advisories = check_range_against_medication(dose_range, self.medication, self.config.settings)
        if not self.core.snapshot().doses:
            self.core.add_dose(DoseInput(value=dose_range.min_value, unit=dose_range.unit))
        self._dose_range = dose_range
        self.audit.record(f"Added dose range: {format_dose_range(dose_range.min_value, dose_range.max_value, dose_range.unit)}")
        self._advise(advisories)
        return self

    def set_frequency_range(self, frequency_range: FrequencyRangeInput) -> "RangedPRNBuilder":
        validate_frequency_range(frequency_range)
        timing = derive_prn_timing(frequency_range)
        self.core.add_timing(TimingInput(frequency=frequency_range.min_frequency, period=frequency_range.period,
                                         period_unit=frequency_range.period_unit))
        self._frequency_range = frequency_range
        self._prn_timing = timing
        self.audit.record(
            f"Added frequency range: {format_frequency_range(frequency_range.min_frequency, frequency_range.max_frequency, frequency_range.period, frequency_range.period_unit)}")
        self.audit.record(f"Calculated PRN timing: {timing.min_interval_hours:.1f}-{timing.max_interval_hours:.1f} "
                          f"hour intervals, max {timing.max_administrations_per_day} times daily")
        self._advise(check_frequency_interval(timing, frequency_range, self.config.settings))
        return self

    def set_max_daily_dose_constraint(self, constraint: MaxDailyDoseConstraint) -> "RangedPRNBuilder":
        cap = constraint.max_dose_per_day
        validate_dose(DoseInput(value=cap.value, unit=cap.unit))
        self._max_daily.append(constraint)
        self.audit.record(f"Added max daily dose constraint: {fmt_number(cap.value)} {cap.unit}")
        self._advise(check_max_daily(self._dose_range, self._prn_timing, constraint), safety=False)
        return self

    # ---- chainable contract ----
    def add_dose(self, dose: DoseInput) -> "RangedPRNBuilder":
        validate_dose(dose)
        if self._dose_range is not None:
            check_in_dose_range(dose, self._dose_range, self.config.settings.fraction_tolerance)
        self.core.add_dose(dose)
        return self

    def add_timing(self, timing: TimingInput) -> "RangedPRNBuilder":
        validate_timing(timing)
        if self._frequency_range is not None:
            check_in_frequency_range(timing, self._frequency_range)
        self.core.add_timing(timing)
        return self

    def add_route(self, route: str) -> "RangedPRNBuilder":
        self.core.add_route(route)
        return self

    def add_constraints(self, constraints: DoseConstraints) -> "RangedPRNBuilder":
        self.core.add_constraints(constraints)
        return self

    def add_as_needed(self, as_needed: AsNeeded) -> "RangedPRNBuilder":
        self.core.add_as_needed(as_needed)
        return self

    def add_special_instructions(self, instructions: Union[str, Sequence[str]]) -> "RangedPRNBuilder":
        self.core.add_special_instructions(instructions)
        return self

    # ---- output ----
    def _prn_instructions(self) -> List[str]:
        lines: List[str] = []
        for c in self._max_daily:
            cap = c.max_dose_per_day
            lines.append(f"Do not exceed {fmt_number(cap.value)} {cap.unit} in 24 hours")
            if c.max_administrations_per_day:
                lines.append(f"Maximum {c.max_administrations_per_day} doses per day")
            if c.warning_message:
                lines.append(c.warning_message)
        timing = self._prn_timing
        if timing is not None:
            lines.append(f"Wait at least {fmt_number(timing.min_interval_hours)} hours between doses")
            if timing.max_interval_hours != timing.min_interval_hours:
                lines.append(f"May space doses up to {timing.max_interval_hours:.1f} hours apart")
        lines.extend(self._safety)
        lines.append("Take only when needed for symptoms")
        if self.medication.is_controlled:
            lines.append("Controlled substance - use only as directed")
        return lines

    def render(self) -> List[SignatureInstruction]:
        snap = self.core.snapshot()
        require_complete(snap)
        config = self.config
        policy = self.core.policy
        indication = snap.as_needed.indication if snap.as_needed is not None else None

        data: Dict[str, Any] = dict(policy.template_data(snap, config))
        r = self._dose_range
        if r is not None:
            data["doseText"] = format_dose_range(r.min_value, r.max_value, r.unit)
        fr = self._frequency_range
        if fr is not None:
            data["frequency"] = format_frequency_range(fr.min_frequency, fr.max_frequency, fr.period, fr.period_unit)
        data["indication"] = f" for {indication}" if indication else ""
        if self._max_daily:
            cap = self._max_daily[0].max_dose_per_day
            data["maxDose"] = f". Do not exceed {fmt_number(cap.value)} {cap.unit} in 24 hours"
        text = self.renderer(PRN_TEMPLATE, data)

        additional = list(policy.additional_instructions(replace(snap, as_needed=None), config))
        for line in self._prn_instructions():
            if line not in additional:
                additional.append(line)

        tables = config.tables
        overrides: Dict[str, Any] = {"as_needed": True, "as_needed_for": indication}
        if r is not None:
            overrides["dose_and_rate"] = (DoseAndRate(dose_range=Range(
                low=dose_quantity(r.min_value, r.unit, tables),
                high=dose_quantity(r.max_value, r.unit, tables))),)
        if fr is not None:
            overrides["timing"] = timing_for(snap.timing, frequency_max=fr.max_frequency)
        if self._max_daily:
            cap = self._max_daily[0].max_dose_per_day
            overrides["max_dose_per_period"] = Ratio(numerator=dose_quantity(cap.value, cap.unit, tables),
                                                     denominator=Quantity(value=1, unit="d"))
        instruction = build_instruction(snap, config, text, additional, **overrides)
        logger.debug("RangedPRNBuilder rendered PRN instruction for %s", self.medication.name)
        return [instruction]

    def validate_complex_regimen(self) -> List[str]:
        """Consistency problems that are not fatal on their own."""
        problems: List[str] = []
        if self._dose_range is not None and not self._max_daily:
            problems.append("Dose range specified but no maximum daily dose constraint provided")
        if self._frequency_range is not None and self._prn_timing is None:
            problems.append("Frequency range specified but PRN timing not calculated")
        return problems

    def explain(self) -> str:
        lines = [self.core.explain(), "", "--- Complex PRN Features ---"]
        if self._dose_range is not None:
            r = self._dose_range
            lines.append(f"Dose range: {format_dose_range(r.min_value, r.max_value, r.unit)}")
        if self._frequency_range is not None:
            fr = self._frequency_range
            lines.append(f"Frequency range: {format_frequency_range(fr.min_frequency, fr.max_frequency, fr.period, fr.period_unit)}")
        if self._prn_timing is not None:
            t = self._prn_timing
            lines.append(f"Interval range: {t.min_interval_hours:.1f}-{t.max_interval_hours:.1f} hours")
            lines.append(f"Max daily administrations: {t.max_administrations_per_day}")
        for c in self._max_daily:
            lines.append(f"Max daily dose: {fmt_number(c.max_dose_per_day.value)} {c.max_dose_per_day.unit}")
        if self._safety:
            lines.append(f"Safety warnings: {'; '.join(self._safety)}")
        return "\n".join(lines)

    @property
    def warnings(self) -> Tuple[Advisory, ...]:
        return self.core.warnings

    def serialize(self) -> Dict[str, Any]:
        out = self.core.serialize()
        out["builderType"] = "RangedPRNBuilder"
        out["prn"] = {
            "doseRange": asdict(self._dose_range) if self._dose_range is not None else None,
            "frequencyRange": asdict(self._frequency_range) if self._frequency_range is not None else None,
            "prnTiming": asdict(self._prn_timing) if self._prn_timing is not None else None,
            "maxDailyDoses": [
                {"value": c.max_dose_per_day.value, "unit": c.max_dose_per_day.unit,
                 "maxAdministrationsPerDay": c.max_administrations_per_day}
                for c in self._max_daily
            ],
            "safetyWarnings": list(self._safety),
        }
        return out
