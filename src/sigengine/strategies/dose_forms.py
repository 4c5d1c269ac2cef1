# src/sigengine/strategies/dose_forms.py
from __future__ import annotations

from typing import Any, Dict

from ..templates import fmt_number, format_dose, format_tablet_text, route_phrase, route_verb
from ..types import SNOMED_SYSTEM, Coding, RequestContext, SignatureInstruction
from ..units import mg_per_ml, normalize_unit
from .base import (
    BaseStrategy, SpecificityLevel, StrategyMetadata, context_dose_and_rate, context_route, frequency_text,
    timing_from_phrase,
)

DAILY_WHEN = {
    1: ("MORN",),
    2: ("MORN", "EVE"),
    3: ("MORN", "AFT", "EVE"),
    4: ("MORN", "NOON", "AFT", "EVE"),
}

SWALLOW_METHOD = Coding(system=SNOMED_SYSTEM, code="421521009", display="Swallow - dosing instruction")
INJECT_METHOD = Coding(system=SNOMED_SYSTEM, code="422145002", display="Inject")
IM_SITE = "Structure of quadriceps femoris muscle and/or gluteus muscle"

LIQUID_FORMS = ("solution", "suspension", "syrup", "elixir", "liquid")


def _special(ctx: RequestContext) -> str:
    return f" {ctx.special_instructions.strip()}" if ctx.special_instructions else ""


class DefaultStrategy(BaseStrategy):
    """Always matches; plain dose, route and frequency."""

    specificity = SpecificityLevel.DEFAULT
    metadata = StrategyMetadata(
        id="default-strategy",
        name="Default Strategy",
        description="Fallback strategy for simple medication instructions",
    )

    def matches(self, ctx: RequestContext) -> bool:
        return True

    def build_instruction(self, ctx: RequestContext) -> SignatureInstruction:
        tables = self.config.tables
        data: Dict[str, Any] = {
            "verb": route_verb(ctx.route, tables),
            "route": route_phrase(ctx.route, tables),
            "frequency": frequency_text(ctx),
            "specialInstructions": _special(ctx),
        }
        if ctx.dose is not None:
            data["doseText"] = format_dose(ctx.dose.value, ctx.dose.unit)
        return SignatureInstruction(
            text=self.renderer("DEFAULT_TEMPLATE", data),
            dose_and_rate=context_dose_and_rate(ctx, self.config),
            timing=timing_from_phrase(ctx.frequency),
            route=context_route(ctx, self.config),
            as_needed=True if ctx.as_needed else None,
            as_needed_for=ctx.as_needed or None,
        )

    def explain(self) -> str:
        return "Default strategy: Applies basic formatting rules for any medication"


class TabletStrategy(BaseStrategy):
    """Oral solids; fraction phrasing such as '1 and 1/2 tablets'."""

    specificity = SpecificityLevel.DOSE_FORM
    metadata = StrategyMetadata(
        id="tablet-strategy",
        name="Tablet Strategy",
        description="Handles oral solid medications with fractional dosing support",
        examples=("Metformin 500mg", "Atorvastatin 20mg", "Levothyroxine 50mcg"),
    )

    def matches(self, ctx: RequestContext) -> bool:
        tables = self.config.tables
        return tables.has_form(ctx.medication.dose_form, tables.solid_forms)

    def build_instruction(self, ctx: RequestContext) -> SignatureInstruction:
        tables = self.config.tables
        data: Dict[str, Any] = {
            "verb": "Take",
            "route": route_phrase(ctx.route or tables.default_route, tables),
            "frequency": frequency_text(ctx),
            "specialInstructions": _special(ctx),
        }
        if ctx.dose is not None:
            data["doseText"] = format_tablet_text(ctx.dose.value, ctx.dose.unit)

        when = ()
        repeat_timing = timing_from_phrase(ctx.frequency)
        if repeat_timing is not None and repeat_timing.repeat is not None:
            r = repeat_timing.repeat
            if r.period_unit == "d" and r.period == 1:
                when = DAILY_WHEN.get(r.frequency, ())

        form = ctx.medication.dose_form.strip().lower()
        return SignatureInstruction(
            text=self.renderer("ORAL_TABLET_TEMPLATE", data),
            dose_and_rate=context_dose_and_rate(ctx, self.config),
            timing=timing_from_phrase(ctx.frequency, when),
            route=context_route(ctx, self.config),
            method=SWALLOW_METHOD if form == "odt" else None,
            as_needed=True if ctx.as_needed else None,
            as_needed_for=ctx.as_needed or None,
        )

    def explain(self) -> str:
        return "Tablet strategy: Handles oral solid medications with fractional dose support and proper pluralization"


class LiquidStrategy(BaseStrategy):
    """Volume-based liquids; suspensions get a shake instruction."""

    specificity = SpecificityLevel.DOSE_FORM
    metadata = StrategyMetadata(
        id="liquid-strategy",
        name="Liquid Strategy",
        description="Handles liquid medications with volume-based dosing",
        examples=("Amoxicillin suspension", "Ibuprofen liquid", "Cough syrup"),
    )

    def matches(self, ctx: RequestContext) -> bool:
        return self.config.tables.has_form(ctx.medication.dose_form, LIQUID_FORMS)

    def build_instruction(self, ctx: RequestContext) -> SignatureInstruction:
        tables = self.config.tables
        route = ctx.route or tables.default_route
        data: Dict[str, Any] = {
            "verb": route_verb(route, tables),
            "route": route_phrase(route, tables),
            "frequency": frequency_text(ctx),
            "specialInstructions": _special(ctx),
        }
        if ctx.dose is not None:
            data["doseText"] = format_dose(ctx.dose.value, ctx.dose.unit)
        additional = ()
        if tables.has_form(ctx.medication.dose_form, ("suspension",)):
            additional = ("Shake well before use",)
        return SignatureInstruction(
            text=self.renderer("LIQUID_DOSE_TEMPLATE", data),
            dose_and_rate=context_dose_and_rate(ctx, self.config),
            timing=timing_from_phrase(ctx.frequency),
            route=context_route(ctx, self.config),
            additional_instructions=additional,
            as_needed=True if ctx.as_needed else None,
            as_needed_for=ctx.as_needed or None,
        )

    def explain(self) -> str:
        return "Liquid strategy: Handles volume-based dosing and adds shake instructions for suspensions"


class TestosteroneCypionateStrategy(BaseStrategy):
    """
    Testosterone cypionate injections: dose shown in mg and mL, always
    intramuscular with site rotation.
    """

    __test__ = False  # keep pytest from collecting this as a test class
    specificity = SpecificityLevel.MEDICATION_ID
    metadata = StrategyMetadata(
        id="testosterone-cypionate-strategy",
        name="Testosterone Cypionate Strategy",
        description="Handles testosterone cypionate with dual dosing display",
        examples=("Testosterone Cypionate 200mg/mL",),
    )
    medication_id = "testosterone-cypionate-200mg-ml"
    default_mg_per_ml = 200.0

    def matches(self, ctx: RequestContext) -> bool:
        med = ctx.medication
        name = med.name.lower()
        return (med.id.lower() == self.medication_id
                or "testosterone cypionate" in name
                or "depo-testosterone" in name)

    def _concentration(self, ctx: RequestContext) -> float:
        conc = mg_per_ml(ctx.medication)
        return conc if conc else self.default_mg_per_ml

    def build_instruction(self, ctx: RequestContext) -> SignatureInstruction:
        data: Dict[str, Any] = {
            "verb": "Inject",
            "route": "intramuscularly",
            "site": " (rotate injection sites)",
            "frequency": frequency_text(ctx),
        }
        dose = ctx.dose
        if dose is not None:
            conc = self._concentration(ctx)
            unit = normalize_unit(dose.unit)
            if unit == "mg":
                data["doseText"] = f"{fmt_number(dose.value)} mg"
                data["dualDose"] = f", as {fmt_number(round(dose.value / conc, 2))} mL"
            elif unit == "ml":
                data["doseText"] = f"{fmt_number(dose.value * conc)} mg"
                data["dualDose"] = f", as {fmt_number(dose.value)} mL"
            else:
                data["doseText"] = f"{fmt_number(dose.value)} {dose.unit}"
        return SignatureInstruction(
            text=self.renderer("INJECTION_TEMPLATE", data),
            dose_and_rate=context_dose_and_rate(ctx, self.config),
            timing=timing_from_phrase(ctx.frequency),
            route=context_route(RequestContext(medication=ctx.medication, route="intramuscular"), self.config),
            method=INJECT_METHOD,
            site=IM_SITE,
            additional_instructions=("Rotate injection sites",),
        )

    def explain(self) -> str:
        return ("Testosterone cypionate strategy: Provides dual dosing (mg/mL), enforces IM route, "
                "and includes injection site rotation")