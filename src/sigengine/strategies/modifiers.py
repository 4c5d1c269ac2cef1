# src/sigengine/strategies/modifiers.py
from __future__ import annotations

import re
from dataclasses import replace

from ..builders.policies import clicks_per_ml, is_topiclick, topiclick_display
from ..templates import fmt_number, format_dose, format_tablet_text
from ..types import RequestContext, SignatureInstruction
from ..units import is_click_unit, normalize_unit, strength_per_unit
from .base import ModifierStrategy, StrategyMetadata

COUNTABLE_UNITS = ("tablet", "tablets", "capsule", "capsules", "patch", "patches")


class StrengthDisplayModifier(ModifierStrategy):
    """'2 tablets' -> '2 tablets (1000 mg)' for countable units with a known strength."""

    priority = 20
    metadata = StrategyMetadata(
        id="strength-display-modifier",
        name="Strength Display Modifier",
        description="Adds medication strength to countable dose units",
        examples=("2 tablets (1000 mg)", "1 capsule (20 mg)"),
    )

    def applies_to(self, ctx: RequestContext) -> bool:
        dose = ctx.dose
        strength = ctx.medication.primary_strength
        if dose is None or strength is None or not strength.numerator.value:
            return False
        unit = normalize_unit(dose.unit)
        return unit in COUNTABLE_UNITS

    def modify(self, instruction: SignatureInstruction, ctx: RequestContext) -> SignatureInstruction:
        dose = ctx.dose
        ratio = ctx.medication.primary_strength
        if dose is None or ratio is None or not instruction.text:
            return instruction
        total = dose.value * strength_per_unit(ratio)
        label = f" ({fmt_number(total)} {ratio.numerator.unit})"
        # The base strategy may have phrased the dose either way
        for shown in (format_tablet_text(dose.value, dose.unit), format_dose(dose.value, dose.unit)):
            pattern = re.compile(rf"(?<![\d/.])({re.escape(shown)})(?!\s*\()", re.IGNORECASE)
            if pattern.search(instruction.text):
                return replace(instruction, text=pattern.sub(lambda m: m.group(1) + label, instruction.text, count=1))
        return instruction

    def explain(self) -> str:
        return "Strength display modifier: Adds total medication strength for countable dose units"


class TopiclickModifier(ModifierStrategy):
    """Click doses on Topiclick creams and gels, shown with their mg / mL equivalent."""

    priority = 10
    metadata = StrategyMetadata(
        id="topiclick-modifier",
        name="Topiclick Modifier",
        description="Handles Topiclick dispenser conversion (4 clicks = 1 mL)",
        examples=("Estradiol cream with Topiclick",),
    )

    def applies_to(self, ctx: RequestContext) -> bool:
        med = ctx.medication
        return self.config.tables.has_form(med.dose_form, ("cream", "gel")) and is_topiclick(med)

    def modify(self, instruction: SignatureInstruction, ctx: RequestContext) -> SignatureInstruction:
        dose = ctx.dose
        if dose is None or not instruction.text:
            return instruction
        text = instruction.text
        if is_click_unit(dose.unit):
            shown = topiclick_display(dose.value, ctx.medication, self.config)
            pattern = re.compile(rf"{re.escape(fmt_number(dose.value))}\s*clicks?(?!\s*\()", re.IGNORECASE)
            text = pattern.sub(lambda m: shown, text, count=1)
        if "Topiclick" not in text:
            text = re.sub(r"\.$", " using Topiclick dispenser.", text)
        per_ml = clicks_per_ml(ctx.medication, self.config)
        note = f"Each click dispenses {1.0 / per_ml:g} mL"
        extra = instruction.additional_instructions
        if note not in extra:
            extra = extra + (note,)
        return replace(instruction, text=text, additional_instructions=extra)

    def explain(self) -> str:
        return "Topiclick modifier: Converts click doses to mL/mg equivalents and adds dispenser instructions"
