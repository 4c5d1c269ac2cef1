# src/sigengine/builders/policies.py
"""
Dose-form policies.

A DoseFormPolicy is a bundle of plain functions the SignatureBuilder calls:

  check_medication(ctx)                  once, when the builder is created
  prepare_dose(dose, ctx) -> DoseEntry   validate / convert each added dose
  check_route(route, ctx)                route advisories
  template_data(snapshot, config)        flat record for the template
  additional_instructions(snapshot, config) -> list of extra lines

Base policies: tablet_policy, fractional_policy, liquid_policy.
Specialty behavior wraps a base policy's hooks and returns a new policy:
with_fraction_rounding, with_topiclick, with_nasal_spray,
with_ingredient_breakdown.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..audit import Advisory
from ..config import EngineConfig, resolve_config
from ..errors import InvalidMedicationError
from ..rules import (
    check_dispenser_limit, check_large_volume, check_liquid_route, check_oral_route, check_route_family,
    check_tablet_fraction,
)
from ..templates import (
    fmt_number, format_dose_range, format_fraction, format_frequency, pluralize, route_phrase, route_verb,
)
from ..types import DoseEntry, DoseInput, MedicationProfile, MedicationType
from ..units import (
    clicks_to_mass, clicks_to_ml, dual_dose, fractional_remainder, ingredient_breakdown, is_click_unit,
    is_spray_unit, is_tablet_unit, is_whole, mcg_per_spray, round_to_quarter, strength_unit,
)
from .core import BuilderSnapshot, DoseContext

PrepareHook = Callable[[DoseInput, DoseContext], DoseEntry]
RouteHook = Callable[[str, DoseContext], None]
MedicationHook = Callable[[DoseContext], None]
DataHook = Callable[[BuilderSnapshot, EngineConfig], Dict[str, Any]]
InstructionHook = Callable[[BuilderSnapshot, EngineConfig], List[str]]

SPLITTING_INSTRUCTIONS = {
    0.25: "Split tablet into quarters, take one piece",
    0.5: "Split tablet in half",
    0.75: "Split tablet into quarters, take three pieces",
}

TOPICLICK = "topiclick"
NASAL_SPRAY = "nasalspray"


@dataclass(frozen=True)
class DoseFormPolicy:
    """
    name        : builder type shown in the audit trail and serialize()
    template_id : template the text is rendered with
    valid_forms : dose forms this policy expects
    strict_form : unexpected dose form is fatal (True) or an advisory (False)
    features    : tags added by decorators, e.g. ("unicodeFractions",)
    """
    name: str
    template_id: str
    valid_forms: Tuple[str, ...]
    strict_form: bool
    check_medication: MedicationHook
    prepare_dose: PrepareHook
    check_route: RouteHook
    template_data: DataHook
    additional_instructions: InstructionHook
    features: Tuple[str, ...] = ()


# --------------------------
# Shared hook bodies
# --------------------------
def special_suffix(items) -> str:
    return " " + "; ".join(items) if items else ""


def base_template_data(snapshot: BuilderSnapshot, config: EngineConfig) -> Dict[str, Any]:
    tables = config.tables
    shown = snapshot.doses[0].display
    t = snapshot.timing
    data: Dict[str, Any] = {
        "verb": route_verb(snapshot.route, tables),
        "doseValue": shown.value,
        "doseUnit": shown.unit,
        "route": route_phrase(snapshot.route, tables),
        "frequency": format_frequency(t.frequency, t.period, t.period_unit, t.when),
        "specialInstructions": special_suffix(snapshot.special_instructions),
    }
    if shown.max_value is not None and shown.max_value != shown.value:
        data["doseText"] = format_dose_range(shown.value, shown.max_value, shown.unit)
    return data


def base_additional_instructions(snapshot: BuilderSnapshot, config: EngineConfig) -> List[str]:
    lines = list(snapshot.special_instructions)
    if snapshot.as_needed is not None:
        indication = snapshot.as_needed.indication
        lines.append(f"Take as needed {indication}" if indication else "Take as needed")
    return lines


def _form_checker(valid_forms: Tuple[str, ...], strict: bool, label: str) -> MedicationHook:
    def check(ctx: DoseContext) -> None:
        form = ctx.medication.dose_form
        if ctx.config.tables.has_form(form, valid_forms):
            ctx.audit.record(f"Validated dose form: {form}")
            return
        message = f"{label} builder cannot handle dose form: {form}"
        if strict:
            raise InvalidMedicationError(message, details={"dose_form": form, "expected": list(valid_forms)})
        ctx.audit.advise(Advisory("UNEXPECTED_DOSE_FORM",
                                  f"{label} builder used for {form}. Expected: {', '.join(valid_forms)}"))
    return check


def _append_unique(lines: List[str], extra) -> List[str]:
    for line in extra:
        if line not in lines:
            lines.append(line)
    return lines


# --------------------------
# Solid forms
# --------------------------
def _tablet_prepare(dose: DoseInput, ctx: DoseContext) -> DoseEntry:
    scoring = ctx.medication.is_scored
    check_tablet_fraction(dose, scoring, ctx.config.settings)
    if is_tablet_unit(dose.unit) and not is_whole(dose.value):
        ctx.audit.record(f"Validated fractional dose {fmt_number(dose.value)} against scoring type {scoring.value}")
    return DoseEntry.plain(dose)


def _oral_route(route: str, ctx: DoseContext) -> None:
    ctx.audit.extend(check_oral_route(route, ctx.config.tables))


def tablet_policy(config: Optional[EngineConfig] = None) -> DoseFormPolicy:
    """Whole and scored-fraction tablets / capsules taken by mouth."""
    forms = resolve_config(config).tables.solid_forms
    return DoseFormPolicy(
        name="SimpleTabletBuilder",
        template_id="ORAL_TABLET_TEMPLATE",
        valid_forms=forms,
        strict_form=True,
        check_medication=_form_checker(forms, True, "Tablet"),
        prepare_dose=_tablet_prepare,
        check_route=_oral_route,
        template_data=base_template_data,
        additional_instructions=base_additional_instructions,
    )


def splitting_instruction(value: float) -> Optional[str]:
    frac = round_to_quarter(fractional_remainder(value))
    return SPLITTING_INSTRUCTIONS.get(frac)


def with_fraction_rounding(base: DoseFormPolicy) -> DoseFormPolicy:
    """
    Check tablet doses against the floor and scoring as entered, then snap
    values already on the quarter grid (within tolerance) onto it. Shows
    Unicode fractions and adds one splitting instruction per distinct fraction.
    """

    def prepare(dose: DoseInput, ctx: DoseContext) -> DoseEntry:
        if is_tablet_unit(dose.unit):
            check_tablet_fraction(dose, ctx.medication.is_scored, ctx.config.settings)
            rounded = round_to_quarter(dose.value)
            if rounded != dose.value:
                ctx.audit.record(f"Rounded dose {dose.value:g} to nearest quarter: {fmt_number(rounded)}")
                dose = replace(dose, value=rounded)
        entry = base.prepare_dose(dose, ctx)
        if is_tablet_unit(dose.unit) and not is_whole(dose.value):
            ctx.audit.record(f"Formatted fractional dose: {format_fraction(dose.value)} {dose.unit}")
            ctx.audit.record(f"Splitting instruction: {splitting_instruction(dose.value)}")
        return entry

    def data(snapshot: BuilderSnapshot, config: EngineConfig) -> Dict[str, Any]:
        out = base.template_data(snapshot, config)
        out["fractionStyle"] = "unicode"
        return out

    def extra(snapshot: BuilderSnapshot, config: EngineConfig) -> List[str]:
        lines = base.additional_instructions(snapshot, config)
        split = [
            splitting_instruction(e.display.value)
            for e in snapshot.doses
            if is_tablet_unit(e.display.unit) and not is_whole(e.display.value)
        ]
        return _append_unique(lines, [s for s in split if s])

    return replace(base, name="FractionalTabletBuilder", prepare_dose=prepare, template_data=data,
                   additional_instructions=extra,
                   features=base.features + ("unicodeFractions", "splittingInstructions"))


def fractional_policy(config: Optional[EngineConfig] = None) -> DoseFormPolicy:
    return with_fraction_rounding(tablet_policy(config))


# --------------------------
# Liquids (and topicals handled like liquids)
# --------------------------
def _liquid_prepare(dose: DoseInput, ctx: DoseContext) -> DoseEntry:
    ctx.audit.extend(check_large_volume(dose, ctx.config.settings))
    return DoseEntry.plain(dose)


def _liquid_route(route: str, ctx: DoseContext) -> None:
    ctx.audit.extend(check_liquid_route(route, ctx.config.tables))


def _liquid_data(snapshot: BuilderSnapshot, config: EngineConfig) -> Dict[str, Any]:
    out = base_template_data(snapshot, config)
    dual = dual_dose(snapshot.medication, snapshot.doses[0].dose)
    out["dualDose"] = f", as {fmt_number(dual.value)} {dual.unit}" if dual is not None else ""
    return out


def _liquid_additional(snapshot: BuilderSnapshot, config: EngineConfig) -> List[str]:
    lines = []
    if config.tables.has_form(snapshot.medication.dose_form, ("suspension",)):
        lines.append("Shake well before use")
    return lines + base_additional_instructions(snapshot, config)


def liquid_policy(config: Optional[EngineConfig] = None) -> DoseFormPolicy:
    """Volume or weight doses of solutions, suspensions, injections and topicals."""
    tables = resolve_config(config).tables
    forms = tables.liquid_forms + tables.topical_forms + ("liquid", "spray", "lotion")
    return DoseFormPolicy(
        name="SimpleLiquidBuilder",
        template_id="LIQUID_DOSE_TEMPLATE",
        valid_forms=forms,
        strict_form=False,
        check_medication=_form_checker(forms, False, "Liquid"),
        prepare_dose=_liquid_prepare,
        check_route=_liquid_route,
        template_data=_liquid_data,
        additional_instructions=_liquid_additional,
    )


# --------------------------
# Specialty dispensers
# --------------------------
def is_topiclick(medication: MedicationProfile) -> bool:
    return medication.dispenser_type.lower() == TOPICLICK or TOPICLICK in medication.name.lower()


def is_nasal_spray(medication: MedicationProfile) -> bool:
    form = medication.dose_form.strip().lower()
    return medication.dispenser_type.lower().replace(" ", "") == NASAL_SPRAY or "nasal" in form or form == "spray"


def _dispenser_limit(medication: MedicationProfile, kind: str) -> Optional[float]:
    info = medication.dispenser_info
    if info is not None and info.type.lower().replace(" ", "") == kind:
        return info.max_amount_per_dose
    return None


def clicks_per_ml(medication: MedicationProfile, config: EngineConfig) -> float:
    info = medication.dispenser_info
    if info is not None and info.type.lower() == TOPICLICK and info.conversion_ratio and info.conversion_ratio > 0:
        return float(info.conversion_ratio)
    return config.settings.clicks_per_ml


def topiclick_display(clicks: float, medication: MedicationProfile, config: EngineConfig) -> str:
    """'4 clicks (10.0 mg)' with a strength, '4 clicks (1 mL)' without."""
    per_ml = clicks_per_ml(medication, config)
    mass = clicks_to_mass(clicks, medication, per_ml)
    shown = f"{fmt_number(clicks)} {pluralize('click', clicks)}"
    if mass is not None:
        return f"{shown} ({mass:.1f} {strength_unit(medication)})"
    return f"{shown} ({fmt_number(clicks_to_ml(clicks, per_ml))} mL)"


def with_topiclick(base: DoseFormPolicy) -> DoseFormPolicy:
    """
    Topiclick metered dispenser: doses entered in clicks are stored as mL
    for structured output while the text keeps the clicks.
    """

    def prepare(dose: DoseInput, ctx: DoseContext) -> DoseEntry:
        if not is_click_unit(dose.unit):
            return base.prepare_dose(dose, ctx)
        check_dispenser_limit(dose.value, _dispenser_limit(ctx.medication, TOPICLICK), "click")
        per_ml = clicks_per_ml(ctx.medication, ctx.config)
        max_ml = clicks_to_ml(dose.max_value, per_ml) if dose.max_value is not None else None
        clinical = DoseInput(value=clicks_to_ml(dose.value, per_ml), unit="mL", max_value=max_ml)
        base.prepare_dose(clinical, ctx)
        ctx.audit.record(f"Converted {fmt_number(dose.value)} clicks to {fmt_number(clinical.value)} mL")
        return DoseEntry(dose=clinical, display=dose)

    def data(snapshot: BuilderSnapshot, config: EngineConfig) -> Dict[str, Any]:
        out = base.template_data(snapshot, config)
        shown = snapshot.doses[0].display
        if is_click_unit(shown.unit):
            out["doseText"] = topiclick_display(shown.value, snapshot.medication, config)
            out["dualDose"] = ""
        out["verb"] = "Apply"
        out["route"] = route_phrase(snapshot.route or "topical", config.tables)
        return out

    def extra(snapshot: BuilderSnapshot, config: EngineConfig) -> List[str]:
        lines = base.additional_instructions(snapshot, config)
        per_ml = clicks_per_ml(snapshot.medication, config)
        return _append_unique(lines, [
            f"Prime device with {config.settings.topiclick_prime_clicks} clicks before first use",
            f"Each click dispenses {1.0 / per_ml:g} mL",
            "Rotate base until you hear the required number of clicks",
        ])

    def check_route(route: str, ctx: DoseContext) -> None:
        tables = ctx.config.tables
        ctx.audit.extend(check_route_family(route, ("topical", "transdermal"), tables, "Topiclick dispenser"))

    return replace(base, name="TopiclickBuilder", template_id="TOPICAL_APPLICATION_TEMPLATE",
                   prepare_dose=prepare, template_data=data, additional_instructions=extra,
                   check_route=check_route, features=base.features + ("clickConversion",))


def spray_display(sprays: float, medication: MedicationProfile) -> str:
    """'2 sprays (100.0 mcg)' when the per-spray amount is known."""
    shown = f"{fmt_number(sprays)} {pluralize('spray', sprays)}"
    per_spray = mcg_per_spray(medication)
    if per_spray is None:
        return shown
    return f"{shown} ({sprays * per_spray:.1f} mcg)"


def with_nasal_spray(base: DoseFormPolicy) -> DoseFormPolicy:
    """Nasal spray pump: doses in sprays, per-dose cap from the dispenser."""

    def prepare(dose: DoseInput, ctx: DoseContext) -> DoseEntry:
        if not is_spray_unit(dose.unit):
            return base.prepare_dose(dose, ctx)
        check_dispenser_limit(dose.value, _dispenser_limit(ctx.medication, NASAL_SPRAY), "spray")
        if dose.value > ctx.config.settings.nasal_spray_advisory_count:
            ctx.audit.advise(Advisory("HIGH_SPRAY_COUNT",
                                      f"High spray count: {fmt_number(dose.value)} sprays per dose. Please verify."))
        per_spray = mcg_per_spray(ctx.medication)
        if per_spray is not None:
            ctx.audit.record(f"{fmt_number(dose.value)} sprays deliver {dose.value * per_spray:.1f} mcg")
        return DoseEntry.plain(dose)

    def check_route(route: str, ctx: DoseContext) -> None:
        ctx.audit.extend(check_route_family(route, ("nasal",), ctx.config.tables, "nasal spray"))

    def data(snapshot: BuilderSnapshot, config: EngineConfig) -> Dict[str, Any]:
        out = base.template_data(snapshot, config)
        shown = snapshot.doses[0].display
        if is_spray_unit(shown.unit):
            out["doseText"] = spray_display(shown.value, snapshot.medication)
            out["dualDose"] = ""
            out["verb"] = "Use"
        return out

    def extra(snapshot: BuilderSnapshot, config: EngineConfig) -> List[str]:
        lines = base.additional_instructions(snapshot, config)
        shown = snapshot.doses[0].display
        spray_lines = ["Prime spray before first use and after periods of non-use"]
        if is_spray_unit(shown.unit) and shown.value > 1:
            spray_lines.append("Alternate nostrils with each spray")
        spray_lines += [
            "Gently blow nose before use, insert tip into nostril, and spray while breathing in",
            "Wipe tip clean after each use",
        ]
        return _append_unique(lines, spray_lines)

    return replace(base, name="NasalSprayBuilder", prepare_dose=prepare, check_route=check_route,
                   template_data=data, additional_instructions=extra,
                   features=base.features + ("sprayConversion",))


# --------------------------
# Multi-ingredient
# --------------------------
def with_ingredient_breakdown(base: DoseFormPolicy) -> DoseFormPolicy:
    """
    Per-ingredient amounts for combination products. The breakdown is
    recomputed from the first dose at render time, so it always matches
    what the text says.
    """

    def check_medication(ctx: DoseContext) -> None:
        base.check_medication(ctx)
        med = ctx.medication
        if len(med.ingredients) < 2:
            ctx.audit.advise(Advisory("SINGLE_INGREDIENT",
                                      f"Multi-ingredient builder used for single-ingredient medication: {med.name}"))
        missing = [i.name for i in med.ingredients if i.strength_ratio is None]
        if missing:
            ctx.audit.advise(Advisory("MISSING_STRENGTH",
                                      f"Ingredients missing strength ratios: {', '.join(missing)}"))

    def prepare(dose: DoseInput, ctx: DoseContext) -> DoseEntry:
        entry = base.prepare_dose(dose, ctx)
        parts = ingredient_breakdown(ctx.medication, entry.dose)
        if len(parts) > 1:
            ctx.audit.record(f"Ingredient breakdown: {', '.join(p.display for p in parts)}")
        return entry

    def data(snapshot: BuilderSnapshot, config: EngineConfig) -> Dict[str, Any]:
        out = base.template_data(snapshot, config)
        parts = ingredient_breakdown(snapshot.medication, snapshot.doses[0].dose)
        if len(parts) > 1:
            out["specialInstructions"] = (out.get("specialInstructions") or "") + \
                f" (containing {', '.join(p.display for p in parts)})"
        return out

    def extra(snapshot: BuilderSnapshot, config: EngineConfig) -> List[str]:
        lines = base.additional_instructions(snapshot, config)
        parts = ingredient_breakdown(snapshot.medication, snapshot.doses[0].dose)
        if len(parts) <= 1:
            return lines
        lines.append(f"This medication contains {len(parts)} active ingredients")
        lines.extend(f"{p.name}: {p.amount:.1f}{p.unit}" for p in parts)
        if snapshot.medication.type == MedicationType.COMPOUND:
            lines.append("Compounded medication - verify strength with pharmacy")
        return lines

    return replace(base, name="MultiIngredientBuilder", check_medication=check_medication, prepare_dose=prepare,
                   template_data=data, additional_instructions=extra,
                   features=base.features + ("ingredientBreakdown",))
