# src/sigengine/units.py
"""
Unit and dose value helpers.

Only the fixed conversions the domain needs: strength ratios, Topiclick
clicks to volume, sprays to micrograms, tablets to milligrams, tablet
fractions and period/duration arithmetic. No general unit algebra.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from .config import ReferenceTables
from .types import DoseInput, Duration, MedicationProfile, Quantity, Ratio

TABLET_UNITS = ("tablet", "tablets", "capsule", "capsules")
VOLUME_UNITS = ("ml", "milliliter", "milliliters")
CLICK_UNITS = ("click", "clicks")
SPRAY_UNITS = ("spray", "sprays")
# Units for which a multi-ingredient dose scales by concentration instead of count
CONCENTRATION_UNITS = ("ml", "g", "mg")

MASS_TO_MG = {"mg": 1.0, "mcg": 1e-3, "ug": 1e-3, "g": 1e3}

HOURS_PER_UNIT = {
    "min": 1.0 / 60.0, "minute": 1.0 / 60.0, "minutes": 1.0 / 60.0,
    "h": 1.0, "hr": 1.0, "hour": 1.0, "hours": 1.0,
    "d": 24.0, "day": 24.0, "days": 24.0,
    "wk": 168.0, "w": 168.0, "week": 168.0, "weeks": 168.0,
    "mo": 720.0, "month": 720.0, "months": 720.0,
}

DAYS_PER_UNIT = {
    "d": 1.0, "day": 1.0, "days": 1.0,
    "wk": 7.0, "w": 7.0, "week": 7.0, "weeks": 7.0,
    "mo": 30.0, "month": 30.0, "months": 30.0,  # approximate month
    "h": 1.0 / 24.0, "hour": 1.0 / 24.0, "hours": 1.0 / 24.0,
}


def normalize_unit(unit: str) -> str:
    return unit.strip().lower()


def is_tablet_unit(unit: str) -> bool:
    return normalize_unit(unit) in TABLET_UNITS


def is_volume_unit(unit: str) -> bool:
    return normalize_unit(unit) in VOLUME_UNITS


def is_click_unit(unit: str) -> bool:
    return normalize_unit(unit) in CLICK_UNITS


def is_spray_unit(unit: str) -> bool:
    return normalize_unit(unit) in SPRAY_UNITS


def unit_code(unit: str, tables: ReferenceTables) -> str:
    """Display unit -> canonical unit code; unknown units pass through unchanged."""
    return tables.unit_codes.get(normalize_unit(unit), unit)


# --------------------------
# Strength ratios
# --------------------------
def strength_per_unit(ratio: Ratio) -> float:
    """Numerator amount per one unit of the denominator (e.g. mg per mL)."""
    if not (ratio.denominator.value > 0):
        raise ValueError(f"strength denominator must be > 0 (got {ratio.denominator.value}).")
    return float(ratio.numerator.value) / float(ratio.denominator.value)


def mg_per_ml(medication: MedicationProfile) -> Optional[float]:
    """
    Concentration in numerator units per mL.
    First ingredient's strength ratio wins; the profile-level concentration
    ratio is the fallback. None when neither is available.
    """
    for ratio in (medication.primary_strength, medication.concentration_ratio):
        if ratio is not None and ratio.denominator.value > 0:
            return strength_per_unit(ratio)
    return None


def strength_unit(medication: MedicationProfile) -> str:
    ratio = medication.primary_strength or medication.concentration_ratio
    return ratio.numerator.unit if ratio is not None else "mg"


# --------------------------
# Dispenser units
# --------------------------
def clicks_to_ml(clicks: float, clicks_per_ml: float) -> float:
    return float(clicks) / float(clicks_per_ml)


def ml_to_clicks(ml: float, clicks_per_ml: float) -> float:
    return float(ml) * float(clicks_per_ml)


def clicks_to_mass(clicks: float, medication: MedicationProfile, clicks_per_ml: float) -> Optional[float]:
    """Amount of active ingredient delivered by N clicks, linear in N."""
    conc = mg_per_ml(medication)
    if conc is None:
        return None
    return clicks_to_ml(clicks, clicks_per_ml) * conc


def mcg_per_spray(medication: MedicationProfile) -> Optional[float]:
    """
    Micrograms delivered per actuation.

    Uses a strength ratio expressed per spray (mcg/spray, or mg/spray * 1000),
    falling back to a NasalSpray dispenser's conversion ratio.
    """
    ratio = medication.primary_strength
    if ratio is not None and is_spray_unit(ratio.denominator.unit):
        per = strength_per_unit(ratio)
        num_unit = normalize_unit(ratio.numerator.unit)
        if num_unit in ("mcg", "ug"):
            return per
        if num_unit == "mg":
            return per * 1000.0
    info = medication.dispenser_info
    if info is not None and info.type.lower() == "nasalspray" and info.conversion_ratio:
        return float(info.conversion_ratio)
    return None


# --------------------------
# Mass conversions
# --------------------------
def to_mg(quantity: Quantity, medication: Optional[MedicationProfile] = None) -> Optional[float]:
    """
    Express a dose in milligrams when the medication allows it.

    mg / mcg / g convert directly; tablet and capsule counts go through the
    first ingredient's strength numerator (per one tablet). Returns None for
    anything else.
    """
    unit = normalize_unit(quantity.unit)
    if unit in MASS_TO_MG:
        return float(quantity.value) * MASS_TO_MG[unit]
    if unit in TABLET_UNITS and medication is not None and medication.primary_strength is not None:
        ratio = medication.primary_strength
        num_unit = normalize_unit(ratio.numerator.unit)
        if num_unit in MASS_TO_MG:
            return float(quantity.value) * strength_per_unit(ratio) * MASS_TO_MG[num_unit]
    return None


def dual_dose(medication: MedicationProfile, dose: DoseInput) -> Optional[Quantity]:
    """
    Complementary amount for a liquid dose: mg -> mL or mL -> mg.
    Uses the first ingredient's strength ratio only.
    """
    ratio = medication.primary_strength
    if ratio is None or not (ratio.denominator.value > 0):
        return None
    unit = normalize_unit(dose.unit)
    conc = strength_per_unit(ratio)
    if unit == "mg" and normalize_unit(ratio.denominator.unit) == "ml" and conc > 0:
        return Quantity(value=round(float(dose.value) / conc, 4), unit="mL")
    if unit in VOLUME_UNITS and normalize_unit(ratio.numerator.unit) == "mg":
        return Quantity(value=round(float(dose.value) * conc, 4), unit="mg")
    return None


@dataclass(frozen=True)
class IngredientAmount:
    name: str
    amount: float
    unit: str

    @property
    def display(self) -> str:
        return f"{self.name} {self.amount:.1f}{self.unit}"


def ingredient_breakdown(medication: MedicationProfile, dose: DoseInput) -> Tuple[IngredientAmount, ...]:
    """
    Per-ingredient amounts delivered by one dose.

    For volume/weight dose units the dose is scaled through each
    ingredient's concentration (numerator / denominator * dose); for
    countable units (tablets, capsules) the numerator is multiplied by the
    count. Ingredients without a strength ratio are skipped.
    """
    unit = normalize_unit(dose.unit)
    out = []
    for ing in medication.ingredients:
        ratio = ing.strength_ratio
        if ratio is None:
            continue
        if unit in CONCENTRATION_UNITS:
            amount = strength_per_unit(ratio) * float(dose.value)
        else:
            amount = float(ratio.numerator.value) * float(dose.value)
        out.append(IngredientAmount(name=ing.name, amount=amount, unit=ratio.numerator.unit))
    return tuple(out)


# --------------------------
# Fractions and time
# --------------------------
def fractional_remainder(value: float) -> float:
    return float(value - np.floor(value))


def round_to_quarter(value: float) -> float:
    return float(np.round(value * 4.0) / 4.0)


def is_whole(value: float, tol: float = 1e-9) -> bool:
    return bool(np.isclose(value, np.round(value), rtol=0.0, atol=tol))


def period_to_hours(period: float, unit: str) -> float:
    """Length of a timing period in hours; unknown units are taken as hours."""
    return float(period) * HOURS_PER_UNIT.get(normalize_unit(unit), 1.0)


def duration_to_days(duration: Duration) -> float:
    """Duration in days (week = 7 days, month = 30 days); unknown units are taken as days."""
    return float(duration.value) * DAYS_PER_UNIT.get(normalize_unit(duration.unit), 1.0)
