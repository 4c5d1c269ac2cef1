# tests/conftest.py
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from sigengine.config import EngineConfig, EngineSettings
from sigengine.types import (
    DispenserInfo, Ingredient, MedicationProfile, MedicationType, Quantity, Ratio, ScoringType,
)


def _ratio(amount, unit, per=1.0, per_unit="tablet"):
    return Ratio(numerator=Quantity(amount, unit), denominator=Quantity(per, per_unit))


@pytest.fixture
def config():
    return EngineConfig(settings=EngineSettings())


@pytest.fixture
def fixed_clock():
    stamp = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
    return lambda: stamp


@pytest.fixture
def metformin():
    return MedicationProfile(
        id="metformin-500",
        name="Metformin 500mg Tablet",
        dose_form="Tablet",
        ingredients=(Ingredient("Metformin", _ratio(500, "mg")),),
    )


@pytest.fixture
def half_scored(metformin):
    return replace(metformin, id="lisinopril-10", name="Lisinopril 10mg Tablet",
                   ingredients=(Ingredient("Lisinopril", _ratio(10, "mg")),), is_scored=ScoringType.HALF)


@pytest.fixture
def amoxicillin_suspension():
    return MedicationProfile(
        id="amoxicillin-250-5",
        name="Amoxicillin 250mg/5mL Suspension",
        dose_form="Suspension",
        ingredients=(Ingredient("Amoxicillin", _ratio(250, "mg", 5, "mL")),),
    )


@pytest.fixture
def estradiol_topiclick():
    return MedicationProfile(
        id="estradiol-cream",
        name="Estradiol 10mg/mL Cream",
        dose_form="Cream",
        ingredients=(Ingredient("Estradiol", _ratio(10, "mg", 1, "mL")),),
        dispenser_info=DispenserInfo(type="Topiclick", unit="click", plural_unit="clicks",
                                     conversion_ratio=4.0, max_amount_per_dose=8),
        type=MedicationType.COMPOUND,
    )


@pytest.fixture
def fluticasone_spray():
    return MedicationProfile(
        id="fluticasone-50",
        name="Fluticasone 50mcg Nasal Spray",
        dose_form="Nasal Spray",
        ingredients=(Ingredient("Fluticasone", _ratio(50, "mcg", 1, "spray")),),
        dispenser_info=DispenserInfo(type="NasalSpray", unit="spray", plural_unit="sprays",
                                     conversion_ratio=50.0, max_amount_per_dose=4),
    )


@pytest.fixture
def combination_liquid():
    return MedicationProfile(
        id="amox-clav-susp",
        name="Amoxicillin/Clavulanate Suspension",
        dose_form="Suspension",
        ingredients=(
            Ingredient("Amoxicillin", _ratio(250, "mg", 5, "mL")),
            Ingredient("Clavulanate", _ratio(125, "mg", 5, "mL")),
        ),
        is_multi_ingredient=True,
    )


@pytest.fixture
def prednisone():
    return MedicationProfile(
        id="prednisone-10",
        name="Prednisone 10mg Tablet",
        dose_form="Tablet",
        ingredients=(Ingredient("Prednisone", _ratio(10, "mg")),),
        is_taper=True,
    )


@pytest.fixture
def testosterone():
    return MedicationProfile(
        id="testosterone-cypionate-200mg-ml",
        name="Testosterone Cypionate 200mg/mL",
        dose_form="Injection",
        ingredients=(Ingredient("Testosterone cypionate", _ratio(200, "mg", 1, "mL")),),
        is_controlled=True,
    )
