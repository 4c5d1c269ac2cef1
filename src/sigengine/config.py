# src/sigengine/config.py
"""
Engine configuration.

Two layers:
  - EngineSettings : numeric thresholds, overridable through SIGENGINE_* env vars
  - ReferenceTables: immutable lookup tables (route codes, unit codes, dose forms)

Both are bundled in an EngineConfig that is passed into builders, strategies
and the dispatcher. Nothing reads module-level state at call time, so tests
can hand in their own fixtures.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Safety thresholds and engine switches."""

    model_config = SettingsConfigDict(
        env_prefix="SIGENGINE_",
        extra="ignore",
        frozen=True,
    )

    tablet_fraction_floor: float = Field(default=0.25, gt=0, description="Smallest tablet fraction ever allowed")
    fraction_tolerance: float = Field(default=1e-9, ge=0, description="Float tolerance for fractional remainders")
    large_volume_ml: float = Field(default=1000.0, gt=0, description="Volume doses above this are flagged for review")

    clicks_per_ml: float = Field(default=4.0, gt=0, description="Topiclick clicks per mL")
    topiclick_prime_clicks: int = Field(default=4, ge=0, description="Clicks lost priming a new Topiclick device")
    nasal_spray_advisory_count: int = Field(default=4, ge=1, description="Sprays per dose above which a review note is added")

    taper_large_change_pct: float = Field(default=50.0, gt=0, description="Adjacent-phase dose change flagged as large")
    taper_short_phase_days: float = Field(default=3.0, gt=0, description="Phases shorter than this are flagged")
    taper_weeks_threshold_days: float = Field(default=7.0, gt=0, description="Totals at or above this are shown in weeks")

    prn_min_interval_hours: float = Field(default=1.0, gt=0, description="Shorter PRN intervals are flagged")
    prn_large_range_factor: float = Field(default=10.0, gt=1, description="max > factor*min flags a large dose range")
    prn_wide_frequency_factor: float = Field(default=5.0, gt=1, description="max > factor*min flags a wide frequency range")

    strict_dispatch: bool = Field(default=False, description="Raise instead of resolving specificity ties")
    audit_log_size: int = Field(default=1000, ge=1, description="Dispatcher selection audit capacity")


def _frozen(d: dict) -> Mapping:
    return MappingProxyType(dict(d))


ROUTE_ALIASES = {
    "oral": ("oral", "orally", "by mouth", "po", "mouth", "per os"),
    "intramuscular": ("intramuscular", "intramuscularly", "im"),
    "intravenous": ("intravenous", "intravenously", "iv"),
    "subcutaneous": ("subcutaneous", "subcutaneously", "subcut", "subq", "sc", "sq"),
    "topical": ("topical", "topically", "top", "on scalp"),
    "transdermal": ("transdermal", "transdermally", "td", "to skin"),
    "rectal": ("rectal", "rectally", "pr"),
    "vaginal": ("vaginal", "vaginally", "pv"),
    "nasal": ("nasal", "nasally", "intranasal", "intranasally", "nas", "into the nose", "into each nostril"),
    "inhalation": ("inhalation", "inhaled", "by inhalation", "inh"),
    "ophthalmic": ("ophthalmic", "in the eye", "eye"),
    "otic": ("otic", "in the ear", "ear"),
    "sublingual": ("sublingual", "sublingually", "sl", "under the tongue"),
}

ROUTE_CODES = {
    "oral": ("26643006", "Oral route"),
    "intramuscular": ("78421000", "Intramuscular route"),
    "intravenous": ("47625008", "Intravenous route"),
    "subcutaneous": ("34206005", "Subcutaneous route"),
    "topical": ("6064005", "Topical route"),
    "transdermal": ("45890007", "Transdermal route"),
    "rectal": ("37161004", "Rectal route"),
    "vaginal": ("16857009", "Vaginal route"),
    "nasal": ("46713006", "Nasal route"),
    "inhalation": ("18679011", "Inhalation route"),
    "ophthalmic": ("54485002", "Ophthalmic route"),
    "otic": ("10547007", "Otic route"),
    "sublingual": ("37839007", "Sublingual route"),
}

ROUTE_PHRASES = {
    "oral": "by mouth",
    "intramuscular": "intramuscularly",
    "intravenous": "intravenously",
    "subcutaneous": "subcutaneously",
    "topical": "topically",
    "transdermal": "to the skin",
    "rectal": "rectally",
    "vaginal": "vaginally",
    "nasal": "into the nose",
    "inhalation": "by inhalation",
    "ophthalmic": "in the eye",
    "otic": "in the ear",
    "sublingual": "under the tongue",
}

ROUTE_VERBS = {
    "oral": "Take",
    "intramuscular": "Inject",
    "intravenous": "Inject",
    "subcutaneous": "Inject",
    "topical": "Apply",
    "transdermal": "Apply",
    "rectal": "Insert",
    "vaginal": "Insert",
    "nasal": "Spray",
    "inhalation": "Inhale",
    "ophthalmic": "Instill",
    "otic": "Instill",
    "sublingual": "Place",
}

UNIT_CODES = {
    "tablet": "{tbl}",
    "tablets": "{tbl}",
    "capsule": "{capsule}",
    "capsules": "{capsule}",
    "mg": "mg",
    "mcg": "ug",
    "ug": "ug",
    "g": "g",
    "ml": "mL",
    "milliliter": "mL",
    "milliliters": "mL",
    "l": "L",
    "tsp": "[tsp_us]",
    "tbsp": "[tbs_us]",
    "click": "{click}",
    "clicks": "{click}",
    "spray": "{spray}",
    "sprays": "{spray}",
}


@dataclass(frozen=True)
class ReferenceTables:
    """Immutable lookup tables consulted by the engine."""

    route_aliases: Mapping[str, Tuple[str, ...]] = field(default_factory=lambda: _frozen(ROUTE_ALIASES))
    route_codes: Mapping[str, Tuple[str, str]] = field(default_factory=lambda: _frozen(ROUTE_CODES))
    route_phrases: Mapping[str, str] = field(default_factory=lambda: _frozen(ROUTE_PHRASES))
    route_verbs: Mapping[str, str] = field(default_factory=lambda: _frozen(ROUTE_VERBS))
    unit_codes: Mapping[str, str] = field(default_factory=lambda: _frozen(UNIT_CODES))
    default_route: str = "oral"

    solid_forms: Tuple[str, ...] = ("tablet", "capsule", "troche", "odt")
    liquid_forms: Tuple[str, ...] = (
        "solution", "suspension", "syrup", "elixir", "tincture", "injection", "vial", "nasal spray",
    )
    topical_forms: Tuple[str, ...] = ("cream", "gel", "ointment")
    oral_routes: Tuple[str, ...] = ("oral", "sublingual")
    liquid_routes: Tuple[str, ...] = ("oral", "intramuscular", "intravenous", "subcutaneous", "topical", "transdermal")

    tapering_medications: Tuple[str, ...] = (
        "prednisone", "prednisolone", "methylprednisolone",
        "lorazepam", "clonazepam", "diazepam",
        "sertraline", "paroxetine", "venlafaxine",
        "gabapentin", "pregabalin",
    )
    slow_taper_markers: Tuple[str, ...] = (
        "benzodiazepine", "lorazepam", "clonazepam", "diazepam",
        "prednisone", "prednisolone", "steroid",
        "antidepressant", "ssri", "snri",
    )

    def has_form(self, dose_form: Optional[str], forms: Tuple[str, ...]) -> bool:
        """True when any listed form appears as a whole word (or plural) in dose_form."""
        if not dose_form:
            return False
        text = " ".join(dose_form.lower().replace(",", " ").split())
        return any(re.search(rf"\b{re.escape(f)}s?\b", text) for f in forms)

    def canonical_route(self, route: Optional[str]) -> Optional[str]:
        """
        Map free-text route input ("PO", "by mouth", "IM") to a canonical name.
        Returns None when nothing in the alias table matches.
        """
        if not route:
            return None
        text = " ".join(route.lower().replace("-", " ").split())
        for name, aliases in self.route_aliases.items():
            if text == name or text in aliases:
                return name
        tokens = set(text.replace(",", " ").replace("(", " ").replace(")", " ").split())
        for name, aliases in self.route_aliases.items():
            for alias in aliases:
                if (len(alias) > 3 and alias in text) or alias in tokens:
                    return name
        return None


@dataclass(frozen=True)
class EngineConfig:
    settings: EngineSettings = field(default_factory=EngineSettings)
    tables: ReferenceTables = field(default_factory=ReferenceTables)


@lru_cache()
def get_config() -> EngineConfig:
    """Process-wide default configuration (cached)."""
    return EngineConfig()


def resolve_config(config: Optional[EngineConfig]) -> EngineConfig:
    return config if config is not None else get_config()
