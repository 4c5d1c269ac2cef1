# src/sigengine/builders/factory.py
"""
Pick the right builder for a medication.

Selection order, first match wins:
  1. multi-ingredient flag          -> liquid policy + ingredient breakdown
  2. taper flag                     -> TaperingBuilder
  3. Topiclick dispenser            -> liquid policy + Topiclick
  4. nasal spray dispenser / form   -> liquid policy + nasal spray
  5. solid dose forms               -> fractional (scored / fractional) or tablet policy
  6. liquid dose forms              -> liquid policy
  7. topical dose forms             -> liquid policy
  8. anything else                  -> tablet policy on a copy forced to "tablet"
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Optional, Tuple, Union

from ..audit import Advisory
from ..config import EngineConfig, resolve_config
from ..templates import Renderer, render_template
from ..types import MedicationProfile, ScoringType
from .core import SignatureBuilder
from .policies import (
    DoseFormPolicy, fractional_policy, is_nasal_spray, is_topiclick, liquid_policy, tablet_policy,
    with_ingredient_breakdown, with_nasal_spray, with_topiclick,
)
from .prn import RangedPRNBuilder
from .tapering import TaperingBuilder

logger = logging.getLogger(__name__)

Builder = Union[SignatureBuilder, TaperingBuilder]


@dataclass(frozen=True)
class PolicyChoice:
    """
    policy     : the policy the builder should run with
    medication : the profile to build for (a forced copy on fallback)
    advisories : findings made while choosing
    """
    policy: DoseFormPolicy
    medication: MedicationProfile
    advisories: Tuple[Advisory, ...] = ()


def form_policy(medication: MedicationProfile, config: Optional[EngineConfig] = None) -> PolicyChoice:
    """Dose-form family lookup with the forced-tablet fallback."""
    config = resolve_config(config)
    tables = config.tables
    form = medication.dose_form
    if tables.has_form(form, tables.solid_forms):
        if medication.is_fractional or medication.is_scored != ScoringType.NONE:
            return PolicyChoice(fractional_policy(config), medication)
        return PolicyChoice(tablet_policy(config), medication)
    if tables.has_form(form, tables.liquid_forms) or tables.has_form(form, tables.topical_forms):
        return PolicyChoice(liquid_policy(config), medication)

    forced = replace(medication, dose_form="tablet")
    advisory = Advisory("FALLBACK_DOSE_FORM",
                        f"Unknown dose form '{form}' for {medication.name}; falling back to tablet builder")
    logger.warning("%s", advisory.message)
    return PolicyChoice(tablet_policy(config), forced, (advisory,))


def select_policy(medication: MedicationProfile, config: Optional[EngineConfig] = None) -> PolicyChoice:
    """Policy for everything except the tapering branch (see create_builder)."""
    config = resolve_config(config)
    if medication.is_multi_ingredient:
        return PolicyChoice(with_ingredient_breakdown(liquid_policy(config)), medication)
    if is_topiclick(medication):
        return PolicyChoice(with_topiclick(liquid_policy(config)), medication)
    if is_nasal_spray(medication):
        return PolicyChoice(with_nasal_spray(liquid_policy(config)), medication)
    return form_policy(medication, config)


def create_builder(medication: MedicationProfile, config: Optional[EngineConfig] = None,
                   renderer: Renderer = render_template,
                   clock: Optional[Callable[[], datetime]] = None) -> Builder:
    config = resolve_config(config)
    if medication.is_taper and not medication.is_multi_ingredient:
        return create_tapering_builder(medication, config, renderer, clock)
    choice = select_policy(medication, config)
    builder = SignatureBuilder(choice.medication, choice.policy, config, renderer, clock)
    builder.audit.extend(choice.advisories)
    logger.debug("Selected %s for %s", choice.policy.name, medication.name)
    return builder


def create_prn_builder(medication: MedicationProfile, config: Optional[EngineConfig] = None,
                       renderer: Renderer = render_template,
                       clock: Optional[Callable[[], datetime]] = None) -> RangedPRNBuilder:
    config = resolve_config(config)
    choice = select_policy(medication, config)
    builder = RangedPRNBuilder(choice.medication, choice.policy, config, renderer, clock)
    builder.audit.extend(choice.advisories)
    return builder


def create_tapering_builder(medication: MedicationProfile, config: Optional[EngineConfig] = None,
                            renderer: Renderer = render_template,
                            clock: Optional[Callable[[], datetime]] = None,
                            start: Optional[datetime] = None) -> TaperingBuilder:
    config = resolve_config(config)
    choice = select_policy(medication, config)
    builder = TaperingBuilder(choice.medication, choice.policy, config, renderer, clock, start)
    builder.audit.extend(choice.advisories)
    return builder
