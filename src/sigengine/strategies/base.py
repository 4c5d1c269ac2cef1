# src/sigengine/strategies/base.py
"""
Strategy interfaces for the dispatcher.

Base strategies build an instruction from a RequestContext; the one with
the highest specificity among those that match wins. Modifier strategies
then rewrite that instruction, lowest priority first.
"""
from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Tuple

from ..builders.core import dose_quantity, route_coding
from ..config import EngineConfig, resolve_config
from ..templates import Renderer, render_template
from ..types import DoseAndRate, RequestContext, SignatureInstruction, Timing, TimingRepeat


class SpecificityLevel(IntEnum):
    MEDICATION_SKU = 4
    MEDICATION_ID = 3
    DOSE_FORM_AND_INGREDIENT = 2
    DOSE_FORM = 1
    DEFAULT = 0


@dataclass(frozen=True)
class StrategyMetadata:
    id: str
    name: str
    description: str
    version: str = "1.0.0"
    examples: Tuple[str, ...] = ()


class BaseStrategy(ABC):
    specificity: SpecificityLevel = SpecificityLevel.DEFAULT
    metadata: StrategyMetadata

    def __init__(self, config: Optional[EngineConfig] = None, renderer: Renderer = render_template):
        self.config = resolve_config(config)
        self.renderer = renderer

    @abstractmethod
    def matches(self, ctx: RequestContext) -> bool:
        ...

    @abstractmethod
    def build_instruction(self, ctx: RequestContext) -> SignatureInstruction:
        ...

    @abstractmethod
    def explain(self) -> str:
        ...


class ModifierStrategy(ABC):
    priority: int = 0
    metadata: StrategyMetadata

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = resolve_config(config)

    @abstractmethod
    def applies_to(self, ctx: RequestContext) -> bool:
        ...

    @abstractmethod
    def modify(self, instruction: SignatureInstruction, ctx: RequestContext) -> SignatureInstruction:
        ...

    @abstractmethod
    def explain(self) -> str:
        ...


# --------------------------
# Frequency phrases -> structured timing
# --------------------------
_TIMES = {"once": 1, "twice": 2, "three times": 3, "four times": 4}
_PERIODS = {
    "hour": "h", "hours": "h", "day": "d", "days": "d", "daily": "d",
    "week": "wk", "weeks": "wk", "weekly": "wk", "month": "mo", "months": "mo", "monthly": "mo",
}
_FIXED = {
    "daily": TimingRepeat(1, 1, "d"),
    "weekly": TimingRepeat(1, 1, "wk"),
    "biweekly": TimingRepeat(1, 2, "wk"),
    "every other day": TimingRepeat(1, 2, "d"),
    "at bedtime": TimingRepeat(1, 1, "d", when=("HS",)),
    "every morning": TimingRepeat(1, 1, "d", when=("MORN",)),
    "every evening": TimingRepeat(1, 1, "d", when=("EVE",)),
}
_N_TIMES = re.compile(r"^(once|twice|three times|four times) (daily|weekly|monthly)$")
_EVERY_N = re.compile(r"^every (\d+(?:\.\d+)?) (hours?|days?|weeks?|months?)$")
_EVERY = re.compile(r"^every (hour|day|week|month)$")


def parse_frequency(phrase: Optional[str]) -> Optional[TimingRepeat]:
    """
    'twice daily' -> 2 per 1 d, 'every 8 hours' -> 1 per 8 h, 'once weekly' ->
    1 per 1 wk. Returns None for phrases it does not know.
    """
    if not phrase:
        return None
    text = " ".join(phrase.lower().split())
    if text in _FIXED:
        return _FIXED[text]
    m = _N_TIMES.match(text)
    if m:
        return TimingRepeat(_TIMES[m.group(1)], 1, _PERIODS[m.group(2)])
    m = _EVERY_N.match(text)
    if m:
        period = float(m.group(1))
        return TimingRepeat(1, int(period) if period.is_integer() else period, _PERIODS[m.group(2)])
    m = _EVERY.match(text)
    if m:
        return TimingRepeat(1, 1, _PERIODS[m.group(1)])
    return None


def timing_from_phrase(phrase: Optional[str], when: Tuple[str, ...] = ()) -> Optional[Timing]:
    """Structured timing, or a coded-text timing when the phrase is not recognized."""
    if not phrase:
        return None
    repeat = parse_frequency(phrase)
    if repeat is None:
        return Timing(code_text=phrase)
    if when and not repeat.when:
        repeat = TimingRepeat(repeat.frequency, repeat.period, repeat.period_unit, when=when)
    return Timing(repeat=repeat)


def context_dose_and_rate(ctx: RequestContext, config: EngineConfig) -> Tuple[DoseAndRate, ...]:
    if ctx.dose is None:
        return ()
    return (DoseAndRate(dose_quantity=dose_quantity(ctx.dose.value, ctx.dose.unit, config.tables)),)


def context_route(ctx: RequestContext, config: EngineConfig):
    return route_coding(ctx.route or config.tables.default_route, config.tables)


def frequency_text(ctx: RequestContext) -> str:
    return (ctx.frequency or "").strip().lower()
