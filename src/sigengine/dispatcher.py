# src/sigengine/dispatcher.py
"""
Specificity dispatcher.

For a request, every registered base strategy is asked whether it matches;
the most specific match builds the instruction and the applicable modifiers
are folded over it in ascending priority. Each selection is kept in a
bounded audit log.
"""
from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Deque, List, Optional, Tuple

from .audit import Advisory
from .config import EngineConfig, resolve_config
from .errors import AmbiguousStrategyError, NoMatchingStrategyError
from .registry import StrategyRegistry
from .strategies.base import BaseStrategy
from .strategies.dose_forms import DefaultStrategy, LiquidStrategy, TabletStrategy, TestosteroneCypionateStrategy
from .strategies.modifiers import StrengthDisplayModifier, TopiclickModifier
from .types import RequestContext, SignatureInstruction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SelectionAudit:
    """
    One dispatch decision.

    candidates : (name, specificity) of every matching base strategy, in registration order
    selected   : name of the base strategy that built the instruction
    modifiers  : names of the modifiers applied, in application order
    """
    timestamp: datetime
    medication_id: str
    medication_name: str
    candidates: Tuple[Tuple[str, int], ...]
    selected: str
    modifiers: Tuple[str, ...]
    advisories: Tuple[Advisory, ...] = ()
    elapsed_ms: float = 0.0

    def render(self) -> str:
        head = (f"[{self.timestamp.isoformat()}] {self.medication_name}: {self.selected}"
                + (f" + {', '.join(self.modifiers)}" if self.modifiers else ""))
        return "\n".join([head] + [f"  Warning: {a.message}" for a in self.advisories])


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_registry(config: Optional[EngineConfig] = None) -> StrategyRegistry:
    """Registry with the built-in base strategies and modifiers."""
    config = resolve_config(config)
    registry = StrategyRegistry()
    registry.register_base("default", DefaultStrategy(config))
    registry.register_base("tablet", TabletStrategy(config))
    registry.register_base("liquid", LiquidStrategy(config))
    registry.register_base("testosterone-cypionate", TestosteroneCypionateStrategy(config))
    registry.register_modifier("topiclick", TopiclickModifier(config))
    registry.register_modifier("strength-display", StrengthDisplayModifier(config))
    return registry


class StrategyDispatcher:
    def __init__(self,
                 registry: Optional[StrategyRegistry] = None,
                 config: Optional[EngineConfig] = None,
                 strict: Optional[bool] = None,
                 clock: Callable[[], datetime] = None):
        self.config = resolve_config(config)
        self.registry = registry if registry is not None else default_registry(self.config)
        self.strict = self.config.settings.strict_dispatch if strict is None else bool(strict)
        self._clock = clock or _utcnow
        self._audit: Deque[SelectionAudit] = deque(maxlen=self.config.settings.audit_log_size)

    # ---- selection ----
    def _candidates(self, ctx: RequestContext) -> List[Tuple[str, BaseStrategy]]:
        return [(n, s) for n, s in self.registry.base_strategies() if s.matches(ctx)]

    def _select(self, ctx: RequestContext) -> Tuple[str, BaseStrategy, List[Tuple[str, BaseStrategy]], List[Advisory]]:
        candidates = self._candidates(ctx)
        med = ctx.medication
        if not candidates:
            raise NoMatchingStrategyError(med.name, [n for n, _ in self.registry.base_strategies()])

        top = max(int(s.specificity) for _, s in candidates)
        best = [(n, s) for n, s in candidates if int(s.specificity) == top]
        advisories: List[Advisory] = []
        if len(best) > 1:
            tied = [(n, int(s.specificity)) for n, s in best]
            if self.strict:
                raise AmbiguousStrategyError(tied, med.name)
            advisory = Advisory(
                "AMBIGUOUS_STRATEGY",
                f"Strategies {', '.join(n for n, _ in tied)} tie at specificity {top} for "
                f"'{med.name}'; using {best[0][0]}",
            )
            logger.warning(advisory.message)
            advisories.append(advisory)
        name, strategy = best[0]
        return name, strategy, candidates, advisories

    def dispatch(self, ctx: RequestContext) -> SignatureInstruction:
        """Build the instruction for ctx with the most specific strategy plus modifiers."""
        started = time.perf_counter()
        name, strategy, candidates, advisories = self._select(ctx)

        instruction = strategy.build_instruction(ctx)
        applied = []
        for mod_name, modifier in self.registry.applicable_modifiers(ctx):
            instruction = modifier.modify(instruction, ctx)
            applied.append(mod_name)

        med = ctx.medication
        entry = SelectionAudit(
            timestamp=self._clock(),
            medication_id=med.id,
            medication_name=med.name,
            candidates=tuple((n, int(s.specificity)) for n, s in candidates),
            selected=name,
            modifiers=tuple(applied),
            advisories=tuple(advisories),
            elapsed_ms=(time.perf_counter() - started) * 1000.0,
        )
        self._audit.append(entry)
        logger.info("Dispatched %s to %s (modifiers: %s)", med.name, name, ", ".join(applied) or "none")
        return instruction

    def preview(self, ctx: RequestContext) -> dict:
        """What dispatch would do, without building anything or touching the audit log."""
        candidates = self._candidates(ctx)
        ordered = sorted(candidates, key=lambda item: -int(item[1].specificity))
        selected = ordered[0][0] if ordered else None
        tie = bool(ordered) and sum(
            1 for _, s in ordered if s.specificity == ordered[0][1].specificity) > 1
        return {
            "medication": ctx.medication.name,
            "candidates": [
                {"name": n, "specificity": int(s.specificity), "level": s.specificity.name}
                for n, s in ordered
            ],
            "selected": selected,
            "ambiguous": tie,
            "modifiers": [n for n, _ in self.registry.applicable_modifiers(ctx)],
        }

    def explain_selection(self, ctx: RequestContext) -> str:
        info = self.preview(ctx)
        lines = [f"Strategy selection for {info['medication']}:"]
        if not info["candidates"]:
            lines.append("  No matching strategy")
            return "\n".join(lines)
        for c in info["candidates"]:
            mark = "*" if c["name"] == info["selected"] else " "
            lines.append(f" {mark} {c['name']} ({c['level']}, specificity {c['specificity']})")
        if info["ambiguous"]:
            lines.append("  Tie at the highest specificity; earliest registered wins"
                         + (" (strict mode will raise)" if self.strict else ""))
        selected = self.registry.get_base(info["selected"])
        lines.append(f"  {selected.explain()}")
        for name in info["modifiers"]:
            lines.append(f"  + {name}: {self.registry.get_modifier(name).explain()}")
        return "\n".join(lines)

    # ---- audit ----
    def audit_log(self, limit: Optional[int] = None) -> List[SelectionAudit]:
        """Most recent entries last; limit keeps only the newest n."""
        entries = list(self._audit)
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def clear_audit_log(self) -> None:
        self._audit.clear()
