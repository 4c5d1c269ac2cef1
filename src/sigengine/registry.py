# src/sigengine/registry.py
"""
Named registry of base and modifier strategies.

Registration order is kept: it is the tie-breaker the dispatcher uses when
two matching base strategies share a specificity.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from .audit import Advisory
from .errors import DuplicateStrategyError, PriorityConflictError, StrategyNotFoundError
from .strategies.base import BaseStrategy, ModifierStrategy, SpecificityLevel
from .types import RequestContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompositionChain:
    """
    base      : (name, strategy) chosen for a context
    modifiers : applicable (name, modifier) pairs in application order
    """
    base: Tuple[str, BaseStrategy]
    modifiers: Tuple[Tuple[str, ModifierStrategy], ...]

    def names(self) -> List[str]:
        return [self.base[0]] + [n for n, _ in self.modifiers]


class StrategyRegistry:
    def __init__(self):
        self._bases: Dict[str, BaseStrategy] = {}
        self._modifiers: Dict[str, ModifierStrategy] = {}

    # ---- registration ----
    def register_base(self, name: str, strategy: BaseStrategy) -> None:
        if name in self._bases:
            raise DuplicateStrategyError(name, "base")
        self._bases[name] = strategy
        logger.debug("Registered base strategy %s (specificity %s)", name, strategy.specificity.name)

    def register_modifier(self, name: str, modifier: ModifierStrategy) -> None:
        if name in self._modifiers:
            raise DuplicateStrategyError(name, "modifier")
        conflicts = [(n, m.priority) for n, m in self._modifiers.items() if m.priority == modifier.priority]
        if conflicts:
            raise PriorityConflictError(conflicts + [(name, modifier.priority)])
        self._modifiers[name] = modifier
        logger.debug("Registered modifier %s (priority %d)", name, modifier.priority)

    def unregister_base(self, name: str) -> BaseStrategy:
        try:
            return self._bases.pop(name)
        except KeyError:
            raise StrategyNotFoundError(f"Base strategy '{name}' is not registered") from None

    def unregister_modifier(self, name: str) -> ModifierStrategy:
        try:
            return self._modifiers.pop(name)
        except KeyError:
            raise StrategyNotFoundError(f"Modifier '{name}' is not registered") from None

    # ---- accessors ----
    def get_base(self, name: str) -> Optional[BaseStrategy]:
        return self._bases.get(name)

    def get_modifier(self, name: str) -> Optional[ModifierStrategy]:
        return self._modifiers.get(name)

    def base_strategies(self) -> List[Tuple[str, BaseStrategy]]:
        """Registration order."""
        return list(self._bases.items())

    def modifiers(self) -> List[Tuple[str, ModifierStrategy]]:
        """Registration order."""
        return list(self._modifiers.items())

    def bases_by_specificity(self) -> List[Tuple[str, BaseStrategy]]:
        """Highest specificity first; registration order within a level."""
        return sorted(self._bases.items(), key=lambda item: -int(item[1].specificity))

    def modifiers_by_priority(self) -> List[Tuple[str, ModifierStrategy]]:
        """Lowest priority first (applied first)."""
        return sorted(self._modifiers.items(), key=lambda item: item[1].priority)

    def applicable_modifiers(self, ctx: RequestContext) -> List[Tuple[str, ModifierStrategy]]:
        return [(n, m) for n, m in self.modifiers_by_priority() if m.applies_to(ctx)]

    def composition_chain(self, ctx: RequestContext) -> Optional[CompositionChain]:
        """The chain a dispatch would run, ties resolved by registration order; None if nothing matches."""
        for name, strategy in self.bases_by_specificity():
            if strategy.matches(ctx):
                return CompositionChain((name, strategy), tuple(self.applicable_modifiers(ctx)))
        return None

    def specificity_warnings(self) -> List[Advisory]:
        """Levels shared by more than one base strategy (ties are possible there)."""
        levels: Dict[int, List[str]] = defaultdict(list)
        for name, strategy in self._bases.items():
            levels[int(strategy.specificity)].append(name)
        return [
            Advisory("SHARED_SPECIFICITY",
                     f"Strategies {', '.join(names)} share specificity {SpecificityLevel(level).name}; "
                     f"ties resolve by registration order")
            for level, names in sorted(levels.items(), reverse=True)
            if len(names) > 1
        ]

    def visualize(self) -> str:
        lines = ["Base strategies (by specificity):"]
        for name, s in self.bases_by_specificity():
            lines.append(f"  [{int(s.specificity)}] {name} ({s.specificity.name}) - {s.metadata.description}")
        lines.append("Modifiers (by priority):")
        for name, m in self.modifiers_by_priority():
            lines.append(f"  ({m.priority}) {name} - {m.metadata.description}")
        for advisory in self.specificity_warnings():
            lines.append(f"Warning: {advisory.message}")
        return "\n".join(lines)

    def names(self) -> List[str]:
        return list(self._bases) + list(self._modifiers)

    def __len__(self) -> int:
        return len(self._bases) + len(self._modifiers)

    def __contains__(self, name: str) -> bool:
        return name in self._bases or name in self._modifiers
