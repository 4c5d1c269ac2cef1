# tests/test_dispatcher.py
from dataclasses import replace

import pytest

from sigengine.config import EngineConfig, EngineSettings
from sigengine.dispatcher import StrategyDispatcher, default_registry
from sigengine.errors import (
    AmbiguousStrategyError, DuplicateStrategyError, NoMatchingStrategyError, PriorityConflictError,
    StrategyNotFoundError,
)
from sigengine.registry import StrategyRegistry
from sigengine.strategies.base import BaseStrategy, ModifierStrategy, SpecificityLevel, StrategyMetadata
from sigengine.types import Quantity, RequestContext, SignatureInstruction


class FixedStrategy(BaseStrategy):
    """Matches when told to and returns its own label as the text."""

    def __init__(self, label, specificity, match=True):
        super().__init__()
        self.label = label
        self.specificity = specificity
        self.match = match
        self.metadata = StrategyMetadata(id=label, name=label, description=f"{label} strategy")

    def matches(self, ctx):
        return self.match

    def build_instruction(self, ctx):
        return SignatureInstruction(text=self.label)

    def explain(self):
        return f"{self.label} explains itself"


class SuffixModifier(ModifierStrategy):
    def __init__(self, tag, priority, applies=True):
        super().__init__()
        self.tag = tag
        self.priority = priority
        self.applies = applies
        self.metadata = StrategyMetadata(id=tag, name=tag, description=f"appends {tag}")

    def applies_to(self, ctx):
        return self.applies

    def modify(self, instruction, ctx):
        return replace(instruction, text=f"{instruction.text}+{self.tag}")

    def explain(self):
        return f"appends {self.tag}"


def _ctx(med, **kw):
    return RequestContext(medication=med, **kw)


def test_highest_specificity_wins(metformin):
    registry = StrategyRegistry()
    registry.register_base("generic", FixedStrategy("generic", SpecificityLevel.DEFAULT))
    registry.register_base("by-id", FixedStrategy("by-id", SpecificityLevel.MEDICATION_ID))
    registry.register_base("by-form", FixedStrategy("by-form", SpecificityLevel.DOSE_FORM))

    assert StrategyDispatcher(registry).dispatch(_ctx(metformin)).text == "by-id"


def test_modifiers_apply_in_priority_order_regardless_of_registration(metformin):
    registry = StrategyRegistry()
    registry.register_base("base", FixedStrategy("base", SpecificityLevel.DEFAULT))
    registry.register_modifier("late", SuffixModifier("late", 30))
    registry.register_modifier("skipped", SuffixModifier("skipped", 20, applies=False))
    registry.register_modifier("early", SuffixModifier("early", 5))

    dispatcher = StrategyDispatcher(registry)
    assert dispatcher.dispatch(_ctx(metformin)).text == "base+early+late"
    assert dispatcher.audit_log()[-1].modifiers == ("early", "late")


def test_tie_resolves_to_earliest_registered_with_advisory(metformin):
    registry = StrategyRegistry()
    registry.register_base("first", FixedStrategy("first", SpecificityLevel.DOSE_FORM))
    registry.register_base("second", FixedStrategy("second", SpecificityLevel.DOSE_FORM))
    dispatcher = StrategyDispatcher(registry, strict=False)

    assert dispatcher.dispatch(_ctx(metformin)).text == "first"
    [entry] = dispatcher.audit_log()
    assert entry.selected == "first"
    assert [a.code for a in entry.advisories] == ["AMBIGUOUS_STRATEGY"]
    assert [a.code for a in registry.specificity_warnings()] == ["SHARED_SPECIFICITY"]


def test_tie_raises_in_strict_mode(metformin):
    registry = StrategyRegistry()
    registry.register_base("first", FixedStrategy("first", SpecificityLevel.DOSE_FORM))
    registry.register_base("second", FixedStrategy("second", SpecificityLevel.DOSE_FORM))

    with pytest.raises(AmbiguousStrategyError) as exc:
        StrategyDispatcher(registry, strict=True).dispatch(_ctx(metformin))
    assert [name for name, _ in exc.value.candidates] == ["first", "second"]

    strict_config = EngineConfig(settings=EngineSettings(strict_dispatch=True))
    with pytest.raises(AmbiguousStrategyError):
        StrategyDispatcher(registry, config=strict_config).dispatch(_ctx(metformin))


def test_no_match_is_fatal(metformin):
    registry = StrategyRegistry()
    registry.register_base("never", FixedStrategy("never", SpecificityLevel.DOSE_FORM, match=False))
    with pytest.raises(NoMatchingStrategyError):
        StrategyDispatcher(registry).dispatch(_ctx(metformin))


def test_registry_rejects_duplicates_and_priority_conflicts():
    registry = StrategyRegistry()
    registry.register_base("a", FixedStrategy("a", SpecificityLevel.DEFAULT))
    with pytest.raises(DuplicateStrategyError):
        registry.register_base("a", FixedStrategy("a", SpecificityLevel.DOSE_FORM))

    registry.register_modifier("m1", SuffixModifier("m1", 10))
    with pytest.raises(PriorityConflictError) as exc:
        registry.register_modifier("m2", SuffixModifier("m2", 10))
    assert exc.value.conflicts == (("m1", 10), ("m2", 10))
    assert "m2" not in registry

    with pytest.raises(StrategyNotFoundError):
        registry.unregister_modifier("m2")
    registry.unregister_modifier("m1")
    assert len(registry) == 1


def test_tablet_strategy_with_strength_display(metformin):
    ctx = _ctx(metformin, dose=Quantity(2, "tablet"), frequency="twice daily", route="oral")
    sig = StrategyDispatcher().dispatch(ctx)

    assert sig.text == "Take 2 tablets (1000 mg) by mouth twice daily."
    assert sig.timing.repeat.frequency == 2
    assert sig.timing.repeat.when == ("MORN", "EVE")


def test_tablet_strategy_fraction_text(metformin):
    ctx = _ctx(metformin, dose=Quantity(1.5, "tablet"), frequency="once daily")
    sig = StrategyDispatcher().dispatch(ctx)
    assert sig.text == "Take 1 and 1/2 tablets (750 mg) by mouth once daily."


def test_liquid_strategy(amoxicillin_suspension):
    ctx = _ctx(amoxicillin_suspension, dose=Quantity(5, "mL"), frequency="every 8 hours", route="oral")
    sig = StrategyDispatcher().dispatch(ctx)
    assert sig.text == "Take 5 mL by mouth every 8 hours."
    assert sig.additional_instructions == ("Shake well before use",)
    assert sig.timing.repeat.period == 8 and sig.timing.repeat.period_unit == "h"


def test_testosterone_strategy(testosterone):
    ctx = _ctx(testosterone, dose=Quantity(100, "mg"), frequency="once weekly")
    sig = StrategyDispatcher().dispatch(ctx)

    assert sig.text == "Inject 100 mg, as 0.5 mL intramuscularly (rotate injection sites) once weekly."
    assert sig.route.code == "78421000"
    assert "Rotate injection sites" in sig.additional_instructions


def test_topiclick_modifier_over_default(estradiol_topiclick):
    ctx = _ctx(estradiol_topiclick, dose=Quantity(4, "clicks"), frequency="twice daily", route="topical")
    dispatcher = StrategyDispatcher()
    sig = dispatcher.dispatch(ctx)

    assert sig.text == "Apply 4 clicks (10.0 mg) topically twice daily using Topiclick dispenser."
    assert "Each click dispenses 0.25 mL" in sig.additional_instructions
    entry = dispatcher.audit_log(limit=1)[0]
    assert entry.selected == "default" and entry.modifiers == ("topiclick",)


def test_preview_and_explain_do_not_log(metformin):
    dispatcher = StrategyDispatcher()
    ctx = _ctx(metformin, dose=Quantity(1, "tablet"), frequency="daily")
    info = dispatcher.preview(ctx)

    assert info["selected"] == "tablet"
    assert [c["name"] for c in info["candidates"]] == ["tablet", "default"]
    assert info["modifiers"] == ["strength-display"]
    assert "Tablet strategy" in dispatcher.explain_selection(ctx)
    assert dispatcher.audit_log() == []


def test_audit_log_is_bounded(metformin):
    config = EngineConfig(settings=EngineSettings(audit_log_size=2))
    dispatcher = StrategyDispatcher(config=config)
    ctx = _ctx(metformin, dose=Quantity(1, "tablet"), frequency="daily")
    for _ in range(5):
        dispatcher.dispatch(ctx)

    assert len(dispatcher.audit_log()) == 2
    assert len(dispatcher.audit_log(limit=1)) == 1
    dispatcher.clear_audit_log()
    assert dispatcher.audit_log() == []


def test_default_registry_contents():
    registry = default_registry()
    assert [n for n, _ in registry.bases_by_specificity()] == ["testosterone-cypionate", "tablet", "liquid", "default"]
    assert [n for n, _ in registry.modifiers_by_priority()] == ["topiclick", "strength-display"]
    assert "Base strategies (by specificity):" in registry.visualize()


def test_composition_chain_matches_dispatch(metformin):
    registry = StrategyRegistry()
    registry.register_base("base", FixedStrategy("base", SpecificityLevel.DEFAULT))
    registry.register_base("never", FixedStrategy("never", SpecificityLevel.MEDICATION_ID, match=False))
    registry.register_modifier("tail", SuffixModifier("tail", 5))

    assert registry.composition_chain(_ctx(metformin)).names() == ["base", "tail"]
    registry.unregister_base("base")
    assert registry.composition_chain(_ctx(metformin)) is None
