# src/sigengine/templates.py
"""
Phrase templates and formatting helpers.

`render_template(template_id, data)` is the template collaborator the
builders and strategies call: a pure function from a flat data record to a
sentence. It fills in a pluralized / fraction-formatted dose when the record
only carries `doseValue` and `doseUnit`. Callers may inject any other
function with the same signature.
"""
from __future__ import annotations

import re
from typing import Any, Callable, Mapping, Optional, Sequence

from .config import ReferenceTables
from .units import fractional_remainder, is_whole, normalize_unit, round_to_quarter

Renderer = Callable[[str, Mapping[str, Any]], str]

TEMPLATES = {
    "ORAL_TABLET_TEMPLATE": "{verb} {doseText} {route} {frequency}{specialInstructions}.",
    "LIQUID_DOSE_TEMPLATE": "{verb} {doseText}{dualDose} {route} {frequency}{specialInstructions}.",
    "TOPICAL_APPLICATION_TEMPLATE": "{verb} {doseText} {route}{site} {frequency}{specialInstructions}.",
    "INJECTION_TEMPLATE": "{verb} {doseText}{dualDose} {route}{site} {frequency}{technique}.",
    "PRN_INSTRUCTION_TEMPLATE": "{verb} {doseText} {route} {frequency} as needed{indication}{maxDose}.",
    "DEFAULT_TEMPLATE": "{verb} {doseText} {route} {frequency}{specialInstructions}.",
}

COUNTABLE_UNITS = {
    "tablet": "tablets", "capsule": "capsules", "click": "clicks", "spray": "sprays",
    "puff": "puffs", "drop": "drops", "patch": "patches", "troche": "troches",
    "unit": "units", "application": "applications", "piece": "pieces",
    "suppository": "suppositories", "lozenge": "lozenges",
}
_SINGULAR = {plural: singular for singular, plural in COUNTABLE_UNITS.items()}

UNICODE_FRACTIONS = {0.25: "¼", 0.5: "½", 0.75: "¾"}
SLASH_FRACTIONS = {0.25: "1/4", 0.5: "1/2", 0.75: "3/4"}

PERIOD_WORDS = {
    "min": ("minute", "minutes"),
    "h": ("hour", "hours"),
    "d": ("day", "days"),
    "wk": ("week", "weeks"),
    "mo": ("month", "months"),
}
_PERIOD_ALIASES = {
    "minute": "min", "minutes": "min",
    "hr": "h", "hour": "h", "hours": "h",
    "day": "d", "days": "d",
    "w": "wk", "week": "wk", "weeks": "wk",
    "month": "mo", "months": "mo",
}

WHEN_PHRASES = {
    "MORN": "in the morning",
    "MORNING": "in the morning",
    "NOON": "at noon",
    "AFT": "in the afternoon",
    "AFTERNOON": "in the afternoon",
    "EVE": "in the evening",
    "EVENING": "in the evening",
    "NIGHT": "at night",
    "HS": "at bedtime",
    "BEDTIME": "at bedtime",
    "WAKE": "upon waking",
    "AC": "before meals",
    "PC": "after meals",
    "C": "with meals",
}

_DAILY_WORDS = {1: "once", 2: "twice", 3: "three times", 4: "four times"}


class _Blank(dict):
    def __missing__(self, key):
        return ""


# --------------------------
# Numbers, units, fractions
# --------------------------
def fmt_number(x: float) -> str:
    """1.0 -> '1', 0.5 -> '0.5', 2.125 -> '2.125'."""
    x = float(x)
    if is_whole(x):
        return str(int(round(x)))
    return f"{round(x, 4):g}"


def pluralize(unit: str, value: float) -> str:
    """Countable units follow the value; measurement units (mg, mL) never change."""
    low = normalize_unit(unit)
    singular = _SINGULAR.get(low, low)
    if singular not in COUNTABLE_UNITS:
        return unit
    if value is not None and is_one(value):
        return singular
    return COUNTABLE_UNITS[singular]


def is_one(value: float) -> bool:
    return is_whole(value) and int(round(float(value))) == 1


def format_fraction(value: float) -> str:
    """0.5 -> '½', 1.5 -> '1½', 2 -> '2'. Values off the quarter grid are shown as numbers."""
    whole = int(value // 1)
    frac = round_to_quarter(fractional_remainder(value))
    if frac >= 1.0:
        whole, frac = whole + 1, 0.0
    if frac == 0.0:
        return str(whole)
    symbol = UNICODE_FRACTIONS.get(frac)
    if symbol is None:
        return fmt_number(value)
    return symbol if whole == 0 else f"{whole}{symbol}"


def format_tablet_text(value: float, unit: str) -> str:
    """
    Slash-fraction tablet phrasing: '1/2 tablet', '1 and 1/2 tablets', '2 tablets'.
    Non-tablet units are returned as '<value> <unit>'.
    """
    low = normalize_unit(unit)
    if low not in ("tablet", "tablets"):
        return f"{fmt_number(value)} {unit}"
    if value < 0.25:
        return "1/4 tablet"
    whole = int(value // 1)
    frac = fractional_remainder(value)
    slash = SLASH_FRACTIONS.get(round(frac, 6))
    if is_whole(value):
        return f"{whole} {pluralize('tablet', whole)}"
    if slash is None:
        return f"{fmt_number(value)} tablets"
    if whole == 0:
        return f"{slash} tablet"
    return f"{whole} and {slash} tablets"


def format_dose(value: float, unit: str, fraction_style: str = "decimal") -> str:
    """Dose text with pluralized countable units and optional Unicode fractions."""
    if fraction_style == "unicode" and normalize_unit(unit) in ("tablet", "tablets", "capsule", "capsules"):
        shown = format_fraction(value)
        return f"{shown} {pluralize(unit, value if value >= 1 else 1)}"
    return f"{fmt_number(value)} {pluralize(unit, value)}"


def format_dose_range(min_value: float, max_value: float, unit: str) -> str:
    if min_value == max_value:
        return format_dose(min_value, unit)
    return f"{fmt_number(min_value)}-{fmt_number(max_value)} {pluralize(unit, max_value)}"


# --------------------------
# Timing
# --------------------------
def canonical_period_unit(unit: str) -> str:
    low = normalize_unit(unit)
    return _PERIOD_ALIASES.get(low, low)


def period_word(period: float, unit: str) -> str:
    canon = canonical_period_unit(unit)
    singular, plural = PERIOD_WORDS.get(canon, (unit, unit))
    return singular if is_one(period) else plural


def format_when(when: Sequence[str]) -> str:
    phrases = []
    for tag in when:
        phrase = WHEN_PHRASES.get(tag.strip().upper(), tag.strip().lower())
        if phrase and phrase not in phrases:
            phrases.append(phrase)
    return " and ".join(phrases)


def format_frequency(frequency: int, period: float, period_unit: str, when: Sequence[str] = ()) -> str:
    """
    (2, 1, 'd') -> 'twice daily'; (1, 8, 'h') -> 'every 8 hours';
    (1, 1, 'wk') -> 'once weekly'; (1, 2, 'd') -> 'every other day'.
    """
    unit = canonical_period_unit(period_unit)
    p = fmt_number(period)
    one_period = is_one(period)
    if unit == "d" and one_period:
        text = f"{_DAILY_WORDS.get(frequency, f'{frequency} times')} daily"
    elif unit == "wk" and one_period:
        text = f"{_DAILY_WORDS.get(frequency, f'{frequency} times')} weekly"
    elif unit == "mo" and one_period:
        text = f"{_DAILY_WORDS.get(frequency, f'{frequency} times')} monthly"
    elif frequency == 1 and unit == "d" and is_whole(period) and int(round(period)) == 2:
        text = "every other day"
    elif frequency == 1:
        text = f"every {period_word(period, unit)}" if one_period else f"every {p} {period_word(period, unit)}"
    else:
        text = f"{frequency} times every {p} {period_word(period, unit)}"
    tail = format_when(when)
    return f"{text} {tail}" if tail else text


def format_frequency_range(min_frequency: int, max_frequency: int, period: float, period_unit: str) -> str:
    if min_frequency == max_frequency:
        return format_frequency(min_frequency, period, period_unit)
    unit = canonical_period_unit(period_unit)
    if is_one(period) and unit == "d":
        return f"{min_frequency}-{max_frequency} times daily"
    if is_one(period):
        return f"{min_frequency}-{max_frequency} times per {period_word(1, unit)}"
    return f"{min_frequency}-{max_frequency} times every {fmt_number(period)} {period_word(period, unit)}"


# --------------------------
# Routes
# --------------------------
def route_phrase(route: Optional[str], tables: ReferenceTables) -> str:
    canon = tables.canonical_route(route)
    if canon is None:
        return route or tables.route_phrases[tables.default_route]
    return tables.route_phrases.get(canon, route or "")


def route_verb(route: Optional[str], tables: ReferenceTables, default: str = "Take") -> str:
    canon = tables.canonical_route(route)
    if canon is None:
        return default
    return tables.route_verbs.get(canon, default)


# --------------------------
# The template collaborator
# --------------------------
def render_template(template_id: str, data: Mapping[str, Any]) -> str:
    """
    Render one sentence. Missing fields render as empty strings and the
    result is whitespace/punctuation normalized.
    """
    try:
        template = TEMPLATES[template_id]
    except KeyError:
        raise KeyError(f"Unknown template: {template_id}") from None

    values = _Blank({k: ("" if v is None else v) for k, v in data.items()})
    if not values.get("doseText") and values.get("doseValue") not in (None, "") and values.get("doseUnit"):
        values["doseText"] = format_dose(float(values["doseValue"]), str(values["doseUnit"]),
                                         str(values.get("fractionStyle") or "decimal"))
    text = template.format_map(values)
    text = re.sub(r"\s+", " ", text).strip()
    text = re.sub(r"\s+([.,;])", r"\1", text)
    text = re.sub(r"\.{2,}", ".", text)
    text = re.sub(r",\s*,", ",", text)
    return text
