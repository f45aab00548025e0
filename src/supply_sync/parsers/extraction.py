"""Field extraction helpers shared by the vendor parsers.

Every helper returns an ``Extracted`` so callers can tell a field that was
never mentioned apart from one that was mentioned but unusable.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime

from supply_sync.core.models import Extracted

MAX_QUANTITY = 500

# Token must contain a digit so "Tracking Number" never captures "Number"
_TRACKING_TOKEN = r"((?=[A-Z0-9]*\d)[A-Z0-9]{5,34})\b"

TRACKING_PATTERNS = (
    re.compile(r"tracking\s*(?:number|no\.?|#)\s*:?\s*" + _TRACKING_TOKEN, re.IGNORECASE),
    re.compile(r"tracking\s*:\s*" + _TRACKING_TOKEN, re.IGNORECASE),
    re.compile(r"track\s+(?:your\s+)?package\s*:?\s*" + _TRACKING_TOKEN, re.IGNORECASE),
)

QUANTITY_PATTERNS = (
    re.compile(r"\b(?:qty|quantity)\s*(?:[:#]\s*|(?=\d))([^\s,;)]+)", re.IGNORECASE),
    re.compile(r"\b(\d+)\s*-?\s*(?:pack|pk)\b", re.IGNORECASE),
)

DELIVERY_DATE_PATTERNS = (
    re.compile(r"delivery\s+(?:date|by)\s*:?\s*(\w+\s+\d{1,2},?\s+\d{4})", re.IGNORECASE),
    re.compile(r"estimated\s+delivery\s*:?\s*(\w+\s+\d{1,2},?\s+\d{4})", re.IGNORECASE),
    re.compile(r"expected\s+delivery\s*:?\s*(\w+\s+\d{1,2},?\s+\d{4})", re.IGNORECASE),
    re.compile(r"arrive\s+(?:by|on)\s*:?\s*(\w+\s+\d{1,2},?\s+\d{4})", re.IGNORECASE),
)

_DATE_FORMATS = ("%B %d %Y", "%b %d %Y")

SUPPLY_INDICATOR = re.compile(
    r"\b(?:dexcom|libre|freestyle|cgm|sensors?|glucose|test\s+strips?|lancets?|insulin|"
    r"humalog|novolog|lantus|basaglar|tresiba|levemir|apidra|fiasp|omnipod|insulet|"
    r"infusion\s+sets?|reservoirs?|diabet(?:es|ic))\b",
    re.IGNORECASE,
)


def order_number_patterns(id_pattern: str, extra_labels: Sequence[str] = ()) -> tuple[re.Pattern[str], ...]:
    """Build the ordered label patterns for a vendor's order-number format.

    Args:
        id_pattern: Regex for the identifier itself, with one capture group.
        extra_labels: Vendor-specific labels tried after the common ones.
    """
    labels = [
        r"order\s*(?:number|no\.?)?\s*#?",
        r"confirmation\s*(?:number|no\.?)?\s*#?",
        *extra_labels,
    ]
    return tuple(re.compile(label + r"\s*:?\s*" + id_pattern, re.IGNORECASE) for label in labels)


def first_match(patterns: Iterable[re.Pattern[str]], *texts: str) -> Extracted[str]:
    """Try each pattern in order against each text; the first capture wins."""
    for pattern in patterns:
        for text in texts:
            match = pattern.search(text)
            if match:
                return Extracted.found(match.group(1), raw=match.group(0))
    return Extracted.missing()


def extract_quantity(text: str) -> Extracted[int]:
    """Find an explicit "Qty:", "Quantity:" or "N pack" statement.

    An unusable match does not stop the search; it is reported as invalid
    only when no later pattern yields a usable quantity.
    """
    invalid: Extracted[int] | None = None
    for pattern in QUANTITY_PATTERNS:
        for match in pattern.finditer(text):
            token = match.group(1)
            if token.isdigit() and 0 < int(token) <= MAX_QUANTITY:
                return Extracted.found(int(token), raw=match.group(0))
            if invalid is None:
                invalid = Extracted.invalid(match.group(0))
    return invalid if invalid is not None else Extracted.missing()


def extract_delivery_date(text: str) -> Extracted[date]:
    """Find an expected delivery date written as "Month D, YYYY"."""
    for pattern in DELIVERY_DATE_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        cleaned = match.group(1).replace(",", " ")
        cleaned = " ".join(cleaned.split())
        for fmt in _DATE_FORMATS:
            try:
                return Extracted.found(datetime.strptime(cleaned, fmt).date(), raw=match.group(0))
            except ValueError:
                continue
        return Extracted.invalid(match.group(0))
    return Extracted.missing()


def has_supply_indicator(*texts: str) -> bool:
    """True if any text mentions a diabetes supply at all."""
    return any(SUPPLY_INDICATOR.search(text) for text in texts)


@dataclass(frozen=True)
class ItemRule:
    """Maps a product pattern to a canonical item name within a category."""

    pattern: re.Pattern[str]
    name: str
    category: str
    name_group: int | None = None

    def match(self, text: str) -> str | None:
        found = self.pattern.search(text)
        if not found:
            return None
        if self.name_group is not None:
            return found.group(self.name_group).capitalize()
        return self.name


def item_rule(pattern: str, name: str, category: str, name_group: int | None = None) -> ItemRule:
    return ItemRule(re.compile(pattern, re.IGNORECASE), name, category, name_group)


# Ordered: within a category the first matching rule wins
DEFAULT_ITEM_RULES = (
    item_rule(r"dexcom\s+g7\s+sensor", "Dexcom G7 Sensor", "cgm_sensor"),
    item_rule(r"dexcom\s+g6\s+sensor", "Dexcom G6 Sensor", "cgm_sensor"),
    item_rule(r"dexcom.*sensor", "Dexcom Sensor", "cgm_sensor"),
    item_rule(r"freestyle\s+libre", "FreeStyle Libre Sensor", "cgm_sensor"),
    item_rule(r"\d+\s*(?:count|ct\.?)?\s*test\s+strips?", "Test Strips", "test_strips"),
    item_rule(r"glucose\s+test\s+strips?", "Glucose Test Strips", "test_strips"),
    item_rule(r"contour\s+next", "Contour Next Test Strips", "test_strips"),
    item_rule(r"one\s*touch", "OneTouch Test Strips", "test_strips"),
    item_rule(
        r"\b(humalog|novolog|lantus|basaglar|tresiba|levemir|apidra|fiasp)\b",
        "Insulin",
        "insulin",
        name_group=1,
    ),
    item_rule(r"\blancets?\b", "Lancets", "lancets"),
    item_rule(r"omnipod", "Omnipod Pods", "pump_supply"),
    item_rule(r"infusion\s+sets?", "Infusion Set", "pump_supply"),
    item_rule(r"\breservoirs?\b", "Insulin Reservoir", "pump_supply"),
)


def extract_items(text: str, rules: Sequence[ItemRule] = DEFAULT_ITEM_RULES) -> list[tuple[str, str]]:
    """Return (name, category) pairs, at most one per category."""
    found: list[tuple[str, str]] = []
    matched_categories: set[str] = set()
    for rule in rules:
        if rule.category in matched_categories:
            continue
        name = rule.match(text)
        if name:
            found.append((name, rule.category))
            matched_categories.add(rule.category)
    return found


def score_confidence(has_order_number: bool, has_items: bool, has_shipping_tracking: bool) -> float:
    """Weighted feature presence, capped at 1.0. A ranking signal, not a probability."""
    score = 0.5
    if has_order_number:
        score += 0.3
    if has_items:
        score += 0.2
    if has_shipping_tracking:
        score += 0.1
    return min(round(score, 2), 1.0)
