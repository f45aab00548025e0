"""Direct-from-manufacturer parsers: Dexcom and Omnipod (Insulet)."""

from __future__ import annotations

import re

from supply_sync.parsers.base import KeywordVendorParser
from supply_sync.parsers.extraction import item_rule, order_number_patterns


class DexcomParser(KeywordVendorParser):
    name = "Dexcom"
    supplier = "Dexcom"
    key_prefix = "DEX"
    sender_domains = ("dexcom.com",)
    subject_pattern = re.compile(r"\bdexcom\s+(?:order|shipment|store)\b", re.IGNORECASE)
    order_number_patterns = order_number_patterns(
        r"(\d{6,12})\b",
        extra_labels=(r"sales\s+order\s*#?",),
    )


class OmnipodParser(KeywordVendorParser):
    """Insulet ships pods in boxes of five."""

    name = "Omnipod"
    supplier = "Omnipod"
    key_prefix = "OMNI"
    sender_domains = ("omnipod.com", "insulet.com", "theomnipodteam")
    subject_pattern = re.compile(r"\bomnipod\b.*\b(?:order|shipment|shipped)\b", re.IGNORECASE)
    order_number_patterns = order_number_patterns(
        r"(\d{6,12})\b",
        extra_labels=(r"reference\s*(?:number)?\s*#?",),
    )
    pack_size = 5
    item_rules = (
        item_rule(r"omnipod\s*5", "Omnipod 5 Pods", "pump_supply"),
        item_rule(r"omnipod\s+dash", "Omnipod DASH Pods", "pump_supply"),
        item_rule(r"\bpods?\b", "Omnipod Pods", "pump_supply"),
    )
