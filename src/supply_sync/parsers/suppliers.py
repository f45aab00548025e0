"""Mail-order medical suppliers and marketplaces: US Med, Edgepark, Amazon."""

from __future__ import annotations

import re

from supply_sync.core.models import RawEmail
from supply_sync.parsers.base import KeywordVendorParser
from supply_sync.parsers.extraction import order_number_patterns


class USMedParser(KeywordVendorParser):
    """US Med sends 90-day supplies: nine sensors per box by default."""

    name = "US Med"
    supplier = "US Med"
    key_prefix = "USMED"
    sender_domains = ("usmed.com",)
    subject_pattern = re.compile(r"\bus\s*med\b", re.IGNORECASE)
    order_number_patterns = order_number_patterns(r"(\d{6,12})\b")
    pack_size = 9


class EdgeparkParser(KeywordVendorParser):
    name = "Edgepark"
    supplier = "Edgepark"
    key_prefix = "EDGE"
    sender_domains = ("edgepark.com",)
    subject_pattern = re.compile(r"\bedgepark\b", re.IGNORECASE)
    order_number_patterns = order_number_patterns(r"(\d{6,12})\b")


class AmazonParser(KeywordVendorParser):
    """Amazon sells everything, so only emails naming a known supply item count."""

    name = "Amazon"
    supplier = "Amazon"
    key_prefix = "AMZ"
    sender_domains = ("amazon.com", "amazon.co.uk")
    subject_pattern = re.compile(r"\bamazon(?:\.com)?\s+order\b", re.IGNORECASE)
    order_number_patterns = order_number_patterns(r"(\d{3}-\d{7}-\d{7})\b")

    def _accepts_items(self, items: list[tuple[str, str]], email: RawEmail) -> bool:
        return bool(items)
