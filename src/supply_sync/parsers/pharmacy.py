"""Retail pharmacy parsers: CVS and Walgreens."""

from __future__ import annotations

import re

from supply_sync.parsers.base import KeywordVendorParser
from supply_sync.parsers.extraction import order_number_patterns


class CVSParser(KeywordVendorParser):
    """CVS Pharmacy order, shipping and delivery emails.

    CVS order numbers are 8-10 digits; prescription numbers are accepted as
    a last resort.
    """

    name = "CVS Pharmacy"
    supplier = "CVS"
    key_prefix = "CVS"
    sender_domains = ("cvs.com", "cvspharmacy")
    subject_pattern = re.compile(r"\bcvs(?:\s+pharmacy)?\b", re.IGNORECASE)
    order_number_patterns = order_number_patterns(
        r"(\d{8,10})\b",
        extra_labels=(r"prescription\s*#?",),
    )


class WalgreensParser(KeywordVendorParser):
    """Walgreens order, shipping and delivery emails."""

    name = "Walgreens"
    supplier = "Walgreens"
    key_prefix = "WAG"
    sender_domains = ("walgreens.com", "walgreens")
    subject_pattern = re.compile(r"\bwalgreens\b", re.IGNORECASE)
    order_number_patterns = order_number_patterns(
        r"((?=[A-Z0-9]*\d)[A-Z0-9]{8,15})\b",
        extra_labels=(r"rx\s*#?",),
    )
