"""Ordered parser registry: the first parser that both accepts and parses an email wins."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from supply_sync.core.exceptions import ExtractionError
from supply_sync.core.models import CandidateOrder, RawEmail
from supply_sync.parsers.base import VendorParser
from supply_sync.parsers.manufacturers import DexcomParser, OmnipodParser
from supply_sync.parsers.pharmacy import CVSParser, WalgreensParser
from supply_sync.parsers.suppliers import AmazonParser, EdgeparkParser, USMedParser

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegistryMatch:
    """A successful extraction and the parser that produced it."""

    candidate: CandidateOrder
    parser_name: str


def default_parsers() -> list[VendorParser]:
    """Vendor parsers in priority order; the marketplace goes last."""
    return [
        CVSParser(),
        WalgreensParser(),
        DexcomParser(),
        OmnipodParser(),
        USMedParser(),
        EdgeparkParser(),
        AmazonParser(),
    ]


class ParserRegistry:
    """Tries registered parsers in registration order."""

    def __init__(self, parsers: Iterable[VendorParser] = ()) -> None:
        self._parsers: list[VendorParser] = []
        for parser in parsers:
            self.register(parser)

    @classmethod
    def default(cls) -> ParserRegistry:
        return cls(default_parsers())

    @property
    def parsers(self) -> tuple[VendorParser, ...]:
        return tuple(self._parsers)

    def register(self, parser: VendorParser) -> None:
        """Append a parser; earlier registrations take priority.

        Raises:
            ValueError: If a parser with the same name is already registered.
        """
        if any(existing.name == parser.name for existing in self._parsers):
            raise ValueError(f"Parser already registered: {parser.name}")
        self._parsers.append(parser)

    def parse(self, email: RawEmail) -> RegistryMatch | None:
        """Return the first successful extraction, or None when no parser matches.

        A parser that raises is treated as an extraction miss and the next
        parser is tried.
        """
        for parser in self._parsers:
            try:
                if not parser.can_parse(email):
                    continue
                candidate = parser.parse(email)
            except ExtractionError as e:
                logger.warning("Extraction failed in %s: %s", parser.name, e)
                continue
            except Exception as e:
                logger.exception("Parser %s raised on %s: %s", parser.name, email.message_id, e)
                continue
            if candidate is None:
                logger.debug("%s accepted %s but extracted nothing", parser.name, email.message_id)
                continue
            logger.info(
                "Parsed %s with %s (status=%s, confidence=%.2f)",
                email.message_id, parser.name, candidate.status, candidate.confidence,
            )
            return RegistryMatch(candidate=candidate, parser_name=parser.name)
        return None
