"""Knowledge adapter contract and lookup result types."""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

_HTML_TAG = re.compile(r"<[^>]+>")
_WHITESPACE = re.compile(r"\s+")
_CATALOG_NOISE = re.compile(r"[\s\-]")


class LookupFailureKind(str, Enum):
    NOT_FOUND = "not_found"
    MISCONFIGURED = "misconfigured"
    UNAUTHORIZED = "unauthorized"
    UPSTREAM_ERROR = "upstream_error"
    INVALID_INPUT = "invalid_input"


@dataclass(frozen=True, slots=True)
class LookupResult:
    """Either a summary or a failure kind with a human-readable message."""

    term: str
    summary: str | None = None
    failure: LookupFailureKind | None = None
    message: str = ""

    @classmethod
    def ok(cls, term: str, summary: str) -> "LookupResult":
        return cls(term=term, summary=summary)

    @classmethod
    def fail(cls, term: str, kind: LookupFailureKind, message: str) -> "LookupResult":
        return cls(term=term, failure=kind, message=message)

    @property
    def succeeded(self) -> bool:
        return self.failure is None and bool(self.summary)

    def display(self) -> str:
        if self.succeeded:
            return str(self.summary)
        kind = self.failure or LookupFailureKind.NOT_FOUND
        message = self.message or "no information available"
        return f'[{kind.value}] Lookup for "{self.term}" failed: {message}'


class UnauthorizedError(Exception):
    """Upstream rejected the current session credentials."""


def normalize_term(term: str) -> str:
    return _WHITESPACE.sub(" ", term).strip().lower()


def catalog_key(text: str) -> str:
    """Matching form for catalog entries: lower-cased, no whitespace or hyphens."""
    return _CATALOG_NOISE.sub("", text.lower())


def strip_html(text: str) -> str:
    return _HTML_TAG.sub("", text).strip()


def rank_by_relevance(
    term: str,
    items: Sequence[T],
    text_of: Callable[[T], str],
    *,
    limit: int = 3,
) -> list[T]:
    """Order items by lexical overlap with `term`, keeping source order on ties."""
    query_terms = set(normalize_term(term).split())

    def _score(item: T) -> float:
        item_terms = set(text_of(item).lower().split())
        return len(query_terms & item_terms) / max(1, len(query_terms))

    return sorted(items, key=_score, reverse=True)[:limit]


class KnowledgeAdapter(ABC):
    """One external knowledge source exposing `lookup(term) -> str`.

    Subclasses implement `search`; `lookup` guarantees the caller always gets a
    non-empty display string, never an exception.
    """

    name: str = "knowledge"

    @abstractmethod
    def search(self, term: str) -> LookupResult:
        """Look up a normalized term."""

    def lookup(self, term: str) -> str:
        normalized = normalize_term(term or "")
        if not normalized:
            return LookupResult.fail(
                "", LookupFailureKind.INVALID_INPUT, f"no search term provided to {self.name}"
            ).display()
        try:
            result = self.search(normalized)
        except UnauthorizedError as exc:
            logger.warning("%s rejected credentials for term=%r: %s", self.name, normalized, exc)
            result = LookupResult.fail(
                normalized, LookupFailureKind.UNAUTHORIZED, f"{self.name} rejected the session"
            )
        except httpx.HTTPStatusError as exc:
            logger.error(
                "%s returned status %s for term=%r",
                self.name,
                exc.response.status_code,
                normalized,
            )
            result = LookupResult.fail(
                normalized,
                LookupFailureKind.UPSTREAM_ERROR,
                f"{self.name} returned status {exc.response.status_code}",
            )
        except httpx.HTTPError as exc:
            logger.error("%s lookup failed for term=%r: %s", self.name, normalized, exc)
            result = LookupResult.fail(
                normalized,
                LookupFailureKind.UPSTREAM_ERROR,
                f"an error occurred while communicating with {self.name}",
            )
        except Exception:  # noqa: BLE001 - malformed upstream payloads must not escape a lookup
            logger.exception("%s returned an unusable response for term=%r", self.name, normalized)
            result = LookupResult.fail(
                normalized,
                LookupFailureKind.UPSTREAM_ERROR,
                f"{self.name} returned an unexpected response",
            )

        if not result.succeeded:
            logger.info(
                "%s lookup for %r degraded: %s",
                self.name,
                normalized,
                result.failure.value if result.failure else "empty",
            )
        return result.display()


def describe_missing_config(adapter: str, variables: Sequence[str]) -> str:
    return f"{adapter} is not configured ({', '.join(variables)} missing)"
