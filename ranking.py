"""Search term preprocessing and tiered ranking of candidate records."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Generic, Iterable, TypeVar

from similarity import similarity

MIN_QUERY_LENGTH = 3
MAX_QUERY_LENGTH = 100
FUZZY_THRESHOLD = 0.7

WHITESPACE_PATTERN = re.compile(r"\s+")
DISALLOWED_PATTERN = re.compile(r"[^a-z0-9@.\- ]")
DIGIT_RUN_PATTERN = re.compile(r"\d{3,}")
NAME_PATTERN = re.compile(r"^[a-z ]+$")

C = TypeVar("C")


class ValidationError(ValueError):
    """Raised when a raw query cannot be used as a search term."""


class MatchTier(Enum):
    """Qualitative match category, valued by its contractual score."""

    EXACT = 100
    PREFIX = 80
    CONTAINS = 60
    FUZZY = 40

    @property
    def score(self) -> int:
        return self.value

    @property
    def label(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class RankedResult(Generic[C]):
    """A candidate with the best score it reached for a search term."""

    item: C
    score: int
    match_tier: MatchTier


def normalize_search_term(term: str) -> str:
    """Lower-case, strip characters outside [a-z0-9@.- ] and collapse whitespace."""
    collapsed = WHITESPACE_PATTERN.sub(" ", term.strip().lower())
    cleaned = DISALLOWED_PATTERN.sub("", collapsed)
    return WHITESPACE_PATTERN.sub(" ", cleaned).strip()


def validate_search_term(term: object) -> str:
    """Return the trimmed term, raising ValidationError when it is unusable."""
    if not isinstance(term, str):
        raise ValidationError("Search term must be a string")

    trimmed = term.strip()
    if len(trimmed) < MIN_QUERY_LENGTH:
        raise ValidationError(f"Search term must be at least {MIN_QUERY_LENGTH} characters")
    if len(trimmed) > MAX_QUERY_LENGTH:
        raise ValidationError(f"Search term must be at most {MAX_QUERY_LENGTH} characters")
    return trimmed


def generate_search_suggestions(term: str) -> list[str]:
    """Hint at what kind of lookup a partial query looks like."""
    processed = normalize_search_term(term)
    suggestions: list[str] = []

    if "@" in processed:
        suggestions.append("Search by email address")
    if DIGIT_RUN_PATTERN.search(processed):
        suggestions.append("Search by phone number")
    if NAME_PATTERN.match(processed) and " " in processed:
        suggestions.append("Search by full name")

    return suggestions


def match_text(text: str, term: str) -> MatchTier | None:
    """Classify one normalized text against a normalized term."""
    if text == term:
        return MatchTier.EXACT
    if text.startswith(term):
        return MatchTier.PREFIX
    if term in text:
        return MatchTier.CONTAINS
    if similarity(text, term) > FUZZY_THRESHOLD:
        return MatchTier.FUZZY
    return None


def rank_results(
    candidates: Iterable[C],
    term: str,
    texts_of: Callable[[C], Iterable[str]],
) -> list[RankedResult[C]]:
    """Score candidates by their best matching text and order them best first.

    Candidates with no matching text are dropped. Equal scores keep their
    input order.
    """
    normalized_term = normalize_search_term(term)
    if not normalized_term:
        return []

    ranked: list[RankedResult[C]] = []
    for candidate in candidates:
        best: MatchTier | None = None
        for text in texts_of(candidate):
            tier = match_text(normalize_search_term(text), normalized_term)
            if tier is not None and (best is None or tier.score > best.score):
                best = tier
            if best is MatchTier.EXACT:
                break

        if best is not None:
            ranked.append(RankedResult(item=candidate, score=best.score, match_tier=best))

    ranked.sort(key=lambda result: result.score, reverse=True)
    return ranked
