"""
Fuzzy service matching.

Resolves the free-text service a customer asked for ("hair cuts",
"Cólor treatment") to one of the tenant's configured services using
bigram Dice similarity over names and aliases. Pure functions only.
"""

import logging
import re
import unicodedata
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence

from booking_engine.config import settings
from booking_engine.schemas.tenant_schema import ServiceDefinition

logger = logging.getLogger(__name__)

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


class MatchFailure(str, Enum):
    MISSING = "missing"
    AMBIGUOUS = "ambiguous"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class MatchResult:
    """Outcome of resolve(). ``matched`` is set only on success."""

    matched: Optional[ServiceDefinition] = None
    score: float = 0.0
    suggestions: list[str] = field(default_factory=list)
    reason: Optional[MatchFailure] = None


def normalize_text(value: str) -> str:
    """Lowercase, fold diacritics and collapse non-alphanumerics to single spaces.

    Examples:
        >>> normalize_text("  Cólor -- Treatment! ")
        'color treatment'
    """
    decomposed = unicodedata.normalize("NFKD", value)
    folded = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return _NON_ALNUM_RE.sub(" ", folded.lower()).strip()


def _bigrams(value: str) -> Counter:
    compact = value.replace(" ", "")
    return Counter(compact[i:i + 2] for i in range(len(compact) - 1))


def dice_coefficient(a: str, b: str) -> float:
    """Bigram Dice similarity of two already-normalized strings.

    Examples:
        >>> round(dice_coefficient("hair cuts", "hair cut"), 3)
        0.923
    """
    if a == b:
        return 1.0
    first, second = _bigrams(a), _bigrams(b)
    total = sum(first.values()) + sum(second.values())
    if total == 0:
        return 0.0
    shared = sum((first & second).values())
    return 2.0 * shared / total


def score_service(normalized_input: str, service: ServiceDefinition) -> float:
    """A service scores as well as its best-matching name or alias."""
    best = 0.0
    for candidate in [service.name, *service.aliases]:
        normalized = normalize_text(candidate)
        if not normalized:
            continue
        if normalized == normalized_input:
            return 1.0
        best = max(best, dice_coefficient(normalized_input, normalized))
    return best


def resolve(input_text: Optional[str], services: Sequence[ServiceDefinition]) -> MatchResult:
    """Resolve free text to one configured service.

    Accepts the top-ranked service only when it clears the configured
    threshold and the runner-up trails it by at least the ambiguity margin.
    Up to ``max_suggestions`` service names are returned either way.
    """
    normalized_input = normalize_text(input_text or "")
    if not normalized_input:
        return MatchResult(reason=MatchFailure.MISSING)

    cfg = settings.matching
    # sorted() is stable, so equal scores keep configuration order
    ranked = sorted(
        ((score_service(normalized_input, svc), svc) for svc in services),
        key=lambda pair: pair[0],
        reverse=True,
    )
    suggestions = [svc.name for _, svc in ranked[: cfg.max_suggestions]]

    if not ranked:
        return MatchResult(suggestions=suggestions, reason=MatchFailure.NOT_FOUND)

    top_score, top = ranked[0]
    if top_score == 1.0:
        return MatchResult(matched=top, score=top_score, suggestions=suggestions)

    if top_score < cfg.accept_threshold:
        logger.debug("No service match for %r (best %.3f)", input_text, top_score)
        return MatchResult(score=top_score, suggestions=suggestions, reason=MatchFailure.NOT_FOUND)

    if len(ranked) > 1 and top_score - ranked[1][0] < cfg.ambiguity_margin:
        logger.debug(
            "Ambiguous service match for %r: %s=%.3f vs %s=%.3f",
            input_text, top.key, top_score, ranked[1][1].key, ranked[1][0],
        )
        return MatchResult(score=top_score, suggestions=suggestions, reason=MatchFailure.AMBIGUOUS)

    return MatchResult(matched=top, score=top_score, suggestions=suggestions)
