"""
fiscal_engines.matching -- Description similarity scoring and candidate ranking.

Responsibility:
    Score how closely a supplier's line description matches an internal
    product name, and rank a set of same-classification candidates into
    suggestions.  This is the pure core of the fuzzy stage of the product
    matching cascade; the store-backed cascade lives in
    ``fiscal_services.product_matching_service``.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import fiscal_kernel/domain.

Invariants enforced:
    - similarity = 1 - levenshtein(a, b) / max(len(a), len(b)) over
      case-folded, trimmed strings; two empty strings are identical.
    - Scores are integers in [0, 100], rounded half-up.
    - Ranking is stable: equal scores keep candidate input order.
    - Determinism: identical inputs always produce identical outputs.

Failure modes:
    - None.  Empty candidate lists produce empty rankings.

Usage:
    from fiscal_engines.matching import similarity_score, rank_candidates

    score = similarity_score("Parafuso 10mm", "PARAFUSO 10 MM")
    ranked = rank_candidates(
        description="Parafuso 10mm",
        classification_code="73181500",
        candidates=[ProductCandidate(product_id, "PARAFUSO 10 MM")],
    )
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from rapidfuzz.distance import Levenshtein

from fiscal_engines.tracer import traced_engine
from fiscal_kernel.domain.types import MatchMethod, MatchSuggestion

DEFAULT_SUGGESTION_LIMIT = 5


@dataclass(frozen=True)
class ItemToMatch:
    """Supplier-side view of one line, as the matching cascade sees it."""

    supplier_tax_id: str
    supplier_code: str
    description: str
    classification_code: str | None = None
    identifier: str | None = None


@dataclass(frozen=True)
class MatchResult:
    """
    Outcome of the cascade for one line.

    ``product_id`` is None when no stage was confident; ``method`` is then
    ``manual`` and ``score`` is the best suggestion's score (or 0).
    """

    product_id: UUID | None
    method: MatchMethod
    score: int
    suggestions: tuple[MatchSuggestion, ...] = ()

    @property
    def is_match(self) -> bool:
        return self.product_id is not None


@dataclass(frozen=True)
class ProductCandidate:
    """An internal product eligible for fuzzy comparison."""

    product_id: UUID
    name: str


def _normalize(text: str | None) -> str:
    return (text or "").strip().lower()


def similarity_score(left: str | None, right: str | None) -> int:
    """Similarity scaled to 0-100 and rounded half-up."""
    a = _normalize(left)
    b = _normalize(right)
    longest = max(len(a), len(b))
    if longest == 0:
        return 100
    # Decimal keeps x.5 boundaries exact before rounding
    distance = Levenshtein.distance(a, b)
    scaled = (Decimal(longest - distance) * 100) / Decimal(longest)
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@traced_engine(
    "product_ranking", "1.0",
    fingerprint_fields=("description", "classification_code"),
)
def rank_candidates(
    *,
    description: str,
    classification_code: str | None,
    candidates: Sequence[ProductCandidate],
    limit: int = DEFAULT_SUGGESTION_LIMIT,
) -> tuple[MatchSuggestion, ...]:
    """
    Score every candidate against ``description`` and return the best
    ``limit`` as suggestions, highest score first.
    """
    scored = [
        MatchSuggestion(
            product_id=candidate.product_id,
            name=candidate.name,
            score=score,
            reason=f"NCM {classification_code or '-'} + similarity {score}%",
        )
        for candidate in candidates
        for score in (similarity_score(description, candidate.name),)
    ]
    scored.sort(key=lambda s: s.score, reverse=True)
    return tuple(scored[:limit])
