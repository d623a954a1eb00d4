"""
Module: fiscal_engines
Responsibility:
    Package entrypoint re-exporting the pure calculation engines used by
    the inbox pipeline: description similarity / candidate ranking and the
    booking proposal builder.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import fiscal_kernel/domain (and sibling engine modules).
    MUST NOT import fiscal_services, fiscal_batch or fiscal_ingestion.

Invariants enforced:
    - Purity: engines NEVER call ``datetime.now()``.  Timestamps are passed
      in by the calling stage.
    - Determinism: identical inputs always produce identical outputs.

Audit relevance:
    Engine invocations are traced via ``@traced_engine`` (see
    ``fiscal_engines.tracer``), emitting FISCAL_ENGINE_TRACE records.
"""

from fiscal_engines.matching import (
    ItemToMatch,
    MatchResult,
    ProductCandidate,
    rank_candidates,
    similarity_score,
)
from fiscal_engines.proposal import (
    BookingProposal,
    ProposalActions,
    ProposalLine,
    build_booking_proposal,
)
from fiscal_engines.tracer import compute_input_fingerprint, traced_engine

__all__ = [
    "BookingProposal",
    "ItemToMatch",
    "MatchResult",
    "ProductCandidate",
    "ProposalActions",
    "ProposalLine",
    "build_booking_proposal",
    "compute_input_fingerprint",
    "rank_candidates",
    "similarity_score",
    "traced_engine",
]
