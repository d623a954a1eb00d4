"""
fiscal_batch -- Persisted processing queue and the document pipeline.

Drains ``processing_queue`` through parse_xml -> match_products ->
generate_proposal with one SAVEPOINT per unit, atomic claims, attempt
ceilings and ``not_before`` backoff.  ``ConcurrentPipelineRunner`` spreads
units across a bounded thread pool.

Architecture:
    fiscal_batch/ is a top-level package.  Nothing in fiscal_kernel/ or
    fiscal_engines/ imports from it.  The orchestrator reaches into
    fiscal_services lazily for the product matcher.

Invariants:
    - SAVEPOINT isolation per queue unit
    - Claims are conditional UPDATEs (pending -> processing)
    - attempts never decrease; error only at max_attempts
    - Clock injection (no datetime.now() calls)
    - Audit trail for every completed stage and terminal failure
"""
