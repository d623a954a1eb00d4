"""
fiscal_ingestion -- Getting received tax documents into the inbox.

Distribution API client (httpx behind the retry / circuit-breaker layer),
the NF-e payload parser, and the services that admit documents: the
collector, manual import and acknowledgment events.

Architecture:
    fiscal_ingestion/ sits above fiscal_kernel/ and enqueues work through
    fiscal_batch's QueueService.  domain/ and parsers/ are pure (ZERO I/O);
    adapters/ does network I/O only; services/ owns the database writes.
"""
