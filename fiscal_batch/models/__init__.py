"""ORM models for the processing queue."""

from fiscal_batch.models.queue import ProcessingQueueUnitModel

__all__ = ["ProcessingQueueUnitModel"]
