"""
ORM Registry (``fiscal_services._orm_registry``).

Ensures every SQLAlchemy model is imported so that ``Base.metadata``
holds all table definitions before ``create_all()`` runs.  Used by
``fiscal_kernel.db.engine.create_tables()``, the CLI and
``tests/conftest.py``.
"""


def import_all_orm_models() -> None:
    """Import kernel and pipeline models.  Idempotent."""
    # Kernel tables first; queue units reference inbox_documents.id
    import fiscal_kernel.models  # noqa: F401
    import fiscal_batch.models  # noqa: F401
