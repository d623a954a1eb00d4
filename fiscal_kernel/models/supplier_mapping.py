"""
Module: fiscal_kernel.models.supplier_mapping
Responsibility: ORM persistence for learned supplier product mappings
    ("de-para") and the minimal internal catalog records matching reads.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/types.py only.

Invariants enforced:
    - (tenant_id, supplier_tax_id, supplier_code) is UNIQUE.  Upserts bump
      times_used instead of inserting a second row.
    - Mappings are never deleted, only soft-disabled (is_active = False).

Products and suppliers are owned by the catalog CRUD outside the inbox; the
inbox only reads them (matching, proposal generation).
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Boolean, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from fiscal_kernel.db.base import TrackedBase, UUIDString
from fiscal_kernel.domain.types import MappingOrigin, SupplierMappingInfo


class SupplierProductMapping(TrackedBase):
    """Learned association between a supplier's product code and a product."""

    __tablename__ = "supplier_product_mapping"

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "supplier_tax_id", "supplier_code",
            name="uq_supplier_product_mapping_key",
        ),
        Index("idx_supplier_product_mapping_product", "tenant_id", "product_id"),
    )

    tenant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    supplier_tax_id: Mapped[str] = mapped_column(String(14), nullable=False)
    supplier_code: Mapped[str] = mapped_column(String(60), nullable=False)
    supplier_description: Mapped[str | None] = mapped_column(String(500), nullable=True)
    classification_code: Mapped[str | None] = mapped_column(String(8), nullable=True)
    identifier: Mapped[str | None] = mapped_column(String(14), nullable=True)

    product_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    origin: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MappingOrigin.AUTOMATIC.value,
    )
    confidence: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    times_used: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_used_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    conversion_factor: Mapped[Decimal] = mapped_column(
        nullable=False, default=Decimal("1"),
    )
    unit: Mapped[str | None] = mapped_column(String(6), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def to_dto(self) -> SupplierMappingInfo:
        return SupplierMappingInfo(
            mapping_id=self.id,
            tenant_id=self.tenant_id,
            supplier_tax_id=self.supplier_tax_id,
            supplier_code=self.supplier_code,
            product_id=self.product_id,
            origin=MappingOrigin(self.origin),
            confidence=self.confidence,
            times_used=self.times_used,
            is_active=self.is_active,
            supplier_description=self.supplier_description,
            classification_code=self.classification_code,
            identifier=self.identifier,
            last_used_at=self.last_used_at,
        )

    def __repr__(self) -> str:
        return (
            f"<SupplierProductMapping {self.supplier_tax_id}/{self.supplier_code}"
            f" -> {self.product_id}>"
        )


class Product(TrackedBase):
    """Internal product record, as far as matching needs it."""

    __tablename__ = "products"

    __table_args__ = (
        Index("idx_products_tenant_identifier", "tenant_id", "identifier"),
        Index("idx_products_tenant_classification", "tenant_id", "classification_code"),
    )

    tenant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    identifier: Mapped[str | None] = mapped_column(String(14), nullable=True)  # EAN/GTIN
    classification_code: Mapped[str | None] = mapped_column(String(8), nullable=True)  # NCM
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Product {self.name}>"


class Supplier(TrackedBase):
    """Internal supplier record, used to link documents for booking."""

    __tablename__ = "suppliers"

    __table_args__ = (
        UniqueConstraint("tenant_id", "tax_id", name="uq_suppliers_tenant_tax_id"),
    )

    tenant_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    tax_id: Mapped[str] = mapped_column(String(14), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
