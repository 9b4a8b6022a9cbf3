"""Supplier catalog product model."""
from sqlalchemy import Column, DateTime, Float, Integer, String, Text, UniqueConstraint
from sqlalchemy.sql import func

from app.database import Base


class SupplierProduct(Base):
    """A product row as listed by one supplier, keyed by the supplier's own reference."""

    __tablename__ = "supplier_products"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    supplier_id = Column(String(64), nullable=False)
    supplier_reference = Column(String(255), nullable=False)
    name = Column(String(500), nullable=False)
    ean = Column(String(32), nullable=True, index=True)
    description = Column(Text, nullable=True)
    brand = Column(String(255), nullable=True)
    category = Column(String(255), nullable=True)
    purchase_price = Column(Float, nullable=True)
    stock_quantity = Column(Integer, nullable=True)
    currency = Column(String(3), nullable=False, default="EUR")
    supplier_url = Column(String(2048), nullable=True)
    enrichment_status = Column(String(20), nullable=False, default="pending")
    enrichment_progress = Column(Integer, nullable=False, default=0)
    last_sync_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("user_id", "supplier_id", "supplier_reference", name="uq_supplier_products_ref"),
    )

    def to_input(self) -> dict:
        """Fields handed to enrichment stages."""
        return {
            "id": self.id,
            "product_name": self.name,
            "ean": self.ean,
            "description": self.description,
            "brand": self.brand,
            "category": self.category,
            "purchase_price": self.purchase_price,
            "currency": self.currency,
            "supplier_reference": self.supplier_reference,
            "supplier_url": self.supplier_url,
        }

    def __repr__(self):
        return f"<SupplierProduct(id={self.id}, ref='{self.supplier_reference}', name='{self.name}')>"
