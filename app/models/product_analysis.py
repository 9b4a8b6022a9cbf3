"""Product analysis (enrichment target) and supplier links."""
from sqlalchemy import JSON, Column, DateTime, Float, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from app.database import Base


class ProductAnalysis(Base):
    """Catalog entry that accumulates every enrichment output for one product."""

    __tablename__ = "product_analyses"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    ean = Column(String(32), nullable=True)
    product_name = Column(String(500), nullable=True)
    purchase_price = Column(Float, nullable=True)
    supplier_product_id = Column(Integer, ForeignKey("supplier_products.id"), nullable=True)
    analysis_result = Column(JSON, default=dict, nullable=False)
    enrichment_status = Column(JSON, default=dict, nullable=False)
    enrichment_progress = Column(Integer, default=0, nullable=False)
    specifications = Column(JSON, nullable=True)
    cost_analysis = Column(JSON, nullable=True)
    rsgp_compliance = Column(JSON, nullable=True)
    image_urls = Column(JSON, default=list, nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )

    # NULL eans never collide, so only EAN-bearing analyses are unique per user
    __table_args__ = (UniqueConstraint("user_id", "ean", name="uq_product_analyses_user_ean"),)

    def merge_result(self, key: str, value) -> None:
        result = dict(self.analysis_result or {})
        result[key] = value
        self.analysis_result = result

    def __repr__(self):
        return f"<ProductAnalysis(id={self.id}, ean='{self.ean}')>"


class ProductLink(Base):
    """Link between a supplier product and the analysis it enriched."""

    __tablename__ = "product_links"

    id = Column(Integer, primary_key=True, index=True)
    supplier_product_id = Column(Integer, ForeignKey("supplier_products.id"), nullable=False)
    analysis_id = Column(Integer, ForeignKey("product_analyses.id"), nullable=False)
    link_type = Column(String(50), nullable=False, default="enrichment")
    confidence_score = Column(Float, nullable=False, default=1.0)
    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
