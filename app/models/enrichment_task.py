"""Enrichment queue model."""
from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func

from app.database import Base


class EnrichmentTask(Base):
    """Durable per-product enrichment work item."""

    __tablename__ = "enrichment_queue"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    supplier_product_id = Column(Integer, ForeignKey("supplier_products.id"), nullable=False)
    analysis_id = Column(Integer, ForeignKey("product_analyses.id"), nullable=True)
    import_job_id = Column(String(36), nullable=True)
    enrichment_type = Column(JSON, default=list, nullable=False)
    priority = Column(Integer, default=0, nullable=False)
    status = Column(
        String(20), nullable=False, default="pending", index=True
    )  # pending, processing, completed, failed
    retry_count = Column(Integer, default=0, nullable=False)
    max_retries = Column(Integer, default=2, nullable=False)
    started_at = Column(DateTime, nullable=True)
    timeout_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )

    def __repr__(self):
        return f"<EnrichmentTask(id={self.id}, status='{self.status}', retries={self.retry_count}/{self.max_retries})>"
