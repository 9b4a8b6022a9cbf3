"""Competitor sites and price monitoring history."""
from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Integer, String, Text
from sqlalchemy.sql import func

from app.database import Base


class CompetitorSite(Base):
    """A marketplace or shop that price searches are scoped to."""

    __tablename__ = "competitor_sites"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    site_name = Column(String(255), nullable=False)
    site_url = Column(String(1024), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)


class PriceMonitoring(Base):
    """One merged price search result, stored as history."""

    __tablename__ = "price_monitoring"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    product_name = Column(String(500), nullable=False)
    current_price = Column(Float, nullable=False)
    product_url = Column(String(2048), nullable=False)
    image_url = Column(String(2048), nullable=True)
    stock_status = Column(String(50), nullable=True)
    rating = Column(Float, nullable=True)
    reviews_count = Column(Integer, nullable=True)
    description = Column(Text, nullable=True)
    search_engine = Column(String(20), nullable=False)  # google, serper, dual
    confidence_score = Column(Float, nullable=False)
    search_metadata = Column(JSON, default=dict, nullable=False)
    scraped_at = Column(DateTime, server_default=func.now(), nullable=False)
