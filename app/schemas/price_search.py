"""Dual price search schemas."""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class PriceSearchRequest(BaseModel):
    product_name: str = Field(..., min_length=1, max_length=500)
    site_ids: List[int] = []
    max_results: int = Field(10, ge=1, le=50)


class PriceSearchResultSchema(BaseModel):
    product_name: str
    price: float
    url: str
    source: str
    confidence_score: float
    image_url: Optional[str] = None
    description: Optional[str] = None
    rating: Optional[float] = None
    reviews_count: Optional[int] = None
    stock_status: Optional[str] = None
    metadata: Dict[str, Any] = {}


class PriceSearchStats(BaseModel):
    total_results: int
    google_results: int
    serper_results: int
    dual_validated: int
    promotions_found: int


class PriceSearchResponse(BaseModel):
    results: List[PriceSearchResultSchema]
    stats: PriceSearchStats
