"""Competitor price search endpoint."""
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.api.dependencies import get_price_search
from app.auth import get_current_user_id
from app.database import get_db
from app.schemas.price_search import PriceSearchRequest, PriceSearchResponse
from app.services.errors import NoCompetitorSites

router = APIRouter(prefix="/api/price-search", tags=["price-search"])

logger = logging.getLogger(__name__)


@router.post("", response_model=PriceSearchResponse)
async def search_prices(
    request: PriceSearchRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    search=Depends(get_price_search),
):
    """
    Search the user's competitor sites with both backends.

    Results found by both backends are merged with the highest confidence;
    promotions raise a single price_drop alert.
    """
    try:
        return await search.run(db, user_id, request.product_name, request.site_ids, request.max_results)
    except NoCompetitorSites as e:
        logger.warning(f"⚠️ {e}")
        raise HTTPException(status_code=404, detail=str(e))
