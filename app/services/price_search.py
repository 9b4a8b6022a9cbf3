"""Dual-source price search: two backends per site, merged by canonical URL."""
import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

from sqlalchemy.orm import Session

from app.clients.search_backends import SearchHit
from app.models.price_monitoring import CompetitorSite, PriceMonitoring
from app.services.errors import NoCompetitorSites
from app.services.notifications import create_alert
from app.services.webhook_service import trigger_webhooks

SOURCE_A = "google"
SOURCE_B = "serper"
SOURCE_DUAL = "dual"

CONFIDENCE = {SOURCE_A: 0.7, SOURCE_B: 0.8, SOURCE_DUAL: 0.95}

PROMO_DISCOUNT_PERCENT = 10.0
DEFAULT_SITE_LIMIT = 5

TRACKING_PARAMS = {
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_term",
    "utm_content",
    "fbclid",
    "gclid",
    "msclkid",
    "srsltid",
}

logger = logging.getLogger(__name__)


@dataclass
class PriceSearchResult:
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
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


def canonical_url(url: Optional[str]) -> str:
    """
    Normalize a result URL into a dedup key.

    Folds http into https, lowercases the host, drops ``www.``, the fragment,
    a trailing slash and tracking parameters, and sorts the remaining query
    parameters.
    """
    if not url:
        return ""
    parsed = urlparse(url.strip())
    netloc = parsed.netloc.lower()
    if netloc.startswith("www."):
        netloc = netloc[4:]
    path = parsed.path.rstrip("/") if parsed.path else ""

    params = parse_qs(parsed.query, keep_blank_values=True)
    pairs = []
    for key, values in sorted(params.items()):
        if key.lower() in TRACKING_PARAMS:
            continue
        for value in values:
            pairs.append((key, value))

    scheme = parsed.scheme.lower()
    if scheme == "http":
        scheme = "https"
    return urlunparse((scheme, netloc, path, "", urlencode(pairs), ""))


def _stock_status(hit: SearchHit) -> Optional[str]:
    if hit.in_stock is None:
        return None
    return "in_stock" if hit.in_stock else "unknown"


def _from_hit(hit: SearchHit, source: str, response_time_ms: Optional[int]) -> PriceSearchResult:
    return PriceSearchResult(
        product_name=hit.title,
        price=hit.price,
        url=hit.url,
        source=source,
        confidence_score=CONFIDENCE[source],
        image_url=hit.image_url,
        description=hit.description,
        rating=hit.rating,
        reviews_count=hit.reviews_count,
        stock_status=_stock_status(hit),
        metadata={f"{source}_data": hit.raw, "response_time_ms": response_time_ms},
    )


def merge_results(
    hits_a: Optional[List[SearchHit]],
    hits_b: Optional[List[SearchHit]],
    response_time_ms: Optional[int] = None,
) -> List[PriceSearchResult]:
    """
    Merge both backends' hits keyed by canonical URL.

    A URL seen by both becomes a `dual` result priced at the cheaper of the
    two positive prices, with rating and stock filled from whichever
    backend reported them. A None list means that backend failed.
    """
    merged: Dict[str, PriceSearchResult] = {}

    for hit in hits_a or []:
        key = canonical_url(hit.url)
        if key and key not in merged:
            merged[key] = _from_hit(hit, SOURCE_A, response_time_ms)

    for hit in hits_b or []:
        key = canonical_url(hit.url)
        if not key:
            continue
        existing = merged.get(key)
        if existing is None:
            merged[key] = _from_hit(hit, SOURCE_B, response_time_ms)
            continue
        if existing.source != SOURCE_A:
            continue

        existing.source = SOURCE_DUAL
        existing.confidence_score = CONFIDENCE[SOURCE_DUAL]
        prices = [price for price in (existing.price, hit.price) if price and price > 0]
        existing.price = min(prices) if prices else 0.0
        existing.rating = existing.rating if existing.rating is not None else hit.rating
        existing.reviews_count = existing.reviews_count if existing.reviews_count is not None else hit.reviews_count
        existing.stock_status = existing.stock_status or _stock_status(hit)
        existing.image_url = existing.image_url or hit.image_url
        existing.metadata[f"{SOURCE_B}_data"] = hit.raw

    return list(merged.values())


def detect_promotions(results: List[PriceSearchResult]) -> List[PriceSearchResult]:
    """
    Flag promotions across one query's merged results.

    discount = (avg - price) / avg * 100 over positive prices; a result is a
    promo when the discount exceeds 10% or it sits at the minimum price.
    Every result tied at the minimum is a best price.
    """
    prices = [result.price for result in results if result.price > 0]
    if not prices:
        return results

    avg_price = sum(prices) / len(prices)
    min_price = min(prices)
    for result in results:
        if result.price <= 0:
            result.metadata.update(is_promo=False, is_best_price=False, avg_price=round(avg_price, 2))
            continue
        discount = (avg_price - result.price) / avg_price * 100
        result.metadata.update(
            is_promo=discount > PROMO_DISCOUNT_PERCENT or result.price == min_price,
            is_best_price=result.price == min_price,
            discount_percent=round(discount, 2),
            avg_price=round(avg_price, 2),
        )
    return results


def search_stats(results: List[PriceSearchResult]) -> dict:
    return {
        "total_results": len(results),
        "google_results": sum(1 for r in results if r.source in (SOURCE_A, SOURCE_DUAL)),
        "serper_results": sum(1 for r in results if r.source in (SOURCE_B, SOURCE_DUAL)),
        "dual_validated": sum(1 for r in results if r.source == SOURCE_DUAL),
        "promotions_found": sum(1 for r in results if r.metadata.get("is_promo")),
    }


def resolve_sites(db: Session, user_id: str, site_ids: Optional[List[int]]) -> List[CompetitorSite]:
    """Requested active sites, or the user's first active sites when none are given."""
    query = db.query(CompetitorSite).filter(CompetitorSite.user_id == user_id, CompetitorSite.is_active.is_(True))
    if site_ids:
        sites = query.filter(CompetitorSite.id.in_(site_ids)).all()
    else:
        sites = query.order_by(CompetitorSite.id).limit(DEFAULT_SITE_LIMIT).all()
    if not sites:
        raise NoCompetitorSites("No active competitor sites configured")
    return sites


class DualPriceSearch:
    """Runs both backends for every site and merges, flags and stores the results."""

    def __init__(self, engine_a, engine_b):
        self.engine_a = engine_a
        self.engine_b = engine_b

    async def _query(self, engine, query: str, max_results: int) -> Optional[List[SearchHit]]:
        if engine is None or not getattr(engine, "configured", True):
            return None
        try:
            return await engine.search(query, max_results)
        except Exception as e:
            logger.warning(f"⚠️ {engine.name} search failed for '{query}': {e}")
            return None

    async def search_site(self, product_name: str, site_url: str, max_results: int) -> List[PriceSearchResult]:
        query = f"{product_name} site:{site_url}"
        started = time.monotonic()
        hits_a, hits_b = await asyncio.gather(
            self._query(self.engine_a, query, max_results),
            self._query(self.engine_b, query, max_results),
        )
        elapsed_ms = int((time.monotonic() - started) * 1000)
        return merge_results(hits_a, hits_b, elapsed_ms)

    async def run(
        self,
        db: Session,
        user_id: str,
        product_name: str,
        site_ids: Optional[List[int]] = None,
        max_results: int = 10,
    ) -> dict:
        """
        Search, merge, detect promotions and persist one monitoring row per result.

        Raises:
            NoCompetitorSites: the user has no matching active site
        """
        sites = resolve_sites(db, user_id, site_ids)
        logger.info(f"🔎 Dual search for '{product_name}' on {len(sites)} site(s)")

        results: List[PriceSearchResult] = []
        for site in sites:
            results.extend(await self.search_site(product_name, site.site_url, max_results))

        detect_promotions(results)

        for result in results:
            db.add(
                PriceMonitoring(
                    user_id=user_id,
                    product_name=result.product_name or product_name,
                    current_price=result.price,
                    product_url=result.url,
                    image_url=result.image_url,
                    stock_status=result.stock_status,
                    rating=result.rating,
                    reviews_count=result.reviews_count,
                    description=result.description,
                    search_engine=result.source,
                    confidence_score=result.confidence_score,
                    search_metadata=result.metadata,
                )
            )
        db.commit()

        stats = search_stats(results)
        if stats["promotions_found"]:
            alert_data = {"product_name": product_name, "promotion_count": stats["promotions_found"]}
            create_alert(
                db,
                user_id,
                "price_drop",
                f"{stats['promotions_found']} promotion(s) found for {product_name}",
                alert_data=alert_data,
                priority="high",
            )
            await trigger_webhooks("price.drop", {"event": "price.drop", "data": alert_data}, db)

        logger.info(f"✅ Dual search for '{product_name}' done: {stats}")
        return {"results": [result.to_dict() for result in results], "stats": stats}
