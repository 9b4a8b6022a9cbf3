"""Price search backends: Google Custom Search (engine A) and Serper shopping (engine B)."""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from app.config import get_settings
from app.services.field_extractor import parse_price

settings = get_settings()
logger = logging.getLogger(__name__)

GOOGLE_CSE_URL = "https://www.googleapis.com/customsearch/v1"
SERPER_SHOPPING_URL = "https://google.serper.dev/shopping"

_EURO_PRICE = re.compile(r"(\d+[,.]?\d*)\s*€")


@dataclass
class SearchHit:
    """One priced result as reported by a single backend."""

    title: str
    url: str
    price: float
    image_url: Optional[str] = None
    description: Optional[str] = None
    rating: Optional[float] = None
    reviews_count: Optional[int] = None
    in_stock: Optional[bool] = None
    raw: Dict[str, Any] = field(default_factory=dict)


def extract_euro_price(text: Optional[str]) -> Optional[float]:
    """First ``12,50 €`` style amount in a snippet or title."""
    if not text:
        return None
    match = _EURO_PRICE.search(text)
    if not match:
        return None
    return float(match.group(1).replace(",", "."))


class GoogleSearchClient:
    name = "google"

    def __init__(
        self,
        api_key: Optional[str] = None,
        cx: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.google_search_api_key
        self.cx = cx if cx is not None else settings.google_search_cx
        self.timeout = timeout
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.cx)

    async def search(self, query: str, max_results: int = 10) -> List[SearchHit]:
        """Web results whose snippet or title carries a euro price."""
        params = {"key": self.api_key, "cx": self.cx, "q": query, "num": min(max_results, 10)}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.get(GOOGLE_CSE_URL, params=params)
            response.raise_for_status()

        hits = []
        for item in response.json().get("items") or []:
            price = extract_euro_price(item.get("snippet")) or extract_euro_price(item.get("title"))
            if not price or not item.get("link"):
                continue
            images = (item.get("pagemap") or {}).get("cse_image") or [{}]
            hits.append(
                SearchHit(
                    title=item.get("title") or "",
                    url=item["link"],
                    price=price,
                    image_url=images[0].get("src"),
                    description=item.get("snippet"),
                    raw=item,
                )
            )
        return hits

    async def search_images(self, query: str, max_results: int = 5) -> List[str]:
        """Product image URLs, trusted retail domains first, marketplaces of dubious quality dropped."""
        params = {
            "key": self.api_key,
            "cx": self.cx,
            "q": f"{query} official product image",
            "searchType": "image",
            "num": min(max_results * 2, 10),
            "imgSize": "large",
            "imgType": "photo",
            "safe": "active",
        }
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.get(GOOGLE_CSE_URL, params=params)
            response.raise_for_status()

        scored = []
        for item in response.json().get("items") or []:
            score = image_source_score(item.get("displayLink"), item.get("link"), item.get("title"))
            if score > 0 and item.get("link"):
                scored.append((score, item["link"]))
        scored.sort(key=lambda pair: pair[0], reverse=True)
        return [url for _, url in scored[:max_results]]


TRUSTED_IMAGE_DOMAINS = (
    "amazon.",
    "apple.com",
    "samsung.com",
    "sony.com",
    "lg.com",
    "dell.com",
    "hp.com",
    "lenovo.com",
    "asus.com",
    "cdiscount.com",
    "fnac.com",
    "darty.com",
    "boulanger.com",
    "decathlon.com",
    "leroy-merlin.fr",
    "carrefour.fr",
)
UNTRUSTED_IMAGE_DOMAINS = ("pinterest", "ebay", "aliexpress", "wish", "temu")


def image_source_score(domain: Optional[str], link: Optional[str], title: Optional[str]) -> int:
    domain = (domain or "").lower()
    link = (link or "").lower()
    score = 0
    if any(trusted in domain for trusted in TRUSTED_IMAGE_DOMAINS):
        score += 100
        if "amazon" in domain:
            score += 50
    if "product" in link:
        score += 20
    if "official" in link:
        score += 20
    if "official" in (title or "").lower():
        score += 15
    if any(bad in domain for bad in UNTRUSTED_IMAGE_DOMAINS):
        score -= 100
    return score


class SerperShoppingClient:
    name = "serper"

    def __init__(
        self,
        api_key: Optional[str] = None,
        country: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.serper_api_key
        self.country = country or settings.search_country
        self.timeout = timeout
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def search(self, query: str, max_results: int = 10) -> List[SearchHit]:
        """Shopping results; rating, reviews and delivery info come along."""
        payload = {"q": query, "gl": self.country, "hl": self.country, "num": max_results}
        headers = {"X-API-KEY": self.api_key, "Content-Type": "application/json"}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(SERPER_SHOPPING_URL, json=payload, headers=headers)
            response.raise_for_status()

        hits = []
        for item in response.json().get("shopping") or []:
            if not item.get("link"):
                continue
            raw_price = item.get("price")
            price = float(raw_price) if isinstance(raw_price, (int, float)) else parse_price(raw_price)
            hits.append(
                SearchHit(
                    title=item.get("title") or "",
                    url=item["link"],
                    price=price or 0.0,
                    image_url=item.get("imageUrl"),
                    rating=item.get("rating"),
                    reviews_count=item.get("ratingCount") or item.get("reviews"),
                    in_stock=bool(item.get("delivery")),
                    raw=item,
                )
            )
        return hits
