"""Stage runners for the enrichment orchestrator.

Each runner reads the product from the StageContext, calls its external
collaborator and writes its output onto the context's ProductAnalysis.
"""
import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from app.services.enrichment_orchestrator import (
    STAGE_COMPLETED,
    STAGE_FAILED,
    STAGE_SKIPPED,
    StageContext,
    StageDescriptor,
    StageResult,
)

_OG_IMAGE = re.compile(
    r"""<meta[^>]+property=["']og:image["'][^>]+content=["']([^"']+)["']""", re.IGNORECASE
)
PHYSICAL_HINTS = ("electronic", "appliance", "phone", "computer", "toy", "electrique", "jouet")

SYSTEM_PROMPT = "You are a product data specialist for an e-commerce catalog. Answer with JSON only."

logger = logging.getLogger(__name__)


def _describe(product: Dict[str, Any]) -> str:
    fields = ("product_name", "brand", "ean", "category", "description", "purchase_price", "currency")
    return json.dumps({key: product.get(key) for key in fields if product.get(key) is not None}, ensure_ascii=False)


def _record(context: StageContext, key: str, value: Any) -> None:
    if context.analysis is not None:
        context.analysis.merge_result(key, value)


async def analyze_product(ai, product: Dict[str, Any]) -> Dict[str, Any]:
    """Base analysis that creates the ProductAnalysis of a queued product."""
    prompt = (
        "Analyze this supplier product and return a JSON object with keys "
        "basic_info (name, brand, category), description (short, long), "
        "key_features (list) and target_audience.\n"
        f"Product: {_describe(product)}"
    )
    result = await ai.complete_json(SYSTEM_PROMPT, prompt)
    if not isinstance(result, dict):
        raise ValueError("Product analysis must be a JSON object")
    return result


async def _substeps(steps: Dict[str, Any]) -> Dict[str, Any]:
    """Gather named coroutines; exceptions come back as values."""
    names = list(steps)
    outcomes = await asyncio.gather(*steps.values(), return_exceptions=True)
    return dict(zip(names, outcomes))


def _substep_status(outcome: Any) -> str:
    if isinstance(outcome, Exception):
        return STAGE_FAILED
    return STAGE_COMPLETED if outcome else STAGE_SKIPPED


def _settle(substeps: Dict[str, str], detail: Any) -> StageResult:
    """Completed if any substep contributed; failed if every one failed."""
    if any(status == STAGE_COMPLETED for status in substeps.values()):
        return StageResult(STAGE_COMPLETED, detail=detail, substeps=substeps)
    if substeps and all(status == STAGE_FAILED for status in substeps.values()):
        return StageResult(STAGE_FAILED, error="All substeps failed", substeps=substeps)
    return StageResult(STAGE_SKIPPED, detail=detail, substeps=substeps)


class StageRunners:
    """Binds the external collaborators to the stage functions."""

    def __init__(self, ai, engine_a=None, engine_b=None, media=None, http_transport: Optional[httpx.AsyncBaseTransport] = None):
        self.ai = ai
        self.engine_a = engine_a
        self.engine_b = engine_b
        self.media = media
        self.http_transport = http_transport

    def descriptors(self) -> List[StageDescriptor]:
        return [
            StageDescriptor("categories", self.categories),
            StageDescriptor("images", self.images),
            StageDescriptor("shopping", self.shopping),
            StageDescriptor("advanced", self.advanced),
            StageDescriptor("marketplace_attributes", self.marketplace_attributes),
            StageDescriptor("media", self.media_stage),
        ]

    async def categories(self, context: StageContext) -> StageResult:
        prompt = (
            "Classify this product in a retail taxonomy. Return JSON with keys "
            "category, subcategory, tags (list of strings).\n"
            f"Product: {_describe(context.product)}"
        )
        taxonomy = await self.ai.complete_json(SYSTEM_PROMPT, prompt)
        _record(context, "categories", taxonomy)
        return StageResult(STAGE_COMPLETED, detail=taxonomy)

    # images

    async def _direct_scrape(self, url: Optional[str]) -> List[str]:
        if not url:
            return []
        async with httpx.AsyncClient(timeout=10.0, follow_redirects=True, transport=self.http_transport) as client:
            response = await client.get(url)
            response.raise_for_status()
        return _OG_IMAGE.findall(response.text)[:3]

    async def _ai_web_search(self, product: Dict[str, Any]) -> List[str]:
        prompt = (
            "Find up to 3 direct URLs of official product photos for this product. "
            'Return JSON {"images": [url, ...]}.\n'
            f"Product: {_describe(product)}"
        )
        answer = await self.ai.complete_json(SYSTEM_PROMPT, prompt)
        images = answer.get("images", []) if isinstance(answer, dict) else answer
        return [url for url in images or [] if isinstance(url, str) and url.startswith("http")]

    async def _marketplace_images(self, query: str) -> List[str]:
        if self.engine_a is None or not self.engine_a.configured:
            return []
        return await self.engine_a.search_images(query, max_results=5)

    async def _shopping_images(self, query: str) -> List[str]:
        if self.engine_b is None or not self.engine_b.configured:
            return []
        hits = await self.engine_b.search(query, max_results=5)
        return [hit.image_url for hit in hits if hit.image_url]

    async def images(self, context: StageContext) -> StageResult:
        product = context.product
        query = product.get("product_name") or product.get("ean") or ""
        outcomes = await _substeps(
            {
                "direct_scrape": self._direct_scrape(product.get("supplier_url")),
                "ai_web_search": self._ai_web_search(product),
                "marketplace_images": self._marketplace_images(query),
                "shopping_images": self._shopping_images(query),
            }
        )

        urls: List[str] = []
        substeps = {}
        for name, outcome in outcomes.items():
            substeps[name] = _substep_status(outcome)
            if isinstance(outcome, Exception):
                logger.warning(f"⚠️ Image substep {name} failed: {outcome}")
                continue
            for url in outcome:
                if url not in urls:
                    urls.append(url)

        if context.analysis is not None and urls:
            existing = list(context.analysis.image_urls or [])
            context.analysis.image_urls = existing + [url for url in urls if url not in existing]
        return _settle(substeps, {"images": urls})

    async def shopping(self, context: StageContext) -> StageResult:
        if self.engine_b is None or not self.engine_b.configured:
            return StageResult(STAGE_SKIPPED, error="Shopping search not configured")
        product = context.product
        query = product.get("ean") or product.get("product_name")
        hits = await self.engine_b.search(query, max_results=10)
        prices = [hit.price for hit in hits if hit.price > 0]
        summary = {
            "offers": [{"title": hit.title, "url": hit.url, "price": hit.price} for hit in hits[:10]],
            "min_price": min(prices) if prices else None,
            "avg_price": round(sum(prices) / len(prices), 2) if prices else None,
        }
        _record(context, "shopping", summary)
        return StageResult(STAGE_COMPLETED if hits else STAGE_SKIPPED, detail=summary)

    # advanced

    async def _ask(self, instruction: str, product: Dict[str, Any]) -> Any:
        return await self.ai.complete_json(SYSTEM_PROMPT, f"{instruction}\nProduct: {_describe(product)}")

    async def advanced(self, context: StageContext) -> StageResult:
        product = context.product
        steps = {
            "specifications": self._ask("Return the technical specifications as a flat JSON object.", product),
            "technical_description": self._ask(
                'Write a technical product description. Return JSON {"description": "..."}.', product
            ),
            "cost_analysis": self._ask(
                "Estimate a recommended retail price and margin from the purchase price. Return JSON with "
                "keys recommended_price, margin_percent, rationale.",
                product,
            ),
        }
        if is_physical_product(product):
            steps["rsgp"] = self._ask(
                "Return EU general product safety (GPSR/RSGP) compliance data as JSON with keys "
                "manufacturer, safety_warnings, age_restriction, ce_marking.",
                product,
            )

        outcomes = await _substeps(steps)
        substeps = {name: _substep_status(outcome) for name, outcome in outcomes.items()}
        if "rsgp" not in steps:
            substeps["rsgp"] = STAGE_SKIPPED

        analysis = context.analysis
        if analysis is not None:
            if substeps["specifications"] == STAGE_COMPLETED:
                analysis.specifications = outcomes["specifications"]
            if substeps["cost_analysis"] == STAGE_COMPLETED:
                analysis.cost_analysis = outcomes["cost_analysis"]
            if substeps["rsgp"] == STAGE_COMPLETED:
                analysis.rsgp_compliance = outcomes["rsgp"]
            if substeps["technical_description"] == STAGE_COMPLETED:
                analysis.merge_result("technical_description", outcomes["technical_description"])

        for name, outcome in outcomes.items():
            if isinstance(outcome, Exception):
                logger.warning(f"⚠️ Advanced substep {name} failed: {outcome}")
        return _settle(substeps, {name: status for name, status in substeps.items()})

    async def marketplace_attributes(self, context: StageContext) -> StageResult:
        attributes = await self._ask(
            "Return marketplace listing attributes (color, material, dimensions, weight, "
            "warranty, country_of_origin) as a flat JSON object; use null when unknown.",
            context.product,
        )
        _record(context, "marketplace_attributes", attributes)
        return StageResult(STAGE_COMPLETED, detail=attributes)

    async def media_stage(self, context: StageContext) -> StageResult:
        if self.media is None or not self.media.configured:
            return StageResult(STAGE_SKIPPED, error="Media service not configured")
        images = list(context.analysis.image_urls or []) if context.analysis is not None else []
        handle = await self.media.request_video(
            context.product.get("product_name"), context.product.get("description"), images
        )
        _record(context, "media", handle)
        return StageResult(STAGE_COMPLETED, detail=handle)


def is_physical_product(product: Dict[str, Any]) -> bool:
    text = f"{product.get('category') or ''} {product.get('product_name') or ''}".lower()
    return any(hint in text for hint in PHYSICAL_HINTS)


def default_runners() -> StageRunners:
    """Runners wired to the configured AI gateway, search backends and media service."""
    from app.clients.ai_gateway import AIGatewayClient
    from app.clients.media import MediaServiceClient
    from app.clients.search_backends import GoogleSearchClient, SerperShoppingClient

    return StageRunners(AIGatewayClient(), GoogleSearchClient(), SerperShoppingClient(), MediaServiceClient())
