"""Client for the product media (video) generation service."""
import logging
from typing import Any, Dict, Optional

import httpx

from app.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


class MediaServiceClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url if base_url is not None else settings.media_service_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.media_service_api_key
        self.timeout = timeout
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    async def request_video(self, product_name: str, description: Optional[str], image_urls: list) -> Dict[str, Any]:
        """Submit a video generation request; the service answers with a job handle."""
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        payload = {"product_name": product_name, "description": description, "images": image_urls[:5]}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(f"{self.base_url}/videos", json=payload, headers=headers)
            response.raise_for_status()
        return response.json()
