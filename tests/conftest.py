"""Pytest configuration and fixtures."""
import asyncio
import os
import tempfile

# Settings are cached on first import, so the test database must be set before any app import
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["STORAGE_BACKEND"] = "local"
os.environ.setdefault("LOG_FILE", os.path.join(tempfile.gettempdir(), "supplier-pipeline-tests.log"))

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from app.api.dependencies import (  # noqa: E402
    get_chunk_dispatcher,
    get_price_search,
    get_remote_fetcher,
    get_stage_runners,
)
from app.auth import get_current_user_id  # noqa: E402
from app.clients.search_backends import SearchHit  # noqa: E402
from app.database import Base, SessionLocal, engine, get_db  # noqa: E402
from app.main import app  # noqa: E402
from app.services import progress  # noqa: E402
from app.services.enrichment_stages import StageRunners  # noqa: E402
from app.services.errors import ExtractionError  # noqa: E402
from app.services.price_search import DualPriceSearch  # noqa: E402
from app.services.storage import LocalBlobStorage, get_storage  # noqa: E402

USER_ID = "user-1"

SUPPLIER_MAPPING = {
    "supplier_reference": "reference",
    "product_name": "designation",
    "ean": "ean",
    "purchase_price": "prix",
}


class FakeAI:
    """Answers complete_json by prompt keyword; prompts containing a `fail_on` keyword raise."""

    def __init__(self):
        self.prompts = []
        self.fail_on = set()

    async def complete_json(self, system, prompt, **kwargs):
        self.prompts.append(prompt)
        await asyncio.sleep(0)
        for keyword in self.fail_on:
            if keyword in prompt:
                raise ExtractionError(f"No JSON in AI response ({keyword})")
        if "Analyze this supplier product" in prompt:
            return {"basic_info": {"name": "Lampe"}, "key_features": ["LED"]}
        if "retail taxonomy" in prompt:
            return {"category": "Maison", "subcategory": "Eclairage", "tags": ["lampe"]}
        if "product photos" in prompt:
            return {"images": ["https://cdn.example.com/lampe.jpg"]}
        return {"value": "ok"}


class FakeEngine:
    """Search backend returning canned hits, or raising `error`."""

    def __init__(self, name, hits=None, error=None, configured=True):
        self.name = name
        self.hits = hits or []
        self.error = error
        self.configured = configured
        self.queries = []

    async def search(self, query, max_results=10):
        self.queries.append(query)
        if self.error:
            raise self.error
        return list(self.hits)

    async def search_images(self, query, max_results=5):
        if self.error:
            raise self.error
        return []


def hit(url, price, **kwargs):
    return SearchHit(title=kwargs.pop("title", "Lampe LED"), url=url, price=price, **kwargs)


@pytest.fixture(autouse=True)
def published(monkeypatch):
    """Capture progress messages instead of publishing them to Redis."""
    messages = []

    def fake_publish(job_id, status, processed, total, **kwargs):
        messages.append({"job_id": job_id, "status": status, "processed": processed, "total": total, **kwargs})

    monkeypatch.setattr(progress, "publish_progress", fake_publish)
    return messages


@pytest.fixture
def db():
    """Fresh schema on the shared in-memory SQLite database."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()

    yield session

    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def storage(tmp_path):
    return LocalBlobStorage(tmp_path / "blobs")


@pytest.fixture
def dispatched():
    """Chunk requests handed to the dispatcher, oldest first."""
    return []


@pytest.fixture
def fake_ai():
    return FakeAI()


@pytest.fixture
def remote_fetches():
    return []


@pytest.fixture
def engines():
    return {
        "a": FakeEngine("google", [hit("https://www.shop.fr/lampe", 20.0)]),
        "b": FakeEngine("serper", [hit("https://shop.fr/lampe?utm_source=x", 18.0, rating=4.5)]),
    }


@pytest.fixture
def client(db, storage, dispatched, fake_ai, remote_fetches, engines):
    """TestClient authenticated as USER_ID, with background work captured in lists."""

    def override_get_db():
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user_id] = lambda: USER_ID
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_chunk_dispatcher] = lambda: dispatched.append
    app.dependency_overrides[get_remote_fetcher] = lambda: lambda *args: remote_fetches.append(args)
    app.dependency_overrides[get_stage_runners] = lambda: StageRunners(fake_ai)
    app.dependency_overrides[get_price_search] = lambda: DualPriceSearch(engines["a"], engines["b"])

    yield TestClient(app)

    app.dependency_overrides.clear()
