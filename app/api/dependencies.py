"""Shared FastAPI dependencies for background dispatch and external collaborators."""
from app.services.enrichment_stages import StageRunners, default_runners
from app.services.price_search import DualPriceSearch
from app.tasks.import_tasks import dispatch_chunk, fetch_remote_import


def get_chunk_dispatcher():
    """Callable that queues the next chunk of an import."""
    return dispatch_chunk


def get_remote_fetcher():
    """Callable that queues a remote fetch (job_id, user_id, source, options)."""
    return fetch_remote_import.delay


def get_stage_runners() -> StageRunners:
    return default_runners()


def get_price_search() -> DualPriceSearch:
    runners = default_runners()
    return DualPriceSearch(runners.engine_a, runners.engine_b)
