"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.enrichment import router as enrichment_router
from app.api.imports import router as imports_router
from app.api.price_search import router as price_search_router
from app.api.webhooks import router as webhooks_router
from app.config import get_settings
from app.database import engine, Base
from app.models import EnrichmentTask, ImportJob, Webhook  # noqa: F401 - Import to register models

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(),  # Console output
        logging.FileHandler(settings.log_file),  # File output
    ],
)

# Set specific log levels for noisy libraries
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create database tables on startup."""
    Base.metadata.create_all(bind=engine)
    logger.info(f"🚀 Supplier pipeline API started ({settings.app_env})")
    yield


app = FastAPI(
    title="Supplier Pipeline",
    description="Chunked supplier catalog imports, product enrichment and competitor price search",
    version="0.1.0",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify exact origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(imports_router)
app.include_router(enrichment_router)
app.include_router(price_search_router)
app.include_router(webhooks_router)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
