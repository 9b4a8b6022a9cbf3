"""Database models."""
from app.models.enrichment_task import EnrichmentTask
from app.models.import_job import ImportJob
from app.models.inbox_message import InboxMessage
from app.models.price_monitoring import CompetitorSite, PriceMonitoring
from app.models.product_analysis import ProductAnalysis, ProductLink
from app.models.supplier_product import SupplierProduct
from app.models.user_alert import UserAlert
from app.models.webhook import Webhook

__all__ = [
    "CompetitorSite",
    "EnrichmentTask",
    "ImportJob",
    "InboxMessage",
    "PriceMonitoring",
    "ProductAnalysis",
    "ProductLink",
    "SupplierProduct",
    "UserAlert",
    "Webhook",
]
