"""Import request and response schemas."""
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class ImportStartResponse(BaseModel):
    """Returned with 202 once the file is staged and the first chunk dispatched."""

    job_id: str
    products_queued: int
    message: str = "Import started, chunks are processed in background"


class RemoteImportRequest(BaseModel):
    """Pull a supplier file from FTP or HTTP(S), then import it."""

    supplier_id: str = Field(..., min_length=1, max_length=64)
    kind: str = Field(..., pattern="^(ftp|http)$")
    url: Optional[str] = None
    host: Optional[str] = None
    port: int = 21
    username: str = "anonymous"
    password: str = ""
    remote_path: Optional[str] = None
    use_tls: bool = False
    column_mapping: Dict[str, Any]
    delimiter: Optional[str] = None
    skip_rows: int = Field(0, ge=0)
    has_header_row: Optional[bool] = True


class RemoteImportResponse(BaseModel):
    job_id: str
    status: str
    message: str = "Fetching supplier file in background"


class ImportJobResponse(BaseModel):
    """Import job status, for polling."""

    id: str
    supplier_id: str
    status: str
    progress_total: int
    progress_current: int
    products_imported: int
    products_matched: int
    products_errors: int
    products_skipped: int
    cancel_requested: bool
    error_message: Optional[str] = None
    checkpoints: List[str] = []
    correlation_id: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ChunkRequestSchema(BaseModel):
    """Body of the chunk re-entry point."""

    checkpoint_path: str
    offset: int = Field(0, ge=0)
    limit: int = Field(1000, ge=1)
    correlation_id: Optional[str] = None
    retry_count: int = Field(0, ge=0)


class ChunkResponse(BaseModel):
    status: str
    processed: int
    success_count: int
    matched_count: int
    error_count: int
    skipped_count: int


def parse_column_mapping(raw: str) -> Dict[str, Any]:
    """Column mapping arrives as a JSON form field on multipart uploads."""
    try:
        mapping = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"column_mapping is not valid JSON: {e}") from e
    if not isinstance(mapping, dict):
        raise ValueError("column_mapping must be a JSON object")
    return mapping


class ColumnMapping(BaseModel):
    """Validated mapping, used by the upload form."""

    mapping: Dict[str, Any]

    @field_validator("mapping")
    @classmethod
    def needs_identifier(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        if not any(key in value for key in ("supplier_reference", "product_name", "ean")):
            raise ValueError("column_mapping must map supplier_reference, product_name or ean")
        return value
