"""Import job model for tracking chunked supplier imports."""
from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from app.database import Base
from app.utils import new_id


class ImportJob(Base):
    """One supplier file import, shared by every chunk invocation of its chain."""

    __tablename__ = "import_jobs"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), nullable=False, index=True)
    supplier_id = Column(String(64), nullable=False, index=True)
    status = Column(
        String(20), nullable=False, default="pending"
    )  # pending, running, completed, failed
    progress_total = Column(Integer, default=0, nullable=False)
    progress_current = Column(Integer, default=0, nullable=False)
    products_imported = Column(Integer, default=0, nullable=False)
    products_matched = Column(Integer, default=0, nullable=False)
    products_errors = Column(Integer, default=0, nullable=False)
    products_skipped = Column(Integer, default=0, nullable=False)
    cancel_requested = Column(Boolean, default=False, nullable=False)
    error_message = Column(Text, nullable=True)
    # checkpoints, source_file, column_mapping, delimiter, skip_rows, cursor, ...
    job_metadata = Column("metadata", JSON, default=dict, nullable=False)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )

    @property
    def checkpoints(self) -> list:
        return list((self.job_metadata or {}).get("checkpoints", []))

    @property
    def correlation_id(self):
        return (self.job_metadata or {}).get("correlation_id")

    def update_metadata(self, **values) -> None:
        """Replace the JSON blob so SQLAlchemy notices the change."""
        merged = dict(self.job_metadata or {})
        merged.update(values)
        self.job_metadata = merged

    def __repr__(self):
        return f"<ImportJob(id='{self.id}', status='{self.status}', progress={self.progress_current}/{self.progress_total})>"
