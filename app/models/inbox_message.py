"""Inbox record for supplier files received by email."""
from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from app.database import Base


class InboxMessage(Base):
    """An email attachment that started an import; mirrors its job's outcome."""

    __tablename__ = "inbox_messages"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    supplier_id = Column(String(64), nullable=True)
    sender = Column(String(255), nullable=True)
    subject = Column(String(500), nullable=True)
    attachment_name = Column(String(500), nullable=True)
    status = Column(String(20), nullable=False, default="pending")
    import_job_id = Column(String(36), nullable=True, index=True)
    error_message = Column(Text, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)
