"""User alerts plus the matching webhook event."""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.models.user_alert import UserAlert

logger = logging.getLogger(__name__)


def create_alert(
    db: Session,
    user_id: str,
    alert_type: str,
    title: str,
    message: Optional[str] = None,
    alert_data: Optional[Dict[str, Any]] = None,
    priority: str = "normal",
) -> UserAlert:
    """Insert and commit one user alert."""
    alert = UserAlert(
        user_id=user_id,
        alert_type=alert_type,
        title=title,
        message=message,
        alert_data=alert_data or {},
        priority=priority,
    )
    db.add(alert)
    db.commit()
    logger.info(f"🔔 Alert '{alert_type}' created for user {user_id}")
    return alert
