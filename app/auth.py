"""Supabase token validation dependency for FastAPI."""
import logging

from fastapi import Header, HTTPException
from supabase import create_client

from app.config import get_settings
from app.services.errors import AuthenticationError

settings = get_settings()
logger = logging.getLogger(__name__)


def resolve_user_id(token: str) -> str:
    """Identity token in, user id out."""
    try:
        client = create_client(settings.supabase_url, settings.supabase_anon_key)
        user = client.auth.get_user(token).user
    except Exception as e:
        raise AuthenticationError(f"Token rejected: {e}") from e
    if user is None:
        raise AuthenticationError("Token rejected")
    return str(user.id)


def get_current_user_id(authorization: str = Header(None)) -> str:
    """Resolve the caller from `Authorization: Bearer <token>`; 401 otherwise."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid token")

    try:
        return resolve_user_id(authorization.replace("Bearer ", "", 1))
    except AuthenticationError as e:
        logger.warning(f"🔒 {e}")
        raise HTTPException(status_code=401, detail="Invalid token")
