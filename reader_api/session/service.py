"""
Session validation used by the authorization endpoint.
"""

import secrets
from datetime import timedelta
from typing import Optional

from fastapi import Request
from sqlalchemy import select

from reader_api.config import settings
from reader_api.database import get_session
from reader_api.session.schemas import UserSession
from reader_api.util import sha256_hex, utcnow

SESSION_DURATION_DAYS = 30


async def create_session(user_id: str, lifetime_days: int = SESSION_DURATION_DAYS) -> str:
    """
    Create a session for a user and return the raw cookie value.
    """
    token = secrets.token_urlsafe(32)
    async with get_session() as session:
        session.add(
            UserSession(
                token_hash=sha256_hex(token),
                user_id=user_id,
                expires_at=utcnow() + timedelta(days=lifetime_days),
            )
        )
    return token


async def validate_session(token: Optional[str]) -> Optional[str]:
    """
    Resolve a session cookie value to a user_id, or None if absent/expired/revoked.
    """
    if not token:
        return None
    async with get_session() as session:
        user_session = (
            await session.execute(
                select(UserSession).where(
                    UserSession.token_hash == sha256_hex(token),
                    UserSession.revoked_at.is_(None),
                    UserSession.expires_at > utcnow(),
                )
            )
        ).scalar_one_or_none()
        return user_session.user_id if user_session else None


async def get_session_user_id(request: Request) -> Optional[str]:
    """FastAPI dependency: the user_id behind the session cookie, if any."""
    return await validate_session(request.cookies.get(settings.session_cookie_name))
