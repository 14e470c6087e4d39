"""
Browser session rows (owned by the login system, read here).
"""

from sqlalchemy import Column, String, DateTime, func

from reader_api.database import Base, generate_uuid


class UserSession(Base):
    __tablename__ = "sessions"

    session_id = Column(String, primary_key=True, default=generate_uuid)
    # SHA-256 of the cookie value; the raw token is never stored.
    token_hash = Column(String, unique=True, nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False)
    revoked_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
