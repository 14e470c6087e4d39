"""
Database models for the OAuth 2.1 authorization server.

Tables:
-------
- oauth_clients: dynamically registered public clients (PKCE only, no secret)
- oauth_authorization_codes: single-use codes, stored as SHA-256 hashes
- oauth_access_tokens / oauth_refresh_tokens: token rows keyed by the token_id
  embedded in the token string, secret part stored as an argon2 hash
- oauth_consent_grants: per (user, client) approved scope sets

Single use is enforced with conditional updates on the `consumed` / `used`
columns, never by deleting rows (see janitor.py for cleanup).
"""

import re
import secrets
import string
from typing import List, Optional, Self

from passlib.hash import argon2
from pydantic import BaseModel, ConfigDict, field_validator
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import ARRAY

from reader_api.constants import (
    ACCESS_TOKEN_PREFIX,
    CLIENT_ID_PREFIX,
    MAX_CLIENT_NAME_LENGTH,
    MAX_REDIRECT_URIS,
    REFRESH_TOKEN_PREFIX,
)
from reader_api.database import Base, generate_uuid
from reader_api.oauth.validation import is_valid_redirect_uri_format
from reader_api.util import sha256_hex, utcnow

# Postgres text[]; JSON list on SQLite.
StringList = ARRAY(String).with_variant(JSON(), "sqlite")

SUPPORTED_GRANT_TYPES = ("authorization_code", "refresh_token")
SUPPORTED_RESPONSE_TYPES = ("code",)

_TOKEN_ALPHABET = string.ascii_letters + string.digits


class ClientRegistrationRequest(BaseModel):
    """RFC 7591 client metadata accepted by POST /register."""

    model_config = ConfigDict(extra="ignore")

    client_name: str
    redirect_uris: List[str]
    scope: Optional[str] = None
    grant_types: Optional[List[str]] = None
    response_types: Optional[List[str]] = None
    token_endpoint_auth_method: Optional[str] = None

    @field_validator("client_name")
    @classmethod
    def validate_client_name(cls, v):
        v = (v or "").strip()
        if not v:
            raise ValueError("client_name is required")
        if len(v) > MAX_CLIENT_NAME_LENGTH:
            raise ValueError(f"client_name cannot exceed {MAX_CLIENT_NAME_LENGTH} characters")
        return v

    @field_validator("redirect_uris")
    @classmethod
    def validate_redirect_uris(cls, v):
        if not v:
            raise ValueError("At least one redirect URI is required")
        if len(v) > MAX_REDIRECT_URIS:
            raise ValueError(f"Maximum {MAX_REDIRECT_URIS} redirect URIs allowed")
        for uri in v:
            if not is_valid_redirect_uri_format(uri):
                raise ValueError(f"Invalid redirect URI: {uri}")
        return list(dict.fromkeys(v))

    @field_validator("grant_types")
    @classmethod
    def validate_grant_types(cls, v):
        if v is not None:
            unsupported = [g for g in v if g not in SUPPORTED_GRANT_TYPES]
            if unsupported:
                raise ValueError(f"Unsupported grant_types: {', '.join(unsupported)}")
        return v

    @field_validator("response_types")
    @classmethod
    def validate_response_types(cls, v):
        if v is not None:
            unsupported = [r for r in v if r not in SUPPORTED_RESPONSE_TYPES]
            if unsupported:
                raise ValueError(f"Unsupported response_types: {', '.join(unsupported)}")
        return v

    @field_validator("token_endpoint_auth_method")
    @classmethod
    def validate_auth_method(cls, v):
        if v is not None and v != "none":
            raise ValueError("Only public clients (token_endpoint_auth_method=none) are supported")
        return v


class OAuthClient(Base):
    """Registered OAuth client. Immutable after registration."""

    __tablename__ = "oauth_clients"

    id = Column(String, primary_key=True, default=generate_uuid)
    client_id = Column(String, unique=True, nullable=False, index=True)
    name = Column(String(MAX_CLIENT_NAME_LENGTH), nullable=False)
    redirect_uris = Column(StringList, nullable=False)
    allowed_scopes = Column(StringList, nullable=False)
    grant_types = Column(StringList, nullable=False, default=lambda: list(SUPPORTED_GRANT_TYPES))
    is_public = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    @classmethod
    def generate_client_id(cls) -> str:
        """Generate a unique client ID."""
        return f"{CLIENT_ID_PREFIX}{''.join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(24))}"

    @classmethod
    def create(cls, name: str, redirect_uris: List[str], allowed_scopes: List[str]) -> Self:
        return cls(
            id=generate_uuid(),
            client_id=cls.generate_client_id(),
            name=name,
            redirect_uris=list(redirect_uris),
            allowed_scopes=list(allowed_scopes),
            grant_types=list(SUPPORTED_GRANT_TYPES),
            is_public=True,
            created_at=utcnow(),
        )


class OAuthAuthorizationCode(Base):
    """
    Authorization code issued after consent, consumed exactly once at the token endpoint.
    """

    __tablename__ = "oauth_authorization_codes"

    id = Column(String, primary_key=True, default=generate_uuid)
    code_hash = Column(String, unique=True, nullable=False, index=True)
    client_id = Column(String, nullable=False)
    user_id = Column(String, nullable=False, index=True)
    redirect_uri = Column(Text, nullable=False)
    scopes = Column(StringList, nullable=False)
    code_challenge = Column(String, nullable=False)
    code_challenge_method = Column(String, nullable=False, default="S256")
    resource = Column(Text, nullable=True)
    state = Column(Text, nullable=True)
    consumed = Column(Boolean, default=False, nullable=False)
    consumed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    expires_at = Column(DateTime, nullable=False, index=True)

    @staticmethod
    def generate_code() -> str:
        """256 bits of randomness, base64url."""
        return secrets.token_urlsafe(32)

    @staticmethod
    def hash_code(code: str) -> str:
        """SHA-256, not argon2: the hash is the lookup key and codes live for minutes."""
        return sha256_hex(code)


class PrefixedTokenMixin:
    """
    Token strings look like ``{prefix}{token_id}.{secret}``: the token_id gives
    an O(1) primary key lookup and only the secret is hashed (argon2).
    """

    PREFIX = ""

    @classmethod
    def generate_token(cls, token_id: str) -> str:
        secret = "".join(secrets.choice(_TOKEN_ALPHABET) for _ in range(48))
        return f"{cls.PREFIX}{token_id}.{secret}"

    @classmethod
    def hash_token(cls, token: str) -> str:
        _, secret = cls.parse_token(token)
        return argon2.hash(secret or token)

    @classmethod
    def parse_token(cls, token: str) -> tuple[Optional[str], Optional[str]]:
        """
        Parse a token string into (token_id, secret).
        Returns (None, None) if format is invalid.
        """
        if not token or not token.startswith(cls.PREFIX):
            return None, None
        parts = token[len(cls.PREFIX) :].split(".", 1)
        if len(parts) != 2 or not parts[0] or not parts[1]:
            return None, None
        return parts[0], parts[1]

    @classmethod
    def could_be_valid(cls, token: str) -> bool:
        """Fast format check before touching the database."""
        token_id, secret = cls.parse_token(token)
        if not token_id:
            return False
        return len(token_id) == 36 and len(secret) == 48 and re.match(r"^[a-zA-Z0-9]+$", secret) is not None

    def verify_secret(self, token: str) -> bool:
        _, secret = self.parse_token(token)
        if not secret:
            return False
        try:
            return argon2.verify(secret, self.token_hash)
        except (ValueError, TypeError):
            return False


class OAuthAccessToken(PrefixedTokenMixin, Base):
    """Short-lived bearer token. Never rotated, it simply expires."""

    __tablename__ = "oauth_access_tokens"
    PREFIX = ACCESS_TOKEN_PREFIX

    token_id = Column(String, primary_key=True, default=generate_uuid)
    token_hash = Column(String, nullable=False)
    family_id = Column(String, nullable=False, index=True)
    client_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    scopes = Column(StringList, nullable=False)
    resource = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, server_default=func.now())
    revoked = Column(Boolean, default=False, nullable=False)
    last_used_at = Column(DateTime, nullable=True)


class OAuthRefreshToken(PrefixedTokenMixin, Base):
    """
    Single-use refresh token. Each use marks it used and mints a replacement in
    the same family; presenting a used token again revokes the whole family.
    """

    __tablename__ = "oauth_refresh_tokens"
    PREFIX = REFRESH_TOKEN_PREFIX

    token_id = Column(String, primary_key=True, default=generate_uuid)
    token_hash = Column(String, nullable=False)
    family_id = Column(String, nullable=False, index=True)
    client_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    scopes = Column(StringList, nullable=False)
    resource = Column(Text, nullable=True)
    access_token_id = Column(String, nullable=True)
    replaced_by_id = Column(String, nullable=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, server_default=func.now())
    used = Column(Boolean, default=False, nullable=False)
    used_at = Column(DateTime, nullable=True)
    revoked = Column(Boolean, default=False, nullable=False)


class OAuthConsentGrant(Base):
    """
    A user's standing approval for a client; scopes only ever grow until revoked.
    """

    __tablename__ = "oauth_consent_grants"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, nullable=False, index=True)
    client_id = Column(String, nullable=False, index=True)
    scopes = Column(StringList, nullable=False)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    revoked_at = Column(DateTime, nullable=True)

    __table_args__ = (UniqueConstraint("user_id", "client_id", name="constraint_oauth_consent_user_client"),)
