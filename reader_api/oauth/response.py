"""
Response models for the OAuth endpoints.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class TokenPair(BaseModel):
    """OAuth 2.1 token response (RFC 6749 section 5.1)."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_token: str
    scope: str


class TokenErrorResponse(BaseModel):
    """OAuth error response following RFC 6749."""

    error: str
    error_description: Optional[str] = None


class ClientRegistrationResponse(BaseModel):
    """RFC 7591 client information response."""

    client_id: str
    client_id_issued_at: int
    client_name: str
    redirect_uris: List[str]
    grant_types: List[str]
    response_types: List[str]
    token_endpoint_auth_method: str
    scope: str


class ConsentGrantResponse(BaseModel):
    """A client the current user has authorized."""

    client_id: str
    client_name: Optional[str] = None
    scopes: List[str]
    created_at: datetime
    updated_at: Optional[datetime] = None


class UserInfoResponse(BaseModel):
    """Identity behind a bearer token."""

    sub: str
    client_id: str
    scope: str


class AuthorizationServerMetadata(BaseModel):
    """RFC 8414 authorization server metadata."""

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    registration_endpoint: str
    revocation_endpoint: str
    scopes_supported: List[str]
    response_types_supported: List[str] = ["code"]
    response_modes_supported: List[str] = ["query"]
    grant_types_supported: List[str] = ["authorization_code", "refresh_token"]
    token_endpoint_auth_methods_supported: List[str] = ["none"]
    revocation_endpoint_auth_methods_supported: List[str] = ["none"]
    code_challenge_methods_supported: List[str] = ["S256"]
