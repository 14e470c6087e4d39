"""
OAuth error codes (RFC 6749, RFC 7591) and error response helpers.
"""

from enum import Enum
from typing import Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

from fastapi.responses import JSONResponse


class OAuthErrorCode(str, Enum):
    INVALID_REQUEST = "invalid_request"
    INVALID_CLIENT = "invalid_client"
    INVALID_GRANT = "invalid_grant"
    UNAUTHORIZED_CLIENT = "unauthorized_client"
    ACCESS_DENIED = "access_denied"
    UNSUPPORTED_RESPONSE_TYPE = "unsupported_response_type"
    UNSUPPORTED_GRANT_TYPE = "unsupported_grant_type"
    INVALID_SCOPE = "invalid_scope"
    SERVER_ERROR = "server_error"
    TEMPORARILY_UNAVAILABLE = "temporarily_unavailable"
    INVALID_CLIENT_METADATA = "invalid_client_metadata"


class RegistrationError(Exception):
    """Dynamic client registration rejected (RFC 7591 section 3.2.2)."""

    def __init__(self, description: str, error: OAuthErrorCode = OAuthErrorCode.INVALID_CLIENT_METADATA):
        super().__init__(description)
        self.error = error
        self.description = description


NO_STORE_HEADERS = {
    "Cache-Control": "no-store",
    "Pragma": "no-cache",
}


def oauth_error_body(error: OAuthErrorCode | str, description: Optional[str] = None) -> dict:
    body = {"error": error.value if isinstance(error, OAuthErrorCode) else error}
    if description:
        body["error_description"] = description
    return body


def oauth_error_response(
    error: OAuthErrorCode | str,
    description: Optional[str] = None,
    status_code: int = 400,
    headers: Optional[dict] = None,
) -> JSONResponse:
    """Direct JSON error, used whenever a redirect is not (yet) safe."""
    return JSONResponse(
        content=oauth_error_body(error, description),
        status_code=status_code,
        headers={**NO_STORE_HEADERS, **(headers or {})},
    )


def build_redirect_url(redirect_uri: str, params: dict) -> str:
    """
    Append query parameters to an already-validated redirect URI, keeping any
    query string it was registered with.
    """
    parts = urlsplit(redirect_uri)
    query = urlencode({k: v for k, v in params.items() if v is not None and v != ""})
    if parts.query:
        query = f"{parts.query}&{query}" if query else parts.query
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, ""))

