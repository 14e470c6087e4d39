"""
Pure validation helpers for OAuth 2.1 request parameters.

Nothing in here touches the database or the network: redirect URI checks,
PKCE (RFC 7636, S256 only), scope parsing/intersection and RFC 8707 resource
indicators.
"""

import base64
import hashlib
import hmac
import ipaddress
import re
from typing import Iterable, List, Optional
from urllib.parse import urlsplit

from reader_api.config import settings
from reader_api.constants import PKCE_MAX_LENGTH, PKCE_MIN_LENGTH

# RFC 7636 section 4.1: unreserved characters.
CODE_VERIFIER_RE = re.compile(r"^[A-Za-z0-9\-._~]+$")
# base64url alphabet, no padding.
CODE_CHALLENGE_RE = re.compile(r"^[A-Za-z0-9\-_]+$")
# RFC 3986 scheme syntax.
SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+\-.]*$")

LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}
FORBIDDEN_SCHEMES = {"javascript", "data", "file", "vbscript", "blob", "about"}


def _is_loopback(host: Optional[str]) -> bool:
    if not host:
        return False
    if host.lower() in LOOPBACK_HOSTS:
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def is_valid_redirect_uri_format(uri: Optional[str]) -> bool:
    """
    Check that a redirect URI is acceptable for registration / authorization.

    - absolute, no fragment
    - https anywhere, http only on loopback hosts
    - private-use schemes for native apps must be reverse-domain style
      (e.g. ``com.example.app:/callback``, RFC 8252 section 7.1)
    """
    if not uri or not isinstance(uri, str) or uri != uri.strip():
        return False
    try:
        parts = urlsplit(uri)
        host = parts.hostname
    except ValueError:
        return False
    if not parts.scheme or not SCHEME_RE.match(parts.scheme):
        return False
    if "#" in uri:
        return False
    scheme = parts.scheme.lower()
    if scheme == "https":
        return bool(host)
    if scheme == "http":
        return _is_loopback(host)
    if scheme in FORBIDDEN_SCHEMES:
        return False
    # Custom scheme: must look like a reversed domain name and carry a path.
    return "." in scheme and bool(parts.path or parts.netloc)


def validate_redirect_uri(uri: Optional[str], registered: Iterable[str]) -> bool:
    """
    Exact string comparison against the registered URIs, no prefix or wildcard matching.
    """
    if not uri:
        return False
    return any(uri == candidate for candidate in registered)


def is_valid_code_verifier(code_verifier: Optional[str]) -> bool:
    if not code_verifier or not isinstance(code_verifier, str):
        return False
    if not PKCE_MIN_LENGTH <= len(code_verifier) <= PKCE_MAX_LENGTH:
        return False
    return CODE_VERIFIER_RE.match(code_verifier) is not None


def is_valid_code_challenge(code_challenge: Optional[str]) -> bool:
    if not code_challenge or not isinstance(code_challenge, str):
        return False
    if not PKCE_MIN_LENGTH <= len(code_challenge) <= PKCE_MAX_LENGTH:
        return False
    return CODE_CHALLENGE_RE.match(code_challenge) is not None


def compute_code_challenge(code_verifier: str) -> str:
    """S256: BASE64URL(SHA256(ASCII(code_verifier))), unpadded."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify_pkce_s256(code_verifier: str, code_challenge: str) -> bool:
    """
    Constant-time check that a verifier hashes to the stored challenge.
    """
    if not is_valid_code_verifier(code_verifier) or not code_challenge:
        return False
    return hmac.compare_digest(
        compute_code_challenge(code_verifier).encode("ascii"),
        code_challenge.encode("ascii", errors="replace"),
    )


def parse_scopes(raw: Optional[str]) -> List[str]:
    """
    Split a space-delimited scope string, dropping duplicates but keeping order.
    Empty or missing scope falls back to the default scope.
    """
    scopes = []
    for scope in (raw or "").split():
        if scope not in scopes:
            scopes.append(scope)
    return scopes or [settings.oauth_default_scope]


def validate_scopes(requested: Iterable[str], allowed: Optional[Iterable[str]]) -> List[str]:
    """
    Intersection of requested and allowed scopes, in request order.
    An empty list means nothing grantable was requested (invalid_scope).
    """
    allowed_set = set(allowed if allowed is not None else settings.oauth_supported_scopes)
    return [scope for scope in requested if scope in allowed_set]


def is_valid_resource_indicator(resource: Optional[str]) -> bool:
    """RFC 8707: absolute URI, no fragment."""
    if not resource:
        return False
    try:
        parts = urlsplit(resource)
    except ValueError:
        return False
    return bool(parts.scheme and SCHEME_RE.match(parts.scheme)) and "#" not in resource
