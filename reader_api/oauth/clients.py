"""
Client registry: dynamic registration (RFC 7591) and cached client lookup.
"""

from typing import Optional

from async_lru import alru_cache
from loguru import logger
from sqlalchemy import select

from reader_api.config import settings
from reader_api.database import get_session
from reader_api.oauth.errors import RegistrationError
from reader_api.oauth.schemas import ClientRegistrationRequest, OAuthClient


class ClientNotFound(LookupError):
    pass


@alru_cache(maxsize=1000, ttl=300)
async def _load_client(client_id: str) -> OAuthClient:
    """
    Load a client from the database. Misses raise, so only hits are cached
    (clients are immutable, a positive entry never goes stale).
    """
    async with get_session() as session:
        client = (
            await session.execute(select(OAuthClient).where(OAuthClient.client_id == client_id))
        ).scalar_one_or_none()
    if not client:
        raise ClientNotFound(client_id)
    return client


async def resolve_client(client_id: Optional[str]) -> Optional[OAuthClient]:
    """
    Look up a registered client, None if unknown.
    """
    if not client_id:
        return None
    try:
        return await _load_client(client_id)
    except ClientNotFound:
        return None


def _resolve_requested_scopes(raw_scope: Optional[str]) -> list[str]:
    if raw_scope is None or not raw_scope.strip():
        return [settings.oauth_default_scope]
    requested = list(dict.fromkeys(raw_scope.split()))
    unsupported = [scope for scope in requested if scope not in settings.oauth_supported_scopes]
    if unsupported:
        raise RegistrationError(f"Unsupported scope(s): {', '.join(unsupported)}")
    return requested


async def register_client(request: ClientRegistrationRequest) -> OAuthClient:
    """
    Persist a new public client. Field level checks already ran in the
    request model, scopes are checked against what this server supports.
    """
    allowed_scopes = _resolve_requested_scopes(request.scope)
    client = OAuthClient.create(
        name=request.client_name,
        redirect_uris=request.redirect_uris,
        allowed_scopes=allowed_scopes,
    )
    async with get_session() as session:
        session.add(client)
    logger.info(
        f"Registered OAuth client {client.client_id} ({client.name!r}) "
        f"redirect_uris={len(client.redirect_uris)} scopes={' '.join(allowed_scopes)}"
    )
    return client
