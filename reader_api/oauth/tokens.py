"""
Token issuer: access/refresh token minting, refresh rotation, validation and revocation.

Every pair minted from one code exchange, and every pair rotated out of it,
shares a family_id. Presenting a refresh token that was already used is
treated as theft and revokes the whole family.
"""

import uuid
from datetime import timedelta
from typing import List, Optional

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from reader_api.constants import ACCESS_TOKEN_EXPIRY_SECONDS, REFRESH_TOKEN_EXPIRY_DAYS
from reader_api.database import get_session
from reader_api.oauth.response import TokenPair
from reader_api.oauth.schemas import OAuthAccessToken, OAuthRefreshToken
from reader_api.util import mask_secret, utcnow


class AccessTokenInfo:
    """Result of access token validation."""

    def __init__(self, user_id: str, client_id: str, scopes: List[str], resource: Optional[str] = None):
        self.user_id = user_id
        self.client_id = client_id
        self.scopes = list(scopes or [])
        self.resource = resource

    def has_scopes(self, *required: str) -> bool:
        return all(scope in self.scopes for scope in required)


async def _mint_pair(
    session: AsyncSession,
    client_id: str,
    user_id: str,
    scopes: List[str],
    resource: Optional[str],
    family_id: str,
) -> tuple[TokenPair, str, str]:
    """
    Add a new access + refresh token to the session, returns (pair, access_id, refresh_id).
    """
    now = utcnow()

    access_token_id = str(uuid.uuid4())
    access_token = OAuthAccessToken.generate_token(access_token_id)
    session.add(
        OAuthAccessToken(
            token_id=access_token_id,
            token_hash=OAuthAccessToken.hash_token(access_token),
            family_id=family_id,
            client_id=client_id,
            user_id=user_id,
            scopes=list(scopes),
            resource=resource,
            created_at=now,
            expires_at=now + timedelta(seconds=ACCESS_TOKEN_EXPIRY_SECONDS),
            revoked=False,
        )
    )

    refresh_token_id = str(uuid.uuid4())
    refresh_token = OAuthRefreshToken.generate_token(refresh_token_id)
    session.add(
        OAuthRefreshToken(
            token_id=refresh_token_id,
            token_hash=OAuthRefreshToken.hash_token(refresh_token),
            family_id=family_id,
            client_id=client_id,
            user_id=user_id,
            scopes=list(scopes),
            resource=resource,
            access_token_id=access_token_id,
            created_at=now,
            expires_at=now + timedelta(days=REFRESH_TOKEN_EXPIRY_DAYS),
            used=False,
            revoked=False,
        )
    )

    pair = TokenPair(
        access_token=access_token,
        refresh_token=refresh_token,
        token_type="bearer",
        expires_in=ACCESS_TOKEN_EXPIRY_SECONDS,
        scope=" ".join(scopes),
    )
    return pair, access_token_id, refresh_token_id


async def create_tokens(
    client_id: str,
    user_id: str,
    scopes: List[str],
    resource: Optional[str] = None,
    family_id: Optional[str] = None,
) -> TokenPair:
    """
    Mint a fresh token pair, starting a new family unless one is given.
    """
    family_id = family_id or str(uuid.uuid4())
    async with get_session() as session:
        pair, _, refresh_id = await _mint_pair(session, client_id, user_id, scopes, resource, family_id)
    logger.info(
        f"Issued tokens for client={client_id} user={user_id} family={mask_secret(family_id)} "
        f"refresh={mask_secret(refresh_id)} scope={pair.scope!r}"
    )
    return pair


async def _revoke_family(session: AsyncSession, family_id: str) -> None:
    await session.execute(
        update(OAuthRefreshToken)
        .where(OAuthRefreshToken.family_id == family_id)
        .values(revoked=True)
        .execution_options(synchronize_session=False)
    )
    await session.execute(
        update(OAuthAccessToken)
        .where(OAuthAccessToken.family_id == family_id)
        .values(revoked=True)
        .execution_options(synchronize_session=False)
    )


async def rotate_refresh_token(refresh_token: str, client_id: str) -> Optional[TokenPair]:
    """
    Exchange a refresh token for a new pair in the same family.

    Returns None for malformed, unknown, mismatched, expired or revoked tokens.
    A token that was already used (including losing a concurrent race for the
    same token) revokes its family before returning None.
    """
    token_id, _ = OAuthRefreshToken.parse_token(refresh_token)
    if not token_id:
        return None

    async with get_session() as session:
        token = (
            await session.execute(select(OAuthRefreshToken).where(OAuthRefreshToken.token_id == token_id))
        ).scalar_one_or_none()
        if not token or not token.verify_secret(refresh_token):
            logger.warning(f"Rejected refresh token {mask_secret(refresh_token)}: unknown or bad secret")
            return None
        if token.client_id != client_id:
            logger.warning(
                f"Rejected refresh token {mask_secret(refresh_token)}: issued to {token.client_id}, presented by {client_id}"
            )
            return None
        if token.revoked:
            logger.warning(f"Rejected refresh token {mask_secret(refresh_token)}: revoked")
            return None
        family_id = token.family_id
        if token.used:
            logger.error(
                f"Refresh token reuse detected for client={client_id} user={token.user_id}, "
                f"revoking family {mask_secret(family_id)}"
            )
            await _revoke_family(session, family_id)
            return None

        now = utcnow()
        claimed = (
            await session.execute(
                update(OAuthRefreshToken)
                .where(
                    OAuthRefreshToken.token_id == token_id,
                    OAuthRefreshToken.used.is_(False),
                    OAuthRefreshToken.revoked.is_(False),
                    OAuthRefreshToken.expires_at > now,
                )
                .values(used=True, used_at=now)
                .returning(
                    OAuthRefreshToken.user_id,
                    OAuthRefreshToken.scopes,
                    OAuthRefreshToken.resource,
                    OAuthRefreshToken.access_token_id,
                )
                .execution_options(synchronize_session=False)
            )
        ).one_or_none()

        if claimed is None:
            if token.expires_at <= now:
                logger.warning(f"Rejected refresh token {mask_secret(refresh_token)}: expired")
                return None
            logger.error(
                f"Refresh token {mask_secret(refresh_token)} claimed concurrently, revoking family {mask_secret(family_id)}"
            )
            await _revoke_family(session, family_id)
            return None

        pair, _, new_refresh_id = await _mint_pair(
            session,
            client_id,
            claimed.user_id,
            claimed.scopes,
            claimed.resource,
            family_id,
        )
        await session.execute(
            update(OAuthRefreshToken)
            .where(OAuthRefreshToken.token_id == token_id)
            .values(replaced_by_id=new_refresh_id)
            .execution_options(synchronize_session=False)
        )
        if claimed.access_token_id:
            await session.execute(
                update(OAuthAccessToken)
                .where(OAuthAccessToken.token_id == claimed.access_token_id)
                .values(revoked=True)
                .execution_options(synchronize_session=False)
            )

    logger.info(
        f"Rotated refresh token {mask_secret(refresh_token)} -> {mask_secret(new_refresh_id)} "
        f"client={client_id} family={mask_secret(family_id)}"
    )
    return pair


async def validate_access_token(token: str) -> Optional[AccessTokenInfo]:
    """
    Validate a bearer access token, None if invalid, expired or revoked.
    """
    if not OAuthAccessToken.could_be_valid(token):
        return None
    token_id, _ = OAuthAccessToken.parse_token(token)
    now = utcnow()
    async with get_session() as session:
        access = (
            await session.execute(select(OAuthAccessToken).where(OAuthAccessToken.token_id == token_id))
        ).scalar_one_or_none()
        if not access or not access.verify_secret(token):
            return None
        if access.revoked or access.expires_at <= now:
            return None
        access.last_used_at = now
        return AccessTokenInfo(
            user_id=access.user_id,
            client_id=access.client_id,
            scopes=access.scopes,
            resource=access.resource,
        )


async def revoke_token(token: str) -> bool:
    """
    RFC 7009 revocation. Access tokens are revoked individually, refresh tokens
    take their whole family with them. Returns False for unknown tokens.
    """
    if not token:
        return False
    if token.startswith(OAuthRefreshToken.PREFIX):
        token_id, _ = OAuthRefreshToken.parse_token(token)
        if not token_id:
            return False
        async with get_session() as session:
            refresh = (
                await session.execute(select(OAuthRefreshToken).where(OAuthRefreshToken.token_id == token_id))
            ).scalar_one_or_none()
            if not refresh or not refresh.verify_secret(token):
                return False
            await _revoke_family(session, refresh.family_id)
        logger.info(f"Revoked refresh token {mask_secret(token)} and its family")
        return True

    token_id, _ = OAuthAccessToken.parse_token(token)
    if not token_id:
        return False
    async with get_session() as session:
        access = (
            await session.execute(select(OAuthAccessToken).where(OAuthAccessToken.token_id == token_id))
        ).scalar_one_or_none()
        if not access or not access.verify_secret(token):
            return False
        access.revoked = True
    logger.info(f"Revoked access token {mask_secret(token)}")
    return True


async def revoke_client_tokens(user_id: str, client_id: str) -> int:
    """
    Revoke every live token a client holds for a user. Returns the number of rows touched.
    """
    async with get_session() as session:
        refresh_result = await session.execute(
            update(OAuthRefreshToken)
            .where(
                OAuthRefreshToken.user_id == user_id,
                OAuthRefreshToken.client_id == client_id,
                OAuthRefreshToken.revoked.is_(False),
            )
            .values(revoked=True)
            .execution_options(synchronize_session=False)
        )
        access_result = await session.execute(
            update(OAuthAccessToken)
            .where(
                OAuthAccessToken.user_id == user_id,
                OAuthAccessToken.client_id == client_id,
                OAuthAccessToken.revoked.is_(False),
            )
            .values(revoked=True)
            .execution_options(synchronize_session=False)
        )
    return (refresh_result.rowcount or 0) + (access_result.rowcount or 0)
