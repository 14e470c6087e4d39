"""
Consent ledger: which scopes a user has approved for which client.
"""

from typing import Iterable, List

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from reader_api.database import get_session
from reader_api.oauth.schemas import OAuthClient, OAuthConsentGrant
from reader_api.oauth.tokens import revoke_client_tokens
from reader_api.util import utcnow


def _merge_scopes(existing: Iterable[str], new: Iterable[str]) -> List[str]:
    merged = list(existing or [])
    for scope in new:
        if scope not in merged:
            merged.append(scope)
    return merged


async def has_consent(user_id: str, client_id: str, scopes: Iterable[str]) -> bool:
    """
    True if an active grant covers every requested scope.
    """
    async with get_session() as session:
        grant = (
            await session.execute(
                select(OAuthConsentGrant).where(
                    OAuthConsentGrant.user_id == user_id,
                    OAuthConsentGrant.client_id == client_id,
                    OAuthConsentGrant.revoked_at.is_(None),
                )
            )
        ).scalar_one_or_none()
    if not grant:
        return False
    return set(scopes).issubset(set(grant.scopes or []))


async def record_consent(user_id: str, client_id: str, scopes: Iterable[str]) -> List[str]:
    """
    Upsert the grant for (user, client). Scopes are unioned with the existing
    active grant; a previously revoked grant starts over. Returns the stored scopes.
    """
    scopes = list(scopes)
    now = utcnow()
    async with get_session() as session:
        grant = (
            await session.execute(
                select(OAuthConsentGrant).where(
                    OAuthConsentGrant.user_id == user_id,
                    OAuthConsentGrant.client_id == client_id,
                )
            )
        ).scalar_one_or_none()
        if not grant:
            try:
                async with session.begin_nested():
                    grant = OAuthConsentGrant(
                        user_id=user_id,
                        client_id=client_id,
                        scopes=scopes,
                        created_at=now,
                        updated_at=now,
                    )
                    session.add(grant)
            except IntegrityError:
                # Concurrent approval inserted the row first.
                grant = (
                    await session.execute(
                        select(OAuthConsentGrant).where(
                            OAuthConsentGrant.user_id == user_id,
                            OAuthConsentGrant.client_id == client_id,
                        )
                    )
                ).scalar_one()
                grant.scopes = _merge_scopes(grant.scopes, scopes)
                grant.updated_at = now
        elif grant.revoked_at is not None:
            grant.scopes = scopes
            grant.revoked_at = None
            grant.created_at = now
            grant.updated_at = now
        else:
            grant.scopes = _merge_scopes(grant.scopes, scopes)
            grant.updated_at = now
        stored = list(grant.scopes)
    logger.info(f"Recorded consent user={user_id} client={client_id} scopes={' '.join(stored)}")
    return stored


async def revoke_consent(user_id: str, client_id: str) -> bool:
    """
    Revoke the user's grant for a client along with every token issued to that pair.
    """
    async with get_session() as session:
        grant = (
            await session.execute(
                select(OAuthConsentGrant).where(
                    OAuthConsentGrant.user_id == user_id,
                    OAuthConsentGrant.client_id == client_id,
                    OAuthConsentGrant.revoked_at.is_(None),
                )
            )
        ).scalar_one_or_none()
        if not grant:
            return False
        grant.revoked_at = utcnow()
    revoked = await revoke_client_tokens(user_id, client_id)
    logger.info(f"Revoked consent user={user_id} client={client_id}, {revoked} token(s) revoked")
    return True


async def list_consents(user_id: str) -> List[tuple[OAuthConsentGrant, OAuthClient | None]]:
    """
    Active grants for a user, newest first, paired with their client (if it still exists).
    """
    async with get_session() as session:
        rows = (
            await session.execute(
                select(OAuthConsentGrant, OAuthClient)
                .outerjoin(OAuthClient, OAuthClient.client_id == OAuthConsentGrant.client_id)
                .where(
                    OAuthConsentGrant.user_id == user_id,
                    OAuthConsentGrant.revoked_at.is_(None),
                )
                .order_by(OAuthConsentGrant.updated_at.desc())
            )
        ).all()
    return [(grant, client) for grant, client in rows]
