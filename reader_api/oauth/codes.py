"""
Authorization code store.

Codes are claimed with one conditional UPDATE ... RETURNING: whichever request
flips `consumed` first gets the row, everyone else gets nothing and is told
invalid_grant, indistinguishable from an unknown code.
"""

from datetime import timedelta
from typing import List, Optional

from loguru import logger
from sqlalchemy import update

from reader_api.constants import AUTH_CODE_EXPIRY_SECONDS
from reader_api.database import get_session
from reader_api.oauth.schemas import OAuthAuthorizationCode
from reader_api.oauth.validation import verify_pkce_s256
from reader_api.util import mask_secret, utcnow


class CodeGrant:
    """What a successfully consumed code entitles the client to."""

    def __init__(self, user_id: str, client_id: str, scopes: List[str], resource: Optional[str] = None):
        self.user_id = user_id
        self.client_id = client_id
        self.scopes = list(scopes or [])
        self.resource = resource


async def issue_code(
    client_id: str,
    user_id: str,
    redirect_uri: str,
    scopes: List[str],
    code_challenge: str,
    resource: Optional[str] = None,
    state: Optional[str] = None,
) -> str:
    """
    Create a single-use authorization code and return the plain value.
    Only the SHA-256 hash is persisted.
    """
    code = OAuthAuthorizationCode.generate_code()
    now = utcnow()
    async with get_session() as session:
        session.add(
            OAuthAuthorizationCode(
                code_hash=OAuthAuthorizationCode.hash_code(code),
                client_id=client_id,
                user_id=user_id,
                redirect_uri=redirect_uri,
                scopes=list(scopes),
                code_challenge=code_challenge,
                code_challenge_method="S256",
                resource=resource,
                state=state,
                consumed=False,
                created_at=now,
                expires_at=now + timedelta(seconds=AUTH_CODE_EXPIRY_SECONDS),
            )
        )
    logger.info(f"Issued authorization code {mask_secret(code)} for client={client_id} user={user_id}")
    return code


async def consume_code(
    code: str,
    client_id: str,
    redirect_uri: str,
    code_verifier: str,
) -> Optional[CodeGrant]:
    """
    Atomically claim a code and verify PKCE against the claimed row.

    Returns None when the code is unknown, expired, already consumed, bound to
    another client or redirect URI, or the verifier does not match. A failed
    PKCE check still leaves the code consumed.
    """
    if not code:
        return None
    now = utcnow()
    async with get_session() as session:
        row = (
            await session.execute(
                update(OAuthAuthorizationCode)
                .where(
                    OAuthAuthorizationCode.code_hash == OAuthAuthorizationCode.hash_code(code),
                    OAuthAuthorizationCode.client_id == client_id,
                    OAuthAuthorizationCode.redirect_uri == redirect_uri,
                    OAuthAuthorizationCode.consumed.is_(False),
                    OAuthAuthorizationCode.expires_at > now,
                )
                .values(consumed=True, consumed_at=now)
                .returning(
                    OAuthAuthorizationCode.user_id,
                    OAuthAuthorizationCode.scopes,
                    OAuthAuthorizationCode.resource,
                    OAuthAuthorizationCode.code_challenge,
                )
                .execution_options(synchronize_session=False)
            )
        ).one_or_none()

    if row is None:
        logger.warning(
            f"Rejected authorization code {mask_secret(code)} for client={client_id}: "
            "unknown, expired, already consumed or bound to another client/redirect_uri"
        )
        return None

    if not verify_pkce_s256(code_verifier, row.code_challenge):
        logger.warning(f"PKCE verification failed for code {mask_secret(code)} client={client_id}, code burned")
        return None

    return CodeGrant(user_id=row.user_id, client_id=client_id, scopes=row.scopes, resource=row.resource)
