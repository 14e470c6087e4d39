"""
Storage hygiene: delete OAuth rows that can no longer be used.

Expiry is always enforced at read time, so this is never required for
correctness. Used refresh tokens are kept until they expire, otherwise a
replayed token could no longer be recognized as reuse.
"""

from datetime import timedelta

from loguru import logger
from sqlalchemy import delete

from reader_api.database import get_session
from reader_api.oauth.schemas import OAuthAccessToken, OAuthAuthorizationCode, OAuthRefreshToken
from reader_api.util import utcnow


async def purge_expired(grace_seconds: int = 0) -> dict[str, int]:
    """
    Delete codes and tokens whose expiry passed more than grace_seconds ago.
    Returns the number of rows removed per table.
    """
    cutoff = utcnow() - timedelta(seconds=grace_seconds)
    counts = {}
    async with get_session() as session:
        for model in (OAuthAuthorizationCode, OAuthAccessToken, OAuthRefreshToken):
            result = await session.execute(
                delete(model).where(model.expires_at < cutoff).execution_options(synchronize_session=False)
            )
            counts[model.__tablename__] = result.rowcount or 0
    logger.info(f"Purged expired OAuth rows: {counts}")
    return counts
