import sys
import asyncio
from loguru import logger
from reader_api.oauth.janitor import purge_expired


async def purge(grace_seconds: int):
    counts = await purge_expired(grace_seconds=grace_seconds)
    total = sum(counts.values())
    if total:
        logger.success(f"Removed {total} expired OAuth rows ({grace_seconds=})")
    else:
        logger.info("No expired OAuth rows to remove")


if __name__ == "__main__":
    asyncio.run(purge(int(sys.argv[1]) if len(sys.argv) > 1 else 3600))
