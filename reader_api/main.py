"""
ASGI application: OAuth router, metadata endpoint, store error handling.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from reader_api.config import settings
from reader_api.database import init_db
from reader_api.oauth.errors import OAuthErrorCode, oauth_error_response
from reader_api.oauth.router import router as oauth_router
from reader_api.oauth.router import well_known_router


def register_store_exception_handler(app: FastAPI) -> None:
    """
    Store failures are not retried server side: the transaction has already
    been rolled back, the client gets 503 and retries the whole request.
    """

    @app.exception_handler(SQLAlchemyError)
    async def store_exception_handler(request: Request, exc: SQLAlchemyError):
        logger.error(f"Store error on {request.method} {request.url.path}: {exc.__class__.__name__}: {exc}")
        return oauth_error_response(
            OAuthErrorCode.TEMPORARILY_UNAVAILABLE,
            "The authorization server is temporarily unavailable, retry the request",
            status_code=503,
            headers={"Retry-After": "1"},
        )


def create_app(create_tables: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if create_tables:
            await init_db()
        logger.info(f"OAuth authorization server ready, issuer={settings.issuer}")
        yield

    app = FastAPI(title="Lion Reader OAuth", lifespan=lifespan)
    app.include_router(oauth_router, prefix=settings.oauth_prefix, tags=["oauth"])
    app.include_router(well_known_router, tags=["oauth"])
    register_store_exception_handler(app)
    return app


app = create_app()
