"""
Unit test fixtures: a throwaway SQLite store per test plus PKCE/client helpers.
"""

import secrets

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

REDIRECT_URI = "https://app.example/cb"


@pytest_asyncio.fixture
async def db(tmp_path, monkeypatch):
    """Point the module-level engine/session factory at a fresh database file."""
    import reader_api.database as database
    from reader_api.oauth.clients import _load_client

    engine = database.build_engine(f"sqlite+aiosqlite:///{tmp_path / 'oauth.db'}")
    monkeypatch.setattr(database, "engine", engine)
    monkeypatch.setattr(
        database,
        "SessionLocal",
        async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False),
    )
    await database.init_db()
    _load_client.cache_clear()
    yield engine
    _load_client.cache_clear()
    await engine.dispose()


@pytest.fixture
def pkce():
    """A fresh (verifier, challenge) pair."""
    from reader_api.oauth.validation import compute_code_challenge

    verifier = secrets.token_urlsafe(48)
    return verifier, compute_code_challenge(verifier)


@pytest_asyncio.fixture
async def client(db):
    """A registered public client with the default redirect URI and both scopes."""
    from reader_api.oauth.clients import register_client
    from reader_api.oauth.schemas import ClientRegistrationRequest

    return await register_client(
        ClientRegistrationRequest(
            client_name="Test Agent",
            redirect_uris=[REDIRECT_URI],
            scope="mcp saved:write",
        )
    )
