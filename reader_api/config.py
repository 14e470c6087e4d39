"""
Application settings.
"""

from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database.
    database_url: str = "sqlite+aiosqlite:///./lion_reader.db"
    db_echo: bool = False
    db_pool_size: int = 10
    db_max_overflow: int = 20

    # Public base URL of the application (OAuth issuer, login/consent redirects).
    issuer: str = "http://localhost:3000"
    login_path: str = "/login"
    oauth_prefix: str = "/oauth"

    # Browser session cookie, set by the login system.
    session_cookie_name: str = "session"

    # OAuth scopes this server is able to grant, and the scope used when none is requested.
    oauth_supported_scopes: List[str] = ["mcp", "saved:write"]
    oauth_default_scope: str = "mcp"

    @field_validator("issuer")
    @classmethod
    def strip_trailing_slash(cls, v):
        return v.rstrip("/")

    @field_validator("oauth_supported_scopes")
    @classmethod
    def validate_supported_scopes(cls, v):
        if not v:
            raise ValueError("At least one supported OAuth scope is required")
        return v

    @property
    def login_url(self) -> str:
        return f"{self.issuer}{self.login_path}"

    @property
    def oauth_base_url(self) -> str:
        return f"{self.issuer}{self.oauth_prefix}"


settings = Settings()
