"""
Bearer token authentication for resource-server routes.
"""

from fastapi import HTTPException, Request, status

from reader_api.oauth.tokens import AccessTokenInfo, validate_access_token


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.lower().startswith("bearer "):
        return None
    return auth_header[7:].strip() or None


def require_oauth_token(*scopes: str):
    """
    Dependency factory: resolve the bearer token on the request, requiring every
    scope listed. Usage: ``token: AccessTokenInfo = Depends(require_oauth_token("mcp"))``
    """

    async def _require_oauth_token(request: Request) -> AccessTokenInfo:
        token = _bearer_token(request)
        if not token:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing or invalid authorization header",
                headers={"WWW-Authenticate": "Bearer"},
            )
        info = await validate_access_token(token)
        if not info:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or expired token",
                headers={"WWW-Authenticate": 'Bearer error="invalid_token"'},
            )
        if not info.has_scopes(*scopes):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Token does not have required scope ({' '.join(scopes)})",
                headers={"WWW-Authenticate": f'Bearer error="insufficient_scope", scope="{" ".join(scopes)}"'},
            )
        request.state.oauth_token = info
        return info

    return _require_oauth_token
