"""
OAuth 2.1 router: authorization, token, registration and revocation endpoints.
"""

from datetime import timezone
from typing import Optional

from fastapi import APIRouter, Depends, Form, HTTPException, Request, status
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from loguru import logger
from pydantic import ValidationError

from reader_api.config import settings
from reader_api.oauth.auth import require_oauth_token
from reader_api.oauth.clients import register_client, resolve_client
from reader_api.oauth.codes import consume_code
from reader_api.oauth.consent import list_consents, revoke_consent
from reader_api.oauth.errors import (
    NO_STORE_HEADERS,
    OAuthErrorCode,
    RegistrationError,
    oauth_error_response,
)
from reader_api.oauth.flow import (
    AuthorizeOutcome,
    AuthorizeParams,
    OutcomeKind,
    review_consent,
    start_authorization,
    submit_consent,
)
from reader_api.oauth.response import (
    AuthorizationServerMetadata,
    ClientRegistrationResponse,
    ConsentGrantResponse,
    TokenErrorResponse,
    UserInfoResponse,
)
from reader_api.oauth.schemas import (
    SUPPORTED_RESPONSE_TYPES,
    ClientRegistrationRequest,
)
from reader_api.oauth.templater import consent_page, error_page
from reader_api.oauth.tokens import AccessTokenInfo, create_tokens, revoke_token, rotate_refresh_token
from reader_api.oauth.validation import is_valid_code_verifier
from reader_api.session.service import get_session_user_id

router = APIRouter()
well_known_router = APIRouter()


def _wants_html(request: Request) -> bool:
    return "text/html" in request.headers.get("accept", "")


def _return_to(request: Request) -> str:
    """Path and query of the current request, for the login redirect."""
    if request.url.query:
        return f"{request.url.path}?{request.url.query}"
    return request.url.path


def _render_outcome(request: Request, outcome: AuthorizeOutcome):
    """Turn a flow outcome into an HTTP response."""
    if outcome.kind == OutcomeKind.DIRECT_ERROR:
        if _wants_html(request):
            return HTMLResponse(
                content=error_page(outcome.error.value, outcome.error_description or ""),
                status_code=outcome.status_code,
                headers=NO_STORE_HEADERS,
            )
        return oauth_error_response(outcome.error, outcome.error_description, status_code=outcome.status_code)

    if outcome.kind == OutcomeKind.CONSENT and outcome.location is None:
        validated = outcome.request
        return HTMLResponse(
            content=consent_page(
                action_url=f"{settings.oauth_prefix}/authorize",
                client_id=validated.client.client_id,
                client_name=validated.client.name,
                redirect_uri=validated.redirect_uri,
                scopes=validated.scopes,
                code_challenge=validated.code_challenge,
                state=validated.state or "",
                resource=validated.resource or "",
            ),
            headers=NO_STORE_HEADERS,
        )

    return RedirectResponse(url=outcome.location, status_code=302)


def _token_error(error: OAuthErrorCode, description: str, client_id: Optional[str] = None, status_code: int = 400):
    logger.warning(f"Token request rejected client={client_id} error={error.value}: {description}")
    return oauth_error_response(error, description, status_code=status_code)


async def _parse_body(request: Request) -> dict:
    """
    Token endpoint body: form encoded per RFC 6749, JSON tolerated.
    Raises ValueError for anything else.
    """
    content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
    if content_type == "application/x-www-form-urlencoded":
        form = await request.form()
        return {key: value for key, value in form.items() if isinstance(value, str)}
    if content_type == "application/json":
        body = await request.json()
        if not isinstance(body, dict):
            raise ValueError("JSON body must be an object")
        return {key: value for key, value in body.items() if isinstance(value, str)}
    raise ValueError(f"Unsupported content type: {content_type or 'none'}")


@router.get("/authorize")
async def authorize_get(request: Request, user_id: Optional[str] = Depends(get_session_user_id)):
    """
    OAuth 2.1 authorization endpoint. Redirects to login or the consent
    screen as needed, and straight back to the client once consent exists.
    """
    outcome = await start_authorization(
        AuthorizeParams.from_mapping(request.query_params),
        user_id,
        _return_to(request),
    )
    return _render_outcome(request, outcome)


@router.get("/consent", response_class=HTMLResponse)
async def consent_get(request: Request, user_id: Optional[str] = Depends(get_session_user_id)):
    """Consent screen; parameters are validated again before anything is shown."""
    outcome = await review_consent(
        AuthorizeParams.from_mapping(request.query_params),
        user_id,
        _return_to(request),
    )
    return _render_outcome(request, outcome)


@router.post("/authorize")
async def authorize_post(request: Request, user_id: Optional[str] = Depends(get_session_user_id)):
    """Consent form submission (action=approve|deny)."""
    form = await request.form()
    outcome = await submit_consent(
        AuthorizeParams.from_mapping(form),
        user_id,
        form.get("action"),
    )
    return _render_outcome(request, outcome)


@router.post("/token", responses={400: {"model": TokenErrorResponse}, 401: {"model": TokenErrorResponse}})
async def token_endpoint(request: Request):
    """OAuth 2.1 token endpoint (authorization_code and refresh_token grants)."""
    try:
        body = await _parse_body(request)
    except ValueError as exc:
        return _token_error(OAuthErrorCode.INVALID_REQUEST, str(exc))

    grant_type = body.get("grant_type")
    client_id = body.get("client_id")

    if grant_type == "authorization_code":
        code = body.get("code")
        redirect_uri = body.get("redirect_uri")
        code_verifier = body.get("code_verifier")
        if not code or not redirect_uri or not client_id or not code_verifier:
            return _token_error(
                OAuthErrorCode.INVALID_REQUEST,
                "code, redirect_uri, client_id and code_verifier are required",
                client_id,
            )
        if not is_valid_code_verifier(code_verifier):
            return _token_error(OAuthErrorCode.INVALID_REQUEST, "Invalid code_verifier format", client_id)
        if not await resolve_client(client_id):
            return _token_error(OAuthErrorCode.INVALID_CLIENT, "Unknown client_id", client_id, status_code=401)

        grant = await consume_code(code, client_id, redirect_uri, code_verifier)
        if not grant:
            return _token_error(
                OAuthErrorCode.INVALID_GRANT,
                "Authorization code is invalid, expired or already used",
                client_id,
            )
        pair = await create_tokens(client_id, grant.user_id, grant.scopes, resource=grant.resource)
        return JSONResponse(content=pair.model_dump(), headers=NO_STORE_HEADERS)

    if grant_type == "refresh_token":
        refresh_token = body.get("refresh_token")
        if not refresh_token or not client_id:
            return _token_error(OAuthErrorCode.INVALID_REQUEST, "refresh_token and client_id are required", client_id)
        if not await resolve_client(client_id):
            return _token_error(OAuthErrorCode.INVALID_CLIENT, "Unknown client_id", client_id, status_code=401)

        pair = await rotate_refresh_token(refresh_token, client_id)
        if not pair:
            return _token_error(
                OAuthErrorCode.INVALID_GRANT,
                "Refresh token is invalid, expired or revoked",
                client_id,
            )
        return JSONResponse(content=pair.model_dump(), headers=NO_STORE_HEADERS)

    if not grant_type:
        return _token_error(OAuthErrorCode.INVALID_REQUEST, "grant_type is required", client_id)
    return _token_error(OAuthErrorCode.UNSUPPORTED_GRANT_TYPE, f"Unsupported grant_type: {grant_type}", client_id)


@router.post("/register", status_code=status.HTTP_201_CREATED, responses={400: {"model": TokenErrorResponse}})
async def register(request: Request):
    """Dynamic client registration (RFC 7591). Open, public clients only."""
    try:
        body = await request.json()
    except ValueError:
        logger.warning("Rejected client registration: body is not JSON")
        return oauth_error_response(OAuthErrorCode.INVALID_CLIENT_METADATA, "Request body must be JSON")
    if not isinstance(body, dict):
        logger.warning("Rejected client registration: body is not a JSON object")
        return oauth_error_response(OAuthErrorCode.INVALID_CLIENT_METADATA, "Request body must be a JSON object")

    try:
        registration = ClientRegistrationRequest.model_validate(body)
    except ValidationError as exc:
        error = exc.errors()[0]
        field = ".".join(str(part) for part in error.get("loc", ()))
        message = error.get("msg", "Invalid client metadata").removeprefix("Value error, ")
        logger.warning(f"Rejected client registration: {field}: {message}")
        return oauth_error_response(
            OAuthErrorCode.INVALID_CLIENT_METADATA,
            f"{field}: {message}" if field else message,
        )

    try:
        client = await register_client(registration)
    except RegistrationError as exc:
        logger.warning(f"Rejected client registration: {exc.description}")
        return oauth_error_response(exc.error, exc.description)

    response = ClientRegistrationResponse(
        client_id=client.client_id,
        client_id_issued_at=int(client.created_at.replace(tzinfo=timezone.utc).timestamp()),
        client_name=client.name,
        redirect_uris=client.redirect_uris,
        grant_types=client.grant_types,
        response_types=list(SUPPORTED_RESPONSE_TYPES),
        token_endpoint_auth_method="none",
        scope=" ".join(client.allowed_scopes),
    )
    return JSONResponse(content=response.model_dump(), status_code=201, headers=NO_STORE_HEADERS)


@router.post("/revoke", responses={400: {"model": TokenErrorResponse}})
async def revoke_endpoint(
    token: Optional[str] = Form(None),
    token_type_hint: Optional[str] = Form(None),
):
    """
    Token revocation (RFC 7009). Unknown tokens are not an error.

    token_type_hint is accepted but not consulted: the rat_/rrt_ prefix
    already identifies which table holds the token (RFC 7009 section 2.1).
    """
    if not token:
        return _token_error(OAuthErrorCode.INVALID_REQUEST, "token is required")
    await revoke_token(token)
    return JSONResponse(content={}, headers=NO_STORE_HEADERS)


def _require_user(user_id: Optional[str]) -> str:
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Login required",
        )
    return user_id


@router.get("/consents", response_model=list[ConsentGrantResponse])
async def list_consent_grants(user_id: Optional[str] = Depends(get_session_user_id)):
    """Clients the current user has authorized."""
    user_id = _require_user(user_id)
    return [
        ConsentGrantResponse(
            client_id=grant.client_id,
            client_name=client.name if client else None,
            scopes=grant.scopes,
            created_at=grant.created_at,
            updated_at=grant.updated_at,
        )
        for grant, client in await list_consents(user_id)
    ]


@router.delete("/consents/{client_id}")
async def revoke_consent_grant(client_id: str, user_id: Optional[str] = Depends(get_session_user_id)):
    """Revoke a client's access, including every token it holds for this user."""
    user_id = _require_user(user_id)
    if not await revoke_consent(user_id, client_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Consent not found",
        )
    return {"client_id": client_id, "revoked": True}


@router.get("/userinfo", response_model=UserInfoResponse)
async def userinfo_endpoint(token: AccessTokenInfo = Depends(require_oauth_token())):
    """Identity behind the presented bearer token."""
    return UserInfoResponse(
        sub=token.user_id,
        client_id=token.client_id,
        scope=" ".join(token.scopes),
    )


@well_known_router.get("/.well-known/oauth-authorization-server", response_model=AuthorizationServerMetadata)
async def authorization_server_metadata():
    """Authorization server metadata (RFC 8414)."""
    base = settings.oauth_base_url
    return AuthorizationServerMetadata(
        issuer=settings.issuer,
        authorization_endpoint=f"{base}/authorize",
        token_endpoint=f"{base}/token",
        registration_endpoint=f"{base}/register",
        revocation_endpoint=f"{base}/revoke",
        scopes_supported=settings.oauth_supported_scopes,
    )
