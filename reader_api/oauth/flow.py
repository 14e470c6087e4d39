"""
Authorization endpoint state machine.

    START -> VALIDATED -> AUTHENTICATED -> CONSENTED -> CODE_ISSUED

Each step either advances the flow or stops it with an AuthorizeOutcome. Until
the client and redirect_uri have been verified every failure is a direct error;
only afterwards may errors be delivered to the client via redirect.
"""

from enum import Enum
from typing import List, Mapping, Optional
from urllib.parse import urlencode

from loguru import logger

from reader_api.config import settings
from reader_api.oauth import codes, consent
from reader_api.oauth.clients import resolve_client
from reader_api.oauth.errors import OAuthErrorCode, build_redirect_url
from reader_api.oauth.schemas import OAuthClient
from reader_api.oauth.validation import (
    is_valid_code_challenge,
    is_valid_redirect_uri_format,
    is_valid_resource_indicator,
    parse_scopes,
    validate_redirect_uri,
    validate_scopes,
)

AUTHORIZE_FIELDS = (
    "response_type",
    "client_id",
    "redirect_uri",
    "scope",
    "state",
    "code_challenge",
    "code_challenge_method",
    "resource",
)


class AuthorizeState(str, Enum):
    START = "start"
    VALIDATED = "validated"
    AUTHENTICATED = "authenticated"
    CONSENTED = "consented"
    CODE_ISSUED = "code_issued"


class OutcomeKind(str, Enum):
    DIRECT_ERROR = "direct_error"
    REDIRECT_ERROR = "redirect_error"
    LOGIN = "login"
    CONSENT = "consent"
    CODE = "code"


class AuthorizeParams:
    """Raw authorization request parameters, from the query string or the consent form."""

    def __init__(self, repeated: Optional[List[str]] = None, **kwargs):
        for field in AUTHORIZE_FIELDS:
            value = kwargs.get(field)
            setattr(self, field, value if value not in ("", None) else None)
        self.repeated = repeated or []

    @classmethod
    def from_mapping(cls, data: Mapping) -> "AuthorizeParams":
        """
        Accepts a plain dict or a multi-valued mapping (query params, form data).
        Parameters sent more than once are recorded in ``repeated``.
        """
        repeated = []
        if hasattr(data, "getlist"):
            repeated = [field for field in AUTHORIZE_FIELDS if len(data.getlist(field)) > 1]
        return cls(repeated=repeated, **{field: data.get(field) for field in AUTHORIZE_FIELDS})


class ValidatedRequest:
    """Authorization request that passed every parameter check."""

    def __init__(
        self,
        client: OAuthClient,
        redirect_uri: str,
        scopes: List[str],
        code_challenge: str,
        state: Optional[str] = None,
        resource: Optional[str] = None,
    ):
        self.client = client
        self.redirect_uri = redirect_uri
        self.scopes = scopes
        self.code_challenge = code_challenge
        self.state = state
        self.resource = resource

    def as_query(self) -> dict:
        params = {
            "response_type": "code",
            "client_id": self.client.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(self.scopes),
            "code_challenge": self.code_challenge,
            "code_challenge_method": "S256",
        }
        if self.state:
            params["state"] = self.state
        if self.resource:
            params["resource"] = self.resource
        return params


class AuthorizeOutcome:
    """Where a run of the flow stopped and what to send back."""

    def __init__(
        self,
        kind: OutcomeKind,
        state: AuthorizeState,
        status_code: int = 302,
        location: Optional[str] = None,
        error: Optional[OAuthErrorCode] = None,
        error_description: Optional[str] = None,
        request: Optional[ValidatedRequest] = None,
    ):
        self.kind = kind
        self.state = state
        self.status_code = status_code
        self.location = location
        self.error = error
        self.error_description = error_description
        self.request = request

    def __repr__(self):
        return f"<AuthorizeOutcome kind={self.kind.value} state={self.state.value} status={self.status_code}>"


def _direct_error(
    description: str,
    error: OAuthErrorCode = OAuthErrorCode.INVALID_REQUEST,
    status_code: int = 400,
    client_id: Optional[str] = None,
) -> AuthorizeOutcome:
    logger.warning(f"Authorization rejected client={client_id} error={error.value}: {description}")
    return AuthorizeOutcome(
        OutcomeKind.DIRECT_ERROR,
        AuthorizeState.START,
        status_code=status_code,
        error=error,
        error_description=description,
    )


def _redirect_error(
    redirect_uri: str,
    state: Optional[str],
    error: OAuthErrorCode,
    description: str,
    client_id: Optional[str] = None,
    reached: AuthorizeState = AuthorizeState.START,
) -> AuthorizeOutcome:
    logger.warning(f"Authorization rejected client={client_id} error={error.value}: {description}")
    location = build_redirect_url(
        redirect_uri,
        {"error": error.value, "error_description": description, "state": state},
    )
    return AuthorizeOutcome(
        OutcomeKind.REDIRECT_ERROR,
        reached,
        location=location,
        error=error,
        error_description=description,
    )


class AuthorizeFlow:
    """
    One pass through the authorization endpoint. Steps must run in order;
    each returns None on success or the outcome that ends the pass.
    """

    def __init__(self, params: AuthorizeParams):
        self.params = params
        self.state = AuthorizeState.START
        self.request: Optional[ValidatedRequest] = None
        self.user_id: Optional[str] = None

    def _require_state(self, expected: AuthorizeState):
        if self.state != expected:
            raise RuntimeError(f"Authorization step expects state {expected.value}, flow is at {self.state.value}")

    async def validate(self) -> Optional[AuthorizeOutcome]:
        params = self.params

        # Nothing may redirect until client_id and redirect_uri are trusted.
        client_id = params.client_id
        if params.repeated:
            return _direct_error(f"Repeated parameter: {', '.join(params.repeated)}", client_id=client_id)
        if not client_id:
            return _direct_error("client_id is required")
        if not params.redirect_uri:
            return _direct_error("redirect_uri is required", client_id=client_id)
        if not is_valid_redirect_uri_format(params.redirect_uri):
            return _direct_error("redirect_uri is not a valid redirect URI", client_id=client_id)
        client = await resolve_client(client_id)
        if not client:
            return _direct_error("Unknown client_id", error=OAuthErrorCode.INVALID_CLIENT, client_id=client_id)
        if not validate_redirect_uri(params.redirect_uri, client.redirect_uris):
            return _direct_error("redirect_uri is not registered for this client", client_id=client_id)

        redirect_uri, state = params.redirect_uri, params.state

        if params.response_type != "code":
            return _redirect_error(
                redirect_uri,
                state,
                OAuthErrorCode.UNSUPPORTED_RESPONSE_TYPE,
                "Only response_type=code is supported",
                client_id=client_id,
            )
        if not params.code_challenge:
            return _redirect_error(
                redirect_uri,
                state,
                OAuthErrorCode.INVALID_REQUEST,
                "code_challenge is required",
                client_id=client_id,
            )
        if params.code_challenge_method != "S256":
            return _redirect_error(
                redirect_uri,
                state,
                OAuthErrorCode.INVALID_REQUEST,
                "code_challenge_method must be S256",
                client_id=client_id,
            )
        if not is_valid_code_challenge(params.code_challenge):
            return _redirect_error(
                redirect_uri,
                state,
                OAuthErrorCode.INVALID_REQUEST,
                "Invalid code_challenge format",
                client_id=client_id,
            )
        if params.resource is not None and not is_valid_resource_indicator(params.resource):
            return _redirect_error(
                redirect_uri,
                state,
                OAuthErrorCode.INVALID_REQUEST,
                "Invalid resource indicator",
                client_id=client_id,
            )

        scopes = validate_scopes(parse_scopes(params.scope), client.allowed_scopes)
        if not scopes:
            return _redirect_error(
                redirect_uri,
                state,
                OAuthErrorCode.INVALID_SCOPE,
                "None of the requested scopes are allowed for this client",
                client_id=client_id,
            )

        self.request = ValidatedRequest(
            client=client,
            redirect_uri=redirect_uri,
            scopes=scopes,
            code_challenge=params.code_challenge,
            state=state,
            resource=params.resource,
        )
        self.state = AuthorizeState.VALIDATED
        return None

    def authenticate(self, user_id: Optional[str], return_to: str) -> Optional[AuthorizeOutcome]:
        """Without a session, send the browser to log in and come back to return_to."""
        self._require_state(AuthorizeState.VALIDATED)
        if not user_id:
            return AuthorizeOutcome(
                OutcomeKind.LOGIN,
                self.state,
                location=f"{settings.login_url}?{urlencode({'redirect': return_to})}",
                request=self.request,
            )
        self.user_id = user_id
        self.state = AuthorizeState.AUTHENTICATED
        return None

    async def check_consent(self) -> Optional[AuthorizeOutcome]:
        self._require_state(AuthorizeState.AUTHENTICATED)
        if not await consent.has_consent(self.user_id, self.request.client.client_id, self.request.scopes):
            return AuthorizeOutcome(
                OutcomeKind.CONSENT,
                self.state,
                location=f"{settings.oauth_base_url}/consent?{urlencode(self.request.as_query())}",
                request=self.request,
            )
        self.state = AuthorizeState.CONSENTED
        return None

    async def record_decision(self, action: Optional[str]) -> Optional[AuthorizeOutcome]:
        self._require_state(AuthorizeState.AUTHENTICATED)
        request = self.request
        if action == "deny":
            return _redirect_error(
                request.redirect_uri,
                request.state,
                OAuthErrorCode.ACCESS_DENIED,
                "The user denied the authorization request",
                client_id=request.client.client_id,
                reached=self.state,
            )
        if action != "approve":
            return _redirect_error(
                request.redirect_uri,
                request.state,
                OAuthErrorCode.INVALID_REQUEST,
                "action must be approve or deny",
                client_id=request.client.client_id,
                reached=self.state,
            )
        await consent.record_consent(self.user_id, request.client.client_id, request.scopes)
        self.state = AuthorizeState.CONSENTED
        return None

    async def issue(self) -> AuthorizeOutcome:
        self._require_state(AuthorizeState.CONSENTED)
        request = self.request
        code = await codes.issue_code(
            client_id=request.client.client_id,
            user_id=self.user_id,
            redirect_uri=request.redirect_uri,
            scopes=request.scopes,
            code_challenge=request.code_challenge,
            resource=request.resource,
            state=request.state,
        )
        self.state = AuthorizeState.CODE_ISSUED
        return AuthorizeOutcome(
            OutcomeKind.CODE,
            self.state,
            location=build_redirect_url(request.redirect_uri, {"code": code, "state": request.state}),
            request=request,
        )


async def start_authorization(params: AuthorizeParams, user_id: Optional[str], return_to: str) -> AuthorizeOutcome:
    """
    GET /authorize: validate, require a session, skip the consent screen when
    a standing grant already covers the request.
    """
    flow = AuthorizeFlow(params)
    return (
        await flow.validate()
        or flow.authenticate(user_id, return_to)
        or await flow.check_consent()
        or await flow.issue()
    )


async def review_consent(params: AuthorizeParams, user_id: Optional[str], return_to: str) -> AuthorizeOutcome:
    """
    GET /consent: same checks as the authorize endpoint, then hand the
    validated request to the consent screen.
    """
    flow = AuthorizeFlow(params)
    outcome = await flow.validate() or flow.authenticate(user_id, return_to)
    if outcome:
        return outcome
    return AuthorizeOutcome(OutcomeKind.CONSENT, flow.state, status_code=200, request=flow.request)


async def submit_consent(params: AuthorizeParams, user_id: Optional[str], action: Optional[str]) -> AuthorizeOutcome:
    """
    POST /authorize: the consent form re-submits every parameter, so it is
    validated again from scratch before the decision is honoured.
    """
    flow = AuthorizeFlow(params)
    outcome = await flow.validate()
    if outcome:
        return outcome
    if not user_id:
        return _direct_error(
            "Login required",
            error=OAuthErrorCode.ACCESS_DENIED,
            status_code=401,
            client_id=params.client_id,
        )
    flow.authenticate(user_id, return_to="")
    return await flow.record_decision(action) or await flow.issue()
