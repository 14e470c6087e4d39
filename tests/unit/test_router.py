"""Endpoint tests for the OAuth router, driven through the ASGI app."""

from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError

REDIRECT_URI = "https://app.example/cb"


def _query(location: str) -> dict:
    return {key: values[0] for key, values in parse_qs(urlsplit(location).query).items()}


@pytest_asyncio.fixture
async def http(db):
    from reader_api.main import create_app

    transport = httpx.ASGITransport(app=create_app(create_tables=False))
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http_client:
        yield http_client


@pytest_asyncio.fixture
async def session_cookie(db):
    from reader_api.session.service import create_session

    return await create_session("user-1")


@pytest_asyncio.fixture
async def registered(http):
    response = await http.post(
        "/oauth/register",
        json={"client_name": "Reader Agent", "redirect_uris": [REDIRECT_URI], "scope": "mcp saved:write"},
    )
    assert response.status_code == 201
    return response.json()


@pytest.fixture
def log_lines():
    """Warning-level loguru messages emitted during the test."""
    from loguru import logger

    lines = []
    handler_id = logger.add(lines.append, level="WARNING", format="{message}")
    yield lines
    logger.remove(handler_id)


def _authorize_params(client_id, challenge, **overrides):
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": REDIRECT_URI,
        "scope": "mcp",
        "state": "st4te",
        "code_challenge": challenge,
        "code_challenge_method": "S256",
    }
    params.update(overrides)
    return {key: value for key, value in params.items() if value is not None}


async def _approve(http, cookie, client_id, challenge, **overrides) -> str:
    """Submit the consent form and return the issued code."""
    form = _authorize_params(client_id, challenge, **overrides)
    form["action"] = "approve"
    response = await http.post("/oauth/authorize", data=form, cookies={"session": cookie})
    assert response.status_code == 302
    query = _query(response.headers["location"])
    assert response.headers["location"].startswith(REDIRECT_URI + "?")
    return query["code"]


class TestRegisterEndpoint:
    @pytest.mark.asyncio
    async def test_register(self, http, registered):
        assert registered["client_id"].startswith("rc_")
        assert registered["client_name"] == "Reader Agent"
        assert registered["redirect_uris"] == [REDIRECT_URI]
        assert registered["token_endpoint_auth_method"] == "none"
        assert registered["scope"] == "mcp saved:write"
        assert "client_secret" not in registered

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"client_name": "x", "redirect_uris": []},
            {"client_name": "x"},
            {"client_name": "", "redirect_uris": [REDIRECT_URI]},
            {"client_name": "x", "redirect_uris": ["not a uri"]},
            {"client_name": "x", "redirect_uris": [REDIRECT_URI], "scope": "admin"},
            ["not", "an", "object"],
        ],
    )
    async def test_register_rejects_bad_metadata(self, http, body):
        response = await http.post("/oauth/register", json=body)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_client_metadata"

    @pytest.mark.asyncio
    async def test_register_rejects_non_json(self, http):
        response = await http.post("/oauth/register", content=b"client_name=x")
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_client_metadata"


class TestAuthorizeEndpoint:
    @pytest.mark.asyncio
    async def test_unregistered_redirect_uri_never_redirects(self, http, registered, pkce, session_cookie):
        _, challenge = pkce
        response = await http.get(
            "/oauth/authorize",
            params=_authorize_params(registered["client_id"], challenge, redirect_uri="https://evil.example/cb"),
            cookies={"session": session_cookie},
        )
        assert response.status_code == 400
        assert "location" not in response.headers
        assert response.json()["error"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_unknown_client_never_redirects(self, http, pkce):
        _, challenge = pkce
        response = await http.get("/oauth/authorize", params=_authorize_params("rc_nobody", challenge))
        assert response.status_code == 400
        assert "location" not in response.headers
        assert response.json()["error"] == "invalid_client"

    @pytest.mark.asyncio
    async def test_repeated_parameter_never_redirects(self, http, registered, pkce):
        _, challenge = pkce
        params = list(_authorize_params(registered["client_id"], challenge).items())
        params.append(("redirect_uri", "https://evil.example/cb"))
        response = await http.get("/oauth/authorize", params=params)
        assert response.status_code == 400
        assert "location" not in response.headers
        body = response.json()
        assert body["error"] == "invalid_request"
        assert "redirect_uri" in body["error_description"]

    @pytest.mark.asyncio
    async def test_rejections_are_logged(self, http, registered, pkce, log_lines):
        _, challenge = pkce
        await http.get("/oauth/authorize", params=_authorize_params("rc_nobody", challenge))
        await http.get(
            "/oauth/authorize",
            params=_authorize_params(registered["client_id"], challenge, code_challenge_method="plain"),
        )
        assert any("client=rc_nobody" in line and "invalid_client" in line for line in log_lines)
        assert any(
            f"client={registered['client_id']}" in line and "code_challenge_method" in line for line in log_lines
        )

    @pytest.mark.asyncio
    async def test_missing_client_id(self, http, pkce):
        _, challenge = pkce
        response = await http.get("/oauth/authorize", params=_authorize_params(None, challenge))
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_browser_gets_html_error_page(self, http, pkce):
        _, challenge = pkce
        response = await http.get(
            "/oauth/authorize",
            params=_authorize_params("rc_nobody", challenge),
            headers={"Accept": "text/html"},
        )
        assert response.status_code == 400
        assert "text/html" in response.headers["content-type"]
        assert "invalid_client" in response.text

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides,error",
        [
            ({"response_type": "token"}, "unsupported_response_type"),
            ({"code_challenge": None}, "invalid_request"),
            ({"code_challenge_method": "plain"}, "invalid_request"),
            ({"code_challenge": "tooshort"}, "invalid_request"),
            ({"scope": "admin"}, "invalid_scope"),
            ({"resource": "not-absolute"}, "invalid_request"),
        ],
    )
    async def test_post_validation_errors_redirect(self, http, registered, pkce, overrides, error):
        _, challenge = pkce
        response = await http.get(
            "/oauth/authorize",
            params=_authorize_params(registered["client_id"], challenge, **overrides),
        )
        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith(REDIRECT_URI + "?")
        query = _query(location)
        assert query["error"] == error
        assert query["error_description"]
        assert query["state"] == "st4te"

    @pytest.mark.asyncio
    async def test_no_session_redirects_to_login(self, http, registered, pkce):
        from reader_api.config import settings

        _, challenge = pkce
        response = await http.get("/oauth/authorize", params=_authorize_params(registered["client_id"], challenge))
        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith(settings.login_url + "?")
        return_to = _query(location)["redirect"]
        assert return_to.startswith("/oauth/authorize?")
        assert _query(return_to)["client_id"] == registered["client_id"]

    @pytest.mark.asyncio
    async def test_session_without_consent_goes_to_consent(self, http, registered, pkce, session_cookie):
        from reader_api.config import settings

        _, challenge = pkce
        response = await http.get(
            "/oauth/authorize",
            params=_authorize_params(registered["client_id"], challenge, scope="mcp saved:write"),
            cookies={"session": session_cookie},
        )
        assert response.status_code == 302
        location = response.headers["location"]
        assert location.startswith(f"{settings.oauth_base_url}/consent?")
        query = _query(location)
        assert query["scope"] == "mcp saved:write"
        assert query["code_challenge"] == challenge

        page = await http.get(
            "/oauth/consent",
            params=query,
            cookies={"session": session_cookie},
        )
        assert page.status_code == 200
        assert "Reader Agent" in page.text
        assert 'name="action" value="approve"' in page.text
        assert page.headers["cache-control"] == "no-store"

    @pytest.mark.asyncio
    async def test_consent_page_requires_session(self, http, registered, pkce):
        _, challenge = pkce
        response = await http.get("/oauth/consent", params=_authorize_params(registered["client_id"], challenge))
        assert response.status_code == 302
        assert "/login?" in response.headers["location"]

    @pytest.mark.asyncio
    async def test_deny(self, http, registered, pkce, session_cookie):
        _, challenge = pkce
        form = _authorize_params(registered["client_id"], challenge)
        form["action"] = "deny"
        response = await http.post("/oauth/authorize", data=form, cookies={"session": session_cookie})
        assert response.status_code == 302
        query = _query(response.headers["location"])
        assert query["error"] == "access_denied"
        assert query["state"] == "st4te"
        assert "code" not in query

    @pytest.mark.asyncio
    async def test_unknown_action(self, http, registered, pkce, session_cookie):
        _, challenge = pkce
        form = _authorize_params(registered["client_id"], challenge)
        form["action"] = "maybe"
        response = await http.post("/oauth/authorize", data=form, cookies={"session": session_cookie})
        assert response.status_code == 302
        assert _query(response.headers["location"])["error"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_consent_submission_requires_session(self, http, registered, pkce):
        _, challenge = pkce
        form = _authorize_params(registered["client_id"], challenge)
        form["action"] = "approve"
        response = await http.post("/oauth/authorize", data=form)
        assert response.status_code == 401
        assert response.json()["error"] == "access_denied"

    @pytest.mark.asyncio
    async def test_consent_submission_revalidates(self, http, registered, pkce, session_cookie):
        _, challenge = pkce
        form = _authorize_params(registered["client_id"], challenge, redirect_uri="https://evil.example/cb")
        form["action"] = "approve"
        response = await http.post("/oauth/authorize", data=form, cookies={"session": session_cookie})
        assert response.status_code == 400
        assert "location" not in response.headers

    @pytest.mark.asyncio
    async def test_existing_consent_skips_screen(self, http, registered, pkce, session_cookie):
        _, challenge = pkce
        await _approve(http, session_cookie, registered["client_id"], challenge)
        response = await http.get(
            "/oauth/authorize",
            params=_authorize_params(registered["client_id"], challenge),
            cookies={"session": session_cookie},
        )
        assert response.status_code == 302
        query = _query(response.headers["location"])
        assert query["code"]
        assert query["state"] == "st4te"


class TestTokenEndpoint:
    @pytest.mark.asyncio
    async def test_full_flow(self, http, registered, pkce, session_cookie):
        verifier, challenge = pkce
        client_id = registered["client_id"]
        code = await _approve(http, session_cookie, client_id, challenge)

        exchange = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": REDIRECT_URI,
            "client_id": client_id,
            "code_verifier": verifier,
        }
        response = await http.post("/oauth/token", data=exchange)
        assert response.status_code == 200
        assert response.headers["cache-control"] == "no-store"
        assert response.headers["pragma"] == "no-cache"
        tokens = response.json()
        assert tokens["token_type"] == "bearer"
        assert tokens["scope"] == "mcp"
        assert tokens["expires_in"] > 0

        userinfo = await http.get("/oauth/userinfo", headers={"Authorization": f"Bearer {tokens['access_token']}"})
        assert userinfo.status_code == 200
        assert userinfo.json() == {"sub": "user-1", "client_id": client_id, "scope": "mcp"}

        # Codes are single use.
        replay = await http.post("/oauth/token", data=exchange)
        assert replay.status_code == 400
        assert replay.json()["error"] == "invalid_grant"

        refresh = {"grant_type": "refresh_token", "refresh_token": tokens["refresh_token"], "client_id": client_id}
        rotated = await http.post("/oauth/token", data=refresh)
        assert rotated.status_code == 200
        new_tokens = rotated.json()
        assert new_tokens["refresh_token"] != tokens["refresh_token"]

        # Replaying the old refresh token fails and takes the new pair down with it.
        reuse = await http.post("/oauth/token", data=refresh)
        assert reuse.status_code == 400
        assert reuse.json()["error"] == "invalid_grant"
        follow_up = await http.post(
            "/oauth/token",
            data={"grant_type": "refresh_token", "refresh_token": new_tokens["refresh_token"], "client_id": client_id},
        )
        assert follow_up.json()["error"] == "invalid_grant"
        denied = await http.get("/oauth/userinfo", headers={"Authorization": f"Bearer {new_tokens['access_token']}"})
        assert denied.status_code == 401

    @pytest.mark.asyncio
    async def test_json_body_accepted(self, http, registered, pkce, session_cookie):
        verifier, challenge = pkce
        code = await _approve(http, session_cookie, registered["client_id"], challenge)
        response = await http.post(
            "/oauth/token",
            json={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": REDIRECT_URI,
                "client_id": registered["client_id"],
                "code_verifier": verifier,
            },
        )
        assert response.status_code == 200
        assert response.json()["access_token"].startswith("rat_")

    @pytest.mark.asyncio
    async def test_pkce_mismatch_is_invalid_grant(self, http, registered, pkce, session_cookie):
        verifier, challenge = pkce
        code = await _approve(http, session_cookie, registered["client_id"], challenge)
        exchange = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": REDIRECT_URI,
            "client_id": registered["client_id"],
            "code_verifier": "v" * 64,
        }
        response = await http.post("/oauth/token", data=exchange)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

        exchange["code_verifier"] = verifier
        response = await http.post("/oauth/token", data=exchange)
        assert response.json()["error"] == "invalid_grant"

    @pytest.mark.asyncio
    async def test_malformed_verifier_is_invalid_request(self, http, registered):
        response = await http.post(
            "/oauth/token",
            data={
                "grant_type": "authorization_code",
                "code": "abc",
                "redirect_uri": REDIRECT_URI,
                "client_id": registered["client_id"],
                "code_verifier": "short",
            },
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_missing_fields(self, http, registered):
        response = await http.post(
            "/oauth/token",
            data={"grant_type": "authorization_code", "client_id": registered["client_id"]},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_unknown_client(self, http):
        response = await http.post(
            "/oauth/token",
            data={"grant_type": "refresh_token", "refresh_token": "rrt_x.y", "client_id": "rc_nobody"},
        )
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_client"

    @pytest.mark.asyncio
    async def test_unsupported_grant_type(self, http):
        response = await http.post("/oauth/token", data={"grant_type": "password"})
        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_grant_type"

    @pytest.mark.asyncio
    async def test_rejections_are_logged(self, http, log_lines):
        await http.post(
            "/oauth/token",
            data={"grant_type": "refresh_token", "refresh_token": "rrt_x.y", "client_id": "rc_nobody"},
        )
        await http.post("/oauth/token", data={"grant_type": "password", "client_id": "rc_other"})
        assert any("client=rc_nobody" in line and "invalid_client" in line for line in log_lines)
        assert any("client=rc_other" in line and "unsupported_grant_type" in line for line in log_lines)

    @pytest.mark.asyncio
    async def test_error_model_documented(self, http):
        schema = (await http.get("/openapi.json")).json()
        assert "TokenErrorResponse" in schema["components"]["schemas"]
        assert "400" in schema["paths"]["/oauth/token"]["post"]["responses"]

    @pytest.mark.asyncio
    async def test_unsupported_content_type(self, http):
        response = await http.post("/oauth/token", content=b"grant_type=x", headers={"Content-Type": "text/plain"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_store_failure_is_503(self, http, monkeypatch):
        import reader_api.oauth.router as oauth_router

        async def broken(*args, **kwargs):
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

        monkeypatch.setattr(oauth_router, "resolve_client", broken)
        response = await http.post(
            "/oauth/token",
            data={"grant_type": "refresh_token", "refresh_token": "rrt_x.y", "client_id": "rc_any"},
        )
        assert response.status_code == 503
        assert response.json()["error"] == "temporarily_unavailable"


class TestAuxiliaryEndpoints:
    @pytest.mark.asyncio
    async def test_revoke_endpoint(self, http, registered, pkce, session_cookie):
        verifier, challenge = pkce
        code = await _approve(http, session_cookie, registered["client_id"], challenge)
        tokens = (
            await http.post(
                "/oauth/token",
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "redirect_uri": REDIRECT_URI,
                    "client_id": registered["client_id"],
                    "code_verifier": verifier,
                },
            )
        ).json()

        response = await http.post("/oauth/revoke", data={"token": tokens["access_token"]})
        assert response.status_code == 200
        denied = await http.get("/oauth/userinfo", headers={"Authorization": f"Bearer {tokens['access_token']}"})
        assert denied.status_code == 401
        assert denied.headers["www-authenticate"].startswith("Bearer")

        # The hint is advisory; the token prefix decides.
        response = await http.post(
            "/oauth/revoke",
            data={"token": tokens["refresh_token"], "token_type_hint": "access_token"},
        )
        assert response.status_code == 200
        refreshed = await http.post(
            "/oauth/token",
            data={
                "grant_type": "refresh_token",
                "refresh_token": tokens["refresh_token"],
                "client_id": registered["client_id"],
            },
        )
        assert refreshed.json()["error"] == "invalid_grant"

        # Unknown tokens are not an error.
        assert (await http.post("/oauth/revoke", data={"token": "rat_nope.nope"})).status_code == 200

    @pytest.mark.asyncio
    async def test_userinfo_requires_bearer(self, http):
        response = await http.get("/oauth/userinfo")
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"

    @pytest.mark.asyncio
    async def test_consents_listing_and_revocation(self, http, registered, pkce, session_cookie):
        _, challenge = pkce
        await _approve(http, session_cookie, registered["client_id"], challenge)

        listed = await http.get("/oauth/consents", cookies={"session": session_cookie})
        assert listed.status_code == 200
        grants = listed.json()
        assert [grant["client_id"] for grant in grants] == [registered["client_id"]]
        assert grants[0]["client_name"] == "Reader Agent"
        assert grants[0]["scopes"] == ["mcp"]

        revoked = await http.delete(f"/oauth/consents/{registered['client_id']}", cookies={"session": session_cookie})
        assert revoked.status_code == 200
        assert (await http.get("/oauth/consents", cookies={"session": session_cookie})).json() == []
        missing = await http.delete(f"/oauth/consents/{registered['client_id']}", cookies={"session": session_cookie})
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_consents_require_session(self, http):
        assert (await http.get("/oauth/consents")).status_code == 401

    @pytest.mark.asyncio
    async def test_metadata(self, http):
        from reader_api.config import settings

        response = await http.get("/.well-known/oauth-authorization-server")
        assert response.status_code == 200
        metadata = response.json()
        assert metadata["issuer"] == settings.issuer
        assert metadata["token_endpoint"] == f"{settings.oauth_base_url}/token"
        assert metadata["code_challenge_methods_supported"] == ["S256"]
        assert metadata["scopes_supported"] == settings.oauth_supported_scopes
