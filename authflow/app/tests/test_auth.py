"""
Authentication Flow Tests

Tests login initiation, the callback state machine, the /auth routes and
the token helpers they rely on.
"""

import logging
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from authflow.app.auth.flow import AuthFlow, AuthFlowError
from authflow.app.auth.provider import TokenExchangeError
from authflow.app.auth.state import CSRF_STATE_NAMESPACE
from authflow.app.auth.utils import (
    extract_email_from_claims,
    extract_username_from_claims,
    generate_secure_token,
    mask_token,
)
from authflow.app.main import create_app
from authflow.app.models import TokenSet
from authflow.app.store import EntryNotFoundError, StoreUnavailableError

from .tokens import (
    AUTHORIZATION_ENDPOINT,
    create_access_token,
    create_id_token,
    run,
)


def valid_token_set(username: str = "alice", email: str = "alice@example.com") -> TokenSet:
    return TokenSet(
        access_token=create_access_token(username),
        id_token=create_id_token(username, email),
        refresh_token="R1",
        expires_in=300,
    )


def stub_exchange(provider, token_set=None, side_effect=None) -> AsyncMock:
    """Replace the token endpoint call; verification still runs for real."""
    provider.exchange_code = AsyncMock(return_value=token_set, side_effect=side_effect)
    return provider.exchange_code


def session_cookie_header(response) -> str:
    return next(
        value for name, value in response.headers.multi_items()
        if name == "set-cookie" and value.startswith("session_id=")
    )


@pytest.fixture
def flow(provider, state_store, session_store) -> AuthFlow:
    return AuthFlow(provider, state_store, session_store)


@pytest.fixture
def client(settings, provider, store) -> TestClient:
    app = create_app(settings, provider=provider, store=store)
    return TestClient(app, base_url="https://testserver", follow_redirects=False)


# ============================================================================
# Phase A: login initiation
# ============================================================================

class TestBeginLogin:
    """Test login initiation"""

    @pytest.mark.asyncio
    async def test_state_stored_and_in_url(self, flow, state_store):
        url = await flow.begin_login()

        assert url.startswith(AUTHORIZATION_ENDPOINT + "?")
        state = parse_qs(urlparse(url).query)["state"][0]
        assert await state_store.lookup(state) == state

    @pytest.mark.asyncio
    async def test_each_login_gets_fresh_state(self, flow):
        first = parse_qs(urlparse(await flow.begin_login()).query)["state"][0]
        second = parse_qs(urlparse(await flow.begin_login()).query)["state"][0]

        assert first != second
        assert len(first) >= 43

    @pytest.mark.asyncio
    async def test_store_failure(self, flow, state_store):
        state_store.save = AsyncMock(side_effect=StoreUnavailableError("down"))

        with pytest.raises(AuthFlowError) as exc_info:
            await flow.begin_login()

        assert exc_info.value.error == "store_unavailable"
        assert exc_info.value.status_code == 500


# ============================================================================
# Phase B: callback
# ============================================================================

class TestCompleteCallback:
    """Test the callback state machine"""

    @pytest.mark.asyncio
    async def test_successful_callback(self, flow, provider, state_store, session_store):
        exchange = stub_exchange(provider, valid_token_set())
        await state_store.save("S1")

        session_id, session = await flow.complete_callback(state="S1", code="C1")

        exchange.assert_awaited_once_with("C1")
        assert session.user_info.username == "alice"
        assert session.user_info.email == "alice@example.com"

        stored = await session_store.get(session_id)
        assert stored.access_token == session.access_token

        # State is single use
        with pytest.raises(EntryNotFoundError):
            await state_store.lookup("S1")

    @pytest.mark.asyncio
    async def test_session_keeps_claims_as_issued(self, flow, provider, state_store, session_store):
        stub_exchange(provider, valid_token_set("Alice", "Alice@Example.COM"))
        await state_store.save("S1")

        session_id, _ = await flow.complete_callback(state="S1", code="C1")

        stored = await session_store.get(session_id)
        assert stored.user_info.username == "Alice"
        assert stored.user_info.email == "Alice@Example.COM"

    @pytest.mark.asyncio
    async def test_absent_profile_claims_stored_empty(self, flow, provider, state_store, session_store):
        token_set = TokenSet(
            access_token=create_access_token(),
            id_token=create_id_token(overrides={"preferred_username": None, "email": None}),
        )
        stub_exchange(provider, token_set)
        await state_store.save("S1")

        session_id, _ = await flow.complete_callback(state="S1", code="C1")

        stored = await session_store.get(session_id)
        assert stored.user_info.username == ""
        assert stored.user_info.email == ""

    @pytest.mark.asyncio
    async def test_reused_state_rejected(self, flow, provider, state_store):
        exchange = stub_exchange(provider, valid_token_set())
        await state_store.save("S1")
        await flow.complete_callback(state="S1", code="C1")

        with pytest.raises(AuthFlowError) as exc_info:
            await flow.complete_callback(state="S1", code="C1")

        assert exc_info.value.error == "invalid_state"
        assert exc_info.value.status_code == 400
        assert exchange.await_count == 1

    @pytest.mark.asyncio
    async def test_never_issued_state_rejected_before_exchange(self, flow, provider, state_store):
        exchange = stub_exchange(provider, valid_token_set())
        await state_store.save("S1")

        with pytest.raises(AuthFlowError) as exc_info:
            await flow.complete_callback(state="S2", code="C1")

        assert exc_info.value.error == "invalid_state"
        exchange.assert_not_awaited()
        # The pending login is untouched
        assert await state_store.lookup("S1") == "S1"

    @pytest.mark.asyncio
    async def test_missing_state(self, flow, provider):
        exchange = stub_exchange(provider, valid_token_set())

        with pytest.raises(AuthFlowError) as exc_info:
            await flow.complete_callback(state=None, code="C1")

        assert exc_info.value.error == "missing_state"
        exchange.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_code_consumes_state(self, flow, provider, state_store):
        exchange = stub_exchange(provider, valid_token_set())
        await state_store.save("S1")

        with pytest.raises(AuthFlowError) as exc_info:
            await flow.complete_callback(state="S1", code=None)

        assert exc_info.value.error == "missing_code"
        exchange.assert_not_awaited()
        with pytest.raises(EntryNotFoundError):
            await state_store.lookup("S1")

    @pytest.mark.asyncio
    async def test_expired_state_rejected(self, flow, provider, state_store, clock):
        exchange = stub_exchange(provider, valid_token_set())
        await state_store.save("S1")
        clock.advance(state_store.ttl_seconds)

        with pytest.raises(AuthFlowError) as exc_info:
            await flow.complete_callback(state="S1", code="C1")

        assert exc_info.value.error == "invalid_state"
        exchange.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stored_value_mismatch_rejected(self, flow, provider, store):
        stub_exchange(provider, valid_token_set())
        await store.put(CSRF_STATE_NAMESPACE, "S1", "something-else", 120)

        with pytest.raises(AuthFlowError) as exc_info:
            await flow.complete_callback(state="S1", code="C1")

        assert exc_info.value.error == "invalid_state"

    @pytest.mark.asyncio
    async def test_provider_error_parameter(self, flow, provider, state_store):
        exchange = stub_exchange(provider, valid_token_set())
        await state_store.save("S1")

        with pytest.raises(AuthFlowError) as exc_info:
            await flow.complete_callback(
                state="S1",
                code=None,
                error="access_denied",
                error_description="User cancelled login",
            )

        assert exc_info.value.error == "provider_error"
        assert "cancelled" not in exc_info.value.message
        exchange.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_exchange_failure_leaves_no_session(self, flow, provider, state_store, store):
        stub_exchange(provider, side_effect=TokenExchangeError("Token exchange failed: Code not valid"))
        await state_store.save("S1")

        with pytest.raises(AuthFlowError) as exc_info:
            await flow.complete_callback(state="S1", code="C1")

        assert exc_info.value.error == "token_exchange_failed"
        assert exc_info.value.status_code == 401
        assert "Code not valid" not in exc_info.value.message
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_invalid_id_token_leaves_no_session(self, flow, provider, state_store, store):
        token_set = TokenSet(
            access_token=create_access_token(),
            id_token=create_id_token(exp_delta_minutes=-10),
        )
        stub_exchange(provider, token_set)
        await state_store.save("S1")

        with pytest.raises(AuthFlowError) as exc_info:
            await flow.complete_callback(state="S1", code="C1")

        assert exc_info.value.error == "identity_verification_failed"
        assert exc_info.value.status_code == 401
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_missing_id_token_leaves_no_session(self, flow, provider, state_store, store):
        stub_exchange(provider, TokenSet(access_token=create_access_token()))
        await state_store.save("S1")

        with pytest.raises(AuthFlowError) as exc_info:
            await flow.complete_callback(state="S1", code="C1")

        assert exc_info.value.error == "identity_verification_failed"
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_session_store_failure(self, flow, provider, state_store, session_store):
        stub_exchange(provider, valid_token_set())
        session_store.create = AsyncMock(side_effect=StoreUnavailableError("down"))
        await state_store.save("S1")

        with pytest.raises(AuthFlowError) as exc_info:
            await flow.complete_callback(state="S1", code="C1")

        assert exc_info.value.error == "store_unavailable"
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_state_read_failure(self, flow, provider, state_store):
        exchange = stub_exchange(provider, valid_token_set())
        state_store.lookup = AsyncMock(side_effect=StoreUnavailableError("down"))

        with pytest.raises(AuthFlowError) as exc_info:
            await flow.complete_callback(state="S1", code="C1")

        assert exc_info.value.error == "store_unavailable"
        exchange.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_state_delete_failure_is_logged_only(self, flow, provider, state_store, clock, caplog):
        stub_exchange(provider, valid_token_set())
        state_store.discard = AsyncMock(side_effect=StoreUnavailableError("down"))
        await state_store.save("S1")

        with caplog.at_level(logging.WARNING, logger="authflow.app.auth.flow"):
            session_id, _ = await flow.complete_callback(state="S1", code="C1")

        assert session_id
        assert "Failed to delete used CSRF state" in caplog.text

        # The leftover entry dies with its TTL
        clock.advance(state_store.ttl_seconds)
        with pytest.raises(AuthFlowError) as exc_info:
            await flow.complete_callback(state="S1", code="C1")
        assert exc_info.value.error == "invalid_state"


# ============================================================================
# HTTP routes
# ============================================================================

class TestAuthRoutes:
    """Test /auth/login and /auth/callback over HTTP"""

    def test_login_redirects_to_provider(self, client, state_store):
        response = client.get("/auth/login")

        assert response.status_code == 307
        location = response.headers["location"]
        assert location.startswith(AUTHORIZATION_ENDPOINT)

        state = parse_qs(urlparse(location).query)["state"][0]
        assert run(state_store.lookup(state)) == state

    def test_callback_sets_session_cookie(self, client, provider, state_store, session_store, settings):
        stub_exchange(provider, valid_token_set())
        run(state_store.save("S1"))

        response = client.get("/auth/callback", params={"state": "S1", "code": "C1"})

        assert response.status_code == 307
        assert response.headers["location"] == "/dashboard"

        cookie = session_cookie_header(response)
        attributes = cookie.lower()
        assert "httponly" in attributes
        assert "secure" in attributes
        assert "samesite=strict" in attributes
        assert "path=/" in attributes
        assert f"max-age={settings.SESSION_DURATION_SECONDS}" in attributes

        session_id = cookie.split(";")[0].split("=", 1)[1]
        record = run(session_store.get(session_id))
        assert record.user_info.username == "alice"
        assert record.user_info.email == "alice@example.com"

    def test_callback_stores_mixed_case_email(self, client, provider, state_store, session_store):
        stub_exchange(provider, valid_token_set("Alice", "Alice@Example.COM"))
        run(state_store.save("S1"))

        response = client.get("/auth/callback", params={"state": "S1", "code": "C1"})

        assert response.status_code == 307
        session_id = session_cookie_header(response).split(";")[0].split("=", 1)[1]
        record = run(session_store.get(session_id))
        assert record.user_info.username == "Alice"
        assert record.user_info.email == "Alice@Example.COM"

    def test_callback_reused_state(self, client, provider, state_store):
        stub_exchange(provider, valid_token_set())
        run(state_store.save("S1"))

        first = client.get("/auth/callback", params={"state": "S1", "code": "C1"})
        second = client.get("/auth/callback", params={"state": "S1", "code": "C1"})

        assert first.status_code == 307
        assert second.status_code == 400
        assert second.json()["error"] == "invalid_state"
        assert "set-cookie" not in second.headers

    def test_callback_missing_state(self, client, provider):
        exchange = stub_exchange(provider, valid_token_set())

        response = client.get("/auth/callback", params={"code": "C1"})

        assert response.status_code == 400
        assert response.json() == {
            "error": "missing_state",
            "message": "Missing state parameter in callback.",
        }
        exchange.assert_not_awaited()

    def test_callback_provider_error(self, client, provider, state_store):
        stub_exchange(provider, valid_token_set())
        run(state_store.save("S1"))

        response = client.get(
            "/auth/callback",
            params={"state": "S1", "error": "access_denied", "error_description": "denied"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "provider_error"

    def test_callback_exchange_failure(self, client, provider, state_store):
        stub_exchange(provider, side_effect=TokenExchangeError("Token exchange failed: invalid_grant"))
        run(state_store.save("S1"))

        response = client.get("/auth/callback", params={"state": "S1", "code": "C1"})

        assert response.status_code == 401
        assert response.json()["error"] == "token_exchange_failed"

    def test_login_store_unavailable(self, client, store):
        store.put = AsyncMock(side_effect=StoreUnavailableError("down"))

        response = client.get("/auth/login")

        assert response.status_code == 500
        assert response.json()["error"] == "store_unavailable"

    def test_login_to_dashboard_round_trip(self, client, provider):
        stub_exchange(provider, valid_token_set())

        login = client.get("/auth/login")
        state = parse_qs(urlparse(login.headers["location"]).query)["state"][0]

        callback = client.get("/auth/callback", params={"state": state, "code": "C1"})
        session_id = session_cookie_header(callback).split(";")[0].split("=", 1)[1]

        dashboard = client.get(callback.headers["location"], headers={"Cookie": f"session_id={session_id}"})

        assert dashboard.status_code == 200
        assert dashboard.json()["user"]["username"] == "alice"


# ============================================================================
# Token helpers
# ============================================================================

class TestAuthUtils:
    """Test identifier generation and claim extraction"""

    def test_tokens_are_unique_and_long(self):
        tokens = {generate_secure_token() for _ in range(50)}

        assert len(tokens) == 50
        assert all(len(token) >= 43 for token in tokens)

    def test_short_tokens_refused(self):
        with pytest.raises(ValueError):
            generate_secure_token(16)

    def test_mask_token(self):
        assert mask_token("abcdefghijklmnop") == "abcdefgh..."
        assert mask_token("") == "<empty>"
        assert mask_token(None) == "<empty>"

    def test_username_from_preferred_username(self):
        assert extract_username_from_claims({"preferred_username": "Alice", "sub": "123"}) == "Alice"

    def test_username_missing_is_empty(self):
        assert extract_username_from_claims({"sub": "123"}) == ""

    def test_email_kept_as_issued(self):
        assert extract_email_from_claims({"email": "Alice@Example.COM"}) == "Alice@Example.COM"
        assert extract_email_from_claims({"email": "not-an-email"}) == "not-an-email"

    def test_email_missing(self):
        assert extract_email_from_claims({}) == ""
        assert extract_email_from_claims({"email": None}) == ""
