"""
Shared fixtures for the authentication service tests.
"""

import httpx
import pytest

from authflow.app.auth.provider import OIDCProviderClient, ProviderMetadata
from authflow.app.auth.session import SessionStore
from authflow.app.auth.state import CsrfStateStore
from authflow.app.config import Settings
from authflow.app.store import MemoryStore

from .tokens import (
    CLIENT_ID,
    CLIENT_SECRET,
    KEYCLOAK_URL,
    REALM,
    REDIRECT_URL,
    FakeClock,
    create_mock_jwks,
    discovery_document,
)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        KEYCLOAK_URL=KEYCLOAK_URL,
        KEYCLOAK_REALM=REALM,
        KEYCLOAK_CLIENT_ID=CLIENT_ID,
        KEYCLOAK_CLIENT_SECRET=CLIENT_SECRET,
        REDIRECT_URL=REDIRECT_URL,
        STORE_BACKEND="memory",
        _env_file=None,
    )


@pytest.fixture
def metadata() -> ProviderMetadata:
    return ProviderMetadata.from_document(discovery_document())


@pytest.fixture
def provider(settings, metadata) -> OIDCProviderClient:
    """Provider client built from already-discovered metadata and keys."""
    return OIDCProviderClient(settings, metadata, create_mock_jwks(), httpx.AsyncClient())


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> MemoryStore:
    return MemoryStore(clock=clock)


@pytest.fixture
def state_store(store, settings) -> CsrfStateStore:
    return CsrfStateStore(store, ttl_seconds=settings.CSRF_STATE_TTL_SECONDS)


@pytest.fixture
def session_store(store, settings) -> SessionStore:
    return SessionStore(store, ttl_seconds=settings.SESSION_DURATION_SECONDS)
