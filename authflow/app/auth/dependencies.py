"""
Request dependencies for the authentication routes and the session guard.

The provider client and the key-value store are created once by the
application lifespan and kept on ``app.state``; these dependencies hand them
to handlers so tests can substitute their own.
"""

from fastapi import Depends, Request, status

from ..config import Settings
from ..store import KeyValueStore
from .flow import AuthFlow, AuthFlowError
from .provider import OIDCProviderClient
from .session import SessionStore
from .state import CsrfStateStore


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_provider(request: Request) -> OIDCProviderClient:
    """
    Dependency returning the shared identity provider client.

    Raises:
        AuthFlowError: 503 if startup has not completed discovery
    """
    provider = getattr(request.app.state, "provider", None)
    if provider is None:
        raise AuthFlowError(
            "provider_unavailable",
            "Identity provider not initialized",
            status.HTTP_503_SERVICE_UNAVAILABLE,
        )
    return provider


def get_store(request: Request) -> KeyValueStore:
    store = getattr(request.app.state, "store", None)
    if store is None:
        raise AuthFlowError(
            "store_unavailable",
            "State store not initialized",
            status.HTTP_503_SERVICE_UNAVAILABLE,
        )
    return store


def get_state_store(
    store: KeyValueStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
) -> CsrfStateStore:
    return CsrfStateStore(store, ttl_seconds=settings.CSRF_STATE_TTL_SECONDS)


def get_session_store(
    store: KeyValueStore = Depends(get_store),
    settings: Settings = Depends(get_app_settings),
) -> SessionStore:
    return SessionStore(store, ttl_seconds=settings.SESSION_DURATION_SECONDS)


def get_auth_flow(
    provider: OIDCProviderClient = Depends(get_provider),
    state_store: CsrfStateStore = Depends(get_state_store),
    session_store: SessionStore = Depends(get_session_store),
) -> AuthFlow:
    return AuthFlow(provider, state_store, session_store)
