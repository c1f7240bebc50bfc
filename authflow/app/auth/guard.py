"""
Session Guard
=============

FastAPI dependency that gates protected resources.

Per request:
    1. No session cookie                  -> redirect to login entry
    2. Session record missing or expired  -> clear cookie, redirect
    3. Access token fails re-verification -> delete record, clear cookie, redirect
    4. Otherwise                          -> AuthenticatedContext for the handler

Invalid sessions degrade silently to "not authenticated". Only an
unreachable store or provider, which says nothing about the session itself,
produces an error response, and the cookie is kept in that case.
"""

import logging

from fastapi import Depends, Request, status

from ..models import AuthenticatedContext
from ..store import CorruptEntryError, EntryNotFoundError, StoreError
from .dependencies import get_provider, get_session_store
from .flow import AuthFlowError
from .provider import OIDCProviderClient, ProviderUnavailableError, TokenVerificationError
from .session import SESSION_COOKIE_NAME, SessionStore
from .utils import mask_token

logger = logging.getLogger(__name__)


class LoginRedirect(Exception):
    """
    Abort the request and send the browser to the login entry point.

    Rendered by the application's exception handler as a 307 redirect,
    expiring the session cookie when ``clear_cookie`` is set.
    """

    def __init__(self, reason: str, clear_cookie: bool = False):
        super().__init__(reason)
        self.reason = reason
        self.clear_cookie = clear_cookie


def _unavailable(error: str) -> AuthFlowError:
    return AuthFlowError(
        error,
        "Session could not be validated. Please try again.",
        status.HTTP_503_SERVICE_UNAVAILABLE,
    )


async def require_session(
    request: Request,
    session_store: SessionStore = Depends(get_session_store),
    provider: OIDCProviderClient = Depends(get_provider),
) -> AuthenticatedContext:
    """
    Resolve and re-validate the caller's session.

    Args:
        request: Incoming request (session cookie is read from it)
        session_store: Session record store
        provider: Identity provider client

    Returns:
        AuthenticatedContext with the session record and access token claims

    Raises:
        LoginRedirect: If the caller has no valid session
        AuthFlowError: 503 if the store or provider cannot be reached
    """
    session_id = request.cookies.get(SESSION_COOKIE_NAME)
    if not session_id:
        raise LoginRedirect("no session cookie")

    try:
        session = await session_store.get(session_id)
    except EntryNotFoundError:
        logger.info("Session not found or expired", extra={"session": mask_token(session_id)})
        raise LoginRedirect("session not found", clear_cookie=True)
    except CorruptEntryError as e:
        logger.warning("Discarding undecodable session", extra={"session": mask_token(session_id), "error": str(e)})
        await _delete_quietly(session_store, session_id)
        raise LoginRedirect("session corrupt", clear_cookie=True)
    except StoreError as e:
        logger.error("Failed to load session", extra={"error": str(e)})
        raise _unavailable("store_unavailable") from e

    try:
        claims = await provider.verify_access_token(session.access_token)
    except TokenVerificationError as e:
        logger.info(
            "Session access token rejected",
            extra={"session": mask_token(session_id), "error": str(e)},
        )
        await _delete_quietly(session_store, session_id)
        raise LoginRedirect("access token rejected", clear_cookie=True)
    except ProviderUnavailableError as e:
        logger.error("Failed to verify session access token", extra={"error": str(e)})
        raise _unavailable("provider_unavailable") from e

    return AuthenticatedContext(session_id=session_id, session=session, claims=claims)


async def _delete_quietly(session_store: SessionStore, session_id: str) -> None:
    # The cookie is cleared regardless; a leftover record still expires via TTL.
    try:
        await session_store.delete(session_id)
    except StoreError as e:
        logger.warning(
            "Failed to delete invalid session",
            extra={"session": mask_token(session_id), "error": str(e)},
        )
