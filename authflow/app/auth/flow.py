"""
Authentication Flow Controller
==============================

Implements the two phases of the OAuth 2.0 / OIDC authorization code flow.

Phase A (login):
    1. Generate a random CSRF state token
    2. Persist it with a short TTL
    3. Return the provider authorization URL

Phase B (callback):
    1. Validate and consume the CSRF state (single use)
    2. Exchange the authorization code for tokens
    3. Verify the ID token and extract profile claims
    4. Create and persist a new session record

Phase B short-circuits on the first failure. Persisting the session is the
last state-changing step, so a failure or cancellation anywhere earlier leaves
no session behind. Nothing is kept in process between the two phases; the
store is the only shared state.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Tuple

from fastapi import status

from ..models import SessionData, UserInfo
from ..store import EntryNotFoundError, StoreError
from .provider import (
    OIDCProviderClient,
    ProviderUnavailableError,
    TokenExchangeError,
    TokenVerificationError,
)
from .session import SessionStore
from .state import CsrfStateStore
from .utils import generate_secure_token, mask_token

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================

class AuthFlowError(Exception):
    """
    Login, callback or session check failure shown to the browser.

    ``message`` is generic on purpose; the underlying cause is logged
    and chained, never returned.
    """

    def __init__(self, error: str, message: str, status_code: int = status.HTTP_400_BAD_REQUEST):
        super().__init__(message)
        self.error = error
        self.message = message
        self.status_code = status_code


def _store_unavailable() -> AuthFlowError:
    return AuthFlowError(
        "store_unavailable",
        "Authentication is temporarily unavailable. Please try again.",
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


# =============================================================================
# Controller
# =============================================================================

class AuthFlow:
    """Per-request controller for login initiation and callback handling."""

    def __init__(
        self,
        provider: OIDCProviderClient,
        state_store: CsrfStateStore,
        session_store: SessionStore,
    ):
        self.provider = provider
        self.state_store = state_store
        self.session_store = session_store

    async def begin_login(self) -> str:
        """
        Start a login attempt.

        Returns:
            Provider authorization URL to redirect the browser to

        Raises:
            AuthFlowError: If the state token cannot be stored
        """
        state = generate_secure_token()

        try:
            await self.state_store.save(state)
        except StoreError as e:
            logger.error("Failed to store CSRF state", extra={"error": str(e)})
            raise _store_unavailable() from e

        logger.info("Login initiated", extra={"state": mask_token(state)})
        return self.provider.build_authorization_url(state)

    async def complete_callback(
        self,
        state: Optional[str],
        code: Optional[str],
        error: Optional[str] = None,
        error_description: Optional[str] = None,
    ) -> Tuple[str, SessionData]:
        """
        Handle the provider redirect back to the application.

        Args:
            state: ``state`` query parameter
            code: ``code`` query parameter
            error: ``error`` query parameter, set when the provider refused the login
            error_description: ``error_description`` query parameter

        Returns:
            Tuple of (new session ID, stored session record)

        Raises:
            AuthFlowError: On the first failing step
        """
        await self._consume_state(state)

        if error:
            logger.warning(
                "Provider returned an error to the callback",
                extra={"provider_error": error, "description": error_description},
            )
            raise AuthFlowError("provider_error", "The identity provider did not complete the login.")

        if not code:
            raise AuthFlowError("missing_code", "Missing authorization code.")

        try:
            token_set = await self.provider.exchange_code(code)
        except TokenExchangeError as e:
            logger.warning("Token exchange failed", extra={"error": str(e)})
            raise AuthFlowError(
                "token_exchange_failed",
                "Failed to exchange authorization code.",
                status.HTTP_401_UNAUTHORIZED,
            ) from e

        try:
            identity = await self.provider.verify_id_token(token_set)
        except (TokenVerificationError, ProviderUnavailableError) as e:
            logger.warning("ID token verification failed", extra={"error": str(e)})
            raise AuthFlowError(
                "identity_verification_failed",
                "Failed to verify identity token.",
                status.HTTP_401_UNAUTHORIZED,
            ) from e

        session_id = generate_secure_token()
        session_data = SessionData(
            access_token=token_set.access_token,
            user_info=UserInfo(username=identity.username, email=identity.email),
            created_at=datetime.now(timezone.utc),
        )

        try:
            await self.session_store.create(session_id, session_data)
        except StoreError as e:
            logger.error("Failed to store session", extra={"error": str(e)})
            raise _store_unavailable() from e

        logger.info(
            "Login completed",
            extra={"username": identity.username, "session": mask_token(session_id)},
        )
        return session_id, session_data

    async def _consume_state(self, state: Optional[str]) -> None:
        """
        Validate the callback state against the stored one and discard it.

        The entry is deleted whatever the outcome, so a state token can be
        presented at most once.
        """
        if not state:
            raise AuthFlowError("missing_state", "Missing state parameter in callback.")

        try:
            try:
                stored_state = await self.state_store.lookup(state)
            except EntryNotFoundError as e:
                logger.warning("Unknown or expired CSRF state", extra={"state": mask_token(state)})
                raise AuthFlowError("invalid_state", "Invalid or expired login state.") from e
            except StoreError as e:
                logger.error("Failed to read CSRF state", extra={"error": str(e)})
                raise _store_unavailable() from e

            if stored_state != state:
                logger.warning("CSRF state mismatch", extra={"state": mask_token(state)})
                raise AuthFlowError("invalid_state", "Invalid or expired login state.")
        finally:
            try:
                await self.state_store.discard(state)
            except StoreError as e:
                logger.warning(
                    "Failed to delete used CSRF state",
                    extra={"state": mask_token(state), "error": str(e)},
                )
