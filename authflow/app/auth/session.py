"""
Session Record Storage
======================

Persists :class:`SessionData` records in the transient store.

Key:   session:{session_id}
Value: JSON {"access_token", "user_info": {"username", "email"}, "created_at"}
TTL:   SESSION_DURATION_SECONDS

The record has no expiry field of its own: it lives as long as the store
keeps it and the embedded access token keeps verifying.
"""

import logging

from fastapi import Response
from pydantic import ValidationError

from ..models import SessionData
from ..store import CorruptEntryError, KeyValueStore
from .utils import mask_token

logger = logging.getLogger(__name__)

SESSION_NAMESPACE = "session"
SESSION_COOKIE_NAME = "session_id"


class SessionStore:
    """Session records over a shared key-value store."""

    def __init__(self, store: KeyValueStore, ttl_seconds: int):
        self.store = store
        self.ttl_seconds = ttl_seconds

    async def create(self, session_id: str, data: SessionData) -> None:
        """
        Persist a new session record.

        Args:
            session_id: Freshly generated session identifier
            data: Session record to store

        Raises:
            StoreUnavailableError: If the store rejects the write
        """
        await self.store.put(SESSION_NAMESPACE, session_id, data.model_dump_json(), self.ttl_seconds)
        logger.info(
            "Session created",
            extra={
                "session": mask_token(session_id),
                "username": data.user_info.username,
                "ttl_seconds": self.ttl_seconds,
            },
        )

    async def get(self, session_id: str) -> SessionData:
        """
        Load a session record.

        Raises:
            EntryNotFoundError: If the session does not exist or has expired
            CorruptEntryError: If the stored JSON does not decode to a record
            StoreUnavailableError: If the store cannot be reached
        """
        raw = await self.store.get(SESSION_NAMESPACE, session_id)
        try:
            return SessionData.model_validate_json(raw)
        except ValidationError as e:
            raise CorruptEntryError(f"Session record could not be decoded: {e}") from e

    async def delete(self, session_id: str) -> None:
        await self.store.delete(SESSION_NAMESPACE, session_id)
        logger.info("Session deleted", extra={"session": mask_token(session_id)})


# =============================================================================
# Session Cookie
# =============================================================================

def set_session_cookie(response: Response, session_id: str, max_age: int, secure: bool = True) -> None:
    """
    Attach the session cookie to a response.

    HttpOnly and SameSite=Strict keep the identifier away from scripts and
    cross-site requests; it never appears in a URL.
    """
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=session_id,
        max_age=max_age,
        path="/",
        secure=secure,
        httponly=True,
        samesite="strict",
    )


def clear_session_cookie(response: Response, secure: bool = True) -> None:
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value="",
        max_age=-1,
        path="/",
        secure=secure,
        httponly=True,
        samesite="strict",
    )
