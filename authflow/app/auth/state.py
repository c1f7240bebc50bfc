"""
CSRF state storage for the login flow.

Key:   csrf-state:{state}
Value: the state token itself
TTL:   CSRF_STATE_TTL_SECONDS (default 120)

A state token is written at login initiation and read once at the callback.
Expiry is left to the backing store.
"""

import logging

from ..store import KeyValueStore
from .utils import mask_token

logger = logging.getLogger(__name__)

CSRF_STATE_NAMESPACE = "csrf-state"
DEFAULT_STATE_TTL_SECONDS = 120


class CsrfStateStore:
    """Pending-login state tokens over a shared key-value store."""

    def __init__(self, store: KeyValueStore, ttl_seconds: int = DEFAULT_STATE_TTL_SECONDS):
        """
        Args:
            store: Backing key-value store
            ttl_seconds: State token lifetime in seconds
        """
        self.store = store
        self.ttl_seconds = ttl_seconds

    async def save(self, state: str) -> None:
        await self.store.put(CSRF_STATE_NAMESPACE, state, state, self.ttl_seconds)
        logger.debug(
            "Stored CSRF state",
            extra={"state": mask_token(state), "ttl_seconds": self.ttl_seconds},
        )

    async def lookup(self, state: str) -> str:
        """
        Return the stored value for ``state``.

        Raises:
            EntryNotFoundError: If never issued, already consumed or expired
        """
        return await self.store.get(CSRF_STATE_NAMESPACE, state)

    async def discard(self, state: str) -> None:
        await self.store.delete(CSRF_STATE_NAMESPACE, state)
