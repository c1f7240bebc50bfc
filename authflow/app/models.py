"""
Data Models Module

This module defines Pydantic models shared by the authentication flow,
the session store and protected handlers.

Models are organized by functional area:
- Provider models (token set, identity claims)
- Session models (session record persisted in the store)
- Request context (what protected handlers receive)
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Provider Models
# ============================================================================

class TokenSet(BaseModel):
    """Token endpoint response from the identity provider."""

    model_config = ConfigDict(extra="allow")

    access_token: str = Field(..., description="Access token for resource access")
    token_type: str = Field(default="Bearer", description="Token type")
    id_token: Optional[str] = Field(None, description="Signed identity token")
    refresh_token: Optional[str] = Field(None, description="Refresh token (unused)")
    expires_in: Optional[int] = Field(None, description="Access token lifetime in seconds")
    scope: Optional[str] = Field(None, description="Granted scopes")


class IdentityClaims(BaseModel):
    """Profile claims decoded from a verified identity token."""

    subject: str = Field(..., description="Subject identifier ('sub')")
    username: str = Field(default="", description="'preferred_username' claim")
    email: str = Field(default="", description="'email' claim")
    claims: Dict[str, Any] = Field(default_factory=dict, description="All verified claims")


# ============================================================================
# Session Models
# ============================================================================

class UserInfo(BaseModel):
    """Minimal user profile cached in the session record."""

    username: str = ""
    email: str = ""


class SessionData(BaseModel):
    """
    Server-side session record.

    Only the session identifier travels to the browser, inside the
    session cookie. The embedded access token is re-verified on every
    protected request.
    """

    access_token: str
    user_info: UserInfo
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ============================================================================
# Request Context
# ============================================================================

class AuthenticatedContext(BaseModel):
    """Resolved session handed to protected handlers by the session guard."""

    session_id: str
    session: SessionData
    claims: Dict[str, Any] = Field(default_factory=dict)

    @property
    def user(self) -> UserInfo:
        return self.session.user_info
