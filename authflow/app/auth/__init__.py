"""
Authentication Package

This package implements the OIDC authorization code flow against a Keycloak
realm and the server-side sessions that follow a successful login.

Modules:
- provider: OIDC discovery, authorization URL, code exchange, token verification
- state: single-use CSRF state tokens in the transient store
- session: session records in the transient store, session cookie helpers
- flow: login initiation and callback state machine
- guard: session guard dependency for protected routes
- routes: public authentication endpoints (/auth/login, /auth/callback)

The authentication flow:
1. Browser hits /auth/login and is redirected to the provider with a fresh state
2. User authenticates with the provider
3. Provider redirects to /auth/callback with state and code
4. Service validates state, exchanges the code, verifies the ID token
5. Service stores a session record and sets the session_id cookie
6. Protected routes re-verify the session on every request
"""

from .guard import LoginRedirect, require_session
from .routes import auth_router

__all__ = [
    "LoginRedirect",
    "auth_router",
    "require_session",
]
