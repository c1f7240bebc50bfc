"""
Authentication routes for OIDC login and callback handling.

This module exposes the authorization code flow over HTTP:

- GET /auth/login     redirect to the identity provider (307)
- GET /auth/callback  validate the provider redirect, set the session cookie,
                      redirect to the landing page (307)

The flow itself lives in :mod:`authflow.app.auth.flow`; these handlers only
translate between HTTP and the controller. Failures raise ``AuthFlowError``,
rendered as JSON by the application exception handler.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import RedirectResponse

from ..config import Settings
from .dependencies import get_app_settings, get_auth_flow
from .flow import AuthFlow
from .session import set_session_cookie

logger = logging.getLogger(__name__)


# =============================================================================
# Router Setup
# =============================================================================

auth_router = APIRouter(
    prefix="/auth",
    tags=["authentication"],
)


# =============================================================================
# Login Endpoint
# =============================================================================

@auth_router.get("/login", response_class=RedirectResponse)
async def login(flow: AuthFlow = Depends(get_auth_flow)):
    """
    Initiate OIDC login by redirecting to the identity provider.

    Returns:
        307 RedirectResponse to the provider authorization endpoint
    """
    authorization_url = await flow.begin_login()
    return RedirectResponse(url=authorization_url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


# =============================================================================
# Callback Endpoint
# =============================================================================

@auth_router.get("/callback", response_class=RedirectResponse)
async def callback(
    code: Optional[str] = Query(None, description="Authorization code from the provider"),
    state: Optional[str] = Query(None, description="State parameter for CSRF protection"),
    error: Optional[str] = Query(None, description="Error code if authentication failed"),
    error_description: Optional[str] = Query(None, description="Error description"),
    flow: AuthFlow = Depends(get_auth_flow),
    settings: Settings = Depends(get_app_settings),
):
    """
    Handle the provider redirect after the user authenticated.

    Query Parameters:
        code: Authorization code
        state: State parameter (must match a pending login)
        error: Error code if the provider refused the login
        error_description: Human-readable error description

    Returns:
        307 RedirectResponse to the landing page with the session cookie set
    """
    session_id, _ = await flow.complete_callback(
        state=state,
        code=code,
        error=error,
        error_description=error_description,
    )

    response = RedirectResponse(url=settings.LANDING_PATH, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
    set_session_cookie(
        response,
        session_id,
        max_age=settings.SESSION_DURATION_SECONDS,
        secure=settings.COOKIE_SECURE,
    )
    return response
