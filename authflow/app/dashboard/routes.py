"""
Dashboard Routes
================

Every endpoint here depends on :func:`require_session`; a request only
reaches the handler body with a resolved, re-verified session.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends

from ..auth.guard import require_session
from ..models import AuthenticatedContext

logger = logging.getLogger(__name__)

dashboard_router = APIRouter(
    prefix="/dashboard",
    tags=["dashboard"],
)


def _user_payload(context: AuthenticatedContext) -> Dict[str, Any]:
    realm_access = context.claims.get("realm_access")
    roles = realm_access.get("roles", []) if isinstance(realm_access, dict) else []
    return {
        "username": context.user.username,
        "email": context.user.email,
        "session_created_at": context.session.created_at.isoformat(),
        "roles": roles,
    }


@dashboard_router.get("")
async def dashboard(context: AuthenticatedContext = Depends(require_session)) -> Dict[str, Any]:
    """
    Landing page after login.

    Returns:
        dict: Profile cached in the session and roles from the access token
    """
    return {"user": _user_payload(context)}


@dashboard_router.get("/{resource_path:path}")
async def dashboard_resource(
    resource_path: str,
    context: AuthenticatedContext = Depends(require_session),
) -> Dict[str, Any]:
    logger.debug("Protected resource requested", extra={"resource": resource_path})
    return {
        "resource": resource_path,
        "user": _user_payload(context),
    }
