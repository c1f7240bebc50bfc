"""
Authentication Service Application
==================================

FastAPI application implementing browser login through the OIDC
authorization code flow and server-side sessions.

Subpackages:
    - auth: provider client, login flow, session storage and guard
    - dashboard: protected resources

Modules:
    - config: environment-driven settings
    - models: shared pydantic models
    - store: transient key-value store with per-entry expiry
    - main: application factory and entry point
"""
