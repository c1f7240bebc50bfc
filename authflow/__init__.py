"""OIDC authorization code login with server-side sessions."""

__version__ = "1.0.0"
