"""
Authentication utilities.

This module handles:
- Generating opaque identifiers (CSRF state, session IDs)
- Extracting profile fields from verified token claims
- Masking tokens before they reach the logs
"""

import secrets
from typing import Any, Dict, Optional

# 32 bytes = 256 bits of entropy, ~43 URL-safe characters
TOKEN_BYTES = 32


def generate_secure_token(nbytes: int = TOKEN_BYTES) -> str:
    """
    Generate a cryptographically random, URL-safe token.

    Used for both CSRF state tokens and session identifiers. Each call
    draws fresh bytes from the OS CSPRNG.

    Args:
        nbytes: Number of random bytes (at least 32)

    Returns:
        Base64-URL-encoded string without padding
    """
    if nbytes < TOKEN_BYTES:
        raise ValueError(f"Refusing to generate a token with fewer than {TOKEN_BYTES} bytes")
    return secrets.token_urlsafe(nbytes)


def mask_token(token: Optional[str], visible: int = 8) -> str:
    """Return the first few characters of a token for log correlation."""
    if not token:
        return "<empty>"
    return token[:visible] + "..."


def _string_claim(claims: Dict[str, Any], name: str) -> str:
    value = claims.get(name)
    return value if isinstance(value, str) else ""


def extract_username_from_claims(claims: Dict[str, Any]) -> str:
    """
    Extract the user's login name from ID token claims.

    Keycloak puts the login name in ``preferred_username``. The value is
    kept exactly as issued.

    Args:
        claims: Decoded ID token claims

    Returns:
        Username string, or an empty string if the claim is absent
    """
    return _string_claim(claims, "preferred_username")


def extract_email_from_claims(claims: Dict[str, Any]) -> str:
    """
    Extract email address from ID token claims.

    Args:
        claims: Decoded ID token claims

    Returns:
        Email address as issued, or an empty string if absent
    """
    return _string_claim(claims, "email")
