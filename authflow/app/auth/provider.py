"""
Identity Provider Client
========================

OIDC client for a Keycloak realm. Wraps the four provider capabilities the
login flow and session guard need:

- Discovering provider metadata and signing keys (once, at startup)
- Building the authorization URL for the code flow
- Exchanging an authorization code for a token set
- Verifying ID tokens and access tokens against the provider's JWKS

The client is constructed once by the application lifespan and shared by
every request. Provider metadata is frozen after discovery; the JWKS is
replaced wholesale when the provider rotates its keys.
"""

import logging
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError, JWTError
from pydantic import BaseModel, ConfigDict, Field

from ..config import Settings
from ..models import IdentityClaims, TokenSet
from .utils import extract_email_from_claims, extract_username_from_claims

logger = logging.getLogger(__name__)

SUPPORTED_ALGORITHMS = ["RS256", "RS384", "RS512", "ES256", "ES384", "ES512"]

# Unknown 'kid' values trigger at most one JWKS fetch per interval
JWKS_MIN_REFRESH_SECONDS = 60.0


# =============================================================================
# Exceptions
# =============================================================================

class ProviderError(Exception):
    """Base exception for identity provider errors"""
    pass


class DiscoveryError(ProviderError):
    """Provider metadata or signing keys could not be loaded"""
    pass


class TokenExchangeError(ProviderError):
    """The authorization code could not be exchanged for tokens"""
    pass


class TokenVerificationError(ProviderError):
    """A token is absent, malformed, expired or has an invalid signature"""
    pass


class ProviderUnavailableError(ProviderError):
    """The provider could not be reached while verifying a token"""
    pass


# =============================================================================
# Provider Metadata
# =============================================================================

class ProviderMetadata(BaseModel):
    """Subset of the OpenID provider configuration document."""

    model_config = ConfigDict(frozen=True)

    issuer: str = Field(..., description="Issuer identifier, must equal the realm URL")
    authorization_endpoint: str = Field(..., description="Browser login endpoint")
    token_endpoint: str = Field(..., description="Code exchange endpoint")
    jwks_uri: str = Field(..., description="Signing key set")

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "ProviderMetadata":
        """
        Build metadata from a discovery document.

        Raises:
            DiscoveryError: If a required endpoint is missing
        """
        required = ["issuer", "authorization_endpoint", "token_endpoint", "jwks_uri"]
        missing = [name for name in required if not isinstance(document.get(name), str) or not document.get(name)]
        if missing:
            raise DiscoveryError(f"Provider metadata missing fields: {', '.join(missing)}")

        return cls(
            issuer=document["issuer"],
            authorization_endpoint=document["authorization_endpoint"],
            token_endpoint=document["token_endpoint"],
            jwks_uri=document["jwks_uri"],
        )


async def _get_json(http_client: httpx.AsyncClient, url: str) -> Dict[str, Any]:
    response = await http_client.get(url, headers={"Accept": "application/json"})
    response.raise_for_status()
    data = response.json()
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object from {url}")
    return data


def _validate_jwks(jwks: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(jwks.get("keys"), list):
        raise ValueError("Invalid JWKS response: missing 'keys' field")
    return jwks


def _find_signing_key(jwks: Dict[str, Any], kid: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Find the key in a JWKS that matches the token's ``kid``.

    Encryption keys are skipped. A token without ``kid`` is accepted only
    when the set holds exactly one signing key.
    """
    signing_keys = [key for key in jwks.get("keys", []) if key.get("use", "sig") == "sig"]

    if kid is None:
        return signing_keys[0] if len(signing_keys) == 1 else None

    for key in signing_keys:
        if key.get("kid") == kid:
            return key
    return None


# =============================================================================
# Client
# =============================================================================

class OIDCProviderClient:
    """
    Shared, concurrency-safe handle to one OIDC provider.

    Use :meth:`discover` to construct; the constructor expects metadata and
    keys that were already fetched.
    """

    def __init__(
        self,
        settings: Settings,
        metadata: ProviderMetadata,
        jwks: Dict[str, Any],
        http_client: httpx.AsyncClient,
        owns_http_client: bool = False,
    ):
        self.client_id = settings.KEYCLOAK_CLIENT_ID
        self.redirect_uri = settings.REDIRECT_URL
        self.scopes: List[str] = settings.scopes_list
        self.leeway = settings.TOKEN_LEEWAY_SECONDS
        self.require_azp = settings.SESSION_REQUIRE_AZP
        self.metadata = metadata

        self._client_secret = settings.KEYCLOAK_CLIENT_SECRET
        self._jwks = _validate_jwks(jwks)
        self._jwks_fetched_at = time.monotonic()
        self._http = http_client
        self._owns_http_client = owns_http_client

    @classmethod
    async def discover(
        cls,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "OIDCProviderClient":
        """
        Fetch provider metadata and signing keys.

        Called once at startup. Failure here means the service cannot
        authenticate anyone and must not start.

        Args:
            settings: Application settings (KEYCLOAK_* and REDIRECT_URL)
            http_client: Optional shared httpx client; one is created otherwise

        Returns:
            Ready-to-use provider client

        Raises:
            DiscoveryError: If the provider is unreachable or its metadata is malformed
        """
        owns_http_client = http_client is None
        if http_client is None:
            http_client = httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS)

        discovery_url = f"{settings.provider_url}/.well-known/openid-configuration"

        try:
            try:
                document = await _get_json(http_client, discovery_url)
            except (httpx.HTTPError, ValueError) as e:
                raise DiscoveryError(f"Failed to fetch provider metadata from {discovery_url}: {e}") from e

            metadata = ProviderMetadata.from_document(document)
            if metadata.issuer.rstrip("/") != settings.provider_url:
                raise DiscoveryError(
                    f"Issuer mismatch: expected {settings.provider_url}, provider reports {metadata.issuer}"
                )

            try:
                jwks = _validate_jwks(await _get_json(http_client, metadata.jwks_uri))
            except (httpx.HTTPError, ValueError) as e:
                raise DiscoveryError(f"Failed to fetch signing keys from {metadata.jwks_uri}: {e}") from e
        except DiscoveryError:
            if owns_http_client:
                await http_client.aclose()
            raise

        logger.info(
            "Discovered identity provider",
            extra={
                "issuer": metadata.issuer,
                "signing_keys": len(jwks["keys"]),
            },
        )
        return cls(settings, metadata, jwks, http_client, owns_http_client=owns_http_client)

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http.aclose()

    # -------------------------------------------------------------------------
    # Authorization URL
    # -------------------------------------------------------------------------

    def build_authorization_url(self, state: str) -> str:
        """
        Build the provider login URL for the authorization code flow.

        Pure function of ``state`` and the client configuration.

        Args:
            state: CSRF state token to round-trip through the provider

        Returns:
            Absolute URL on the provider's authorization endpoint
        """
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
        }
        endpoint = self.metadata.authorization_endpoint
        separator = "&" if "?" in endpoint else "?"
        return f"{endpoint}{separator}{urlencode(params)}"

    # -------------------------------------------------------------------------
    # Code Exchange
    # -------------------------------------------------------------------------

    async def exchange_code(self, code: str) -> TokenSet:
        """
        Exchange an authorization code for tokens.

        Codes are single-use, so this is never retried.

        Args:
            code: Authorization code from the callback

        Returns:
            TokenSet containing at least an access token

        Raises:
            TokenExchangeError: If the code is rejected or the token endpoint is unreachable
        """
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "client_secret": self._client_secret,
        }

        try:
            response = await self._http.post(
                self.metadata.token_endpoint,
                data=payload,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise TokenExchangeError(f"Token endpoint unreachable: {e}") from e

        if not response.is_success:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {}
            if not isinstance(error_data, dict):
                error_data = {}
            error_msg = error_data.get("error_description") or error_data.get("error") or f"HTTP {response.status_code}"
            raise TokenExchangeError(f"Token exchange failed: {error_msg}")

        try:
            return TokenSet.model_validate(response.json())
        except ValueError as e:
            raise TokenExchangeError(f"Invalid token response: {e}") from e

    # -------------------------------------------------------------------------
    # Token Verification
    # -------------------------------------------------------------------------

    async def verify_id_token(self, token_set: TokenSet) -> IdentityClaims:
        """
        Verify the ID token of a freshly exchanged token set.

        Checks signature, issuer, audience (this client), expiry and
        not-before. When the token carries ``at_hash`` it must match the
        access token of the same set.

        Args:
            token_set: Token endpoint response

        Returns:
            IdentityClaims with subject, username and email

        Raises:
            TokenVerificationError: If the ID token is absent or invalid
            ProviderUnavailableError: If refreshing signing keys fails
        """
        if not token_set.id_token:
            raise TokenVerificationError("No id_token field in token response")

        claims = await self._decode(
            token_set.id_token,
            audience=self.client_id,
            access_token=token_set.access_token,
        )

        audiences = claims.get("aud")
        if isinstance(audiences, list) and len(audiences) > 1 and claims.get("azp") != self.client_id:
            raise TokenVerificationError("ID token has multiple audiences but 'azp' is not this client")

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise TokenVerificationError("ID token missing 'sub' claim")

        return IdentityClaims(
            subject=subject,
            username=extract_username_from_claims(claims),
            email=extract_email_from_claims(claims),
            claims=claims,
        )

    async def verify_access_token(self, access_token: str) -> Dict[str, Any]:
        """
        Re-verify an access token held in a session record.

        Signature, issuer and expiry are enforced. The audience is NOT
        bound to this client: provider access tokens are addressed to the
        resource servers they grant access to. The authorized party
        (``azp``) is bound instead, when present and SESSION_REQUIRE_AZP
        is set.

        Args:
            access_token: Raw JWT access token

        Returns:
            Decoded access token claims

        Raises:
            TokenVerificationError: If the token is expired, revoked by key rotation or invalid
            ProviderUnavailableError: If refreshing signing keys fails
        """
        if not access_token:
            raise TokenVerificationError("Empty access token")

        claims = await self._decode(access_token, audience=None)

        azp = claims.get("azp")
        if self.require_azp and azp is not None and azp != self.client_id:
            raise TokenVerificationError("Access token was issued to a different client")

        return claims

    async def _decode(
        self,
        token: str,
        audience: Optional[str],
        access_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as e:
            raise TokenVerificationError(f"Malformed token: {e}") from e

        algorithm = header.get("alg")
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise TokenVerificationError(f"Unsupported signing algorithm: {algorithm}")

        signing_key = await self._get_signing_key(header.get("kid"))

        try:
            return jwt.decode(
                token,
                signing_key,
                algorithms=[algorithm],
                audience=audience,
                issuer=self.metadata.issuer,
                access_token=access_token,
                options={
                    "verify_aud": audience is not None,
                    "verify_at_hash": access_token is not None,
                    "leeway": self.leeway,
                },
            )
        except ExpiredSignatureError as e:
            raise TokenVerificationError("Token has expired") from e
        except JWTClaimsError as e:
            raise TokenVerificationError(f"Invalid token claims: {e}") from e
        except JWTError as e:
            raise TokenVerificationError(f"Token verification failed: {e}") from e

    async def _get_signing_key(self, kid: Optional[str]) -> Dict[str, Any]:
        signing_key = _find_signing_key(self._jwks, kid)
        if signing_key is not None:
            return signing_key

        # Keys may have rotated since discovery
        if time.monotonic() - self._jwks_fetched_at >= JWKS_MIN_REFRESH_SECONDS:
            await self._refresh_jwks()
            signing_key = _find_signing_key(self._jwks, kid)

        if signing_key is None:
            raise TokenVerificationError("Unable to find matching signing key in JWKS")
        return signing_key

    async def _refresh_jwks(self) -> None:
        try:
            jwks = _validate_jwks(await _get_json(self._http, self.metadata.jwks_uri))
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderUnavailableError(f"Failed to refresh signing keys: {e}") from e

        self._jwks = jwks
        self._jwks_fetched_at = time.monotonic()
        logger.info("Refreshed provider signing keys", extra={"signing_keys": len(jwks["keys"])})
