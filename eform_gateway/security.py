"""
JWT Authentication Module

Credential check that runs before any request reaches the engine. Tokens
come from the ``Authorization: Bearer`` header or the ``token`` cookie and
are verified either with a shared HS256 secret (``JWT_SECRET``) or, when no
secret is configured, with RS256 keys published by the identity provider's
JWKS endpoint.
"""

import logging
from typing import Any, Dict, Optional

import requests
from cachetools import TTLCache, cached
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicNumbers
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError
from jose.utils import base64url_decode

from eform_gateway.config import Settings, get_settings
from eform_gateway.errors import AuthRejected

logger = logging.getLogger(__name__)

TOKEN_COOKIE = "token"

# auto_error=False: the cookie is an accepted fallback
bearer_scheme = HTTPBearer(auto_error=False)

# JWKS cache: 1 hour TTL, IdPs rotate keys far less often
JWKS_CACHE = TTLCache(maxsize=4, ttl=3600)


class AuthConfigurationError(RuntimeError):
    """Neither a shared secret nor an issuer is configured."""


def _jwks_url(issuer: str) -> str:
    return f"{issuer.rstrip('/')}/v1/keys"


# ============================================================================
# JWKS FETCHING & CACHING
# ============================================================================

@cached(cache=JWKS_CACHE)
def get_jwks(jwks_url: str) -> Dict[str, Any]:
    """
    Fetch and cache the JSON Web Key Set from the IdP.

    Raises:
        AuthConfigurationError: If the key set cannot be fetched
    """
    try:
        response = requests.get(jwks_url, timeout=5)
        response.raise_for_status()
        logger.info(f"JWKS fetched successfully from {jwks_url}")
        return response.json()
    except requests.exceptions.RequestException as e:
        logger.critical(f"Failed to fetch JWKS from {jwks_url}: {e}")
        raise AuthConfigurationError("JWKS unavailable") from e


def jwk_to_pem(jwk: Dict[str, Any]) -> str:
    """Convert an RSA JWK to PEM format."""
    if jwk.get("kty") != "RSA":
        raise ValueError("Only RSA keys supported")

    n = int.from_bytes(base64url_decode(jwk["n"].encode()), "big")
    e = int.from_bytes(base64url_decode(jwk["e"].encode()), "big")

    if n.bit_length() > 16384:
        raise ValueError("Invalid RSA modulus size")

    public_key = RSAPublicNumbers(e, n).public_key()
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()


def _get_public_key(kid: str, jwks: Dict[str, Any]) -> Optional[str]:
    for key in jwks.get("keys", []):
        if key.get("kid") == kid and key.get("kty") == "RSA":
            return jwk_to_pem(key)
    return None


def _rsa_key_for(token: str, settings: Settings) -> str:
    kid = jwt.get_unverified_header(token).get("kid")
    if not kid:
        raise JWTError("Missing 'kid' in token header")

    url = _jwks_url(settings.jwt_issuer)
    public_key = _get_public_key(kid, get_jwks(url))
    if public_key is None:
        # keys may have rotated since the cache was filled
        logger.warning(f"KID '{kid}' not found in cached JWKS. Refreshing cache.")
        JWKS_CACHE.clear()
        public_key = _get_public_key(kid, get_jwks(url))
        if public_key is None:
            raise JWTError(f"Public key not found for kid={kid} even after cache refresh")
    return public_key


# ============================================================================
# JWT VERIFICATION
# ============================================================================

def decode_token(token: str, settings: Optional[Settings] = None) -> Dict[str, Any]:
    """
    Verify signature, expiry and (when configured) issuer and audience.

    Raises:
        JWTError: For any invalid token
        AuthConfigurationError: If authentication is not configured
    """
    settings = settings or get_settings()
    options = {"verify_aud": bool(settings.jwt_audience)}

    if settings.jwt_secret:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            options=options,
        )
    if settings.jwt_issuer:
        return jwt.decode(
            token,
            _rsa_key_for(token, settings),
            algorithms=["RS256"],
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            options=options,
        )
    raise AuthConfigurationError("Set JWT_SECRET, or JWT_ISSUER and JWT_AUDIENCE")


def verify_jwt(token: str) -> Dict[str, Any]:
    """
    Verify and decode a JWT.

    Raises:
        AuthRejected: For a missing, invalid or expired token
        AuthConfigurationError: If authentication is not configured
    """
    if not token:
        raise AuthRejected("Missing token")
    try:
        return decode_token(token)
    except ExpiredSignatureError:
        raise AuthRejected("Token has expired")
    except JWTClaimsError as e:
        raise AuthRejected(f"Invalid token claim: {str(e)}")
    except JWTError as e:
        logger.warning(f"JWT verification failed: {e}")
        raise AuthRejected("Invalid token")


# ============================================================================
# LIGHTWEIGHT TOKEN PARSING (For Rate Limiting)
# ============================================================================

def get_user_id_from_token(token: str) -> str:
    """
    Extract the user id (``sub`` or ``userId`` claim) for rate limiting.

    Never raises: returns "invalid_user" for anything unverifiable, so the
    limiter can still key anonymous or broken requests by address.
    """
    try:
        payload = decode_token(token)
    except Exception as e:
        logger.debug(f"Failed to extract user ID from token: {e}")
        return "invalid_user"
    return str(payload.get("sub") or payload.get("userId") or "unknown_user")


def token_from_request(request: Request, credentials: Optional[HTTPAuthorizationCredentials] = None) -> Optional[str]:
    if credentials and credentials.credentials:
        return credentials.credentials
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[7:]
    return request.cookies.get(TOKEN_COOKIE)


# ============================================================================
# FASTAPI DEPENDENCY
# ============================================================================

async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Dict[str, Any]:
    """
    FastAPI dependency returning the verified token payload.

    Raises:
        HTTPException: 401 if the token is missing or invalid, 500 if
            authentication is not configured
    """
    token = token_from_request(request, credentials)
    try:
        return verify_jwt(token)
    except AuthRejected as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        )
    except AuthConfigurationError as e:
        logger.critical(f"Authentication is not configured: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Authentication service error",
        )
