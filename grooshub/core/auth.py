"""
Who is calling. Auth0 access tokens when FF_USE_AUTH0 is on, a fixed dev user otherwise.

The tenant is the user's organization: every row, and every encryption key,
is scoped by it. Organization and roles come from namespaced custom claims.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

import httpx
from jose import jwt, JWTError

from .config import get_settings
from .flags import get_flags

logger = logging.getLogger(__name__)

CLAIM_NAMESPACE = "https://grooshub.nl"
JWKS_TTL_SECONDS = 600


@dataclass
class AuthenticatedUser:
    user_id: str
    email: str = ""
    name: str = ""
    tenant_id: str = ""
    roles: list[str] = field(default_factory=list)
    permissions: list[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles


DEV_USER = AuthenticatedUser(
    user_id="dev-user",
    email="dev@local",
    name="Dev User",
    tenant_id="dev-org",
    roles=["admin"],
    permissions=["all"],
)

# domain -> (fetched_at, jwks)
_jwks_cache: dict[str, tuple[float, dict]] = {}


async def _get_jwks(domain: str) -> dict:
    cached = _jwks_cache.get(domain)
    if cached and time.time() - cached[0] < JWKS_TTL_SECONDS:
        return cached[1]

    async with httpx.AsyncClient(timeout=10) as client:
        resp = await client.get(f"https://{domain}/.well-known/jwks.json")
        resp.raise_for_status()
        jwks = resp.json()

    _jwks_cache[domain] = (time.time(), jwks)
    logger.info("Fetched JWKS for %s (%d keys)", domain, len(jwks.get("keys", [])))
    return jwks


def _signing_key(jwks: dict, kid: Optional[str]) -> dict:
    for key in jwks.get("keys", []):
        if key.get("kid") == kid:
            return {k: key[k] for k in ("kty", "kid", "use", "n", "e")}
    raise JWTError("Unable to find matching key in JWKS")


def _claim(payload: dict, name: str, default=None):
    """Standard claim first, then the namespaced custom claim."""
    if name in payload:
        return payload[name]
    return payload.get(f"{CLAIM_NAMESPACE}/{name}", default)


def user_from_claims(payload: dict) -> AuthenticatedUser:
    return AuthenticatedUser(
        user_id=payload.get("sub", ""),
        email=_claim(payload, "email", ""),
        name=_claim(payload, "name", ""),
        tenant_id=payload.get(f"{CLAIM_NAMESPACE}/org_id", ""),
        roles=payload.get(f"{CLAIM_NAMESPACE}/roles", []),
        permissions=payload.get("permissions", []),
    )


async def verify_token(token: str) -> AuthenticatedUser:
    """Validate signature, audience and issuer. Raises JWTError."""
    settings = get_settings()
    jwks = await _get_jwks(settings.auth0_domain)
    key = _signing_key(jwks, jwt.get_unverified_header(token).get("kid"))

    payload = jwt.decode(
        token,
        key,
        algorithms=[settings.auth0_algorithm],
        audience=settings.auth0_audience,
        issuer=f"https://{settings.auth0_domain}/",
    )
    return user_from_claims(payload)


async def get_current_user(authorization: str = "") -> AuthenticatedUser:
    """
    Resolve the caller from an Authorization header.
    Raises PermissionError when the header is missing, malformed or invalid.
    """
    if not get_flags().use_auth0:
        return DEV_USER

    scheme, _, token = (authorization or "").partition(" ")
    if not authorization:
        raise PermissionError("Missing Authorization header")
    if scheme.lower() != "bearer" or not token:
        raise PermissionError("Invalid Authorization header. Use: Bearer <token>")

    try:
        user = await verify_token(token)
    except JWTError as e:
        raise PermissionError(f"Invalid token: {e}")

    if not user.tenant_id:
        raise PermissionError("Token missing org_id claim")
    return user
