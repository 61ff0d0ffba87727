"""JWT access token validation (ES256) for the enrollment API.

Tokens are issued by the identity provider; this service only verifies
them.  `create_access_token` exists for local dev and tests, signing
with the same ephemeral key the verifier trusts.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta

import jwt
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import load_pem_public_key

from enrollment_service.core.config import _getenv

ALGORITHM = "ES256"
ISSUER = _getenv("JWT_ISSUER", "auth-service")
AUDIENCE = _getenv("JWT_AUDIENCE", "enrollment-service")
ACCESS_TOKEN_TTL_MIN = 15

# Dev/test: ephemeral key pair generated on import.
# Production: JWT_PUBLIC_KEY holds the issuer's PEM public key.
_private_key: ec.EllipticCurvePrivateKey | None = None
_public_key_pem = _getenv("JWT_PUBLIC_KEY", "")
if _public_key_pem:
    _public_key = load_pem_public_key(_public_key_pem.encode())
else:
    _private_key = ec.generate_private_key(ec.SECP256R1())
    _public_key = _private_key.public_key()


def create_access_token(*, sub: str, roles: list[str] | None = None) -> str:
    """Sign an access token with the local key (dev and tests only)."""
    if _private_key is None:
        raise RuntimeError("JWT_PUBLIC_KEY is set; this service cannot issue tokens")
    now = datetime.now(UTC)
    payload = {
        "sub": sub,
        "iss": ISSUER,
        "aud": AUDIENCE,
        "exp": now + timedelta(minutes=ACCESS_TOKEN_TTL_MIN),
        "iat": now,
        "jti": str(uuid.uuid4()),
        "roles": roles or ["user"],
    }
    return jwt.encode(payload, _private_key, algorithm=ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Verify signature and claims, return the payload.

    Pins algorithm to ES256 to prevent alg:none and alg-switching attacks.
    Raises jwt.ExpiredSignatureError, jwt.InvalidTokenError on failure.
    """
    return jwt.decode(
        token,
        _public_key,
        algorithms=[ALGORITHM],
        issuer=ISSUER,
        audience=AUDIENCE,
        options={"require": ["sub", "exp", "iat", "jti"]},
    )
