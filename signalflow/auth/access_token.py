"""Short-lived access tokens handed to connectors on behalf of a user."""

from __future__ import annotations

import hashlib
import time
from typing import Optional

import jwt
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from pydantic import BaseModel

ISSUER = "urn:signalflow:orchestrator"
ALGORITHM = "ES256"
MIN_MASTER_KEY_LENGTH = 64

# Order of the P-256 group; derived scalars must fall in [1, n - 1].
_P256_ORDER = 0xFFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551


class AccessClaims(BaseModel):
    """Identity carried by an access token."""

    sub: str
    workspace: Optional[str] = None
    role: Optional[str] = None


def derive_signing_key(master_key: str | bytes) -> ec.EllipticCurvePrivateKey:
    """Derive a deterministic P-256 signing key from ``master_key``."""
    raw = master_key.encode() if isinstance(master_key, str) else master_key
    if len(raw) < MIN_MASTER_KEY_LENGTH:
        raise ValueError("Invalid master key: at least 64 characters are required")
    seed = hashlib.sha512(raw).digest()
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=32,
        salt=hashlib.sha512(b"Signalflow ECDSA Key").digest()[:16],
        iterations=10,
    )
    scalar = int.from_bytes(kdf.derive(seed), "big") % (_P256_ORDER - 1) + 1
    return ec.derive_private_key(scalar, ec.SECP256R1())


class AccessTokenSigner:
    """Signs and verifies ES256 access tokens."""

    def __init__(self, master_key: str | bytes) -> None:
        self._private_key = derive_signing_key(master_key)
        self._public_key = self._private_key.public_key()

    def sign(self, claims: AccessClaims, expires_in: int = 60) -> str:
        now = int(time.time())
        payload = {
            **claims.model_dump(exclude_none=True),
            "iss": ISSUER,
            "iat": now,
            "exp": now + expires_in,
        }
        return jwt.encode(payload, self._private_key, algorithm=ALGORITHM)

    def verify(self, token: str, leeway: int = 0) -> AccessClaims:
        """Validate ``token`` and return its claims."""
        decoded = jwt.decode(
            token,
            self._public_key,
            algorithms=[ALGORITHM],
            issuer=ISSUER,
            leeway=leeway,
        )
        return AccessClaims.model_validate(decoded)
