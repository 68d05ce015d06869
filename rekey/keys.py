"""
Rekey key helpers.

Rotation handles, public-key comparison, and Ed25519 keypair generation for
tooling and tests. The protocol itself never derives or signs with keys.
"""

import hashlib
import hmac
import secrets
from dataclasses import dataclass

from jwcrypto import jwk

ROTATION_ID_BYTES = 16


@dataclass
class KeyPair:
    """An Ed25519 keypair exported as JWK JSON strings."""

    private_key_jwk: str
    public_key_jwk: str
    kid: str


def generate_identity() -> KeyPair:
    """Generate a fresh Ed25519 keypair."""
    key = jwk.JWK.generate(kty="OKP", crv="Ed25519")
    return KeyPair(
        private_key_jwk=key.export_private(),
        public_key_jwk=key.export_public(),
        kid=key.thumbprint(),
    )


def new_rotation_id() -> str:
    """Unguessable rotation handle (16 random bytes, hex)."""
    return secrets.token_hex(ROTATION_ID_BYTES)


def keys_match(claimed: str, stored: str) -> bool:
    """
    Compare two public keys without a mismatch-position timing signal.

    Public keys are not secrets. Both sides are hashed to a fixed length so the
    comparison also hides length differences.
    """
    claimed_digest = hashlib.sha256((claimed or "").encode("utf-8")).digest()
    stored_digest = hashlib.sha256((stored or "").encode("utf-8")).digest()
    return hmac.compare_digest(claimed_digest, stored_digest)
