"""
Rekey bearer authentication.

Maps a bearer credential to the owner id the rotation protocol acts for.
Credentials are EdDSA-signed JWS tokens (JWK/JWS via jwcrypto) whose ``sub``
claim is the owner id and whose ``iss`` names a trusted issuer.
"""

import base64
import json
import logging
import time
import uuid
from typing import Dict, Optional

from jwcrypto import jwk, jws
from jwcrypto.common import JWException, json_encode

from rekey.errors import AuthenticationError

logger = logging.getLogger(__name__)

TOKEN_TYPE = "rekey+jwt"


def _claims_unverified(token: str) -> dict:
    """Read the claims segment before the issuer key is known."""
    parts = token.split(".")
    if len(parts) != 3 or not all(parts):
        raise AuthenticationError("Invalid or missing Authorization")
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(segment))
    except (ValueError, json.JSONDecodeError) as e:
        raise AuthenticationError("Invalid or missing Authorization") from e
    if not isinstance(claims, dict):
        raise AuthenticationError("Invalid or missing Authorization")
    return claims


class TokenIssuer:
    """
    Issues bearer tokens for an owner. Used by tooling and tests.

    Example:
        >>> issuer = TokenIssuer(private_key_jwk='{"kty":"OKP",...}', issuer="rekey-dev")
        >>> token = issuer.issue("owner-1")
    """

    def __init__(self, private_key: str, issuer: str, default_expiry_seconds: int = 300):
        """
        Initialize the issuer.

        Raises:
            ValueError: If the key is not an Ed25519 private JWK.
        """
        if not issuer:
            raise ValueError("TokenIssuer requires an issuer name")
        try:
            self._key = jwk.JWK.from_json(private_key)
        except (JWException, ValueError) as e:
            raise ValueError(f"Invalid JWK private key: {e}") from e
        if self._key.get("kty") != "OKP" or self._key.get("crv") != "Ed25519":
            raise ValueError("Key must be an Ed25519 key (OKP with crv=Ed25519)")
        self.issuer = issuer
        self.default_expiry = default_expiry_seconds

    def issue(self, owner_id: str, expiry_seconds: Optional[int] = None) -> str:
        """Return a compact JWS naming ``owner_id`` as subject."""
        now = int(time.time())
        exp = expiry_seconds if expiry_seconds is not None else self.default_expiry
        claims = {
            "jti": str(uuid.uuid4()),
            "iss": self.issuer,
            "sub": owner_id,
            "iat": now,
            "exp": now + exp,
        }
        token = jws.JWS(json.dumps(claims, sort_keys=True, separators=(",", ":")))
        header = {"alg": "EdDSA", "typ": TOKEN_TYPE, "kid": self._key.thumbprint()}
        token.add_signature(self._key, None, json_encode(header), None)
        return token.serialize(compact=True)

    def public_key_jwk(self) -> str:
        return self._key.export_public()


class BearerAuthenticator:
    """
    Verifies bearer tokens against trusted issuer keys.

    Example:
        >>> auth = BearerAuthenticator({"rekey-dev": public_key_jwk})
        >>> owner_id = auth.authenticate("Bearer eyJ...")
    """

    def __init__(self, trusted_issuers: Optional[Dict[str, str]] = None, clock_skew_seconds: int = 30):
        """
        Args:
            trusted_issuers: Issuer name -> public key JWK JSON.
            clock_skew_seconds: Allowed clock drift for ``exp``/``iat``.
        """
        self._keys: Dict[str, jwk.JWK] = {}
        self._skew = clock_skew_seconds
        for issuer, key_json in (trusted_issuers or {}).items():
            self.add_issuer(issuer, key_json)

    def add_issuer(self, issuer: str, public_key_jwk: str) -> None:
        """Trust tokens signed by ``issuer``'s key."""
        try:
            self._keys[issuer] = jwk.JWK.from_json(public_key_jwk)
        except (JWException, ValueError) as e:
            raise ValueError(f"Invalid public key for issuer {issuer}: {e}") from e

    def authenticate(self, authorization: Optional[str]) -> str:
        """
        Return the owner id for an ``Authorization`` header value.

        Raises:
            AuthenticationError: Missing, malformed, untrusted or expired token.
        """
        raw = (authorization or "").strip()
        if raw[:7].lower() == "bearer ":
            raw = raw[7:].strip()
        if not raw:
            raise AuthenticationError("Invalid or missing Authorization")

        claims = _claims_unverified(raw)
        key = self._keys.get(claims.get("iss", ""))
        if key is None:
            logger.warning(f"Token from untrusted issuer {claims.get('iss')!r}")
            raise AuthenticationError("Unauthorized")

        token = jws.JWS()
        try:
            token.deserialize(raw)
            token.verify(key)
        except (JWException, ValueError) as e:
            logger.warning(f"Bearer signature rejected: {e}")
            raise AuthenticationError("Unauthorized") from e

        now = time.time()
        exp = claims.get("exp")
        if not isinstance(exp, (int, float)) or now > exp + self._skew:
            raise AuthenticationError("Token expired")
        iat = claims.get("iat")
        if isinstance(iat, (int, float)) and iat > now + self._skew:
            raise AuthenticationError("Token issued in the future")

        owner_id = claims.get("sub")
        if not isinstance(owner_id, str) or not owner_id:
            raise AuthenticationError("No identity (sub) in token")
        return owner_id
