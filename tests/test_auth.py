"""
Tests for bearer token issuing and verification.
"""

import json

import pytest
from jwcrypto import jwk
from jwcrypto.common import base64url_decode

from rekey.auth import TOKEN_TYPE, BearerAuthenticator, TokenIssuer
from rekey.errors import AuthenticationError
from rekey.keys import generate_identity

ISSUER = "rekey-test"


class TestTokenIssuer:
    """Tests for TokenIssuer."""

    def test_issue_compact_token(self, token_issuer):
        token = token_issuer.issue("owner-1")
        assert token.count(".") == 2

    def test_header(self, token_issuer, issuer_keypair):
        token = token_issuer.issue("owner-1")
        header = json.loads(base64url_decode(token.split(".")[0]))
        assert header["alg"] == "EdDSA"
        assert header["typ"] == TOKEN_TYPE
        assert header["kid"] == issuer_keypair.kid

    def test_public_key_matches(self, token_issuer, issuer_keypair):
        assert json.loads(token_issuer.public_key_jwk()) == json.loads(issuer_keypair.public_key_jwk)

    def test_rejects_non_ed25519_key(self):
        rsa = jwk.JWK.generate(kty="RSA", size=2048)
        with pytest.raises(ValueError):
            TokenIssuer(rsa.export_private(), ISSUER)

    def test_rejects_invalid_json(self):
        with pytest.raises(ValueError):
            TokenIssuer("not-a-key", ISSUER)

    def test_requires_issuer(self, issuer_keypair):
        with pytest.raises(ValueError):
            TokenIssuer(issuer_keypair.private_key_jwk, "")


class TestBearerAuthenticator:
    """Tests for BearerAuthenticator."""

    def test_valid_token(self, token_issuer, authenticator):
        token = token_issuer.issue("owner-1")
        assert authenticator.authenticate(f"Bearer {token}") == "owner-1"

    def test_scheme_is_case_insensitive(self, token_issuer, authenticator):
        token = token_issuer.issue("owner-1")
        assert authenticator.authenticate(f"bearer {token}") == "owner-1"

    def test_missing_header(self, authenticator):
        for header in (None, "", "Bearer ", "Bearer"):
            with pytest.raises(AuthenticationError) as exc:
                authenticator.authenticate(header)
            assert exc.value.status_code == 401

    def test_malformed_token(self, authenticator):
        with pytest.raises(AuthenticationError) as exc:
            authenticator.authenticate("Bearer abc.def")
        assert exc.value.message == "Invalid or missing Authorization"

    def test_untrusted_issuer(self, issuer_keypair, authenticator):
        token = TokenIssuer(issuer_keypair.private_key_jwk, "someone-else").issue("owner-1")
        with pytest.raises(AuthenticationError) as exc:
            authenticator.authenticate(f"Bearer {token}")
        assert exc.value.message == "Unauthorized"

    def test_wrong_signing_key(self, authenticator):
        """Token naming a trusted issuer but signed by another key."""
        impostor = generate_identity()
        token = TokenIssuer(impostor.private_key_jwk, ISSUER).issue("owner-1")
        with pytest.raises(AuthenticationError) as exc:
            authenticator.authenticate(f"Bearer {token}")
        assert exc.value.message == "Unauthorized"

    def test_expired_token(self, token_issuer, authenticator):
        token = token_issuer.issue("owner-1", expiry_seconds=-120)
        with pytest.raises(AuthenticationError) as exc:
            authenticator.authenticate(f"Bearer {token}")
        assert exc.value.message == "Token expired"

    def test_missing_subject(self, token_issuer, authenticator):
        token = token_issuer.issue("")
        with pytest.raises(AuthenticationError) as exc:
            authenticator.authenticate(f"Bearer {token}")
        assert exc.value.message == "No identity (sub) in token"

    def test_add_issuer(self, token_issuer, issuer_keypair):
        authenticator = BearerAuthenticator()
        token = token_issuer.issue("owner-1")
        with pytest.raises(AuthenticationError):
            authenticator.authenticate(f"Bearer {token}")

        authenticator.add_issuer(ISSUER, issuer_keypair.public_key_jwk)
        assert authenticator.authenticate(f"Bearer {token}") == "owner-1"

    def test_add_issuer_invalid_key(self):
        with pytest.raises(ValueError):
            BearerAuthenticator({ISSUER: "not-a-key"})
