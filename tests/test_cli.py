"""
Tests for the command line interface.
"""

import json
import sys

from rekey import cli
from rekey.auth import BearerAuthenticator
from rekey.keys import generate_identity


def run_cli(monkeypatch, *argv) -> int:
    monkeypatch.setattr(sys, "argv", ["rekey", *argv])
    return cli.main()


class TestCli:
    """Tests for CLI commands."""

    def test_no_command_prints_help(self, monkeypatch, capsys):
        assert run_cli(monkeypatch) == 0
        assert "usage: rekey" in capsys.readouterr().out

    def test_keygen_json(self, monkeypatch, capsys):
        assert run_cli(monkeypatch, "keygen", "--json") == 0
        output = json.loads(capsys.readouterr().out)
        assert output["privateKey"]["crv"] == "Ed25519"
        assert "d" not in output["publicKey"]
        assert output["kid"]

    def test_token_roundtrip(self, monkeypatch, capsys):
        pair = generate_identity()
        code = run_cli(monkeypatch, "token", "owner-1", "--issuer", "dev", "--key", pair.private_key_jwk)
        assert code == 0
        token = capsys.readouterr().out.strip()

        authenticator = BearerAuthenticator({"dev": pair.public_key_jwk})
        assert authenticator.authenticate(f"Bearer {token}") == "owner-1"

    def test_token_without_key(self, monkeypatch, capsys):
        monkeypatch.delenv("REKEY_ISSUER_PRIVATE_KEY", raising=False)
        assert run_cli(monkeypatch, "token", "owner-1") == 1
        assert "No private key" in capsys.readouterr().err

    def test_config(self, monkeypatch, capsys):
        assert run_cli(monkeypatch, "config") == 0
        assert "DEPRECATION_DAYS" in capsys.readouterr().out
