"""
Tests for configuration parsing, key helpers and metrics.
"""

import json
from datetime import timedelta

from rekey import config
from rekey.config import RotationSettings, parse_domains, parse_trusted_issuers
from rekey.keys import keys_match, new_rotation_id
from rekey.metrics import RotationMetrics


class TestConfigParsing:
    """Tests for environment parsing helpers."""

    def test_env_int_default(self, monkeypatch):
        monkeypatch.delenv("REKEY_TEST_INT", raising=False)
        assert config._env_int("REKEY_TEST_INT", 30) == 30

    def test_env_int_value(self, monkeypatch):
        monkeypatch.setenv("REKEY_TEST_INT", "7")
        assert config._env_int("REKEY_TEST_INT", 30) == 7

    def test_env_int_invalid_falls_back(self, monkeypatch):
        for raw in ("abc", "0", "-3", " "):
            monkeypatch.setenv("REKEY_TEST_INT", raw)
            assert config._env_int("REKEY_TEST_INT", 30) == 30

    def test_parse_domains(self):
        assert parse_domains(" Allowed.Example, other.example,,") == frozenset(
            {"allowed.example", "other.example"}
        )
        assert parse_domains(None) == frozenset()

    def test_parse_trusted_issuers(self):
        key = {"kty": "OKP", "crv": "Ed25519", "x": "abc"}
        issuers = parse_trusted_issuers(json.dumps({"dev": key, "ops": json.dumps(key)}))
        assert json.loads(issuers["dev"]) == key
        assert json.loads(issuers["ops"]) == key

    def test_parse_trusted_issuers_invalid(self):
        assert parse_trusted_issuers("{nope") == {}
        assert parse_trusted_issuers("[1, 2]") == {}
        assert parse_trusted_issuers("") == {}


class TestRotationSettings:
    """Tests for RotationSettings."""

    def test_defaults(self):
        settings = RotationSettings()
        assert settings.deprecation_window == timedelta(days=30)
        assert settings.cooldown == timedelta(minutes=15)
        assert settings.pending_ttl == timedelta(hours=24)
        assert settings.daily_cap == 3
        assert settings.alias_domains == frozenset()

    def test_from_env(self):
        settings = RotationSettings.from_env()
        assert settings.deprecation_days == config.DEPRECATION_DAYS
        assert settings.alias_domains == config.ALIAS_DOMAINS


class TestKeys:
    """Tests for key helpers."""

    def test_keys_match(self):
        assert keys_match("K0", "K0")
        assert not keys_match("K0", "K1")
        assert not keys_match("K0", "K0-longer")
        assert keys_match("", "")

    def test_rotation_ids(self):
        ids = {new_rotation_id() for _ in range(50)}
        assert len(ids) == 50
        assert all(len(i) == 32 and int(i, 16) >= 0 for i in ids)


class TestRotationMetrics:
    """Tests for RotationMetrics."""

    def test_record_outcome(self):
        metrics = RotationMetrics()
        metrics.record_outcome("complete", "ok")
        metrics.record_outcome("complete", "ok")
        metrics.record_outcome("complete", "key_mismatch")
        assert metrics.get_stats() == {"complete:ok": 2, "complete:key_mismatch": 1}

    def test_prometheus_output(self):
        metrics = RotationMetrics()
        with metrics.timer("rollback"):
            pass
        metrics.record_outcome("rollback", "window_expired")
        text = metrics.get_prometheus_metrics().decode()
        assert 'rekey_rotation_requests_total{action="rollback",outcome="window_expired"} 1.0' in text
        assert "rekey_rotation_duration_seconds_count" in text

    def test_registries_are_independent(self):
        """Two collectors never clash on metric names."""
        first = RotationMetrics()
        second = RotationMetrics()
        first.record_outcome("start", "ok")
        assert second.get_stats() == {}
