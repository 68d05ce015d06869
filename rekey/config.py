# rekey/config.py
"""
Centralized configuration for Rekey.

All configurable values are read from environment variables with sensible defaults.
This allows different environments (dev, staging, production) to use different
settings without code changes.

Usage:
    from rekey.config import RotationSettings

    settings = RotationSettings.from_env()
    window = settings.deprecation_window

Environment Variables:
    REKEY_DEPRECATION_DAYS: Days a completed rotation can be rolled back (default: 30)
    REKEY_DAILY_CAP: Rotation starts allowed per owner per 24 hours (default: 3)
    REKEY_COOLDOWN_SECONDS: Minimum seconds between rotation starts (default: 900)
    REKEY_PENDING_TTL_SECONDS: Age at which a pending rotation is abandoned (default: 86400)
    REKEY_ALIAS_DOMAINS: Comma-separated alias namespace allowlist (default: empty)
    REKEY_TRUSTED_ISSUERS: JSON object of issuer -> public JWK (default: empty)
    REKEY_REDIS_URL: Redis URL for durable backends (default: in-memory)
    REKEY_THROTTLE_MUTATING_REQUESTS: Start/complete/rollback calls per address per window (default: 1)
    REKEY_THROTTLE_STATUS_REQUESTS: Status calls per address per window (default: 10)
    REKEY_THROTTLE_WINDOW_SECONDS: Throttle window (default: 900)
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Final, FrozenSet, Optional

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int) -> int:
    """Read a positive integer from the environment, falling back to default."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={raw!r}")
        return default
    if value <= 0:
        logger.warning(f"Ignoring non-positive {name}={raw!r}")
        return default
    return value


def parse_domains(raw: Optional[str]) -> FrozenSet[str]:
    """Split a comma-separated domain list into a normalized set."""
    if not raw:
        return frozenset()
    return frozenset(d.strip().lower() for d in raw.split(",") if d.strip())


def parse_trusted_issuers(raw: Optional[str]) -> Dict[str, str]:
    """Parse the issuer -> public JWK mapping used for bearer verification."""
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Invalid REKEY_TRUSTED_ISSUERS JSON")
        return {}
    if not isinstance(data, dict):
        logger.warning("REKEY_TRUSTED_ISSUERS must be a JSON object")
        return {}
    return {
        str(issuer): key if isinstance(key, str) else json.dumps(key)
        for issuer, key in data.items()
    }


# =============================================================================
# Rotation Policy
# =============================================================================

DEPRECATION_DAYS: Final[int] = _env_int("REKEY_DEPRECATION_DAYS", 30)

DAILY_CAP: Final[int] = _env_int("REKEY_DAILY_CAP", 3)

COOLDOWN_SECONDS: Final[int] = _env_int("REKEY_COOLDOWN_SECONDS", 15 * 60)

# Pending tickets older than this can no longer be completed
PENDING_TTL_SECONDS: Final[int] = _env_int("REKEY_PENDING_TTL_SECONDS", 24 * 60 * 60)

ALIAS_DOMAINS: Final[FrozenSet[str]] = parse_domains(os.getenv("REKEY_ALIAS_DOMAINS"))

# =============================================================================
# Server Configuration
# =============================================================================

TRUSTED_ISSUERS: Final[Dict[str, str]] = parse_trusted_issuers(os.getenv("REKEY_TRUSTED_ISSUERS"))

REDIS_URL: Final[str] = os.getenv("REKEY_REDIS_URL", "")

HOST: Final[str] = os.getenv("REKEY_HOST", "127.0.0.1")

PORT: Final[int] = _env_int("REKEY_PORT", 8787)

# General per-address throttle, applied before any rotation logic
THROTTLE_MUTATING_REQUESTS: Final[int] = _env_int("REKEY_THROTTLE_MUTATING_REQUESTS", 1)

THROTTLE_STATUS_REQUESTS: Final[int] = _env_int("REKEY_THROTTLE_STATUS_REQUESTS", 10)

THROTTLE_WINDOW_SECONDS: Final[int] = _env_int("REKEY_THROTTLE_WINDOW_SECONDS", 15 * 60)


@dataclass(frozen=True)
class RotationSettings:
    """
    Policy knobs for the rotation protocol.

    Attributes:
        deprecation_days: Rollback window after completion.
        daily_cap: Maximum rotation starts per owner per 24 hours.
        cooldown_seconds: Minimum spacing between starts for one owner.
        pending_ttl_seconds: Age after which a pending ticket is abandoned.
        alias_domains: Namespaces an alias may be created in.
    """

    deprecation_days: int = 30
    daily_cap: int = 3
    cooldown_seconds: int = 15 * 60
    pending_ttl_seconds: int = 24 * 60 * 60
    alias_domains: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_env(cls) -> "RotationSettings":
        """Build settings from the module-level environment values."""
        return cls(
            deprecation_days=DEPRECATION_DAYS,
            daily_cap=DAILY_CAP,
            cooldown_seconds=COOLDOWN_SECONDS,
            pending_ttl_seconds=PENDING_TTL_SECONDS,
            alias_domains=ALIAS_DOMAINS,
        )

    @property
    def deprecation_window(self) -> timedelta:
        return timedelta(days=self.deprecation_days)

    @property
    def cooldown(self) -> timedelta:
        return timedelta(seconds=self.cooldown_seconds)

    @property
    def pending_ttl(self) -> timedelta:
        return timedelta(seconds=self.pending_ttl_seconds)


# =============================================================================
# Configuration Summary (for debugging)
# =============================================================================


def print_config() -> None:
    """Print current configuration (useful for debugging)."""
    print("Rekey Configuration:")
    print(f"  DEPRECATION_DAYS:    {DEPRECATION_DAYS}")
    print(f"  DAILY_CAP:           {DAILY_CAP}")
    print(f"  COOLDOWN_SECONDS:    {COOLDOWN_SECONDS}")
    print(f"  PENDING_TTL_SECONDS: {PENDING_TTL_SECONDS}")
    print(f"  ALIAS_DOMAINS:       {', '.join(sorted(ALIAS_DOMAINS)) or '(none)'}")
    print(f"  TRUSTED_ISSUERS:     {len(TRUSTED_ISSUERS)}")
    print(f"  REDIS_URL:           {REDIS_URL or '(memory)'}")
    print(f"  HOST:                {HOST}")
    print(f"  PORT:                {PORT}")
    print(f"  THROTTLE_MUTATING:   {THROTTLE_MUTATING_REQUESTS} per {THROTTLE_WINDOW_SECONDS}s")
    print(f"  THROTTLE_STATUS:     {THROTTLE_STATUS_REQUESTS} per {THROTTLE_WINDOW_SECONDS}s")


if __name__ == "__main__":
    print_config()
