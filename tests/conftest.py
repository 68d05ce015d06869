"""
Shared pytest fixtures for Rekey tests.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import fakeredis
import fakeredis.aioredis
import pytest
import pytest_asyncio

from rekey import (
    IdentityRecord,
    KeyRotationService,
    MemoryIdentityMutator,
    MemoryIdentityStore,
    MemoryRotationLedger,
    RotationSettings,
)
from rekey.auth import BearerAuthenticator, TokenIssuer
from rekey.keys import KeyPair, generate_identity
from rekey.metrics import RotationMetrics

OWNER = "owner-u1"
K0 = "K0-public-key"
ISSUER = "rekey-test"


class FrozenClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    """A clock fixed at a known instant."""
    return FrozenClock(datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings() -> RotationSettings:
    """Default policy with one allowed alias namespace."""
    return RotationSettings(alias_domains=frozenset({"allowed.example"}))


@pytest.fixture
def identity_record() -> IdentityRecord:
    """The U1 identity before any rotation."""
    return IdentityRecord(owner_id=OWNER, signing_public_key=K0, alias="u1@old.example")


@pytest_asyncio.fixture
async def memory_backends():
    """Identity store, ledger and mutator sharing one lock."""
    lock = asyncio.Lock()
    identities = MemoryIdentityStore(lock=lock)
    ledger = MemoryRotationLedger(lock=lock)
    return identities, ledger, MemoryIdentityMutator(identities, ledger)


@pytest.fixture
def metrics() -> RotationMetrics:
    """Metrics on a private registry."""
    return RotationMetrics()


@pytest_asyncio.fixture
async def service(memory_backends, settings, clock, identity_record, metrics) -> KeyRotationService:
    """Memory-backed service with U1 provisioned."""
    identities, ledger, mutator = memory_backends
    await identities.put_identity(identity_record)
    return KeyRotationService(
        identities, ledger, mutator, settings=settings, clock=clock, metrics=metrics
    )


@pytest.fixture
def redis_client():
    """In-process Redis with its own server."""
    return fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer())


@pytest.fixture
def issuer_keypair() -> KeyPair:
    """Generate a fresh issuer keypair for testing."""
    return generate_identity()


@pytest.fixture
def token_issuer(issuer_keypair: KeyPair) -> TokenIssuer:
    """Issuer for bearer tokens."""
    return TokenIssuer(issuer_keypair.private_key_jwk, ISSUER)


@pytest.fixture
def authenticator(issuer_keypair: KeyPair) -> BearerAuthenticator:
    """Authenticator trusting the test issuer."""
    return BearerAuthenticator({ISSUER: issuer_keypair.public_key_jwk})
