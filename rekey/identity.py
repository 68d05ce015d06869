"""
Rekey Identity Store.

Reads the current identity record (signing key, alias, payment address) for an
owner. Writes happen only through the identity mutator; ``put_identity`` exists
for provisioning and tests.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Dict, Optional

from redis.exceptions import RedisError

from rekey.errors import BackendError
from rekey.models import IdentityRecord

logger = logging.getLogger(__name__)


class IdentityStoreInterface(ABC):
    """Abstract interface for identity record storage."""

    @abstractmethod
    async def get_identity(self, owner_id: str) -> IdentityRecord:
        """
        Read the identity record for an owner.

        Owners that were never provisioned get an empty record rather than None,
        since every field of an identity is optional.
        """
        pass

    @abstractmethod
    async def put_identity(self, record: IdentityRecord) -> None:
        """Create or replace an identity record."""
        pass


class MemoryIdentityStore(IdentityStoreInterface):
    """
    In-memory identity store for testing and single-instance deployments.

    Example:
        >>> store = MemoryIdentityStore()
        >>> await store.put_identity(IdentityRecord(owner_id="u1", signing_public_key="K0"))
        >>> (await store.get_identity("u1")).signing_public_key
        'K0'
    """

    def __init__(self, lock: Optional[asyncio.Lock] = None):
        self._records: Dict[str, IdentityRecord] = {}
        self._lock = lock or asyncio.Lock()

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock

    async def get_identity(self, owner_id: str) -> IdentityRecord:
        async with self._lock:
            return self.read_unlocked(owner_id)

    async def put_identity(self, record: IdentityRecord) -> None:
        async with self._lock:
            self.write_unlocked(record)

    def read_unlocked(self, owner_id: str) -> IdentityRecord:
        """Read without taking the lock. Caller must hold ``lock``."""
        record = self._records.get(owner_id)
        return replace(record) if record else IdentityRecord(owner_id=owner_id)

    def write_unlocked(self, record: IdentityRecord) -> None:
        """Write without taking the lock. Caller must hold ``lock``."""
        self._records[record.owner_id] = replace(record)


class RedisIdentityStore(IdentityStoreInterface):
    """
    Redis-backed identity store.

    Each record is a JSON document at ``{prefix}{owner_id}``.

    Example:
        >>> import redis.asyncio as redis
        >>> client = redis.Redis(host='localhost', port=6379)
        >>> store = RedisIdentityStore(client)
    """

    def __init__(self, redis_client, key_prefix: str = "rekey:identity:"):
        self._redis = redis_client
        self._prefix = key_prefix

    def key(self, owner_id: str) -> str:
        """Generate prefixed key."""
        return f"{self._prefix}{owner_id}"

    @staticmethod
    def decode(owner_id: str, raw) -> IdentityRecord:
        """Decode a stored document, tolerating a missing key."""
        if not raw:
            return IdentityRecord(owner_id=owner_id)
        return IdentityRecord.from_dict(json.loads(raw))

    @staticmethod
    def encode(record: IdentityRecord) -> str:
        return json.dumps(record.to_dict(), sort_keys=True)

    async def get_identity(self, owner_id: str) -> IdentityRecord:
        try:
            raw = await self._redis.get(self.key(owner_id))
        except RedisError as e:
            logger.error(f"Redis identity read error for {owner_id}: {e}")
            raise BackendError("identity read failed") from e
        return self.decode(owner_id, raw)

    async def put_identity(self, record: IdentityRecord) -> None:
        try:
            await self._redis.set(self.key(record.owner_id), self.encode(record))
        except RedisError as e:
            logger.error(f"Redis identity write error for {record.owner_id}: {e}")
            raise BackendError("identity write failed") from e
