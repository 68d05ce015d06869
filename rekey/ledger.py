"""
Rekey Rotation Ledger.

Append-mostly store of rotation tickets. Tickets are permanent audit records:
there is no delete path, and status changes go through the identity mutator.
Supports memory and Redis backends.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from redis.exceptions import RedisError, WatchError

from rekey.errors import BackendError, TicketConflictError
from rekey.models import RotationTicket

logger = logging.getLogger(__name__)


class RotationLedgerInterface(ABC):
    """Abstract interface for rotation ticket storage."""

    @abstractmethod
    async def insert(self, ticket: RotationTicket, expected_latest: Optional[str] = None) -> None:
        """
        Insert a new ticket.

        Args:
            ticket: The new pending ticket.
            expected_latest: Rotation id of the owner's most recent ticket as the
                caller observed it (None if the owner had none). If another ticket
                was inserted for the owner since then, the insert is refused.

        Raises:
            TicketConflictError: The owner's ticket history changed, or the
                rotation id already exists.
            BackendError: The write failed; no ticket was created.
        """
        pass

    @abstractmethod
    async def get(self, rotation_id: str) -> Optional[RotationTicket]:
        """Get a ticket by rotation id."""
        pass

    @abstractmethod
    async def list_for_owner(
        self, owner_id: str, since: Optional[datetime] = None
    ) -> List[RotationTicket]:
        """List an owner's tickets started at or after ``since``, oldest first."""
        pass

    @abstractmethod
    async def record_error(self, rotation_id: str, reason: str) -> None:
        """Attach a failure reason to a ticket without changing its status."""
        pass

    async def latest_for_owner(self, owner_id: str) -> Optional[RotationTicket]:
        """Most recently started ticket for an owner."""
        tickets = await self.list_for_owner(owner_id)
        return tickets[-1] if tickets else None


class MemoryRotationLedger(RotationLedgerInterface):
    """
    In-memory ledger for testing and single-instance deployments.

    Pass the same lock to a ``MemoryIdentityStore`` and a ``MemoryIdentityMutator``
    to make compound commits atomic across both.

    Example:
        >>> ledger = MemoryRotationLedger()
        >>> await ledger.insert(ticket)
        >>> (await ledger.get(ticket.rotation_id)).status
        <RotationStatus.PENDING: 'pending'>
    """

    def __init__(self, lock: Optional[asyncio.Lock] = None):
        self._tickets: Dict[str, RotationTicket] = {}
        self._by_owner: Dict[str, List[str]] = {}
        self._lock = lock or asyncio.Lock()

    @property
    def lock(self) -> asyncio.Lock:
        return self._lock

    async def insert(self, ticket: RotationTicket, expected_latest: Optional[str] = None) -> None:
        async with self._lock:
            if ticket.rotation_id in self._tickets:
                raise TicketConflictError("duplicate_id")
            owner_ids = self._by_owner.setdefault(ticket.owner_id, [])
            latest = owner_ids[-1] if owner_ids else None
            if latest != expected_latest:
                raise TicketConflictError("owner_changed")
            self._tickets[ticket.rotation_id] = replace(ticket)
            owner_ids.append(ticket.rotation_id)
            logger.debug(f"Inserted rotation {ticket.rotation_id} for {ticket.owner_id}")

    async def get(self, rotation_id: str) -> Optional[RotationTicket]:
        async with self._lock:
            return self.read_unlocked(rotation_id)

    async def list_for_owner(
        self, owner_id: str, since: Optional[datetime] = None
    ) -> List[RotationTicket]:
        async with self._lock:
            tickets = [replace(self._tickets[rid]) for rid in self._by_owner.get(owner_id, [])]
        if since is not None:
            tickets = [t for t in tickets if t.started_at >= since]
        return sorted(tickets, key=lambda t: t.started_at)

    async def record_error(self, rotation_id: str, reason: str) -> None:
        async with self._lock:
            ticket = self._tickets.get(rotation_id)
            if ticket:
                self._tickets[rotation_id] = replace(ticket, error_reason=reason)

    def read_unlocked(self, rotation_id: str) -> Optional[RotationTicket]:
        """Read without taking the lock. Caller must hold ``lock``."""
        ticket = self._tickets.get(rotation_id)
        return replace(ticket) if ticket else None

    def write_unlocked(self, ticket: RotationTicket) -> None:
        """Replace an existing ticket. Caller must hold ``lock``."""
        if ticket.rotation_id not in self._tickets:
            raise BackendError(f"unknown rotation {ticket.rotation_id}")
        self._tickets[ticket.rotation_id] = replace(ticket)


class RedisRotationLedger(RotationLedgerInterface):
    """
    Redis-backed ledger for distributed deployments.

    Tickets are JSON documents at ``{prefix}ticket:{rotation_id}``; each owner has a
    sorted set ``{prefix}owner:{owner_id}`` scored by start time. Keys never expire.

    Example:
        >>> import redis.asyncio as redis
        >>> client = redis.Redis(host='localhost', port=6379)
        >>> ledger = RedisRotationLedger(client)
    """

    def __init__(self, redis_client, key_prefix: str = "rekey:"):
        self._redis = redis_client
        self._prefix = key_prefix

    def ticket_key(self, rotation_id: str) -> str:
        return f"{self._prefix}ticket:{rotation_id}"

    def owner_key(self, owner_id: str) -> str:
        return f"{self._prefix}owner:{owner_id}"

    @staticmethod
    def encode(ticket: RotationTicket) -> str:
        return json.dumps(ticket.to_dict(), sort_keys=True)

    @staticmethod
    def decode(raw) -> Optional[RotationTicket]:
        if not raw:
            return None
        return RotationTicket.from_dict(json.loads(raw))

    async def insert(self, ticket: RotationTicket, expected_latest: Optional[str] = None) -> None:
        owner_key = self.owner_key(ticket.owner_id)
        ticket_key = self.ticket_key(ticket.rotation_id)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                await pipe.watch(owner_key, ticket_key)
                if await pipe.exists(ticket_key):
                    raise TicketConflictError("duplicate_id")
                newest = await pipe.zrange(owner_key, -1, -1)
                latest = _as_str(newest[0]) if newest else None
                if latest != expected_latest:
                    raise TicketConflictError("owner_changed")

                pipe.multi()
                pipe.set(ticket_key, self.encode(ticket))
                pipe.zadd(owner_key, {ticket.rotation_id: ticket.started_at.timestamp()})
                await pipe.execute()
        except WatchError as e:
            raise TicketConflictError("owner_changed") from e
        except RedisError as e:
            logger.error(f"Redis ledger insert error for {ticket.owner_id}: {e}")
            raise BackendError("ledger insert failed") from e

        logger.debug(f"Inserted rotation {ticket.rotation_id} for {ticket.owner_id}")

    async def get(self, rotation_id: str) -> Optional[RotationTicket]:
        try:
            raw = await self._redis.get(self.ticket_key(rotation_id))
        except RedisError as e:
            logger.error(f"Redis ledger read error for {rotation_id}: {e}")
            raise BackendError("ledger read failed") from e
        return self.decode(raw)

    async def list_for_owner(
        self, owner_id: str, since: Optional[datetime] = None
    ) -> List[RotationTicket]:
        low = since.timestamp() if since is not None else "-inf"
        try:
            ids = await self._redis.zrangebyscore(self.owner_key(owner_id), low, "+inf")
            if not ids:
                return []
            raws = await self._redis.mget([self.ticket_key(_as_str(rid)) for rid in ids])
        except RedisError as e:
            logger.error(f"Redis ledger list error for {owner_id}: {e}")
            raise BackendError("ledger list failed") from e

        tickets = [t for t in (self.decode(raw) for raw in raws) if t is not None]
        return sorted(tickets, key=lambda t: t.started_at)

    async def latest_for_owner(self, owner_id: str) -> Optional[RotationTicket]:
        try:
            newest = await self._redis.zrange(self.owner_key(owner_id), -1, -1)
        except RedisError as e:
            logger.error(f"Redis ledger read error for {owner_id}: {e}")
            raise BackendError("ledger read failed") from e
        return await self.get(_as_str(newest[0])) if newest else None

    async def record_error(self, rotation_id: str, reason: str) -> None:
        key = self.ticket_key(rotation_id)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                await pipe.watch(key)
                ticket = self.decode(await pipe.get(key))
                if ticket is None:
                    return
                pipe.multi()
                pipe.set(key, self.encode(replace(ticket, error_reason=reason)))
                await pipe.execute()
        except WatchError:
            logger.warning(f"Rotation {rotation_id} changed while recording error; skipped")
        except RedisError as e:
            logger.error(f"Redis ledger error-record failure for {rotation_id}: {e}")
            raise BackendError("ledger update failed") from e


def _as_str(value) -> str:
    return value.decode() if isinstance(value, bytes) else value
