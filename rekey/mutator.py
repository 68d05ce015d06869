"""
Rekey Atomic Identity Mutator.

The only component allowed to change an identity record and flip a rotation
ticket's status. Both happen in one unit: either the identity and the ticket
change together, or neither does.

Preconditions are re-checked inside the transaction:

- commit_rotation: ticket is pending, has no snapshot yet, and the identity
  still holds the ticket's old key. The rollback snapshot is taken from that
  same read of the identity.
- commit_rollback: ticket is completed and the identity still holds the
  ticket's new key.

A failed precondition raises ``TicketConflictError``; a storage failure raises
``BackendError``. Neither leaves partial state behind.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Optional, Tuple

from redis.exceptions import RedisError, WatchError

from rekey.errors import BackendError, TicketConflictError
from rekey.identity import MemoryIdentityStore, RedisIdentityStore
from rekey.keys import keys_match
from rekey.ledger import MemoryRotationLedger, RedisRotationLedger
from rekey.models import (
    AttestationRefs,
    IdentityRecord,
    PriorStateSnapshot,
    RotationPlan,
    RotationStatus,
    RotationTicket,
)

logger = logging.getLogger(__name__)


def check_rotation(
    ticket: Optional[RotationTicket], owner_id: str, identity: IdentityRecord, plan: RotationPlan
) -> RotationTicket:
    """Validate commit_rotation preconditions against freshly read state."""
    if ticket is None or ticket.owner_id != owner_id:
        raise TicketConflictError("not_found")
    if ticket.status is not RotationStatus.PENDING or ticket.prior_state_snapshot is not None:
        raise TicketConflictError("not_pending")
    if not keys_match(plan.old_key, ticket.old_signing_public_key):
        raise TicketConflictError("key_mismatch")
    if not keys_match(identity.signing_public_key or "", ticket.old_signing_public_key):
        raise TicketConflictError("key_changed")
    return ticket


def check_rollback(
    ticket: Optional[RotationTicket], owner_id: str, identity: IdentityRecord
) -> Tuple[RotationTicket, PriorStateSnapshot]:
    """Validate commit_rollback preconditions against freshly read state."""
    if ticket is None or ticket.owner_id != owner_id:
        raise TicketConflictError("not_found")
    if ticket.status is not RotationStatus.COMPLETED or ticket.prior_state_snapshot is None:
        raise TicketConflictError("not_completed")
    if not keys_match(identity.signing_public_key or "", ticket.new_signing_public_key or ""):
        raise TicketConflictError("key_changed")
    return ticket, ticket.prior_state_snapshot


def capture(identity: IdentityRecord, attestations: AttestationRefs) -> PriorStateSnapshot:
    """Rollback baseline for `identity` as read inside the commit."""
    return PriorStateSnapshot(
        alias=identity.alias,
        payment_address=identity.payment_address,
        attestations=attestations,
    )


def restore(identity: IdentityRecord, ticket: RotationTicket, snapshot: PriorStateSnapshot):
    """Identity record as it was before ``ticket`` was committed."""
    return replace(
        identity,
        signing_public_key=ticket.old_signing_public_key or None,
        alias=snapshot.alias,
        payment_address=snapshot.payment_address,
    )


class IdentityMutatorInterface(ABC):
    """Abstract interface for the transactional identity + ledger boundary."""

    @abstractmethod
    async def commit_rotation(
        self,
        owner_id: str,
        rotation_id: str,
        plan: RotationPlan,
        attestations: AttestationRefs,
        completed_at: datetime,
    ) -> RotationTicket:
        """
        Apply a rotation and complete its ticket as one unit.

        Returns:
            The completed ticket.
        """
        pass

    @abstractmethod
    async def commit_rollback(
        self, owner_id: str, rotation_id: str, rolled_back_at: datetime
    ) -> RotationTicket:
        """
        Restore the identity from the ticket's snapshot and mark it rolled back.

        Returns:
            The rolled-back ticket.
        """
        pass


class MemoryIdentityMutator(IdentityMutatorInterface):
    """
    Mutator over memory stores that share one lock.

    Example:
        >>> lock = asyncio.Lock()
        >>> identities = MemoryIdentityStore(lock=lock)
        >>> ledger = MemoryRotationLedger(lock=lock)
        >>> mutator = MemoryIdentityMutator(identities, ledger)
    """

    def __init__(self, identities: MemoryIdentityStore, ledger: MemoryRotationLedger):
        if identities.lock is not ledger.lock:
            raise ValueError("Identity store and ledger must share a lock")
        self._identities = identities
        self._ledger = ledger
        self._lock: asyncio.Lock = ledger.lock

    async def commit_rotation(
        self,
        owner_id: str,
        rotation_id: str,
        plan: RotationPlan,
        attestations: AttestationRefs,
        completed_at: datetime,
    ) -> RotationTicket:
        async with self._lock:
            identity = self._identities.read_unlocked(owner_id)
            ticket = check_rotation(
                self._ledger.read_unlocked(rotation_id), owner_id, identity, plan
            )
            done = ticket.completed(plan, capture(identity, attestations), completed_at)
            self._ledger.write_unlocked(done)
            self._identities.write_unlocked(plan.apply(identity))
        return done

    async def commit_rollback(
        self, owner_id: str, rotation_id: str, rolled_back_at: datetime
    ) -> RotationTicket:
        async with self._lock:
            identity = self._identities.read_unlocked(owner_id)
            ticket, snapshot = check_rollback(
                self._ledger.read_unlocked(rotation_id), owner_id, identity
            )
            undone = ticket.rolled_back(rolled_back_at)
            self._ledger.write_unlocked(undone)
            self._identities.write_unlocked(restore(identity, ticket, snapshot))
        return undone


class RedisIdentityMutator(IdentityMutatorInterface):
    """
    Mutator over Redis using optimistic transactions.

    Watches the ticket and identity keys, re-checks preconditions, then writes
    both in one MULTI/EXEC. If another writer touched either key in between,
    the transaction is re-evaluated once against the new state; a second
    interference is reported as a backend error so the caller may retry.

    Example:
        >>> import redis.asyncio as redis
        >>> client = redis.Redis(host='localhost', port=6379)
        >>> mutator = RedisIdentityMutator(client)
    """

    def __init__(
        self,
        redis_client,
        identities: Optional[RedisIdentityStore] = None,
        ledger: Optional[RedisRotationLedger] = None,
        attempts: int = 2,
    ):
        self._redis = redis_client
        self._identities = identities or RedisIdentityStore(redis_client)
        self._ledger = ledger or RedisRotationLedger(redis_client)
        self._attempts = max(1, attempts)

    async def commit_rotation(
        self,
        owner_id: str,
        rotation_id: str,
        plan: RotationPlan,
        attestations: AttestationRefs,
        completed_at: datetime,
    ) -> RotationTicket:
        def build(ticket, identity):
            ticket = check_rotation(ticket, owner_id, identity, plan)
            snapshot = capture(identity, attestations)
            return ticket.completed(plan, snapshot, completed_at), plan.apply(identity)

        return await self._transact(owner_id, rotation_id, build)

    async def commit_rollback(
        self, owner_id: str, rotation_id: str, rolled_back_at: datetime
    ) -> RotationTicket:
        def build(ticket, identity):
            ticket, snapshot = check_rollback(ticket, owner_id, identity)
            return ticket.rolled_back(rolled_back_at), restore(identity, ticket, snapshot)

        return await self._transact(owner_id, rotation_id, build)

    async def _transact(self, owner_id: str, rotation_id: str, build) -> RotationTicket:
        ticket_key = self._ledger.ticket_key(rotation_id)
        identity_key = self._identities.key(owner_id)

        for attempt in range(1, self._attempts + 1):
            try:
                async with self._redis.pipeline(transaction=True) as pipe:
                    await pipe.watch(ticket_key, identity_key)
                    ticket = self._ledger.decode(await pipe.get(ticket_key))
                    identity = self._identities.decode(owner_id, await pipe.get(identity_key))
                    new_ticket, new_identity = build(ticket, identity)

                    pipe.multi()
                    pipe.set(ticket_key, self._ledger.encode(new_ticket))
                    pipe.set(identity_key, self._identities.encode(new_identity))
                    await pipe.execute()
                    return new_ticket
            except WatchError:
                logger.warning(
                    f"Concurrent write on rotation {rotation_id} (attempt {attempt}/{self._attempts})"
                )
            except (RedisError, json.JSONDecodeError) as e:
                logger.error(f"Redis mutator error for rotation {rotation_id}: {e}")
                raise BackendError("identity commit failed") from e

        raise BackendError("identity commit kept conflicting")
