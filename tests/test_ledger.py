"""
Tests for the rotation ledger and identity store backends.
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from rekey.errors import TicketConflictError
from rekey.identity import MemoryIdentityStore, RedisIdentityStore
from rekey.ledger import MemoryRotationLedger, RedisRotationLedger
from rekey.models import IdentityRecord, RotationStatus, RotationTicket

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def ticket(rotation_id: str, owner_id: str = "u1", minutes: int = 0) -> RotationTicket:
    return RotationTicket(
        rotation_id=rotation_id,
        owner_id=owner_id,
        old_signing_public_key="K0",
        started_at=T0 + timedelta(minutes=minutes),
    )


@pytest_asyncio.fixture(params=["memory", "redis"])
async def ledger(request, redis_client):
    if request.param == "memory":
        return MemoryRotationLedger()
    return RedisRotationLedger(redis_client)


@pytest_asyncio.fixture(params=["memory", "redis"])
async def identities(request, redis_client):
    if request.param == "memory":
        return MemoryIdentityStore()
    return RedisIdentityStore(redis_client)


class TestRotationLedger:
    """Behavior shared by every ledger backend."""

    @pytest.mark.asyncio
    async def test_insert_and_get(self, ledger):
        """Inserted ticket is readable by id."""
        await ledger.insert(ticket("r1"))
        stored = await ledger.get("r1")
        assert stored == ticket("r1")
        assert stored.status is RotationStatus.PENDING

    @pytest.mark.asyncio
    async def test_get_unknown(self, ledger):
        """Unknown id returns None."""
        assert await ledger.get("missing") is None

    @pytest.mark.asyncio
    async def test_duplicate_id_refused(self, ledger):
        """A rotation id can only be used once."""
        await ledger.insert(ticket("r1"))
        with pytest.raises(TicketConflictError) as exc:
            await ledger.insert(ticket("r1", minutes=20), expected_latest="r1")
        assert exc.value.reason == "duplicate_id"

    @pytest.mark.asyncio
    async def test_insert_refused_when_owner_history_moved(self, ledger):
        """A second start that observed stale history is refused."""
        await ledger.insert(ticket("r1"))
        with pytest.raises(TicketConflictError) as exc:
            await ledger.insert(ticket("r2", minutes=20), expected_latest=None)
        assert exc.value.reason == "owner_changed"
        assert await ledger.get("r2") is None

    @pytest.mark.asyncio
    async def test_insert_with_current_history(self, ledger):
        """Insert succeeds when the observed latest ticket is still latest."""
        await ledger.insert(ticket("r1"))
        await ledger.insert(ticket("r2", minutes=20), expected_latest="r1")
        latest = await ledger.latest_for_owner("u1")
        assert latest.rotation_id == "r2"

    @pytest.mark.asyncio
    async def test_list_for_owner(self, ledger):
        """Lists only the owner's tickets, oldest first, filtered by start time."""
        await ledger.insert(ticket("r1", minutes=0))
        await ledger.insert(ticket("r2", minutes=30), expected_latest="r1")
        await ledger.insert(ticket("x1", owner_id="u2", minutes=10))

        all_u1 = await ledger.list_for_owner("u1")
        assert [t.rotation_id for t in all_u1] == ["r1", "r2"]

        recent = await ledger.list_for_owner("u1", since=T0 + timedelta(minutes=30))
        assert [t.rotation_id for t in recent] == ["r2"]

        assert await ledger.list_for_owner("nobody") == []
        assert await ledger.latest_for_owner("nobody") is None

    @pytest.mark.asyncio
    async def test_record_error_keeps_status(self, ledger):
        """Recording a failure does not move the ticket."""
        await ledger.insert(ticket("r1"))
        await ledger.record_error("r1", "complete commit failed")
        stored = await ledger.get("r1")
        assert stored.error_reason == "complete commit failed"
        assert stored.status is RotationStatus.PENDING

    @pytest.mark.asyncio
    async def test_record_error_unknown_ticket(self, ledger):
        """Recording on a missing ticket is a no-op."""
        await ledger.record_error("missing", "complete commit failed")
        assert await ledger.get("missing") is None

    @pytest.mark.asyncio
    async def test_returned_tickets_are_copies(self, ledger):
        """Mutating a returned ticket does not change the stored one."""
        await ledger.insert(ticket("r1"))
        stored = await ledger.get("r1")
        stored.error_reason = "tampered"
        assert (await ledger.get("r1")).error_reason is None


class TestIdentityStore:
    """Behavior shared by every identity store backend."""

    @pytest.mark.asyncio
    async def test_unknown_owner_gets_empty_record(self, identities):
        """Never-provisioned owners have no key, alias or payment address."""
        record = await identities.get_identity("u1")
        assert record == IdentityRecord(owner_id="u1")

    @pytest.mark.asyncio
    async def test_put_and_get(self, identities):
        record = IdentityRecord(owner_id="u1", signing_public_key="K0", alias="u1@old.example")
        await identities.put_identity(record)
        assert await identities.get_identity("u1") == record

    @pytest.mark.asyncio
    async def test_put_replaces(self, identities):
        record = IdentityRecord(owner_id="u1", signing_public_key="K0")
        await identities.put_identity(record)
        await identities.put_identity(replace(record, signing_public_key="K1"))
        assert (await identities.get_identity("u1")).signing_public_key == "K1"


class TestRedisLedgerLayout:
    """Redis-specific storage layout."""

    @pytest.mark.asyncio
    async def test_keys(self, redis_client):
        """Tickets are JSON documents indexed by an owner sorted set."""
        ledger = RedisRotationLedger(redis_client)
        await ledger.insert(ticket("r1"))

        assert ledger.ticket_key("r1") == "rekey:ticket:r1"
        assert await redis_client.exists("rekey:ticket:r1") == 1
        assert await redis_client.zscore("rekey:owner:u1", "r1") == T0.timestamp()
        assert await redis_client.ttl("rekey:ticket:r1") == -1
