"""
Rekey Key Rotation Protocol.

State machine for replacing an identity's signing key while keeping its alias
and payment address, with a bounded window to undo the change:

    start      -> new pending ticket (rate limited per owner)
    complete   -> pending ticket becomes completed, identity updated atomically
    status     -> read one of the caller's own tickets
    rollback   -> completed ticket becomes rolled_back, identity restored

Tickets only move forward: pending -> completed -> rolled_back.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from rekey.config import RotationSettings
from rekey.errors import (
    BackendError,
    NotFoundError,
    PersistenceError,
    PolicyDeniedError,
    RateLimitedError,
    RotationError,
    StateConflictError,
    TicketConflictError,
    ValidationError,
)
from rekey.identity import IdentityStoreInterface
from rekey.keys import keys_match, new_rotation_id
from rekey.ledger import RotationLedgerInterface
from rekey.metrics import RotationMetrics
from rekey.models import (
    IdentityRecord,
    RotationPlan,
    RotationStatus,
    RotationTicket,
    Strategy,
    utcnow,
)
from rekey.mutator import IdentityMutatorInterface
from rekey.ratelimit import COOLDOWN_ACTIVE, RotationRateLimiter
from rekey.schemas import CompleteRequest, RotationRequest, StartRequest, parse

logger = logging.getLogger(__name__)


class RotationAction(str, Enum):
    """The closed set of protocol actions."""

    START = "start"
    COMPLETE = "complete"
    STATUS = "status"
    ROLLBACK = "rollback"


@dataclass
class StartResult:
    """What a caller needs to present policy before committing."""

    rotation_id: str
    current: IdentityRecord
    alias_allowlist: List[str]
    deprecation_days: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "rotationId": self.rotation_id,
            "currentIdentitySnapshot": self.current.snapshot(),
            "aliasAllowlist": self.alias_allowlist,
            "deprecationWindowDays": self.deprecation_days,
        }


# Backend conflict reasons -> caller-facing errors
_CONFLICTS = {
    "not_found": lambda: NotFoundError("Rotation not found"),
    "not_pending": lambda: StateConflictError("Rotation already finalized", "already_finalized"),
    "not_completed": lambda: StateConflictError("Rotation not completed", "not_completed"),
    "key_mismatch": lambda: ValidationError("Old key does not match rotation", "key_mismatch"),
    "key_changed": lambda: StateConflictError(
        "Identity key changed since this rotation", "rotation_superseded"
    ),
}


class KeyRotationService:
    """
    Key-rotation protocol handlers.

    Example:
        >>> service = KeyRotationService(identities, ledger, mutator, settings)
        >>> started = await service.start("owner-1")
        >>> await service.complete("owner-1", CompleteRequest(
        ...     rotation_id=started.rotation_id, old_key="K0", new_key="K1"))
        >>> await service.rollback("owner-1", started.rotation_id)
    """

    def __init__(
        self,
        identities: IdentityStoreInterface,
        ledger: RotationLedgerInterface,
        mutator: IdentityMutatorInterface,
        settings: Optional[RotationSettings] = None,
        clock: Callable[[], datetime] = utcnow,
        metrics: Optional[RotationMetrics] = None,
    ):
        """
        Initialize the service.

        Args:
            identities: Identity snapshot reader.
            ledger: Rotation ticket store.
            mutator: Transactional boundary over identities and ledger.
            settings: Policy (window, limits, allowlist). Read from env if None.
            clock: Source of "now"; injectable for tests.
            metrics: Optional outcome recorder used by ``dispatch``.
        """
        self._identities = identities
        self._ledger = ledger
        self._mutator = mutator
        self._settings = settings or RotationSettings.from_env()
        self._clock = clock
        self._metrics = metrics
        self._limiter = RotationRateLimiter(ledger, self._settings)
        self._handlers: Dict[
            RotationAction, Callable[[str, Optional[dict]], Awaitable[Dict[str, Any]]]
        ] = {
            RotationAction.START: self._handle_start,
            RotationAction.COMPLETE: self._handle_complete,
            RotationAction.STATUS: self._handle_status,
            RotationAction.ROLLBACK: self._handle_rollback,
        }
        missing = set(RotationAction) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for actions: {sorted(a.value for a in missing)}")

    @property
    def settings(self) -> RotationSettings:
        return self._settings

    # =========================================================================
    # Protocol operations
    # =========================================================================

    async def start(
        self,
        owner_id: str,
        alias_strategy: Strategy = Strategy.KEEP,
        payment_address_strategy: Strategy = Strategy.KEEP,
    ) -> StartResult:
        """
        Open a pending rotation for ``owner_id``.

        Raises:
            RateLimitedError: ``cooldown_active`` or ``daily_cap_reached``.
            PersistenceError: The ticket could not be written (none exists).
        """
        now = self._clock()
        try:
            allowance = await self._limiter.check(owner_id, now)
            if not allowance.allowed:
                if allowance.reason == COOLDOWN_ACTIVE:
                    message = "Rotation recently initiated. Try later."
                else:
                    message = "Daily key rotation limit reached"
                raise RateLimitedError(message, allowance.reason, allowance.retry_after or 0.0)

            current = await self._identities.get_identity(owner_id)
            ticket = RotationTicket(
                rotation_id=new_rotation_id(),
                owner_id=owner_id,
                old_signing_public_key=current.signing_public_key or "",
                started_at=now,
                alias_strategy=alias_strategy,
                payment_address_strategy=payment_address_strategy,
            )
            await self._ledger.insert(ticket, expected_latest=allowance.latest_rotation_id)
        except TicketConflictError as e:
            if e.reason != "owner_changed":
                logger.error(f"Rotation insert conflict for {owner_id}: {e.reason}")
                raise PersistenceError() from e
            # Another start for this owner won the race
            logger.warning(f"Concurrent rotation start refused for {owner_id}")
            raise RateLimitedError(
                "Rotation recently initiated. Try later.",
                COOLDOWN_ACTIVE,
                self._settings.cooldown_seconds,
            ) from e
        except BackendError as e:
            logger.error(f"Rotation start failed for {owner_id}: {e}")
            raise PersistenceError() from e

        logger.info(f"Rotation {ticket.rotation_id} started for {owner_id}")
        return StartResult(
            rotation_id=ticket.rotation_id,
            current=current,
            alias_allowlist=sorted(self._settings.alias_domains),
            deprecation_days=self._settings.deprecation_days,
        )

    async def complete(self, owner_id: str, request: CompleteRequest) -> RotationTicket:
        """
        Commit a pending rotation.

        Raises:
            NotFoundError: No such ticket for this owner.
            StateConflictError: Ticket is not pending, is abandoned, or the
                identity key moved since start.
            ValidationError: Claimed old key does not match the ticket.
            PolicyDeniedError: Alias namespace is not allowlisted.
            PersistenceError: The commit failed; the ticket is still pending.
        """
        now = self._clock()
        ticket = await self._owned_ticket(owner_id, request.rotation_id)

        if ticket.status is not RotationStatus.PENDING:
            raise StateConflictError("Rotation already finalized", "already_finalized")
        if ticket.is_abandoned(now, self._settings.pending_ttl):
            raise StateConflictError("Rotation abandoned; start a new one", "rotation_abandoned")
        if not keys_match(request.old_key, ticket.old_signing_public_key):
            raise ValidationError("Old key does not match rotation", "key_mismatch")

        if request.alias.strategy is Strategy.CREATE:
            namespace = request.alias.namespace
            if namespace not in self._settings.alias_domains:
                logger.warning(f"Alias namespace {namespace!r} refused for {owner_id}")
                raise PolicyDeniedError("Alias namespace not allowed", "namespace_not_allowed")

        plan = RotationPlan(
            old_key=ticket.old_signing_public_key,
            new_key=request.new_key,
            alias=request.alias.plan(),
            payment=request.payment_address.plan(),
        )

        try:
            done = await self._mutator.commit_rotation(
                owner_id, ticket.rotation_id, plan, request.attestation_refs.refs(), now
            )
        except TicketConflictError as e:
            raise self._conflict(e) from e
        except BackendError as e:
            await self._record_failure(ticket.rotation_id, "complete", e)
            raise PersistenceError() from e

        logger.info(f"Rotation {done.rotation_id} completed for {owner_id}")
        return done

    async def status(self, owner_id: str, rotation_id: str) -> Dict[str, Any]:
        """
        Full ticket view for one of the caller's tickets.

        Another owner's ticket is reported as not found.
        """
        ticket = await self._owned_ticket(owner_id, rotation_id)
        deadline = ticket.rollback_deadline(self._settings.deprecation_window)
        view = ticket.to_dict()
        view["abandoned"] = ticket.is_abandoned(self._clock(), self._settings.pending_ttl)
        view["rollbackDeadline"] = deadline.isoformat() if deadline else None
        return view

    async def rollback(self, owner_id: str, rotation_id: str) -> RotationTicket:
        """
        Undo a completed rotation inside the deprecation window.

        Raises:
            NotFoundError: No such ticket for this owner.
            StateConflictError: Ticket is not completed, or a later rotation
                replaced the key.
            PolicyDeniedError: The deprecation window has passed.
            PersistenceError: The restore failed; the ticket is still completed.
        """
        now = self._clock()
        ticket = await self._owned_ticket(owner_id, rotation_id)

        if ticket.status is not RotationStatus.COMPLETED:
            raise StateConflictError("Rotation not completed", "not_completed")
        deadline = ticket.rollback_deadline(self._settings.deprecation_window)
        if deadline is None or now > deadline:
            logger.warning(f"Rollback of {rotation_id} refused: window expired")
            raise PolicyDeniedError("Deprecation window expired", "window_expired")

        try:
            undone = await self._mutator.commit_rollback(owner_id, rotation_id, now)
        except TicketConflictError as e:
            raise self._conflict(e) from e
        except BackendError as e:
            await self._record_failure(rotation_id, "rollback", e)
            raise PersistenceError() from e

        logger.info(f"Rotation {rotation_id} rolled back for {owner_id}")
        return undone

    # =========================================================================
    # Action dispatch
    # =========================================================================

    async def dispatch(
        self, action: RotationAction, owner_id: str, payload: Optional[dict] = None
    ) -> Dict[str, Any]:
        """
        Run one action from a wire payload and return the wire response.

        Raises:
            RotationError: Any protocol failure, with its code.
        """
        handler = self._handlers[action]
        if self._metrics is None:
            return await handler(owner_id, payload)

        with self._metrics.timer(action.value):
            try:
                response = await handler(owner_id, payload)
            except RotationError as e:
                self._metrics.record_outcome(action.value, e.code)
                raise
        self._metrics.record_outcome(action.value, "ok")
        return response

    async def _handle_start(self, owner_id: str, payload: Optional[dict]) -> Dict[str, Any]:
        request = parse(StartRequest, payload)
        result = await self.start(
            owner_id, request.alias_strategy, request.payment_address_strategy
        )
        return result.to_dict()

    async def _handle_complete(self, owner_id: str, payload: Optional[dict]) -> Dict[str, Any]:
        await self.complete(owner_id, parse(CompleteRequest, payload))
        return {"success": True}

    async def _handle_status(self, owner_id: str, payload: Optional[dict]) -> Dict[str, Any]:
        request = parse(RotationRequest, payload)
        return {"success": True, "rotation": await self.status(owner_id, request.rotation_id)}

    async def _handle_rollback(self, owner_id: str, payload: Optional[dict]) -> Dict[str, Any]:
        request = parse(RotationRequest, payload)
        await self.rollback(owner_id, request.rotation_id)
        return {"success": True}

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _owned_ticket(self, owner_id: str, rotation_id: str) -> RotationTicket:
        try:
            ticket = await self._ledger.get(rotation_id)
        except BackendError as e:
            logger.error(f"Ledger read failed for {rotation_id}: {e}")
            raise PersistenceError() from e
        if ticket is None or ticket.owner_id != owner_id:
            raise NotFoundError("Rotation not found")
        return ticket

    @staticmethod
    def _conflict(error: TicketConflictError) -> RotationError:
        factory = _CONFLICTS.get(error.reason)
        if factory is None:
            return PersistenceError()
        return factory()

    async def _record_failure(self, rotation_id: str, action: str, error: Exception) -> None:
        logger.error(f"Rotation {rotation_id} {action} commit failed: {error}")
        try:
            await self._ledger.record_error(rotation_id, f"{action} commit failed")
        except BackendError as e:
            logger.error(f"Could not record failure on rotation {rotation_id}: {e}")
