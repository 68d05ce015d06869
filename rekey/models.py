"""
Rekey Data Model.

Identity records, rotation tickets and the plans that move an identity from
one signing key to the next. All timestamps are timezone-aware UTC datetimes;
the wire form uses camelCase keys and ISO-8601 strings.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Strategy(str, Enum):
    """How a rotation treats an identity field."""

    KEEP = "keep"
    CREATE = "create"

    @classmethod
    def parse(cls, value: Any) -> "Strategy":
        """Anything other than an explicit ``create`` means keep."""
        return cls.CREATE if value == cls.CREATE.value else cls.KEEP


class RotationStatus(str, Enum):
    """Ticket lifecycle. Transitions only move forward."""

    PENDING = "pending"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"


@dataclass
class IdentityRecord:
    """
    The durable binding of an owner to a signing key, alias and payment address.

    Attributes:
        owner_id: Identity performing rotations.
        signing_public_key: Current signing public key (None if never set).
        alias: Human-readable ``name@namespace`` alias.
        payment_address: Payment address bound to the identity.
    """

    owner_id: str
    signing_public_key: Optional[str] = None
    alias: Optional[str] = None
    payment_address: Optional[str] = None

    def snapshot(self) -> Dict[str, Optional[str]]:
        """Caller-facing view without the owner id."""
        return {
            "signingPublicKey": self.signing_public_key,
            "alias": self.alias,
            "paymentAddress": self.payment_address,
        }

    def to_dict(self) -> dict:
        return {"ownerId": self.owner_id, **self.snapshot()}

    @classmethod
    def from_dict(cls, data: dict) -> "IdentityRecord":
        return cls(
            owner_id=data["ownerId"],
            signing_public_key=data.get("signingPublicKey"),
            alias=data.get("alias"),
            payment_address=data.get("paymentAddress"),
        )


@dataclass(frozen=True)
class AttestationRefs:
    """
    Opaque references to externally published attestation events.

    Stored for audit only; nothing here is checked against the event network.
    """

    delegation_event_id: Optional[str] = None
    profile_update_event_id: Optional[str] = None
    profile_event_ids: List[str] = field(default_factory=list)
    notice_event_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "delegationEventId": self.delegation_event_id,
            "profileUpdateEventId": self.profile_update_event_id,
            "profileEventIds": list(self.profile_event_ids),
            "noticeEventIds": list(self.notice_event_ids),
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "AttestationRefs":
        data = data or {}
        return cls(
            delegation_event_id=data.get("delegationEventId"),
            profile_update_event_id=data.get("profileUpdateEventId"),
            profile_event_ids=list(data.get("profileEventIds") or []),
            notice_event_ids=list(data.get("noticeEventIds") or []),
        )


@dataclass(frozen=True)
class PriorStateSnapshot:
    """Alias and payment address as they were immediately before commit."""

    alias: Optional[str] = None
    payment_address: Optional[str] = None
    attestations: AttestationRefs = field(default_factory=AttestationRefs)

    def to_dict(self) -> dict:
        return {
            "alias": self.alias,
            "paymentAddress": self.payment_address,
            "attestations": self.attestations.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PriorStateSnapshot":
        return cls(
            alias=data.get("alias"),
            payment_address=data.get("paymentAddress"),
            attestations=AttestationRefs.from_dict(data.get("attestations")),
        )


@dataclass(frozen=True)
class FieldPlan:
    """What a rotation does to one optional identity field."""

    strategy: Strategy = Strategy.KEEP
    value: Optional[str] = None

    def apply(self, current: Optional[str]) -> Optional[str]:
        if self.strategy is Strategy.CREATE:
            return self.value
        return current


@dataclass(frozen=True)
class RotationPlan:
    """
    Everything the mutator needs to commit a rotation.

    Attributes:
        old_key: Key the identity must still hold at commit time.
        new_key: Key the identity will hold afterwards.
        alias: Alias strategy and value.
        payment: Payment address strategy and value.
    """

    old_key: str
    new_key: str
    alias: FieldPlan = field(default_factory=FieldPlan)
    payment: FieldPlan = field(default_factory=FieldPlan)

    def apply(self, record: IdentityRecord) -> IdentityRecord:
        """Return the identity record as it looks after this rotation."""
        return replace(
            record,
            signing_public_key=self.new_key,
            alias=self.alias.apply(record.alias),
            payment_address=self.payment.apply(record.payment_address),
        )


@dataclass
class RotationTicket:
    """
    Audit and state record for one key-rotation attempt.

    ``old_signing_public_key`` is fixed at creation. ``prior_state_snapshot`` is
    written once, when the ticket completes, and is the only basis for rollback.
    """

    rotation_id: str
    owner_id: str
    old_signing_public_key: str
    started_at: datetime
    new_signing_public_key: Optional[str] = None
    alias_strategy: Strategy = Strategy.KEEP
    alias_value: Optional[str] = None
    payment_address_strategy: Strategy = Strategy.KEEP
    payment_address_value: Optional[str] = None
    status: RotationStatus = RotationStatus.PENDING
    completed_at: Optional[datetime] = None
    rolled_back_at: Optional[datetime] = None
    prior_state_snapshot: Optional[PriorStateSnapshot] = None
    error_reason: Optional[str] = None

    def is_abandoned(self, now: datetime, pending_ttl: timedelta) -> bool:
        """A pending ticket past its TTL can no longer be completed."""
        return self.status is RotationStatus.PENDING and now - self.started_at > pending_ttl

    def rollback_deadline(self, window: timedelta) -> Optional[datetime]:
        if self.completed_at is None:
            return None
        return self.completed_at + window

    def completed(
        self, plan: RotationPlan, snapshot: PriorStateSnapshot, completed_at: datetime
    ) -> "RotationTicket":
        """Copy of this ticket flipped to completed."""
        return replace(
            self,
            new_signing_public_key=plan.new_key,
            alias_strategy=plan.alias.strategy,
            alias_value=plan.alias.value,
            payment_address_strategy=plan.payment.strategy,
            payment_address_value=plan.payment.value,
            status=RotationStatus.COMPLETED,
            completed_at=completed_at,
            prior_state_snapshot=snapshot,
        )

    def rolled_back(self, rolled_back_at: datetime) -> "RotationTicket":
        """Copy of this ticket flipped to rolled back."""
        return replace(self, status=RotationStatus.ROLLED_BACK, rolled_back_at=rolled_back_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rotationId": self.rotation_id,
            "ownerId": self.owner_id,
            "oldSigningPublicKey": self.old_signing_public_key,
            "newSigningPublicKey": self.new_signing_public_key,
            "aliasStrategy": self.alias_strategy.value,
            "aliasValue": self.alias_value,
            "paymentAddressStrategy": self.payment_address_strategy.value,
            "paymentAddressValue": self.payment_address_value,
            "status": self.status.value,
            "startedAt": _to_iso(self.started_at),
            "completedAt": _to_iso(self.completed_at),
            "rolledBackAt": _to_iso(self.rolled_back_at),
            "priorStateSnapshot": (
                self.prior_state_snapshot.to_dict() if self.prior_state_snapshot else None
            ),
            "errorReason": self.error_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RotationTicket":
        snapshot = data.get("priorStateSnapshot")
        return cls(
            rotation_id=data["rotationId"],
            owner_id=data["ownerId"],
            old_signing_public_key=data.get("oldSigningPublicKey") or "",
            new_signing_public_key=data.get("newSigningPublicKey"),
            alias_strategy=Strategy.parse(data.get("aliasStrategy")),
            alias_value=data.get("aliasValue"),
            payment_address_strategy=Strategy.parse(data.get("paymentAddressStrategy")),
            payment_address_value=data.get("paymentAddressValue"),
            status=RotationStatus(data.get("status", RotationStatus.PENDING.value)),
            started_at=_from_iso(data["startedAt"]),
            completed_at=_from_iso(data.get("completedAt")),
            rolled_back_at=_from_iso(data.get("rolledBackAt")),
            prior_state_snapshot=PriorStateSnapshot.from_dict(snapshot) if snapshot else None,
            error_reason=data.get("errorReason"),
        )
