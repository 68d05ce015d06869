"""
Rekey wire request models.

Request bodies for the four rotation actions, validated with pydantic. Field
names on the wire are camelCase; Python attributes are snake_case.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from rekey.errors import ValidationError
from rekey.models import AttestationRefs, FieldPlan, Strategy

MAX_KEY_LENGTH = 1024
MAX_VALUE_LENGTH = 320
MAX_EVENT_IDS = 64


class WireModel(BaseModel):
    """Base model: camelCase aliases, unknown fields ignored."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True, extra="ignore")


class StartRequest(WireModel):
    """Optional strategies the caller intends to apply."""

    alias_strategy: Strategy = Field(default=Strategy.KEEP, alias="aliasStrategy")
    payment_address_strategy: Strategy = Field(
        default=Strategy.KEEP, alias="paymentAddressStrategy"
    )


class AliasChoice(WireModel):
    """Alias strategy; ``create`` needs a ``name@namespace`` value."""

    strategy: Strategy = Strategy.KEEP
    value: Optional[str] = Field(default=None, max_length=MAX_VALUE_LENGTH)

    @model_validator(mode="after")
    def check_value(self) -> "AliasChoice":
        if self.strategy is Strategy.CREATE:
            if not self.value:
                raise ValueError("alias value is required when strategy is create")
            name, sep, namespace = self.value.partition("@")
            if not sep or not name or not namespace or "@" in namespace:
                raise ValueError("alias must look like name@namespace")
        return self

    @property
    def namespace(self) -> Optional[str]:
        if not self.value or "@" not in self.value:
            return None
        return self.value.split("@", 1)[1].lower()

    def plan(self) -> FieldPlan:
        if self.strategy is Strategy.CREATE:
            return FieldPlan(Strategy.CREATE, self.value)
        return FieldPlan()


class PaymentChoice(WireModel):
    """Payment address strategy; ``create`` needs an address."""

    strategy: Strategy = Strategy.KEEP
    value: Optional[str] = Field(default=None, max_length=MAX_VALUE_LENGTH)

    @model_validator(mode="after")
    def check_value(self) -> "PaymentChoice":
        if self.strategy is Strategy.CREATE and not self.value:
            raise ValueError("payment address is required when strategy is create")
        return self

    def plan(self) -> FieldPlan:
        if self.strategy is Strategy.CREATE:
            return FieldPlan(Strategy.CREATE, self.value)
        return FieldPlan()


class AttestationRefsBody(WireModel):
    """Caller-supplied references to externally published attestations."""

    delegation_event_id: Optional[str] = Field(
        default=None, alias="delegationEventId", max_length=MAX_VALUE_LENGTH
    )
    profile_update_event_id: Optional[str] = Field(
        default=None, alias="profileUpdateEventId", max_length=MAX_VALUE_LENGTH
    )
    profile_event_ids: List[str] = Field(
        default_factory=list, alias="profileEventIds", max_length=MAX_EVENT_IDS
    )
    notice_event_ids: List[str] = Field(
        default_factory=list, alias="noticeEventIds", max_length=MAX_EVENT_IDS
    )

    def refs(self) -> AttestationRefs:
        return AttestationRefs(
            delegation_event_id=self.delegation_event_id or None,
            profile_update_event_id=self.profile_update_event_id or None,
            profile_event_ids=[i for i in self.profile_event_ids if i],
            notice_event_ids=[i for i in self.notice_event_ids if i],
        )


class RotationRequest(WireModel):
    """Body for actions that only name a rotation (status, rollback)."""

    rotation_id: str = Field(alias="rotationId", min_length=1, max_length=128)


class CompleteRequest(RotationRequest):
    """Body for ``complete``."""

    old_key: str = Field(alias="oldKey", max_length=MAX_KEY_LENGTH)
    new_key: str = Field(alias="newKey", min_length=1, max_length=MAX_KEY_LENGTH)
    alias: AliasChoice = Field(default_factory=AliasChoice)
    payment_address: PaymentChoice = Field(default_factory=PaymentChoice, alias="paymentAddress")
    attestation_refs: AttestationRefsBody = Field(
        default_factory=AttestationRefsBody, alias="attestationRefs"
    )

    @field_validator("alias", "payment_address", "attestation_refs", mode="before")
    @classmethod
    def null_means_default(cls, v):
        return {} if v is None else v

    @model_validator(mode="after")
    def check_keys_differ(self) -> "CompleteRequest":
        if self.old_key == self.new_key:
            raise ValueError("newKey must differ from oldKey")
        return self


def parse(model: type, payload: Optional[dict]):
    """
    Validate ``payload`` against ``model``.

    Raises:
        ValidationError: With the first problem pydantic reported.
    """
    if payload is not None and not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    try:
        return model.model_validate(payload or {})
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "__root__")
        message = first.get("msg", "invalid request")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        raise ValidationError(f"{location}: {message}" if location else message) from e
