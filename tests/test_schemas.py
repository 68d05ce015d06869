"""
Tests for wire request validation.
"""

import pytest

from rekey.errors import ValidationError
from rekey.models import Strategy
from rekey.schemas import CompleteRequest, RotationRequest, StartRequest, parse


def complete_body(**overrides) -> dict:
    body = {"rotationId": "r1", "oldKey": "K0", "newKey": "K1"}
    body.update(overrides)
    return body


class TestStartRequest:
    """Tests for the start body."""

    def test_empty_body_defaults_to_keep(self):
        request = parse(StartRequest, None)
        assert request.alias_strategy is Strategy.KEEP
        assert request.payment_address_strategy is Strategy.KEEP

    def test_strategies(self):
        request = parse(StartRequest, {"aliasStrategy": "create"})
        assert request.alias_strategy is Strategy.CREATE

    def test_unknown_strategy_rejected(self):
        with pytest.raises(ValidationError):
            parse(StartRequest, {"aliasStrategy": "replace"})


class TestCompleteRequest:
    """Tests for the complete body."""

    def test_minimal(self):
        request = parse(CompleteRequest, complete_body())
        assert request.rotation_id == "r1"
        assert request.old_key == "K0"
        assert request.new_key == "K1"
        assert request.alias.strategy is Strategy.KEEP
        assert request.alias.plan().strategy is Strategy.KEEP
        assert request.attestation_refs.refs().profile_event_ids == []

    def test_missing_rotation_id(self):
        with pytest.raises(ValidationError) as exc:
            parse(CompleteRequest, {"oldKey": "K0", "newKey": "K1"})
        assert "rotationId" in exc.value.message
        assert exc.value.code == "invalid_request"

    def test_missing_new_key(self):
        with pytest.raises(ValidationError):
            parse(CompleteRequest, {"rotationId": "r1", "oldKey": "K0"})

    def test_empty_old_key_allowed(self):
        """An identity without a key rotates from the empty key."""
        request = parse(CompleteRequest, complete_body(oldKey=""))
        assert request.old_key == ""

    def test_same_keys_rejected(self):
        with pytest.raises(ValidationError) as exc:
            parse(CompleteRequest, complete_body(newKey="K0"))
        assert "newKey must differ from oldKey" in exc.value.message

    def test_alias_create_requires_namespace(self):
        for value in ("u1", "@allowed.example", "u1@", "a@b@c"):
            with pytest.raises(ValidationError):
                parse(CompleteRequest, complete_body(alias={"strategy": "create", "value": value}))

    def test_alias_create_requires_value(self):
        with pytest.raises(ValidationError) as exc:
            parse(CompleteRequest, complete_body(alias={"strategy": "create"}))
        assert "alias value is required" in exc.value.message

    def test_alias_namespace_lowercased(self):
        request = parse(
            CompleteRequest,
            complete_body(alias={"strategy": "create", "value": "u1@Allowed.Example"}),
        )
        assert request.alias.namespace == "allowed.example"
        assert request.alias.plan().value == "u1@Allowed.Example"

    def test_payment_create_requires_value(self):
        with pytest.raises(ValidationError):
            parse(CompleteRequest, complete_body(paymentAddress={"strategy": "create"}))

    def test_null_choices_mean_keep(self):
        request = parse(
            CompleteRequest,
            complete_body(alias=None, paymentAddress=None, attestationRefs=None),
        )
        assert request.payment_address.strategy is Strategy.KEEP

    def test_attestation_refs(self):
        request = parse(
            CompleteRequest,
            complete_body(
                attestationRefs={
                    "delegationEventId": "ev-del",
                    "profileEventIds": ["p1", ""],
                    "noticeEventIds": ["n1"],
                }
            ),
        )
        refs = request.attestation_refs.refs()
        assert refs.delegation_event_id == "ev-del"
        assert refs.profile_update_event_id is None
        assert refs.profile_event_ids == ["p1"]
        assert refs.notice_event_ids == ["n1"]

    def test_attestation_ids_must_be_strings(self):
        with pytest.raises(ValidationError):
            parse(CompleteRequest, complete_body(attestationRefs={"noticeEventIds": [{"id": 1}]}))


class TestParse:
    """Tests for the parse helper."""

    def test_body_must_be_object(self):
        with pytest.raises(ValidationError) as exc:
            parse(RotationRequest, ["r1"])
        assert exc.value.message == "Request body must be a JSON object"

    def test_unknown_fields_ignored(self):
        request = parse(RotationRequest, {"rotationId": "r1", "extra": True})
        assert request.rotation_id == "r1"
