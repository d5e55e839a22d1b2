import json

import pytest

from blesspay.domain import AMOUNT_MISMATCH, CallbackEvent, ChargeRequest, IntentState, Outcome, PaymentIntent
from blesspay.errors import (
    IntentNotFound,
    PaymentValidationError,
    ProviderError,
    ProviderInitiationError,
    StateConflict,
)
from blesspay.reconciliation import CallbackOutcome
from blesspay.webhooks import sign
from conftest import CALLBACK_SECRET


def _charge(amount=500, payer="254712345678", purpose="tithe", description=None):
    return ChargeRequest(
        amount=amount,
        payer_identifier=payer,
        purpose=purpose,
        provider="fakepay",
        user_id="user-1",
        description=description,
    )


def _callback(reconciler, payload, secret=CALLBACK_SECRET, signature=None):
    body = json.dumps(payload).encode()
    return reconciler.apply_callback("fakepay", body, signature or sign(body, secret))


SUCCESS = {"providerReference": "ABC123", "outcome": "Success", "amount": 500, "receipt": "RCPT1"}


def test_open_intent_moves_to_pending_provider_ack(reconciler, fake_gateway, store):
    intent = reconciler.open_intent(_charge())

    assert intent.state is IntentState.PENDING_PROVIDER_ACK
    assert intent.provider_reference == "ABC123"
    assert intent.checkout_url == "https://fakepay.test/pay"
    assert intent.amount == 500
    assert intent.user_id == "user-1"
    assert len(fake_gateway.initiated) == 1
    assert fake_gateway.initiated[0].state is IntentState.CREATED
    assert [c.to_state for c in store.history(intent.id)] == [
        IntentState.CREATED,
        IntentState.PENDING_PROVIDER_ACK,
    ]


def test_successful_callback_completes_intent(reconciler):
    intent = reconciler.open_intent(_charge())

    result = _callback(reconciler, SUCCESS)

    assert result.outcome is CallbackOutcome.APPLIED
    assert result.acknowledged
    final = reconciler.get(intent.id)
    assert final.state is IntentState.COMPLETED
    assert final.settlement_receipt == "RCPT1"
    assert final.amount == 500


def test_duplicate_callback_is_idempotent(reconciler):
    intent = reconciler.open_intent(_charge())

    first = _callback(reconciler, SUCCESS)
    second = _callback(reconciler, SUCCESS)

    assert first.outcome is CallbackOutcome.APPLIED
    assert second.outcome is CallbackOutcome.ALREADY_RECONCILED
    assert second.acknowledged
    final = reconciler.get(intent.id)
    assert final.state is IntentState.COMPLETED
    assert final.settlement_receipt == "RCPT1"
    assert len(reconciler.state_history(intent.id)) == 3


def test_amount_mismatch_fails_intent(reconciler):
    intent = reconciler.open_intent(_charge())

    result = _callback(reconciler, dict(SUCCESS, amount=450))

    assert result.outcome is CallbackOutcome.AMOUNT_MISMATCH
    final = reconciler.get(intent.id)
    assert final.state is IntentState.FAILED
    assert final.failure_reason == AMOUNT_MISMATCH
    assert final.flagged_for_review is True
    assert final.settlement_receipt is None


def test_tampered_body_is_unauthorized(reconciler):
    intent = reconciler.open_intent(_charge())
    body = json.dumps(SUCCESS).encode()
    signature = sign(body, CALLBACK_SECRET)

    tampered = body.replace(b"500", b"5000")
    result = reconciler.apply_callback("fakepay", tampered, signature)

    assert result.outcome is CallbackOutcome.UNAUTHORIZED
    assert not result.acknowledged
    assert reconciler.get(intent.id).state is IntentState.PENDING_PROVIDER_ACK


def test_missing_signature_is_unauthorized(reconciler):
    intent = reconciler.open_intent(_charge())
    result = reconciler.apply_callback("fakepay", json.dumps(SUCCESS).encode(), None)

    assert result.outcome is CallbackOutcome.UNAUTHORIZED
    assert reconciler.get(intent.id).state is IntentState.PENDING_PROVIDER_ACK


def test_failure_callback_records_reason(reconciler):
    intent = reconciler.open_intent(_charge())

    result = _callback(
        reconciler,
        {"providerReference": "ABC123", "outcome": "Failure", "reason": "Request cancelled by user"},
    )

    assert result.outcome is CallbackOutcome.APPLIED
    final = reconciler.get(intent.id)
    assert final.state is IntentState.FAILED
    assert final.failure_reason == "Request cancelled by user"


def test_late_success_after_failure_is_a_no_op(reconciler):
    intent = reconciler.open_intent(_charge())
    _callback(reconciler, {"providerReference": "ABC123", "outcome": "Failure", "reason": "timeout"})

    result = _callback(reconciler, SUCCESS)

    assert result.outcome is CallbackOutcome.ALREADY_RECONCILED
    assert reconciler.get(intent.id).state is IntentState.FAILED


def test_verified_but_malformed_payload_leaves_intent_alone(reconciler):
    intent = reconciler.open_intent(_charge())

    result = _callback(reconciler, {"outcome": "Success"})

    assert result.outcome is CallbackOutcome.MALFORMED
    assert result.acknowledged
    assert reconciler.get(intent.id).state is IntentState.PENDING_PROVIDER_ACK


def test_callback_for_unknown_reference_is_retryable_not_found(reconciler, sleeps):
    result = _callback(reconciler, dict(SUCCESS, providerReference="UNKNOWN"))

    assert result.outcome is CallbackOutcome.NOT_FOUND
    assert result.retryable is True
    assert result.acknowledged
    # two lookups, one pause between them
    assert sleeps == [0.01]


def test_callback_found_on_second_lookup(reconciler, store, mocker):
    intent = reconciler.open_intent(_charge())
    real_find = store.find_by_provider_reference
    calls = []

    def slow_find(reference):
        calls.append(reference)
        if len(calls) == 1:
            raise IntentNotFound(reference)
        return real_find(reference)

    mocker.patch.object(store, "find_by_provider_reference", side_effect=slow_find)

    result = _callback(reconciler, SUCCESS)

    assert result.outcome is CallbackOutcome.APPLIED
    assert reconciler.get(intent.id).state is IntentState.COMPLETED


def test_lost_race_maps_to_already_reconciled(reconciler, store, mocker):
    intent = reconciler.open_intent(_charge())
    real_transition = store.transition

    def racing_transition(intent_id, expected, new, **kwargs):
        # A concurrent delivery of the same callback commits first
        real_transition(intent_id, expected, IntentState.COMPLETED, settlement_receipt="RCPT1")
        raise StateConflict(intent_id, expected, IntentState.COMPLETED)

    mocker.patch.object(store, "transition", side_effect=racing_transition)

    result = _callback(reconciler, SUCCESS)

    assert result.outcome is CallbackOutcome.ALREADY_RECONCILED
    assert reconciler.get(intent.id).state is IntentState.COMPLETED


def test_initiation_failure_is_persisted_as_failed(reconciler, fake_gateway):
    fake_gateway.initiate_error = ProviderInitiationError("fakepay: provider rejected request")

    intent = reconciler.open_intent(_charge())

    assert intent.state is IntentState.FAILED
    assert intent.failure_reason == "fakepay: provider rejected request"
    assert intent.provider_reference is None
    assert reconciler.get(intent.id).state is IntentState.FAILED


def test_provider_returning_a_used_reference_fails_second_intent(reconciler):
    first = reconciler.open_intent(_charge())
    second = reconciler.open_intent(_charge())

    assert first.state is IntentState.PENDING_PROVIDER_ACK
    assert second.state is IntentState.FAILED
    assert second.flagged_for_review is True


@pytest.mark.parametrize(
    "request_kwargs",
    [
        {"amount": 0},
        {"amount": -500},
        {"amount": 50},  # below the 1.00 minimum
        {"amount": 25_000_001},  # above the 250,000.00 maximum
        {"amount": 10**20},
        {"description": "x" * 101},
        {"payer": "   "},
        {"purpose": ""},
        {"purpose": "tithe; drop table"},
    ],
)
def test_invalid_charge_is_rejected_without_state(reconciler, fake_gateway, store, request_kwargs):
    with pytest.raises(PaymentValidationError):
        reconciler.open_intent(_charge(**request_kwargs))

    assert fake_gateway.initiated == []
    assert store.list_for_user("user-1") == []


def test_unknown_provider_is_a_validation_error(reconciler):
    with pytest.raises(PaymentValidationError):
        reconciler.open_intent(
            ChargeRequest(amount=500, payer_identifier="254712345678", purpose="tithe", provider="bitcoin")
        )


def test_purpose_is_normalized(reconciler):
    intent = reconciler.open_intent(_charge(purpose="  Offering "))
    assert intent.purpose == "offering"


def test_verify_intent_applies_provider_success(reconciler, fake_gateway):
    intent = reconciler.open_intent(_charge())
    fake_gateway.query_result = CallbackEvent(
        provider_reference="ABC123", outcome=Outcome.SUCCESS, amount=500, receipt="RCPT9"
    )

    verified = reconciler.verify_intent(intent.id)

    assert fake_gateway.queried == ["ABC123"]
    assert verified.state is IntentState.COMPLETED
    assert verified.settlement_receipt == "RCPT9"


def test_verify_intent_pending_moves_to_pending_settlement(reconciler, fake_gateway):
    intent = reconciler.open_intent(_charge())
    fake_gateway.query_result = CallbackEvent(provider_reference="ABC123", outcome=Outcome.PENDING)

    verified = reconciler.verify_intent(intent.id)
    assert verified.state is IntentState.PENDING_SETTLEMENT

    # settlement callback still completes it
    result = _callback(reconciler, SUCCESS)
    assert result.outcome is CallbackOutcome.APPLIED
    assert reconciler.get(intent.id).state is IntentState.COMPLETED


def test_verify_intent_keeps_state_when_provider_unreachable(reconciler, fake_gateway):
    intent = reconciler.open_intent(_charge())
    fake_gateway.query_result = ProviderError("fakepay: could not reach provider")

    assert reconciler.verify_intent(intent.id).state is IntentState.PENDING_PROVIDER_ACK


def test_verify_terminal_intent_does_not_query(reconciler, fake_gateway):
    intent = reconciler.open_intent(_charge())
    _callback(reconciler, SUCCESS)

    assert reconciler.verify_intent(intent.id).state is IntentState.COMPLETED
    assert fake_gateway.queried == []


def test_expire_stale_expires_unanswered_intents(reconciler, clock):
    intent = reconciler.open_intent(_charge())
    clock.advance(901)

    assert reconciler.expire_stale() == 1
    expired = reconciler.get(intent.id)
    assert expired.state is IntentState.EXPIRED

    # a callback after expiry changes nothing
    assert _callback(reconciler, SUCCESS).outcome is CallbackOutcome.ALREADY_RECONCILED
    assert reconciler.get(intent.id).state is IntentState.EXPIRED


def test_expire_stale_leaves_recent_intents(reconciler, clock):
    intent = reconciler.open_intent(_charge())
    clock.advance(600)

    assert reconciler.expire_stale() == 0
    assert reconciler.get(intent.id).state is IntentState.PENDING_PROVIDER_ACK


def test_expire_stale_prefers_known_provider_outcome(reconciler, fake_gateway, clock):
    intent = reconciler.open_intent(_charge())
    fake_gateway.query_result = CallbackEvent(
        provider_reference="ABC123", outcome=Outcome.SUCCESS, amount=500, receipt="RCPT1"
    )
    clock.advance(901)

    assert reconciler.expire_stale() == 0
    assert reconciler.get(intent.id).state is IntentState.COMPLETED


def test_history_lists_user_intents(reconciler, fake_gateway):
    first = reconciler.open_intent(_charge())
    fake_gateway.reference = "DEF456"
    second = reconciler.open_intent(_charge(purpose="offering"))

    assert {intent.id for intent in reconciler.history("user-1")} == {first.id, second.id}
    assert reconciler.history("someone-else") == []


def test_description_reaches_the_provider(reconciler, fake_gateway):
    intent = reconciler.open_intent(_charge(description="  Building fund "))

    assert intent.description == "Building fund"
    assert fake_gateway.initiated[0].description == "Building fund"


def test_unexpected_provider_error_still_fails_intent(reconciler, fake_gateway):
    fake_gateway.initiate_error = ProviderError("fakepay: unreadable response (invalid literal for int())")

    intent = reconciler.open_intent(_charge())

    assert intent.state is IntentState.FAILED
    assert reconciler.get(intent.id).state is IntentState.FAILED


def test_expire_stale_fails_intents_stuck_in_created(reconciler, store, clock):
    # Left behind by a process that died between recording and initiating
    store.create(
        PaymentIntent(
            id="stuck",
            provider="fakepay",
            amount=500,
            currency="KES",
            payer_identifier="254712345678",
            purpose="tithe",
            state=IntentState.CREATED,
            created_at=clock(),
            updated_at=clock(),
            user_id="user-1",
        )
    )
    clock.advance(901)

    assert reconciler.expire_stale() == 0

    intent = reconciler.get("stuck")
    assert intent.state is IntentState.FAILED
    assert intent.failure_reason == "Payment initiation did not complete"
    assert intent.flagged_for_review is True


def test_expire_stale_flags_overdue_settlement(reconciler, fake_gateway, clock):
    intent = reconciler.open_intent(_charge())
    fake_gateway.query_result = CallbackEvent(provider_reference="ABC123", outcome=Outcome.PENDING)
    assert reconciler.verify_intent(intent.id).state is IntentState.PENDING_SETTLEMENT
    clock.advance(10**6)

    assert reconciler.expire_stale() == 0

    flagged = reconciler.get(intent.id)
    assert flagged.state is IntentState.PENDING_SETTLEMENT
    assert flagged.flagged_for_review is True
    assert fake_gateway.queried == ["ABC123", "ABC123"]

    # a late settlement callback still completes it
    assert _callback(reconciler, SUCCESS).outcome is CallbackOutcome.APPLIED
    assert reconciler.get(intent.id).state is IntentState.COMPLETED


def test_expire_stale_leaves_recent_settlement_alone(reconciler, fake_gateway, clock):
    intent = reconciler.open_intent(_charge())
    fake_gateway.query_result = CallbackEvent(provider_reference="ABC123", outcome=Outcome.PENDING)
    reconciler.verify_intent(intent.id)
    clock.advance(600)

    reconciler.expire_stale()

    assert reconciler.get(intent.id).flagged_for_review is False
