"""
Payment intent state machine.

    Created --initiate ok--> PendingProviderAck --callback(success)--> Completed
    Created --initiate fail--> Failed
    Created --ttl elapsed, initiation unfinished--> Failed
    PendingProviderAck --callback(failure)--> Failed
    PendingProviderAck --query(pending)--> PendingSettlement --callback--> Completed | Failed
    PendingProviderAck --ttl elapsed--> Expired
    PendingSettlement --ttl elapsed--> (flagged for review, state kept)

Provider problems are recorded on the intent rather than raised; only store
faults propagate to the caller.
"""
import time
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional

import structlog

from blesspay import webhooks
from blesspay.config import Settings, get_settings
from blesspay.domain import (
    AMOUNT_MISMATCH,
    PURPOSE_PATTERN,
    CallbackEvent,
    ChargeRequest,
    IntentState,
    Outcome,
    PaymentIntent,
    new_intent_id,
    to_major_units,
    to_minor_units,
    utcnow,
)
from blesspay.errors import (
    DuplicateReference,
    IntentNotFound,
    MalformedPayload,
    PaymentValidationError,
    ProviderError,
    StateConflict,
)
from blesspay.gateways.base import ProviderGateway
from blesspay.store import IntentStore, StateChange

logger = structlog.get_logger(__name__)

# Attempts at re-applying an event after losing a transition race
MAX_CONFLICT_RETRIES = 3

MAX_DESCRIPTION_LENGTH = 100


class CallbackOutcome(str, Enum):
    APPLIED = "Applied"
    ALREADY_RECONCILED = "AlreadyReconciled"
    NOT_FOUND = "NotFound"
    UNAUTHORIZED = "Unauthorized"
    MALFORMED = "Malformed"
    IGNORED = "Ignored"
    AMOUNT_MISMATCH = "AmountMismatch"


@dataclass(frozen=True)
class ReconciliationResult:
    outcome: CallbackOutcome
    intent: Optional[PaymentIntent] = None
    retryable: bool = False

    @property
    def acknowledged(self) -> bool:
        """Whether the provider should be told to stop retrying."""
        return self.outcome is not CallbackOutcome.UNAUTHORIZED


class ReconciliationEngine:
    def __init__(
        self,
        store: IntentStore,
        gateways: Dict[str, ProviderGateway],
        settings: Optional[Settings] = None,
        clock: Callable = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        settings = settings or get_settings()
        self.store = store
        self.gateways = gateways
        self.clock = clock
        self.sleep = sleep
        self.min_charge = to_minor_units(settings.min_charge_amount)
        self.max_charge = to_minor_units(settings.max_charge_amount)
        self.lookup_attempts = max(settings.callback_lookup_attempts, 1)
        self.lookup_delay = settings.callback_lookup_delay
        self.pending_ttl = timedelta(seconds=settings.pending_ttl_seconds)

    def gateway(self, provider: str) -> ProviderGateway:
        try:
            return self.gateways[provider]
        except KeyError:
            raise PaymentValidationError(f"Unknown payment provider {provider!r}") from None

    # -- charge initiation ---------------------------------------------------

    def open_intent(self, request: ChargeRequest) -> PaymentIntent:
        """Validate a charge, record it and hand it to the provider.

        Returns the stored intent, which is either PendingProviderAck or
        Failed (provider refused). Raises PaymentValidationError before
        anything is stored.
        """
        gateway = self.gateway(request.provider)
        payer, purpose, description = self._validate(request, gateway)

        now = self.clock()
        intent = PaymentIntent(
            id=new_intent_id(),
            provider=gateway.name,
            amount=request.amount,
            currency=gateway.currency,
            payer_identifier=payer,
            purpose=purpose,
            state=IntentState.CREATED,
            created_at=now,
            updated_at=now,
            user_id=request.user_id,
            description=description,
        )
        self.store.create(intent)
        log = logger.bind(intent_id=intent.id, provider=gateway.name)

        try:
            handle = gateway.initiate(intent)
        except ProviderError as e:
            log.warning("payment_initiation_failed", error=str(e))
            return self.store.transition(
                intent.id,
                IntentState.CREATED,
                IntentState.FAILED,
                reason="initiation failed",
                now=self.clock(),
                failure_reason=str(e),
            )

        try:
            intent = self.store.transition(
                intent.id,
                IntentState.CREATED,
                IntentState.PENDING_PROVIDER_ACK,
                reason="provider accepted",
                now=self.clock(),
                provider_reference=handle.provider_reference,
                checkout_url=handle.checkout_url,
            )
        except DuplicateReference:
            log.error("provider_reference_reused", provider_reference=handle.provider_reference)
            return self.store.transition(
                intent.id,
                IntentState.CREATED,
                IntentState.FAILED,
                reason="duplicate provider reference",
                now=self.clock(),
                failure_reason="Provider returned a reference that is already in use",
                flagged_for_review=True,
            )

        log.info("payment_initiated", provider_reference=intent.provider_reference)
        return intent

    def _validate(self, request: ChargeRequest, gateway: ProviderGateway):
        if not isinstance(request.amount, int) or request.amount <= 0:
            raise PaymentValidationError("Amount must be positive")
        if request.amount < self.min_charge:
            raise PaymentValidationError(
                f"Amount must be at least {to_major_units(self.min_charge)}"
            )
        if request.amount > self.max_charge:
            raise PaymentValidationError(
                f"Amount must be at most {to_major_units(self.max_charge)}"
            )
        gateway.validate_amount(request.amount)

        purpose = (request.purpose or "").strip().lower()
        if not PURPOSE_PATTERN.match(purpose):
            raise PaymentValidationError("Purpose must be a short tag such as tithe or offering")

        description = (request.description or "").strip() or None
        if description and len(description) > MAX_DESCRIPTION_LENGTH:
            raise PaymentValidationError(
                f"Description must be at most {MAX_DESCRIPTION_LENGTH} characters"
            )

        return gateway.normalize_payer(request.payer_identifier), purpose, description

    # -- provider notifications ----------------------------------------------

    def apply_callback(self, provider: str, raw_body: bytes, signature) -> ReconciliationResult:
        gateway = self.gateway(provider)

        if not webhooks.verify(raw_body, signature, gateway.webhook_secret):
            logger.warning(
                "webhook_signature_rejected",
                provider=provider,
                signature_present=bool(signature),
            )
            return ReconciliationResult(CallbackOutcome.UNAUTHORIZED)

        try:
            event = gateway.normalize_callback(raw_body)
        except MalformedPayload as e:
            logger.error("webhook_payload_malformed", provider=provider, error=str(e))
            return ReconciliationResult(CallbackOutcome.MALFORMED)
        if event is None:
            return ReconciliationResult(CallbackOutcome.IGNORED)

        intent = self._lookup(event.provider_reference)
        if intent is None:
            # The callback can beat our own bookkeeping of the initiation
            logger.warning(
                "webhook_intent_not_found",
                provider=provider,
                provider_reference=event.provider_reference,
            )
            return ReconciliationResult(CallbackOutcome.NOT_FOUND, retryable=True)

        return self._apply_event(intent, event, source="callback")

    def _lookup(self, provider_reference: str) -> Optional[PaymentIntent]:
        for attempt in range(1, self.lookup_attempts + 1):
            try:
                return self.store.find_by_provider_reference(provider_reference)
            except IntentNotFound:
                if attempt < self.lookup_attempts:
                    self.sleep(self.lookup_delay)
        return None

    def _apply_event(self, intent: PaymentIntent, event: CallbackEvent, source: str) -> ReconciliationResult:
        for _ in range(MAX_CONFLICT_RETRIES):
            try:
                return self._decide(intent, event, source)
            except StateConflict as e:
                logger.info(
                    "intent_transition_lost_race",
                    intent_id=intent.id,
                    expected=e.expected.value,
                    actual=e.actual.value,
                )
                intent = self.store.get(intent.id)
        return ReconciliationResult(CallbackOutcome.ALREADY_RECONCILED, intent)

    def _decide(self, intent: PaymentIntent, event: CallbackEvent, source: str) -> ReconciliationResult:
        log = logger.bind(
            intent_id=intent.id,
            provider_reference=event.provider_reference,
            source=source,
        )

        if intent.state.is_terminal:
            log.info("intent_already_reconciled", state=intent.state.value)
            return ReconciliationResult(CallbackOutcome.ALREADY_RECONCILED, intent)

        if event.amount is not None and event.amount != intent.amount:
            log.error(
                "intent_amount_mismatch",
                expected_amount=intent.amount,
                received_amount=event.amount,
            )
            updated = self.store.transition(
                intent.id,
                intent.state,
                IntentState.FAILED,
                reason=f"{source} amount {event.amount} != recorded {intent.amount}",
                now=self.clock(),
                failure_reason=AMOUNT_MISMATCH,
                flagged_for_review=True,
            )
            return ReconciliationResult(CallbackOutcome.AMOUNT_MISMATCH, updated)

        payer = getattr(event, "phone_number", None)
        if payer and payer != intent.payer_identifier:
            log.warning("intent_payer_differs", recorded=intent.payer_identifier, received=payer)

        if event.outcome is Outcome.SUCCESS:
            updated = self.store.transition(
                intent.id,
                intent.state,
                IntentState.COMPLETED,
                reason=f"{source} success",
                now=self.clock(),
                settlement_receipt=event.receipt,
            )
            log.info("payment_completed", receipt=event.receipt)
            return ReconciliationResult(CallbackOutcome.APPLIED, updated)

        if event.outcome is Outcome.FAILURE:
            updated = self.store.transition(
                intent.id,
                intent.state,
                IntentState.FAILED,
                reason=f"{source} failure",
                now=self.clock(),
                failure_reason=event.reason or "Payment failed",
            )
            log.info("payment_failed", failure_reason=event.reason)
            return ReconciliationResult(CallbackOutcome.APPLIED, updated)

        if intent.state is IntentState.PENDING_PROVIDER_ACK:
            updated = self.store.transition(
                intent.id,
                intent.state,
                IntentState.PENDING_SETTLEMENT,
                reason=f"{source} pending",
                now=self.clock(),
            )
            return ReconciliationResult(CallbackOutcome.APPLIED, updated)
        return ReconciliationResult(CallbackOutcome.IGNORED, intent)

    # -- polling and expiry --------------------------------------------------

    def verify_intent(self, intent_id: str) -> PaymentIntent:
        """Ask the provider about a pending intent and apply its answer."""
        intent = self.store.get(intent_id)
        if intent.state.is_terminal or not intent.provider_reference:
            return intent

        gateway = self.gateway(intent.provider)
        try:
            event = gateway.query(intent.provider_reference)
        except ProviderError as e:
            logger.warning("provider_query_failed", intent_id=intent_id, error=str(e))
            return intent
        if event is None:
            return intent

        result = self._apply_event(intent, event, source="query")
        return result.intent or self.store.get(intent_id)

    def expire_stale(self, now=None, limit: int = 100, requery: bool = True, ttl: Optional[timedelta] = None) -> int:
        """Sweep intents that outlived the pending TTL and return how many expired.

        PendingProviderAck intents expire, after asking the provider so a known
        outcome wins over expiry. Created intents whose initiation never
        finished are failed. A PendingSettlement intent may already be paid, so
        it is flagged for manual reconciliation and keeps its state.
        """
        now = now or self.clock()
        ttl = ttl or self.pending_ttl
        cutoff = now - ttl

        abandoned = self._fail_unstarted(cutoff, now, limit)

        stale = self.store.list_stale(IntentState.PENDING_PROVIDER_ACK, cutoff, limit)
        expired = 0
        for intent in stale:
            if requery and self.verify_intent(intent.id).state is not IntentState.PENDING_PROVIDER_ACK:
                continue
            try:
                self.store.transition(
                    intent.id,
                    IntentState.PENDING_PROVIDER_ACK,
                    IntentState.EXPIRED,
                    reason=f"no outcome after {int(ttl.total_seconds())}s",
                    now=now,
                )
                expired += 1
            except StateConflict:
                logger.info("intent_expiry_skipped", intent_id=intent.id)

        flagged = self._flag_unsettled(cutoff, now, limit, requery)

        logger.info(
            "expiry_sweep_finished",
            checked=len(stale),
            expired=expired,
            abandoned=abandoned,
            flagged=flagged,
        )
        return expired

    def _fail_unstarted(self, cutoff, now, limit: int) -> int:
        failed = 0
        for intent in self.store.list_stale(IntentState.CREATED, cutoff, limit):
            try:
                self.store.transition(
                    intent.id,
                    IntentState.CREATED,
                    IntentState.FAILED,
                    reason="initiation never completed",
                    now=now,
                    failure_reason="Payment initiation did not complete",
                    flagged_for_review=True,
                )
                failed += 1
            except StateConflict:
                continue
            logger.error("intent_initiation_abandoned", intent_id=intent.id, provider=intent.provider)
        return failed

    def _flag_unsettled(self, cutoff, now, limit: int, requery: bool) -> int:
        flagged = 0
        for intent in self.store.list_stale(IntentState.PENDING_SETTLEMENT, cutoff, limit):
            if requery:
                intent = self.verify_intent(intent.id)
            if intent.state is not IntentState.PENDING_SETTLEMENT or intent.flagged_for_review:
                continue
            try:
                self.store.flag_for_review(intent.id, IntentState.PENDING_SETTLEMENT, now=now)
            except StateConflict:
                continue
            flagged += 1
            logger.error(
                "intent_settlement_overdue",
                intent_id=intent.id,
                provider=intent.provider,
                provider_reference=intent.provider_reference,
                pending_since=intent.updated_at.isoformat(),
            )
        return flagged
    # -- reads ---------------------------------------------------------------

    def get(self, intent_id: str) -> PaymentIntent:
        return self.store.get(intent_id)

    def history(self, user_id: str, limit: int = 50) -> List[PaymentIntent]:
        return self.store.list_for_user(user_id, limit)

    def state_history(self, intent_id: str) -> List[StateChange]:
        return self.store.history(intent_id)
