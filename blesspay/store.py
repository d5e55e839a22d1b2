from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from blesspay.domain import IntentState, PaymentIntent, can_transition, utcnow
from blesspay.errors import DuplicateReference, IntentNotFound, InvalidTransition, StateConflict
from blesspay.models import IntentTransitionRecord, PaymentIntentRecord

logger = structlog.get_logger(__name__)

# Columns a transition may set besides state/updated_at
MUTABLE_FIELDS = frozenset(
    {"provider_reference", "checkout_url", "failure_reason", "settlement_receipt", "flagged_for_review"}
)


@dataclass(frozen=True)
class StateChange:
    from_state: Optional[IntentState]
    to_state: IntentState
    reason: Optional[str]
    at: datetime


def _to_intent(row: PaymentIntentRecord) -> PaymentIntent:
    return PaymentIntent(
        id=row.id,
        provider=row.provider,
        amount=row.amount,
        currency=row.currency,
        payer_identifier=row.payer_identifier,
        purpose=row.purpose,
        state=IntentState(row.state),
        created_at=row.created_at,
        updated_at=row.updated_at,
        provider_reference=row.provider_reference,
        user_id=row.user_id,
        checkout_url=row.checkout_url,
        failure_reason=row.failure_reason,
        settlement_receipt=row.settlement_receipt,
        flagged_for_review=bool(row.flagged_for_review),
        description=row.description,
    )


class IntentStore:
    """Durable PaymentIntent storage.

    Every state change goes through `transition`, which only applies when the
    row is still in the expected state (compare-and-set in a single UPDATE).
    Intents are never deleted; each change appends a history row.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def create(self, intent: PaymentIntent) -> str:
        db = self.session_factory()
        try:
            db.add(
                PaymentIntentRecord(
                    id=intent.id,
                    provider=intent.provider,
                    provider_reference=intent.provider_reference,
                    amount=intent.amount,
                    currency=intent.currency,
                    payer_identifier=intent.payer_identifier,
                    purpose=intent.purpose,
                    state=intent.state.value,
                    user_id=intent.user_id,
                    checkout_url=intent.checkout_url,
                    failure_reason=intent.failure_reason,
                    settlement_receipt=intent.settlement_receipt,
                    flagged_for_review=intent.flagged_for_review,
                    description=intent.description,
                    created_at=intent.created_at,
                    updated_at=intent.updated_at,
                )
            )
            db.flush()
            db.add(
                IntentTransitionRecord(
                    intent_id=intent.id,
                    from_state=None,
                    to_state=intent.state.value,
                    reason="created",
                    created_at=intent.created_at,
                )
            )
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise DuplicateReference(
                f"provider reference {intent.provider_reference!r} already recorded"
            ) from e
        finally:
            db.close()

        logger.info("intent_created", intent_id=intent.id, provider=intent.provider)
        return intent.id

    def get(self, intent_id: str) -> PaymentIntent:
        db = self.session_factory()
        try:
            row = db.get(PaymentIntentRecord, intent_id)
            if row is None:
                raise IntentNotFound(intent_id)
            return _to_intent(row)
        finally:
            db.close()

    def find_by_provider_reference(self, provider_reference: str) -> PaymentIntent:
        db = self.session_factory()
        try:
            row = db.execute(
                select(PaymentIntentRecord).filter_by(provider_reference=provider_reference)
            ).scalar_one_or_none()
            if row is None:
                raise IntentNotFound(provider_reference)
            return _to_intent(row)
        finally:
            db.close()

    def transition(
        self,
        intent_id: str,
        expected_state: IntentState,
        new_state: IntentState,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
        **fields,
    ) -> PaymentIntent:
        if not can_transition(expected_state, new_state):
            raise InvalidTransition(f"{expected_state.value} -> {new_state.value}")
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise TypeError(f"cannot set {', '.join(sorted(unknown))} on a transition")

        now = now or utcnow()
        db = self.session_factory()
        try:
            result = db.execute(
                update(PaymentIntentRecord)
                .where(
                    PaymentIntentRecord.id == intent_id,
                    PaymentIntentRecord.state == expected_state.value,
                )
                .values(state=new_state.value, updated_at=now, **fields)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                db.rollback()
                row = db.get(PaymentIntentRecord, intent_id)
                if row is None:
                    raise IntentNotFound(intent_id)
                raise StateConflict(intent_id, expected_state, IntentState(row.state))

            db.add(
                IntentTransitionRecord(
                    intent_id=intent_id,
                    from_state=expected_state.value,
                    to_state=new_state.value,
                    reason=reason,
                    created_at=now,
                )
            )
            db.commit()
            row = db.get(PaymentIntentRecord, intent_id)
            intent = _to_intent(row)
        except IntegrityError as e:
            db.rollback()
            raise DuplicateReference(
                f"provider reference {fields.get('provider_reference')!r} already recorded"
            ) from e
        finally:
            db.close()

        logger.info(
            "intent_transitioned",
            intent_id=intent_id,
            from_state=expected_state.value,
            to_state=new_state.value,
            reason=reason,
        )
        return intent

    def flag_for_review(self, intent_id: str, expected_state: IntentState, now: Optional[datetime] = None) -> PaymentIntent:
        """Mark an intent for manual reconciliation without changing its state."""
        now = now or utcnow()
        db = self.session_factory()
        try:
            result = db.execute(
                update(PaymentIntentRecord)
                .where(
                    PaymentIntentRecord.id == intent_id,
                    PaymentIntentRecord.state == expected_state.value,
                )
                .values(flagged_for_review=True, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                db.rollback()
                row = db.get(PaymentIntentRecord, intent_id)
                if row is None:
                    raise IntentNotFound(intent_id)
                raise StateConflict(intent_id, expected_state, IntentState(row.state))
            db.commit()
            intent = _to_intent(db.get(PaymentIntentRecord, intent_id))
        finally:
            db.close()

        logger.warning("intent_flagged_for_review", intent_id=intent_id, state=expected_state.value)
        return intent

    def list_for_user(self, user_id: str, limit: int = 50) -> List[PaymentIntent]:
        db = self.session_factory()
        try:
            rows = db.execute(
                select(PaymentIntentRecord)
                .filter_by(user_id=user_id)
                .order_by(PaymentIntentRecord.created_at.desc())
                .limit(limit)
            ).scalars()
            return [_to_intent(row) for row in rows]
        finally:
            db.close()

    def list_stale(self, state: IntentState, updated_before: datetime, limit: int = 100) -> List[PaymentIntent]:
        db = self.session_factory()
        try:
            rows = db.execute(
                select(PaymentIntentRecord)
                .where(
                    PaymentIntentRecord.state == state.value,
                    PaymentIntentRecord.updated_at < updated_before,
                )
                .order_by(PaymentIntentRecord.updated_at)
                .limit(limit)
            ).scalars()
            return [_to_intent(row) for row in rows]
        finally:
            db.close()

    def history(self, intent_id: str) -> List[StateChange]:
        db = self.session_factory()
        try:
            rows = db.execute(
                select(IntentTransitionRecord)
                .filter_by(intent_id=intent_id)
                .order_by(IntentTransitionRecord.id)
            ).scalars()
            return [
                StateChange(
                    from_state=IntentState(row.from_state) if row.from_state else None,
                    to_state=IntentState(row.to_state),
                    reason=row.reason,
                    at=row.created_at,
                )
                for row in rows
            ]
        finally:
            db.close()
