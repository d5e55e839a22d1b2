"""
Payment intent lifecycle types.

Amounts are integer minor units (cents) everywhere below the HTTP layer.
"""
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional

from blesspay.errors import PaymentValidationError


class IntentState(str, Enum):
    CREATED = "Created"
    PENDING_PROVIDER_ACK = "PendingProviderAck"
    PENDING_SETTLEMENT = "PendingSettlement"
    COMPLETED = "Completed"
    FAILED = "Failed"
    EXPIRED = "Expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {IntentState.COMPLETED, IntentState.FAILED, IntentState.EXPIRED}
)

ALLOWED_TRANSITIONS = {
    IntentState.CREATED: {IntentState.PENDING_PROVIDER_ACK, IntentState.FAILED},
    IntentState.PENDING_PROVIDER_ACK: {
        IntentState.PENDING_SETTLEMENT,
        IntentState.COMPLETED,
        IntentState.FAILED,
        IntentState.EXPIRED,
    },
    IntentState.PENDING_SETTLEMENT: {IntentState.COMPLETED, IntentState.FAILED},
    IntentState.COMPLETED: set(),
    IntentState.FAILED: set(),
    IntentState.EXPIRED: set(),
}

AMOUNT_MISMATCH = "AmountMismatch"

PURPOSE_PATTERN = re.compile(r"^[a-z][a-z0-9_-]{0,31}$")


def can_transition(old: IntentState, new: IntentState) -> bool:
    return new in ALLOWED_TRANSITIONS.get(old, set())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_intent_id() -> str:
    return uuid.uuid4().hex


CENT = Decimal("0.01")


def to_minor_units(amount: Decimal) -> int:
    """Exact conversion; sub-cent or unrepresentable amounts are rejected, never rounded."""
    try:
        cents = amount.quantize(CENT)
    except InvalidOperation:
        raise PaymentValidationError(f"Amount {amount} is out of range") from None
    if cents != amount:
        raise PaymentValidationError("Amount cannot have more than two decimal places")
    return int(cents * 100)


def to_major_units(amount_minor: int) -> Decimal:
    return (Decimal(amount_minor) / 100).quantize(CENT)


class Outcome(str, Enum):
    SUCCESS = "Success"
    FAILURE = "Failure"
    PENDING = "Pending"


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    provider: str
    amount: int
    currency: str
    payer_identifier: str
    purpose: str
    state: IntentState
    created_at: datetime
    updated_at: datetime
    provider_reference: Optional[str] = None
    user_id: Optional[str] = None
    checkout_url: Optional[str] = None
    failure_reason: Optional[str] = None
    settlement_receipt: Optional[str] = None
    flagged_for_review: bool = False
    description: Optional[str] = None


@dataclass(frozen=True)
class ChargeRequest:
    amount: int
    payer_identifier: str
    purpose: str
    provider: str = "mpesa"
    user_id: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class ProviderHandle:
    provider_reference: str
    checkout_url: Optional[str] = None
    raw: dict = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class CallbackEvent:
    provider_reference: str
    outcome: Outcome
    amount: Optional[int] = None
    receipt: Optional[str] = None
    reason: Optional[str] = None

    provider = "unknown"


@dataclass(frozen=True)
class MpesaCallbackEvent(CallbackEvent):
    result_code: Optional[int] = None
    phone_number: Optional[str] = None

    provider = "mpesa"


@dataclass(frozen=True)
class PaystackCallbackEvent(CallbackEvent):
    event: Optional[str] = None
    channel: Optional[str] = None

    provider = "paystack"
