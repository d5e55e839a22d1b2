from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from blesspay.auth import current_user
from blesspay.dependencies import get_reconciler
from blesspay.domain import ChargeRequest, IntentState, PaymentIntent, to_major_units, to_minor_units
from blesspay.errors import IntentNotFound, PaymentValidationError

router = APIRouter(prefix="/payments")


class PaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: Decimal
    payer_identifier: str = Field(alias="payerIdentifier")
    purpose: str
    provider: str = "mpesa"
    description: Optional[str] = None


def project(intent: PaymentIntent, history=None) -> dict:
    """Public view of an intent; the payer identifier is left out."""
    view = {
        "intentId": intent.id,
        "status": intent.state.value,
        "amount": str(to_major_units(intent.amount)),
        "currency": intent.currency,
        "purpose": intent.purpose,
        "description": intent.description,
        "provider": intent.provider,
        "providerReference": intent.provider_reference,
        "settlementReceipt": intent.settlement_receipt,
        "failureReason": intent.failure_reason,
        "checkoutUrl": intent.checkout_url,
        "createdAt": intent.created_at.isoformat(),
        "updatedAt": intent.updated_at.isoformat(),
    }
    if history is not None:
        view["history"] = [
            {
                "from": change.from_state.value if change.from_state else None,
                "to": change.to_state.value,
                "reason": change.reason,
                "at": change.at.isoformat(),
            }
            for change in history
        ]
    return view


def _owned_intent(reconciler, intent_id: str, user_id: str) -> PaymentIntent:
    try:
        intent = reconciler.get(intent_id)
    except IntentNotFound:
        intent = None
    if intent is None or intent.user_id != user_id:
        raise HTTPException(status_code=404, detail="Payment not found")
    return intent


@router.post("", status_code=202)
def create_payment_api(
    request: PaymentRequest,
    user_id: str = Depends(current_user),
    reconciler=Depends(get_reconciler),
):
    try:
        intent = reconciler.open_intent(
            ChargeRequest(
                amount=to_minor_units(request.amount),
                payer_identifier=request.payer_identifier,
                purpose=request.purpose,
                provider=request.provider,
                user_id=user_id,
                description=request.description,
            )
        )
    except PaymentValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if intent.state is IntentState.FAILED:
        return JSONResponse(
            status_code=502,
            content={
                "detail": "Payment could not be started, try again",
                "intentId": intent.id,
                "status": intent.state.value,
            },
        )

    return {
        "intentId": intent.id,
        "providerReference": intent.provider_reference,
        "status": intent.state.value,
        "checkoutUrl": intent.checkout_url,
    }


@router.get("")
def payment_history(user_id: str = Depends(current_user), reconciler=Depends(get_reconciler)):
    return {"payments": [project(intent) for intent in reconciler.history(user_id)]}


@router.get("/{intent_id}")
def payment_status(
    intent_id: str,
    user_id: str = Depends(current_user),
    reconciler=Depends(get_reconciler),
):
    intent = _owned_intent(reconciler, intent_id, user_id)
    return project(intent, reconciler.state_history(intent.id))


@router.post("/{intent_id}/verify")
def verify_payment(
    intent_id: str,
    user_id: str = Depends(current_user),
    reconciler=Depends(get_reconciler),
):
    intent = _owned_intent(reconciler, intent_id, user_id)
    return project(reconciler.verify_intent(intent.id))
