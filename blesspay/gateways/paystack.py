"""Paystack card checkout gateway."""
import re
from typing import Optional
from urllib.parse import quote

import structlog

from blesspay.domain import Outcome, PaymentIntent, PaystackCallbackEvent, ProviderHandle
from blesspay.errors import (
    MalformedPayload,
    PaymentValidationError,
    ProviderError,
    ProviderInitiationError,
    TransientProviderError,
)
from blesspay.gateways.base import RESPONSE_ERRORS, ProviderGateway, load_json, provider_message

logger = structlog.get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

CHARGE_EVENTS = ("charge.success", "charge.failed")
PENDING_STATUSES = ("ongoing", "pending", "processing", "queued")
FAILED_STATUSES = ("failed", "reversed")


def _is_duplicate_reference(body: dict) -> bool:
    return "duplicate transaction reference" in provider_message(body).lower()


class PaystackGateway(ProviderGateway):
    name = "paystack"
    signature_header = "x-paystack-signature"

    def __init__(self, secret_key: str, currency: str = "KES", callback_url: str = "", **kwargs):
        super().__init__(**kwargs)
        self.secret_key = secret_key
        self.currency = currency
        self.callback_url = callback_url

    def _headers(self):
        return {"Authorization": f"Bearer {self.secret_key}", "Content-Type": "application/json"}

    def normalize_payer(self, payer_identifier: str) -> str:
        email = (payer_identifier or "").strip().lower()
        if not EMAIL_PATTERN.match(email):
            raise PaymentValidationError("Card payments need a valid email address")
        return email

    def initiate(self, intent: PaymentIntent) -> ProviderHandle:
        if not self.secret_key:
            raise ProviderInitiationError("paystack: secret key not configured")
        try:
            return self.with_retry(self._initialize, intent)
        except ProviderError as e:
            raise ProviderInitiationError(str(e), status_code=e.status_code, body=e.body) from e
        except RESPONSE_ERRORS as e:
            raise ProviderInitiationError(f"paystack: unreadable response ({e})") from e

    def _initialize(self, intent: PaymentIntent) -> ProviderHandle:
        # The intent id doubles as the Paystack reference, so a replayed
        # initialization is recognised by Paystack instead of charging twice.
        payload = {
            "email": intent.payer_identifier,
            "amount": intent.amount,
            "reference": intent.id,
            "currency": intent.currency,
            "metadata": {"intent_id": intent.id, "purpose": intent.purpose, "description": intent.description},
        }
        if self.callback_url:
            payload["callback_url"] = self.callback_url

        try:
            body = self.request("POST", "/transaction/initialize", json=payload, headers=self._headers())
        except TransientProviderError:
            raise
        except ProviderError as e:
            if _is_duplicate_reference(e.body):
                logger.info("paystack_reference_already_accepted", intent_id=intent.id)
                return ProviderHandle(provider_reference=intent.id, raw=e.body)
            raise

        if not body.get("status"):
            if _is_duplicate_reference(body):
                logger.info("paystack_reference_already_accepted", intent_id=intent.id)
                return ProviderHandle(provider_reference=intent.id, raw=body)
            raise ProviderInitiationError(f"paystack: {provider_message(body)}", body=body)

        data = body.get("data") or {}
        logger.info("paystack_transaction_initialized", intent_id=intent.id)
        return ProviderHandle(
            provider_reference=data.get("reference") or intent.id,
            checkout_url=data.get("authorization_url"),
            raw=body,
        )

    def normalize_callback(self, raw_payload: bytes) -> Optional[PaystackCallbackEvent]:
        payload = load_json(raw_payload)
        event = payload.get("event")
        data = payload.get("data")
        if not event or not isinstance(data, dict):
            raise MalformedPayload("webhook without event/data")
        if event not in CHARGE_EVENTS:
            logger.info("paystack_event_ignored", paystack_event=event)
            return None

        reference = data.get("reference")
        if not reference:
            raise MalformedPayload(f"{event} without data.reference")

        if event == "charge.failed":
            return PaystackCallbackEvent(
                provider_reference=reference,
                outcome=Outcome.FAILURE,
                reason=data.get("gateway_response") or data.get("status") or event,
                event=event,
                channel=data.get("channel"),
            )

        if data.get("status") != "success":
            raise MalformedPayload(f"charge.success with status {data.get('status')!r}")
        return self._success_event(reference, data, event)

    def _success_event(self, reference: str, data: dict, event: Optional[str]) -> PaystackCallbackEvent:
        if data.get("amount") is None or data.get("id") is None:
            raise MalformedPayload("successful charge without amount/id")
        try:
            amount = int(data["amount"])
        except (TypeError, ValueError) as e:
            raise MalformedPayload(f"unreadable amount {data['amount']!r}") from e
        return PaystackCallbackEvent(
            provider_reference=reference,
            outcome=Outcome.SUCCESS,
            amount=amount,
            receipt=str(data["id"]),
            event=event,
            channel=data.get("channel"),
        )

    def query(self, provider_reference: str) -> Optional[PaystackCallbackEvent]:
        try:
            return self.with_retry(self._verify, provider_reference)
        except RESPONSE_ERRORS as e:
            raise ProviderError(f"paystack: unreadable verify response ({e})") from e

    def _verify(self, provider_reference: str) -> Optional[PaystackCallbackEvent]:
        body = self.request(
            "GET", f"/transaction/verify/{quote(provider_reference)}", headers=self._headers()
        )
        data = body.get("data") or {}
        status = data.get("status")

        if status == "success":
            try:
                return self._success_event(provider_reference, data, None)
            except MalformedPayload as e:
                raise ProviderError(f"paystack: {e}", body=body) from e
        if status in FAILED_STATUSES:
            return PaystackCallbackEvent(
                provider_reference=provider_reference,
                outcome=Outcome.FAILURE,
                reason=data.get("gateway_response") or status,
            )
        if status in PENDING_STATUSES:
            return PaystackCallbackEvent(provider_reference=provider_reference, outcome=Outcome.PENDING)
        # "abandoned": checkout page opened but not completed, still payable
        return None
