"""
Safaricom Daraja (M-Pesa Express / STK push) gateway.

The payer gets a PIN prompt on their phone; the outcome arrives later on the
configured callback URL. Daraja does not sign callbacks, so the callback is
expected to pass through a relay that adds an HMAC-SHA512 signature header.
"""
import base64
import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

import structlog

from blesspay.cache import TTLCache
from blesspay.domain import MpesaCallbackEvent, Outcome, PaymentIntent, ProviderHandle, to_minor_units
from blesspay.errors import (
    MalformedPayload,
    PaymentValidationError,
    ProviderError,
    ProviderInitiationError,
    TransientProviderError,
)
from blesspay.gateways.base import RESPONSE_ERRORS, ProviderGateway, load_json, provider_message

logger = structlog.get_logger(__name__)

EAST_AFRICA_TIME = timezone(timedelta(hours=3))
PHONE_PATTERN = re.compile(r"^254[17]\d{8}$")

# stkpushquery answers this while the payer has not yet responded to the prompt
STILL_PROCESSING = "500.001.1001"


class MpesaGateway(ProviderGateway):
    name = "mpesa"
    currency = "KES"
    signature_header = "x-callback-signature"

    TOKEN_KEY = "mpesa:access_token"

    def __init__(
        self,
        consumer_key: str,
        consumer_secret: str,
        shortcode: str,
        passkey: str,
        callback_url: str,
        account_reference: str = "BlessPay",
        token_cache: Optional[TTLCache] = None,
        clock=None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.shortcode = shortcode
        self.passkey = passkey
        self.callback_url = callback_url
        self.account_reference = account_reference
        self.token_cache = token_cache or TTLCache()
        self.clock = clock or (lambda: datetime.now(EAST_AFRICA_TIME))

    def normalize_payer(self, payer_identifier: str) -> str:
        phone = re.sub(r"[\s\-+]", "", payer_identifier or "")
        if phone.startswith("0"):
            phone = "254" + phone[1:]
        if not PHONE_PATTERN.match(phone):
            raise PaymentValidationError(
                "Phone number must look like 0712345678 or 254712345678"
            )
        return phone

    def validate_amount(self, amount: int) -> None:
        super().validate_amount(amount)
        if amount % 100:
            raise PaymentValidationError("M-Pesa amounts must be whole shillings")

    def initiate(self, intent: PaymentIntent) -> ProviderHandle:
        try:
            return self.with_retry(self._stk_push, intent)
        except ProviderError as e:
            raise ProviderInitiationError(str(e), status_code=e.status_code, body=e.body) from e
        except RESPONSE_ERRORS as e:
            raise ProviderInitiationError(f"mpesa: unreadable response ({e})") from e

    def query(self, provider_reference: str) -> Optional[MpesaCallbackEvent]:
        try:
            return self.with_retry(self._stk_query, provider_reference)
        except RESPONSE_ERRORS as e:
            raise ProviderError(f"mpesa: unreadable query response ({e})") from e

    def normalize_callback(self, raw_payload: bytes) -> MpesaCallbackEvent:
        payload = load_json(raw_payload)
        callback = (payload.get("Body") or {}).get("stkCallback")
        if not isinstance(callback, dict):
            raise MalformedPayload("missing Body.stkCallback")

        reference = callback.get("CheckoutRequestID")
        if not reference or callback.get("ResultCode") is None:
            raise MalformedPayload("stkCallback without CheckoutRequestID/ResultCode")
        try:
            result_code = int(callback["ResultCode"])
        except (TypeError, ValueError) as e:
            raise MalformedPayload("non-numeric ResultCode") from e

        if result_code != 0:
            return MpesaCallbackEvent(
                provider_reference=reference,
                outcome=Outcome.FAILURE,
                reason=callback.get("ResultDesc") or f"ResultCode {result_code}",
                result_code=result_code,
            )

        metadata = (callback.get("CallbackMetadata") or {}).get("Item") or []
        items = {item.get("Name"): item.get("Value") for item in metadata if isinstance(item, dict)}
        amount = items.get("Amount")
        receipt = items.get("MpesaReceiptNumber")
        if amount is None or not receipt:
            raise MalformedPayload("successful callback without Amount/MpesaReceiptNumber")
        try:
            amount_minor = to_minor_units(Decimal(str(amount)))
        except (InvalidOperation, PaymentValidationError) as e:
            raise MalformedPayload(f"unreadable Amount {amount!r}") from e

        phone = items.get("PhoneNumber")
        return MpesaCallbackEvent(
            provider_reference=reference,
            outcome=Outcome.SUCCESS,
            amount=amount_minor,
            receipt=str(receipt),
            result_code=0,
            phone_number=str(phone) if phone is not None else None,
        )

    def acknowledgement(self):
        return {"ResultCode": 0, "ResultDesc": "Accepted"}

    def _access_token(self) -> str:
        token = self.token_cache.get(self.TOKEN_KEY)
        if token:
            return token
        if not self.consumer_key or not self.consumer_secret:
            raise ProviderError("mpesa: credentials not configured")

        body = self.request(
            "GET",
            "/oauth/v1/generate",
            params={"grant_type": "client_credentials"},
            auth=(self.consumer_key, self.consumer_secret),
        )
        token = body.get("access_token")
        if not token:
            raise ProviderError("mpesa: no access token in OAuth response", body=body)

        expires_in = int(body.get("expires_in") or 3599)
        self.token_cache.set(self.TOKEN_KEY, token, max(expires_in - 60, 0))
        return token

    def _password(self, timestamp: str) -> str:
        raw = f"{self.shortcode}{self.passkey}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    def _authorized(self, method: str, path: str, payload: dict) -> dict:
        token = self._access_token()
        try:
            return self.request(
                method, path, json=payload, headers={"Authorization": f"Bearer {token}"}
            )
        except ProviderError as e:
            if e.status_code == 401:
                # Rejected before processing; a fresh token makes it safe to retry
                self.token_cache.invalidate(self.TOKEN_KEY)
                raise TransientProviderError(
                    "mpesa: access token rejected", status_code=401, body=e.body
                ) from e
            raise

    def _stk_push(self, intent: PaymentIntent) -> ProviderHandle:
        timestamp = self.clock().strftime("%Y%m%d%H%M%S")
        payload = {
            "BusinessShortCode": self.shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": intent.amount // 100,
            "PartyA": intent.payer_identifier,
            "PartyB": self.shortcode,
            "PhoneNumber": intent.payer_identifier,
            "CallBackURL": self.callback_url,
            "AccountReference": self.account_reference,
            "TransactionDesc": intent.description or f"Church {intent.purpose}",
        }
        body = self._authorized("POST", "/mpesa/stkpush/v1/processrequest", payload)

        if str(body.get("ResponseCode")) != "0":
            raise ProviderInitiationError(f"mpesa: {provider_message(body)}", body=body)
        checkout_request_id = body.get("CheckoutRequestID")
        if not checkout_request_id:
            raise ProviderInitiationError("mpesa: accepted without CheckoutRequestID", body=body)

        logger.info(
            "mpesa_stk_push_sent",
            intent_id=intent.id,
            provider_reference=checkout_request_id,
        )
        return ProviderHandle(provider_reference=checkout_request_id, raw=body)

    def _stk_query(self, provider_reference: str) -> Optional[MpesaCallbackEvent]:
        timestamp = self.clock().strftime("%Y%m%d%H%M%S")
        payload = {
            "BusinessShortCode": self.shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": provider_reference,
        }
        try:
            body = self._authorized("POST", "/mpesa/stkpushquery/v1/query", payload)
        except ProviderError as e:
            if e.body.get("errorCode") == STILL_PROCESSING:
                return None
            raise

        if body.get("ResultCode") is None:
            return None
        result_code = int(body["ResultCode"])
        if result_code == 0:
            # Paid, but the receipt only comes with the callback
            return MpesaCallbackEvent(
                provider_reference=provider_reference,
                outcome=Outcome.PENDING,
                result_code=0,
            )
        return MpesaCallbackEvent(
            provider_reference=provider_reference,
            outcome=Outcome.FAILURE,
            reason=body.get("ResultDesc") or f"ResultCode {result_code}",
            result_code=result_code,
        )
