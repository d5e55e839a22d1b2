"""
Provider gateway interface.

Each payment rail (mobile-money STK push, card checkout) implements
`ProviderGateway`; the reconciliation engine only talks to this interface.
"""
import json
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import requests
import structlog
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from blesspay.domain import CallbackEvent, PaymentIntent, ProviderHandle
from blesspay.errors import (
    MalformedPayload,
    PaymentValidationError,
    ProviderError,
    TransientProviderError,
)

logger = structlog.get_logger(__name__)

# HTTP statuses worth another attempt; the request was not processed
RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})

# Raised while picking apart a provider response that has an unexpected shape
RESPONSE_ERRORS = (AttributeError, KeyError, TypeError, ValueError)


class ProviderGateway(ABC):
    name = "base"
    currency = "KES"
    signature_header = "x-signature"

    def __init__(
        self,
        base_url: str,
        webhook_secret: str = "",
        timeout: tuple = (5, 25),
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.http = session or requests.Session()

    @abstractmethod
    def normalize_payer(self, payer_identifier: str) -> str:
        """Return the canonical payer identifier or raise PaymentValidationError."""

    def validate_amount(self, amount: int) -> None:
        if amount <= 0:
            raise PaymentValidationError("Amount must be positive")

    @abstractmethod
    def initiate(self, intent: PaymentIntent) -> ProviderHandle:
        """Ask the provider to start collecting `intent`.

        Raises:
            ProviderInitiationError: The provider refused, or every attempt failed.
        """

    @abstractmethod
    def normalize_callback(self, raw_payload: bytes) -> Optional[CallbackEvent]:
        """Parse a provider notification.

        Returns None for notifications that carry no charge outcome.

        Raises:
            MalformedPayload: Required fields are missing.
        """

    @abstractmethod
    def query(self, provider_reference: str) -> Optional[CallbackEvent]:
        """Ask the provider for the current outcome, None when it has none yet."""

    def acknowledgement(self) -> Dict[str, Any]:
        return {"received": True}

    def with_retry(self, func: Callable, *args, **kwargs):
        retryer = Retrying(
            retry=retry_if_exception_type(TransientProviderError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            before_sleep=self._log_retry,
            reraise=True,
        )
        return retryer(func, *args, **kwargs)

    def _log_retry(self, retry_state) -> None:
        logger.warning(
            "provider_call_retrying",
            provider=self.name,
            attempt=retry_state.attempt_number,
            error=str(retry_state.outcome.exception()),
        )

    def request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """Send one HTTP request and return the decoded JSON body.

        Connection failures and 429/5xx answers raise TransientProviderError.
        A read timeout is not transient: the provider may already have acted.
        """
        url = f"{self.base_url}{path}"
        try:
            response = self.http.request(method, url, timeout=self.timeout, **kwargs)
        except requests.ConnectionError as e:
            raise TransientProviderError(f"{self.name}: could not reach provider") from e
        except requests.Timeout as e:
            raise ProviderError(f"{self.name}: provider timed out") from e
        except requests.RequestException as e:
            raise ProviderError(f"{self.name}: request failed") from e

        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text}
        if not isinstance(body, dict):
            body = {"raw": body}

        if response.status_code in RETRYABLE_STATUS:
            raise TransientProviderError(
                f"{self.name}: provider answered HTTP {response.status_code}",
                status_code=response.status_code,
                body=body,
            )
        if response.status_code >= 400:
            raise ProviderError(
                f"{self.name}: provider rejected request (HTTP {response.status_code}): "
                f"{provider_message(body)}",
                status_code=response.status_code,
                body=body,
            )
        return body


def provider_message(body: Dict[str, Any]) -> str:
    for key in ("errorMessage", "message", "ResponseDescription", "error"):
        if body.get(key):
            return str(body[key])
    return "no message"


def load_json(raw_payload: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(raw_payload)
    except (TypeError, ValueError, UnicodeDecodeError) as e:
        raise MalformedPayload("callback body is not JSON") from e
    if not isinstance(payload, dict):
        raise MalformedPayload("callback body is not a JSON object")
    return payload
