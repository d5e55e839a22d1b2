class BlessPayError(Exception):
    """Base class for errors raised by the payment service."""


class PaymentValidationError(BlessPayError):
    """Charge request rejected before any state was created."""


class ProviderError(BlessPayError):
    """A payment provider call failed or was rejected."""

    def __init__(self, message: str, status_code: int = None, body: dict = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body or {}


class TransientProviderError(ProviderError):
    """Provider call failed in a way that is safe to retry."""


class ProviderInitiationError(ProviderError):
    """The provider did not accept a charge initiation."""


class MalformedPayload(BlessPayError):
    """A verified callback could not be parsed into a CallbackEvent."""


class IntentNotFound(BlessPayError):
    pass


class DuplicateReference(BlessPayError):
    pass


class StateConflict(BlessPayError):
    """The intent was not in the expected state when a transition was applied."""

    def __init__(self, intent_id: str, expected, actual):
        super().__init__(f"intent {intent_id}: expected {expected}, found {actual}")
        self.intent_id = intent_id
        self.expected = expected
        self.actual = actual


class InvalidTransition(BlessPayError):
    pass
