from fastapi import status


class EngineError(Exception):
    """Base for every error an engine operation can report to its caller."""

    code = "engine_error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message()
        super().__init__(self.message)

    @classmethod
    def default_message(cls) -> str:
        return cls.code.replace("_", " ").capitalize()

    def public_message(self) -> str:
        return self.message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.public_message()}


class Unauthenticated(EngineError):
    code = "unauthenticated"
    status_code = status.HTTP_401_UNAUTHORIZED


class NotAuthorized(EngineError):
    code = "not_authorized"
    status_code = status.HTTP_403_FORBIDDEN


class NotFound(EngineError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class InvalidTransition(EngineError):
    code = "invalid_transition"
    status_code = status.HTTP_409_CONFLICT


class ConflictingTransition(EngineError):
    code = "conflicting_transition"
    status_code = status.HTTP_409_CONFLICT


class ValidationError(EngineError):
    code = "validation_error"
    status_code = status.HTTP_400_BAD_REQUEST


class InsufficientFunds(EngineError):
    code = "insufficient_funds"
    status_code = status.HTTP_402_PAYMENT_REQUIRED


class InsufficientBalance(EngineError):
    code = "insufficient_balance"
    status_code = status.HTTP_402_PAYMENT_REQUIRED


class BelowMinimum(EngineError):
    code = "below_minimum"
    status_code = status.HTTP_400_BAD_REQUEST


class NoPayoutAccount(EngineError):
    code = "no_payout_account"
    status_code = status.HTTP_400_BAD_REQUEST


class AlreadyResolved(EngineError):
    code = "already_resolved"
    status_code = status.HTTP_409_CONFLICT


class NotRetryable(EngineError):
    code = "not_retryable"
    status_code = status.HTTP_409_CONFLICT


class ExternalProcessorError(EngineError):
    """Any failure reported by (or while reaching) the payment processor.

    The specific cause stays in ``message`` for logs and audit events; callers
    only ever see the generic public message.
    """

    code = "external_processor_error"
    status_code = status.HTTP_502_BAD_GATEWAY

    def public_message(self) -> str:
        return "Payment processor request failed"


class ChargeDeclined(ExternalProcessorError):
    """The processor answered and declined the charge."""

    code = "charge_declined"

    def __init__(self, message: str | None = None, decline_code: str | None = None):
        self.decline_code = decline_code
        super().__init__(message)


class ProcessorUnavailable(ExternalProcessorError):
    """The processor could not be reached or timed out; the outcome of the call is unknown."""

    code = "processor_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
