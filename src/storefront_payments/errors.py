"""Error taxonomy for payment initialization and callback handling."""

from typing import Optional

PROBLEM_TYPE_BASE = "https://api.shop.am/problems"


class PaymentError(Exception):
    """Base class for every error raised by the payments core.

    Each subclass carries the HTTP status and problem document fields used
    when the error reaches the init endpoint.
    """

    status_code = 500
    problem_type = "internal-error"
    title = "Internal Server Error"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.title
        super().__init__(self.detail)

    @property
    def type_uri(self) -> str:
        return f"{PROBLEM_TYPE_BASE}/{self.problem_type}"


# Configuration errors

class ProviderNotConfiguredError(PaymentError):
    status_code = 503
    problem_type = "config-error"
    title = "Payment not configured"


class UnknownProviderError(PaymentError):
    status_code = 404
    problem_type = "not-found"
    title = "Unknown payment provider"


# Validation errors

class PaymentValidationError(PaymentError):
    status_code = 400
    problem_type = "validation-error"
    title = "Validation Error"


class InvalidOrderStateError(PaymentValidationError):
    title = "Invalid state"


class InvalidCurrencyError(PaymentValidationError):
    title = "Invalid currency"


class InvalidAmountError(PaymentValidationError):
    title = "Invalid amount"


# Not-found errors

class NotFoundError(PaymentError):
    status_code = 404
    problem_type = "not-found"
    title = "Not found"


class OrderNotFoundError(NotFoundError):
    title = "Order not found"


class PaymentNotFoundError(NotFoundError):
    title = "Payment not found"


# Provider errors

class ProviderError(PaymentError):
    """The provider answered, but refused the request."""

    status_code = 402
    problem_type = "payment-error"
    title = "Payment init failed"


class ProviderUnavailableError(ProviderError):
    """The provider could not be reached or timed out. Nothing was changed."""

    status_code = 502
    problem_type = "provider-unavailable"
    title = "Payment provider unavailable"


# Callback-side errors. These never reach the init endpoint.

class MalformedNotificationError(PaymentError):
    status_code = 400
    problem_type = "validation-error"
    title = "Malformed notification"


class AuthenticityError(PaymentError):
    """A callback failed checksum or server-side verification."""

    status_code = 400
    problem_type = "authenticity-error"
    title = "Notification could not be verified"
