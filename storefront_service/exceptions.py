"""
exceptions.py — Error Taxonomy for the Storefront Service

Hierarchy:
    StorefrontException
    ├── ValidationError              (local, never reaches the network)
    ├── AuthenticationError          (bad credentials / bad session token)
    │   └── ProviderAuthenticationError
    ├── AuthorizationError           (valid session, insufficient role)
    ├── NotFoundError
    ├── ConflictError                (duplicate id, stale version)
    ├── InvalidOrderStateError
    ├── InvalidCheckoutStateError
    └── PaymentException
        ├── PaymentInitiationError   (provider rejected the STK push)
        ├── PaymentQueryError        (status query could not be completed)
        └── PaymentTimeoutError      (poll budget exhausted)

The API layer translates these into HTTP responses in one place (see main.py).
"""


class StorefrontException(Exception):
    """
    Base exception for all storefront errors.

    Attributes:
        message: Human-readable error message, safe to show to the end user
        details: Optional dict with additional context (ids, states, ...)
    """

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        if self.details:
            details_str = ', '.join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.__class__.__name__}('{self.message}', {details_str})"
        return f"{self.__class__.__name__}('{self.message}')"


class ValidationError(StorefrontException):
    """Input rejected locally before any network call."""


class AuthenticationError(StorefrontException):
    """Credentials or session token could not be verified."""


class ProviderAuthenticationError(AuthenticationError):
    """The payment provider refused our consumer key/secret."""

    def __init__(self, provider_body=None):
        super().__init__(
            "M-Pesa authentication failed",
            details={'provider_body': provider_body}
        )
        self.provider_body = provider_body


class AuthorizationError(StorefrontException):
    """Authenticated user lacks the role required for the operation."""


class NotFoundError(StorefrontException):
    """Requested entity does not exist."""


class ConflictError(StorefrontException):
    """Write rejected because it would clash with existing state."""


class InvalidOrderStateError(StorefrontException):
    """Raised when an order status change is not allowed."""

    def __init__(self, order_id: str, current_state: str, requested_state: str, reason: str | None = None):
        message = reason or f"Order {order_id} cannot move from '{current_state}' to '{requested_state}'"
        super().__init__(
            message,
            details={'order_id': order_id, 'current_state': current_state, 'requested_state': requested_state}
        )
        self.order_id = order_id
        self.current_state = current_state
        self.requested_state = requested_state


class InvalidCheckoutStateError(StorefrontException):
    """Raised when a checkout action is not allowed in the current step."""

    def __init__(self, action: str, state: str):
        super().__init__(
            f"Cannot {action} while checkout is in state '{state}'",
            details={'action': action, 'state': state}
        )
        self.action = action
        self.state = state


class PaymentException(StorefrontException):
    """Base exception for payment-related errors."""


class PaymentInitiationError(PaymentException):
    """Provider rejected the push request. The message is shown verbatim."""


class PaymentQueryError(PaymentException):
    """Status query failed for a reason other than 'still processing'."""


class PaymentTimeoutError(PaymentException):
    """Polling exhausted its attempt budget without a confirmed payment."""

    def __init__(self, checkout_request_id: str, attempts: int):
        super().__init__(
            "Payment timeout. Please try again or use manual paybill.",
            details={'checkout_request_id': checkout_request_id, 'attempts': attempts}
        )
        self.checkout_request_id = checkout_request_id
        self.attempts = attempts
