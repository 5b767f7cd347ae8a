"""Domain errors raised by the service layer.

All of them subclass ``ValueError`` so callers that only care about
"the request was rejected" can keep catching ``ValueError``; the web layer
maps each subclass to its own HTTP status.
"""


class NotFoundError(ValueError):
    status_code = 404


class ConflictError(ValueError):
    status_code = 409

    def __init__(self, message: str, conflict_type: str | None = None, details: dict | None = None):
        super().__init__(message)
        self.conflict_type = conflict_type
        self.details = details or {}


class PermissionDeniedError(ValueError):
    status_code = 403


class AuthenticationError(ValueError):
    status_code = 401

    def __init__(self, message: str = "Invalid credentials", requires_two_factor: bool = False):
        super().__init__(message)
        self.requires_two_factor = requires_two_factor


class AccountLockedError(AuthenticationError):
    status_code = 423

    def __init__(self, message: str, minutes_remaining: int):
        super().__init__(message)
        self.minutes_remaining = minutes_remaining


class PaymentError(ValueError):
    status_code = 402


class PaymentsDisabledError(PaymentError):
    status_code = 503

    def __init__(self, message: str = "Stripe is not configured"):
        super().__init__(message)
