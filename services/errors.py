# services/errors.py
"""
Typed errors raised by the service layer.

Each carries the HTTP status and a short machine code; app.py renders them as
{"error": <message>, "code": <code>} without further translation.
"""


class AppError(Exception):
    status_code = 400
    code = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AppError):
    """Malformed or missing input; raised before any store access."""
    status_code = 400
    code = "validation_error"


class AuthenticationError(AppError):
    status_code = 401
    code = "unauthenticated"


class AuthorizationError(AppError):
    """Caller lacks the role or the ownership the action needs."""
    status_code = 403
    code = "forbidden"


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"


class BusinessRuleError(AppError):
    status_code = 409
    code = "business_rule"


class DuplicateError(BusinessRuleError):
    code = "duplicate"


class InsufficientStockError(BusinessRuleError):
    code = "insufficient_stock"


class InsufficientBalanceError(BusinessRuleError):
    code = "insufficient_balance"


class QRCodeExpiredError(BusinessRuleError):
    code = "qr_expired"


class QRCodeAlreadyUsedError(BusinessRuleError):
    code = "qr_already_used"


class InvalidTransitionError(BusinessRuleError):
    code = "invalid_transition"
