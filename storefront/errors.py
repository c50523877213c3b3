"""
Errors raised by the order core. Each carries the HTTP status the API answers with;
main.py renders them as {"error": message}.
"""


class OrderError(Exception):
    status_code = 400


class OrderValidationError(OrderError):
    """Rejected write: nothing was persisted."""


class InvalidTransitionError(OrderValidationError):
    """Raised when the requested order status transition is not allowed."""
    def __init__(self, message: str, from_status: str | None = None, to_status: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(message)


class InsufficientStockError(OrderValidationError):
    """Raised before creation when any line item asks for more than is in stock."""
    def __init__(self, shortages: list[dict]):
        self.shortages = shortages
        details = "; ".join(
            f"{s['name']} (requested {s['requested']}, available {s['available']})"
            for s in shortages
        )
        super().__init__(f"Insufficient stock: {details}")


class NotAuthenticatedError(OrderError):
    status_code = 401


class ForbiddenError(OrderError):
    status_code = 403


class OrderNotFoundError(OrderError):
    status_code = 404

    def __init__(self, message: str = "Order not found"):
        super().__init__(message)


class ConfigurationError(OrderError):
    status_code = 500
