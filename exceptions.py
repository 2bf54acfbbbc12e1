class ShopError(Exception):
    """Base exception for the shop API"""
    status_code = 400
    default_detail = "An error occurred"

    def __init__(self, detail=None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class ValidationError(ShopError):
    status_code = 400
    default_detail = "Invalid request"


class NotFoundError(ShopError):
    status_code = 404
    default_detail = "Resource not found"


class PermissionDeniedError(ShopError):
    status_code = 403
    default_detail = "Access denied"


class ConflictError(ShopError):
    status_code = 409
    default_detail = "Resource was modified concurrently"


class InsufficientStockError(ShopError):
    """Raised when a stock mutation would overdraw stock or reservations"""
    status_code = 400
    default_detail = "Insufficient available stock"

    def __init__(self, detail=None, available=None, requested=None):
        self.available = available
        self.requested = requested
        if detail is None and available is not None:
            detail = f"Only {available} items available, requested {requested}"
        super().__init__(detail)


class InvalidTransitionError(ShopError):
    status_code = 409
    default_detail = "Status transition not allowed"

    def __init__(self, current, target, what="order"):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move {what} from '{current}' to '{target}'")


class PaymentError(ShopError):
    status_code = 402
    default_detail = "Payment processing failed"
