from typing import Any, Optional


class OrderflowError(Exception):
    """Base error; every workflow failure carries a kind (``code``) and context."""

    code = "ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(OrderflowError):
    code = "VALIDATION_ERROR"


class NotFoundError(OrderflowError):
    code = "NOT_FOUND"


class ForbiddenError(OrderflowError):
    code = "FORBIDDEN"


class ConflictError(OrderflowError):
    code = "CONFLICT"


class InvalidTransitionError(OrderflowError):
    code = "INVALID_TRANSITION"

    def __init__(self, entity: str, current: str, requested: str):
        super().__init__(
            f"Cannot move {entity} from '{current}' to '{requested}'",
            {"entity": entity, "current": current, "requested": requested},
        )


class ProductUnavailableError(OrderflowError):
    code = "PRODUCT_UNAVAILABLE"

    def __init__(self, product_id: int):
        super().__init__(
            f"Product {product_id} not found or unavailable",
            {"product_id": product_id},
        )


class InsufficientStockError(OrderflowError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: int, product_name: Optional[str] = None):
        label = product_name or str(product_id)
        super().__init__(
            f"Insufficient stock for product: {label}",
            {"product_id": product_id, "product_name": product_name},
        )


class RefundExceedsBalanceError(OrderflowError):
    code = "REFUND_EXCEEDS_BALANCE"


class InvalidSignatureError(OrderflowError):
    code = "INVALID_SIGNATURE"


class CollaboratorUnavailableError(OrderflowError):
    """I/O failure talking to the catalog or the payment gateway."""

    code = "COLLABORATOR_UNAVAILABLE"

    def __init__(self, collaborator: str, message: str = "Upstream service unavailable"):
        super().__init__(message, {"collaborator": collaborator})
