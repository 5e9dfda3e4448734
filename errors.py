"""
Typed failures raised by the order, inventory and catalog services.

Each error carries the HTTP status it maps to and a short machine-readable
code. The API layer turns them into JSON responses; services never build
HTTP responses themselves.
"""


class ShopError(Exception):
    status_code = 500
    code = "server_error"

    def __init__(self, message: str = "Server error"):
        super().__init__(message)
        self.message = message


class ValidationError(ShopError):
    status_code = 400
    code = "validation_error"


class InvalidQuantity(ValidationError):
    code = "invalid_quantity"


class InsufficientStock(ShopError):
    status_code = 400
    code = "insufficient_stock"


class InsufficientInventory(ShopError):
    status_code = 400
    code = "insufficient_inventory"


class Unauthorized(ShopError):
    status_code = 401
    code = "unauthorized"


class AccessDenied(ShopError):
    status_code = 403
    code = "access_denied"


class ReturnNotRequested(AccessDenied):
    code = "return_not_requested"


class NotFound(ShopError):
    status_code = 404
    code = "not_found"


class ProductNotFound(NotFound):
    code = "product_not_found"


class ServerError(ShopError):
    pass
