from __future__ import annotations
"""Domain error taxonomy for order operations.

Each error carries a ``kind`` (surfaced in the uniform result shape) and the HTTP
status the transport layer should answer with.
"""


class OrderError(Exception):
    kind = 'error'
    http_status = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class OrderValidationError(OrderError):
    kind = 'validation'
    http_status = 400


class OrderStateError(OrderError):
    kind = 'state'
    http_status = 409


class StalePreconditionError(OrderStateError):
    """Another writer changed the order status between read and write."""


class OrderAuthorizationError(OrderError):
    kind = 'authorization'
    http_status = 403


class OrderNotFoundError(OrderError):
    kind = 'not_found'
    http_status = 404


class InsufficientStockError(OrderValidationError):
    def __init__(self, sku: str, available: int, requested: int, name: str | None = None):
        label = name or sku
        super().__init__(f'Insufficient stock for {label}. Available: {available}, Requested: {requested}')
        self.sku = sku
        self.available = available
        self.requested = requested


HTTP_STATUS_BY_KIND = {
    cls.kind: cls.http_status
    for cls in (OrderValidationError, OrderStateError, OrderAuthorizationError, OrderNotFoundError)
}

__all__ = [
    'OrderError', 'OrderValidationError', 'OrderStateError', 'StalePreconditionError',
    'OrderAuthorizationError', 'OrderNotFoundError', 'InsufficientStockError', 'HTTP_STATUS_BY_KIND',
]
