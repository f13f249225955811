# api/__init__.py
from api.server import (
    app,
    config,
    CreateTransactionRequest,
    CreateTransactionResponse,
    OrderStatusRequest,
)

__all__ = [
    "app",
    "config",
    "CreateTransactionRequest",
    "CreateTransactionResponse",
    "OrderStatusRequest",
]
