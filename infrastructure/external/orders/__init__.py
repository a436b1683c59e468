from .clients import (
    CollaboratorError,
    HttpCashierClient,
    HttpOrdersClient,
    LoggingCashierGateway,
    LoggingOrdersGateway,
    build_cashier_gateway,
    build_orders_gateway,
)

__all__ = [
    "CollaboratorError",
    "HttpCashierClient",
    "HttpOrdersClient",
    "LoggingCashierGateway",
    "LoggingOrdersGateway",
    "build_cashier_gateway",
    "build_orders_gateway",
]
