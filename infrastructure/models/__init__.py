"""Infrastructure models package exports."""
from .base import Base, metadata
from .payment import (
    PaymentTerminalModel,
    PaymentTransactionModel,
    RefundModel,
    ProcessedWebhookEventModel,
)

__all__ = [
    "Base",
    "metadata",
    "PaymentTransactionModel",
    "RefundModel",
    "ProcessedWebhookEventModel",
    "PaymentTerminalModel",
]
