"""
Payment specific codes and provider status mapping.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Request / state errors (2xxxx, payment range)
    VALIDATION_ERROR = 20100
    UNKNOWN_PROVIDER = 20101
    TRANSACTION_NOT_FOUND = 20102
    REFUND_NOT_FOUND = 20103
    INVALID_STATE = 20104
    AMOUNT_EXCEEDED = 20105
    IDEMPOTENCY_IN_PROGRESS = 20106

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_RECOVERABLE = 60001
    SIGNATURE_ERROR = 60002
    SIGNATURE_MISSING = 60005


# Provider charge/refund status -> internal status.
# Charge statuses resolve to: succeeded | requires_action | pending | failed
# Refund statuses resolve to: succeeded | processing | failed
PROVIDER_STATUS_TO_INTERNAL = {
    "stripe": {
        "requires_payment_method": "failed",
        "requires_confirmation": "requires_action",
        "requires_action": "requires_action",
        "processing": "pending",
        "requires_capture": "pending",
        "succeeded": "succeeded",
        "canceled": "failed",
    },
    "stripe_refund": {
        "pending": "processing",
        "requires_action": "processing",
        "succeeded": "succeeded",
        "failed": "failed",
        "canceled": "failed",
    },
    "square": {
        "APPROVED": "pending",
        "PENDING": "pending",
        "COMPLETED": "succeeded",
        "CANCELED": "failed",
        "FAILED": "failed",
    },
    "square_refund": {
        "PENDING": "processing",
        "COMPLETED": "succeeded",
        "REJECTED": "failed",
        "FAILED": "failed",
    },
    "mercadopago": {
        "pending": "pending",
        "in_process": "pending",
        "authorized": "pending",
        "approved": "succeeded",
        "rejected": "failed",
        "cancelled": "failed",
        "refunded": "succeeded",
        "charged_back": "succeeded",
    },
    "mercadopago_refund": {
        "approved": "succeeded",
        "in_process": "processing",
        "pending": "processing",
        "rejected": "failed",
        "cancelled": "failed",
    },
    "paypal": {
        "COMPLETED": "succeeded",
        "APPROVED": "pending",
        "PENDING": "pending",
        "PAYER_ACTION_REQUIRED": "requires_action",
        "DECLINED": "failed",
        "FAILED": "failed",
        "VOIDED": "failed",
    },
    "paypal_refund": {
        "COMPLETED": "succeeded",
        "PENDING": "processing",
        "FAILED": "failed",
        "CANCELLED": "failed",
    },
}
