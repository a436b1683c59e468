"""
支付领域服务 - 退款额度计算、请求校验与领域异常
"""
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from .entity import (
    PaymentMethod,
    PaymentTransaction,
    TransactionStatus,
)
from domain.common.exceptions import BusinessException, ResourceNotFoundException
from shared.codes.payment_codes import PaymentCode


class PaymentValidationException(BusinessException):
    """请求字段缺失或非法"""
    def __init__(self, message: str, *, field: Optional[str] = None):
        super().__init__(
            code=PaymentCode.VALIDATION_ERROR,
            message=message,
            error_type="validation_error",
            field=field,
        )


class UnknownProviderException(BusinessException):
    """未注册的支付渠道"""
    def __init__(self, provider: Optional[str]):
        super().__init__(
            code=PaymentCode.UNKNOWN_PROVIDER,
            message=f"Unknown provider: {provider}",
            error_type="unknown_provider",
            details={"provider": provider},
            field="provider",
        )


class IdempotencyInProgressException(BusinessException):
    """同一幂等键的请求仍在处理中"""
    def __init__(self, idempotency_key: str):
        super().__init__(
            code=PaymentCode.IDEMPOTENCY_IN_PROGRESS,
            message="A payment with this idempotency key is already in progress",
            error_type="idempotency_in_progress",
            details={"idempotency_key": idempotency_key},
        )


class TransactionNotFoundException(ResourceNotFoundException):
    """交易记录不存在"""
    def __init__(self, transaction_id: str):
        super().__init__(PaymentCode.TRANSACTION_NOT_FOUND, "transaction", transaction_id)


class RefundNotFoundException(ResourceNotFoundException):
    """退款记录不存在"""
    def __init__(self, refund_id: str):
        super().__init__(PaymentCode.REFUND_NOT_FOUND, "refund", refund_id)


class InvalidTransactionStateException(BusinessException):
    """交易状态不允许退款"""
    def __init__(self, transaction_id: str, status: TransactionStatus, reason: Optional[str] = None):
        super().__init__(
            code=PaymentCode.INVALID_STATE,
            message=reason or f"Transaction status is {status.value}, cannot refund",
            error_type="invalid_state",
            details={"transaction_id": transaction_id, "status": status.value},
        )


class RefundAmountExceededException(BusinessException):
    """退款金额超过剩余可退金额"""
    def __init__(self, requested: Decimal, remaining: Decimal):
        super().__init__(
            code=PaymentCode.AMOUNT_EXCEEDED,
            message=(
                f"Refund amount ({requested}) exceeds remaining refundable amount ({remaining})"
            ),
            error_type="amount_exceeded",
            details={"requested": str(requested), "remaining": str(remaining)},
            field="amount",
        )


PROVIDER_METHODS = (PaymentMethod.CARD, PaymentMethod.QR, PaymentMethod.WALLET)


def validate_charge_fields(
    *,
    amount: Decimal,
    method: PaymentMethod,
    provider: Optional[str],
    payment_method_id: Optional[str],
) -> None:
    """
    校验收款请求

    业务规则：
    1. 金额必须大于0
    2. 非现金支付必须指定 provider 与 payment_method_id（渠道令牌）
    """
    if amount is None or amount <= 0:
        raise PaymentValidationException("amount must be greater than 0", field="amount")
    if method in PROVIDER_METHODS:
        if not provider:
            raise PaymentValidationException("provider is required unless method is cash", field="provider")
        if not payment_method_id:
            raise PaymentValidationException(
                "payment_method_id is required for provider payments",
                field="payment_method_id",
            )


def remaining_refundable(transaction: PaymentTransaction, outstanding: Decimal) -> Decimal:
    return transaction.amount - outstanding


def ensure_refundable(transaction: PaymentTransaction) -> None:
    """退款前置条件：交易成功且有渠道交易号"""
    if transaction.can_refund():
        return
    if transaction.status != TransactionStatus.SUCCEEDED:
        raise InvalidTransactionStateException(transaction.id, transaction.status)
    if not transaction.provider_transaction_id:
        raise InvalidTransactionStateException(
            transaction.id,
            transaction.status,
            reason="Transaction does not have a provider transaction ID, cannot refund",
        )


def resolve_refund_amount(requested: Optional[Decimal], remaining: Decimal) -> Decimal:
    """
    计算并校验本次退款金额

    未指定金额时默认退剩余全部；超过剩余可退金额时拒绝。
    """
    amount = remaining if requested is None else requested
    if amount <= 0:
        if requested is None:
            raise RefundAmountExceededException(amount, remaining)
        raise PaymentValidationException("Refund amount must be greater than 0", field="amount")
    if amount > remaining:
        raise RefundAmountExceededException(amount, remaining)
    return amount
