"""
Exceptions raised by provider adapters.

PaymentRecoverableError marks transient failures (timeouts, connection errors,
429, 5xx) that the payment orchestrator retries; PaymentProviderError is a
definitive provider-side failure. Signature errors are raised while verifying a
webhook and surface as 400/403.
"""
from __future__ import annotations

from typing import Optional

from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import PaymentCode


class ProviderException(BusinessException):
    """Base for adapter errors; details always name the provider."""

    code: int = PaymentCode.PROVIDER_ERROR
    error_type: str = "provider_error"

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        provider_code: str | None = None,
        details: Optional[dict] = None,
    ):
        full_details = {"provider": provider, "provider_code": provider_code}
        if details:
            full_details.update(details)
        self.provider = provider
        self.provider_code = provider_code
        super().__init__(
            code=type(self).code,
            message=message,
            error_type=type(self).error_type,
            details=full_details,
        )


class PaymentProviderError(ProviderException):
    pass


class PaymentRecoverableError(ProviderException):
    code = PaymentCode.PROVIDER_RECOVERABLE


class PaymentSignatureError(ProviderException):
    code = PaymentCode.SIGNATURE_ERROR
    error_type = "signature_invalid"


class WebhookSignatureMissing(ProviderException):
    """The provider's signature header is absent from the webhook request."""

    code = PaymentCode.SIGNATURE_MISSING
    error_type = "signature_missing"

    def __init__(self, header: str, *, provider: str):
        super().__init__(f"Missing {header} header", provider=provider, details={"header": header})
