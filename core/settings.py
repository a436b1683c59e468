"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Keys are read from ``PAYMENT__<GROUP>__<FIELD>`` environment variables, e.g.
``PAYMENT__RETRY__MAX_ATTEMPTS=3`` or ``PAYMENT__STRIPE__WEBHOOK_SECRET=whsec_...``.
"""
from __future__ import annotations

from typing import Annotated, Literal, Optional
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
from pydantic import BaseModel, Field, field_validator


class PaymentTimeouts(BaseModel):
    connect: float = 1.0
    read: float = 5.0
    write: float = 5.0
    # per-attempt budget enforced by the orchestrator
    total: float = 10.0


class PaymentRetry(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    # delay before attempt n+1 is n * base_delay seconds
    base_delay: float = Field(default=1.0, ge=0)


class IdempotencySettings(BaseModel):
    ttl_seconds: int = Field(default=3600, gt=0)
    # 进行中请求对幂等键的占用时长，进程崩溃后到期自动释放
    reservation_seconds: int = Field(default=120, gt=0)
    backend: Literal["auto", "redis", "memory"] = "auto"


class WebhookSettings(BaseModel):
    tolerance_seconds: int = 300
    ip_allowlist: list[str] | None = None  # Optional IPs/CIDRs allowed to post webhooks
    dedupe_events: bool = True


class StripeSettings(BaseModel):
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None


class SquareSettings(BaseModel):
    access_token: Optional[str] = None
    webhook_signature_key: Optional[str] = None
    notification_url: Optional[str] = None
    location_id: Optional[str] = None
    environment: Literal["sandbox", "production"] = "sandbox"
    api_version: str = "2024-01-18"

    @property
    def base_url(self) -> str:
        if self.environment == "production":
            return "https://connect.squareup.com"
        return "https://connect.squareupsandbox.com"


class MercadoPagoSettings(BaseModel):
    access_token: Optional[str] = None
    webhook_secret: Optional[str] = None
    base_url: str = "https://api.mercadopago.com"


class PayPalSettings(BaseModel):
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    webhook_id: Optional[str] = None
    environment: Literal["sandbox", "live"] = "sandbox"

    @property
    def base_url(self) -> str:
        if self.environment == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"


class CollaboratorSettings(BaseModel):
    base_url: Optional[str] = None
    api_key: Optional[str] = None


class PaymentSettings(BaseSettings):
    enabled_providers: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["stripe", "square", "mercadopago", "paypal"]
    )
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    idempotency: IdempotencySettings = Field(default_factory=IdempotencySettings)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)

    stripe: StripeSettings = Field(default_factory=StripeSettings)
    square: SquareSettings = Field(default_factory=SquareSettings)
    mercadopago: MercadoPagoSettings = Field(default_factory=MercadoPagoSettings)
    paypal: PayPalSettings = Field(default_factory=PayPalSettings)

    orders: CollaboratorSettings = Field(default_factory=CollaboratorSettings)
    cashier: CollaboratorSettings = Field(default_factory=CollaboratorSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    @field_validator("enabled_providers", mode="before")
    @classmethod
    def _split_providers(cls, v):
        if isinstance(v, str):
            return [p.strip().lower() for p in v.split(",") if p.strip()]
        return v


payment_settings = PaymentSettings()
