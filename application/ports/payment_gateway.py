"""
Provider adapter port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters
(one per external processor) and registers them by provider name.
"""
from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from application.dtos.payments import (
    ChargeRequest,
    ChargeResult,
    ProviderRefundRequest,
    ProviderRefundResult,
    WebhookEvent,
)


@runtime_checkable
class ProviderAdapter(Protocol):
    """Capability interface for third-party payment providers.

    charge() returns normally for success, pending-action and definitive
    declines; it raises for transient failures (timeouts, 5xx) so the
    orchestrator can retry. parse_webhook() must verify authenticity before
    returning anything derived from the body.
    """

    provider: str

    async def charge(self, req: ChargeRequest) -> ChargeResult: ...

    async def refund(self, req: ProviderRefundRequest) -> ProviderRefundResult: ...

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent: ...

    async def aclose(self) -> None: ...


@runtime_checkable
class ProviderLookup(Protocol):
    """Registry of adapters by provider name; unknown names raise UnknownProviderException."""

    def get(self, name: str | None) -> ProviderAdapter: ...

    def names(self) -> list[str]: ...


class ParkedWebhookReplayer(Protocol):
    """Re-applies webhook events that arrived before their transaction/refund
    carried the provider reference they are matched on."""

    async def replay_parked(
        self,
        provider: str,
        *,
        provider_transaction_id: str | None = None,
        provider_refund_id: str | None = None,
    ) -> int: ...
