"""
Provider webhook endpoint.

The body is read raw: signatures are computed over the exact bytes the provider
sent, so nothing may parse or re-serialize it before verification.
"""
from __future__ import annotations

import ipaddress

from fastapi import APIRouter, Depends, HTTPException, Request

from api.dependencies import get_webhook_dispatcher
from application.services.webhook_service import WebhookDispatcher
from core.logging_config import get_logger
from core.response import success_response
from core.settings import payment_settings
from domain.payment.service import UnknownProviderException


router = APIRouter(prefix="/webhooks", tags=["Webhooks"])
logger = get_logger(__name__)


def _ip_allowed(remote_ip: str, allowlist: list[str]) -> bool:
    try:
        rip = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if "/" in entry:
                if rip in ipaddress.ip_network(entry, strict=False):
                    return True
            elif rip == ipaddress.ip_address(entry):
                return True
        except ValueError:
            logger.warning("webhook_allowlist_entry_invalid", entry=entry)
    return False


@router.post("/{provider}", summary="Provider webhook")
async def provider_webhook(
    provider: str,
    request: Request,
    dispatcher: WebhookDispatcher = Depends(get_webhook_dispatcher),
):
    # Optional IP allowlist
    allowlist = payment_settings.webhook.ip_allowlist or []
    if allowlist:
        remote_ip = request.client.host if request.client else ""
        if not _ip_allowed(remote_ip, allowlist):
            logger.warning("webhook_ip_rejected", provider=provider, remote_ip=remote_ip)
            raise HTTPException(status_code=403, detail="Source IP not allowed")

    raw_body = await request.body()
    headers = {k: v for k, v in request.headers.items()}
    try:
        outcome = await dispatcher.dispatch(provider, headers, raw_body)
    except UnknownProviderException:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")

    # Return 200 to acknowledge receipt per provider conventions
    if outcome.duplicate:
        message = "Duplicate event ignored"
    elif outcome.parked:
        message = "Webhook queued until the payment is recorded"
    else:
        message = "Webhook received"
    return success_response(data=outcome.model_dump(mode="json"), message=message)
