"""
Payments API routes.

Thin layer over the orchestrators: request parsing, envelope rendering and
nothing else. Business errors propagate to the global exception handlers.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_payment_orchestrator, get_refund_orchestrator, get_terminal_service
from application.dtos.payments import PairTerminalRequest, ProcessPaymentRequest, RefundPayload, RefundRequest
from application.services.payment_service import PaymentOrchestrator
from application.services.refund_service import RefundOrchestrator
from application.services.terminal_service import TerminalService
from core.config import settings
from core.response import paginated_response, success_response
from domain.payment.entity import TransactionStatus


router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("/process", summary="Process payment")
async def process_payment(
    payload: ProcessPaymentRequest,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    result = await orchestrator.process_payment(payload)
    message = "Payment processed" if result.status != "failed" else "Payment failed"
    return success_response(data=result.model_dump(mode="json"), message=message)


@router.get("", summary="List transactions")
async def list_transactions(
    order_id: Optional[str] = Query(default=None),
    status: Optional[TransactionStatus] = Query(default=None),
    provider: Optional[str] = Query(default=None),
    limit: int = Query(default=settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    offset: int = Query(default=0, ge=0),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    items, total = await orchestrator.list_transactions(
        order_id=order_id,
        status=status,
        provider=provider.lower() if provider else None,
        limit=limit,
        offset=offset,
    )
    return paginated_response(
        items=[item.model_dump(mode="json") for item in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/methods", summary="Available payment methods")
async def list_payment_methods(orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator)):
    methods = orchestrator.list_payment_methods()
    return success_response(data=[m.model_dump() for m in methods])


@router.post("/terminal/pair", summary="Pair payment terminal")
async def pair_terminal(
    payload: PairTerminalRequest,
    service: TerminalService = Depends(get_terminal_service),
):
    terminal = await service.pair_terminal(payload)
    return success_response(data=terminal.model_dump(mode="json"), message="Terminal paired")


@router.get("/refund/{refund_id}", summary="Get refund")
async def get_refund(refund_id: str, orchestrator: RefundOrchestrator = Depends(get_refund_orchestrator)):
    refund = await orchestrator.get_refund(refund_id)
    return success_response(data=refund.model_dump(mode="json"))


@router.post("/refund/{transaction_id}", summary="Refund transaction")
async def refund_transaction(
    transaction_id: str,
    payload: Optional[RefundPayload] = None,
    orchestrator: RefundOrchestrator = Depends(get_refund_orchestrator),
):
    payload = payload or RefundPayload()
    result = await orchestrator.process_refund(
        RefundRequest(
            transaction_id=transaction_id,
            amount=payload.amount,
            reason=payload.reason,
            metadata=payload.metadata,
        )
    )
    message = "Refund processed" if result.status != "failed" else "Refund failed"
    return success_response(data=result.model_dump(mode="json"), message=message)


@router.get("/{transaction_id}/refunds", summary="List refunds of a transaction")
async def list_refunds(transaction_id: str, orchestrator: RefundOrchestrator = Depends(get_refund_orchestrator)):
    refunds = await orchestrator.list_refunds(transaction_id)
    return success_response(data=[r.model_dump(mode="json") for r in refunds])


@router.get("/{transaction_id}", summary="Get transaction")
async def get_transaction(
    transaction_id: str,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    tx = await orchestrator.get_transaction(transaction_id)
    return success_response(data=tx.model_dump(mode="json"))
