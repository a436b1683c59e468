"""
Pairing of physical payment terminals.

Pairing is an upsert on terminal_id: the first call records the device, later
calls re-activate it and refresh last_seen_at without touching the stored
provider or device details.
"""
from __future__ import annotations

from typing import Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from application.dtos.payments import PairTerminalRequest, TerminalView
from application.services.payment_service import UowFactory
from core.logging_config import get_logger
from domain.payment.entity import PaymentTerminal, TerminalStatus, utcnow


logger = get_logger(__name__)


class TerminalService:
    def __init__(
        self,
        *,
        uow_factory: UowFactory,
        duplicate_errors: tuple[type[BaseException], ...] = (),
    ) -> None:
        self._uow_factory = uow_factory
        # raised when a concurrent pairing inserted the same terminal_id first
        self._duplicate_errors = duplicate_errors

    async def pair_terminal(self, req: PairTerminalRequest) -> TerminalView:
        created = False
        terminal: Optional[PaymentTerminal] = None
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(self._duplicate_errors),
            stop=stop_after_attempt(2),
            reraise=True,
        ):
            with attempt:
                async with self._uow_factory() as uow:
                    terminal = await uow.terminals.mark_active(req.terminal_id)
                    created = terminal is None
                    if created:
                        terminal = await uow.terminals.create(
                            PaymentTerminal(
                                terminal_id=req.terminal_id,
                                provider=req.provider,
                                device_type=req.device_type,
                                location_id=req.location_id,
                                status=TerminalStatus.ACTIVE,
                                created_at=utcnow(),
                            )
                        )

        logger.info(
            "terminal_paired",
            terminal_id=req.terminal_id,
            provider=terminal.provider,
            created=created,
        )
        return TerminalView.from_entity(terminal)
