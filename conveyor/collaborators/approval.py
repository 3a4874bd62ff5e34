import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timezone

from conveyor.context import CancelToken
from conveyor.schemas import ApprovalDecision

logger = logging.getLogger(__name__)


@dataclass
class PendingGate:
    gate_id: str
    message: str
    future: asyncio.Future
    since: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ApprovalBroker:
    """In-process approval source, fed by the HTTP API."""

    _pending: dict[str, PendingGate]

    def __init__(self):
        self._pending = {}

    def pending(self) -> list[PendingGate]:
        return list(self._pending.values())

    def submit(self, gate_id: str, decision: ApprovalDecision) -> bool:
        gate = self._pending.get(gate_id)
        if gate is None or gate.future.done():
            return False
        logger.info(
            f'Gate {gate_id} {"approved" if decision.approved else "rejected"}'
            f' by {decision.by or "anonymous"}'
        )
        gate.future.set_result(decision)
        return True

    async def wait(
        self,
        gate_id: str,
        message: str,
        timeout: float,
        cancel: CancelToken | None = None,
    ) -> ApprovalDecision | None:
        future = asyncio.get_running_loop().create_future()
        self._pending[gate_id] = PendingGate(gate_id, message, future)
        waiters = {future}
        cancel_waiter = None
        if cancel is not None:
            cancel_waiter = asyncio.ensure_future(cancel.wait())
            waiters.add(cancel_waiter)
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            del self._pending[gate_id]
        if future.done():
            return future.result()
        future.cancel()
        return None


class StaticApprovalSource:
    """Answers every gate the same way; ``None`` lets gates time out."""

    decision: ApprovalDecision | None

    def __init__(self, decision: ApprovalDecision | None):
        self.decision = decision

    async def wait(
        self,
        gate_id: str,
        message: str,
        timeout: float,
        cancel: CancelToken | None = None,
    ) -> ApprovalDecision | None:
        if self.decision is not None:
            return self.decision
        if cancel is None:
            await asyncio.sleep(timeout)
        else:
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(cancel.wait(), timeout)
        return None
