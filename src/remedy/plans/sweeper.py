"""Background expiry of overdue approvals."""

import asyncio
import contextlib
import logging

from remedy.database.base import DatabaseError
from remedy.error_handling import RemedyError
from remedy.plans.approval import ApprovalGate

logger = logging.getLogger(__name__)


class ApprovalExpirySweeper:
    """Periodically expires pending approvals past their deadline.

    Optional: reads and decisions already expire approvals lazily. The sweep
    makes expiry visible (and notified) without waiting for the next read.
    """

    def __init__(self, gate: ApprovalGate, interval: float = 60.0):
        self.gate = gate
        self.interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep_once(self) -> int:
        """Run one sweep and return how many approvals were expired."""
        expired = await self.gate.expire_overdue()
        if expired:
            logger.info(f"Expired {len(expired)} overdue approval(s)")
        return len(expired)

    async def start(self) -> None:
        """Start the sweep loop on the running event loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Cancel the sweep loop and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def _loop(self) -> None:
        while True:
            try:
                await self.sweep_once()
            except (RemedyError, DatabaseError) as e:
                # Keep ticking; the next sweep retries whatever was missed
                logger.warning(f"Approval expiry sweep failed: {e}")
            await asyncio.sleep(self.interval)
