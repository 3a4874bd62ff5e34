import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from conveyor.config import ConcurrencyPolicy
from conveyor.context import CancelToken
from conveyor.exceptions import RunAlreadyActive

logger = logging.getLogger(__name__)


class RunRegistry:
    """Tracks in-flight runs and keeps runs of one pipeline from overlapping."""

    _locks: dict[str, asyncio.Lock]
    _active: dict[str, CancelToken]

    def __init__(self):
        self._locks = {}
        self._active = {}

    def is_active(self, pipeline: str) -> bool:
        lock = self._locks.get(pipeline)
        return lock is not None and lock.locked()

    @property
    def active_runs(self) -> list[str]:
        return list(self._active)

    def cancel(self, run_id: str, reason: str | None = None) -> bool:
        token = self._active.get(run_id)
        if token is None:
            return False
        logger.info(f'Cancelling run {run_id}')
        token.cancel(reason)
        return True

    @asynccontextmanager
    async def claim(
        self,
        pipeline: str,
        run_id: str,
        policy: ConcurrencyPolicy,
        exclusive: bool = True,
    ) -> AsyncIterator[CancelToken]:
        """Yields the cancel token of the new run once it may start.

        With ``exclusive`` the run waits for (``queue``) or refuses to start
        next to (``reject``) an active run of the same pipeline.
        """
        token = CancelToken()
        if not exclusive:
            self._active[run_id] = token
            try:
                yield token
            finally:
                del self._active[run_id]
            return

        lock = self._locks.setdefault(pipeline, asyncio.Lock())
        if lock.locked() and policy == ConcurrencyPolicy.reject:
            raise RunAlreadyActive(f'Pipeline {pipeline!r} already has an active run')
        # Queued runs are cancellable too
        self._active[run_id] = token
        try:
            if lock.locked():
                logger.info(f'Run {run_id} queued behind the active {pipeline} run')
            async with lock:
                yield token
        finally:
            del self._active[run_id]
