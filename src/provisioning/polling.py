"""Polling epochs and the swappable dashboard provisioner slot.

A PollingContext is the cancellation scope of one polling epoch. The
DashboardSlot holds the installed dashboard provisioner together with the
context of its current epoch; both change only while the slot lock is held.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .dashboards import DashboardProvisioner

logger = logging.getLogger(__name__)


class PollingContext:
    """Cancellation scope for one polling epoch.

    Cancelling is idempotent. Cancelling a polling context never affects the
    process-wide shutdown signal.
    """

    def __init__(self, epoch: int = 0) -> None:
        self.epoch = epoch
        self._done = asyncio.Event()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def cancel(self) -> None:
        self._done.set()

    async def wait(self) -> None:
        await self._done.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep for ``seconds`` unless cancelled first.

        Returns:
            True if the context was cancelled, False if the time elapsed.
        """
        try:
            await asyncio.wait_for(self._done.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True


class DashboardSlot:
    """The single installed dashboard provisioner and its polling context.

    Mutators require the lock to be held by the caller. ``current`` is
    lock-free and may return a provisioner that is being superseded.
    """

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self._provisioner: DashboardProvisioner | None = None
        self._polling: PollingContext | None = None
        self._epochs = 0

    def current(self) -> DashboardProvisioner | None:
        return self._provisioner

    def start_polling(self) -> PollingContext:
        self._require_lock()
        self._epochs += 1
        polling = PollingContext(self._epochs)
        self._polling = polling
        return polling

    def cancel_polling(self) -> None:
        self._require_lock()
        if self._polling is not None:
            logger.debug("Stop polling for dashboard changes", extra={"epoch": self._polling.epoch})
            self._polling.cancel()
        self._polling = None

    def install(self, provisioner: DashboardProvisioner) -> None:
        self._require_lock()
        self._provisioner = provisioner

    def _require_lock(self) -> None:
        if not self.lock.locked():
            raise RuntimeError("dashboard slot modified without holding its lock")
