"""
Global processing state shared by the scheduler and every running job.

Workers park on a condition while paused instead of spinning; resume and
stop both wake them. Each start bumps `generation` so a worker left over
from an earlier run sees itself as stopped even after a quick restart.
"""
import asyncio
import logging
from enum import Enum
from typing import Set

logger = logging.getLogger(__name__)


class ProcessingState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"


class ProcessingControl:
    def __init__(self):
        self.state = ProcessingState.STOPPED
        self.generation = 0
        self.paused_ids: Set[int] = set()
        self._changed = asyncio.Condition()
        self._stop_event = asyncio.Event()

    def is_stopped(self, generation: int) -> bool:
        return self.state == ProcessingState.STOPPED or generation != self.generation

    def is_paused_for(self, job_id: int) -> bool:
        return self.state == ProcessingState.PAUSED or job_id in self.paused_ids

    async def _notify(self):
        async with self._changed:
            self._changed.notify_all()

    async def start(self) -> int:
        self._stop_event.set()  # wake sleepers of the previous run
        self._stop_event = asyncio.Event()
        self.generation += 1
        self.paused_ids.clear()
        self.state = ProcessingState.RUNNING
        await self._notify()
        return self.generation

    async def pause(self, job_ids=()):
        self.paused_ids.update(job_ids)
        self.state = ProcessingState.PAUSED
        await self._notify()

    async def resume(self):
        self.paused_ids.clear()
        self.state = ProcessingState.RUNNING
        await self._notify()

    async def stop(self):
        self.paused_ids.clear()
        self.state = ProcessingState.STOPPED
        self._stop_event.set()
        await self._notify()

    async def wait_while_paused(self, job_id: int, generation: int):
        async with self._changed:
            await self._changed.wait_for(
                lambda: self.is_stopped(generation) or not self.is_paused_for(job_id)
            )

    async def sleep(self, seconds: float, generation: int):
        """Sleep up to `seconds`, returning early if this run is stopped."""
        if self.is_stopped(generation):
            return
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
