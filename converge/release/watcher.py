"""
Release Watcher.

Runs release triggers on an interval, and on demand for registry push
events.
"""

from __future__ import annotations

import asyncio
import logging

from .trigger import ReleaseTrigger, TriggerResult

logger = logging.getLogger(__name__)


class ReleaseWatcher:
    """
    Periodic runner for a set of release triggers.

    Usage:
        watcher = ReleaseWatcher([trigger], interval=60.0)
        watcher.start()
        ...
        await watcher.stop()
    """

    def __init__(self, triggers: list[ReleaseTrigger] | None = None, interval: float = 60.0):
        self.triggers: list[ReleaseTrigger] = list(triggers or [])
        self.interval = interval
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    def add(self, trigger: ReleaseTrigger) -> None:
        self.triggers.append(trigger)

    def triggers_for(self, repository: str, tag: str) -> list[ReleaseTrigger]:
        return [t for t in self.triggers if t.matches(repository, tag)]

    async def run_once(self, triggers: list[ReleaseTrigger] | None = None) -> list[TriggerResult]:
        """Invoke triggers concurrently; each one handles its own resource."""
        selected = self.triggers if triggers is None else triggers
        return list(await asyncio.gather(*(t.invoke() for t in selected)))

    async def on_push(self, repository: str, tag: str) -> list[TriggerResult]:
        """Run the triggers watching `repository:tag`."""
        matching = self.triggers_for(repository, tag)
        if not matching:
            logger.debug(f"[release] No trigger watches {repository}:{tag}")
        return await self.run_once(matching)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name="release-watcher")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None

    async def _loop(self) -> None:
        logger.info(f"[release] Watching {len(self.triggers)} trigger(s) every {self.interval}s")
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("[release] Trigger pass failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
