"""Step handle for nodes executing inside a Temporal activity.

Completed step results are checkpointed through activity heartbeat details.
When Temporal retries the activity (worker crash, heartbeat timeout), the new
attempt restores the journal from ``activity.info().heartbeat_details`` and
skips every step that already completed. Long sleeps keep heartbeating the
journal while waiting.
"""

import asyncio
from typing import Any, Optional

from temporalio import activity

from services.execution.steps import LocalStepHandle, StepFn, StepJournal

HEARTBEAT_INTERVAL_SECONDS = 30.0


def restore_journal() -> StepJournal:
    """Journal checkpointed by a previous attempt of the current activity."""
    details = activity.info().heartbeat_details
    if details:
        return StepJournal.from_dict(details[0])
    return StepJournal()


class ActivityStepHandle(LocalStepHandle):
    """LocalStepHandle that checkpoints its journal via heartbeats."""

    def __init__(self, journal: Optional[StepJournal] = None, prefix: str = "", **kwargs):
        super().__init__(journal, prefix, **kwargs)
        if "sleeper" not in kwargs:
            self._sleeper = self._heartbeat_sleep

    def scoped(self, prefix: str) -> "ActivityStepHandle":
        return ActivityStepHandle(self.journal, self.prefix + prefix, clock=self._clock)

    def checkpoint(self) -> None:
        activity.heartbeat(self.journal.to_dict())

    async def _heartbeat_sleep(self, seconds: float) -> None:
        remaining = seconds
        while remaining > 0:
            chunk = min(remaining, HEARTBEAT_INTERVAL_SECONDS)
            await asyncio.sleep(chunk)
            remaining -= chunk
            self.checkpoint()

    async def run(self, name: str, fn: StepFn) -> Any:
        result = await super().run(name, fn)
        self.checkpoint()
        return result

    async def sleep(self, name: str, seconds: float) -> None:
        key = self._key(name)
        if not self.journal.has(key) and key not in self.journal.wake_at:
            # Persist the wake-up instant first so a retry only waits the rest
            self.journal.wake_at[key] = self.wake_at_iso(seconds)
            self.checkpoint()
        await super().sleep(name, seconds)
        self.checkpoint()
