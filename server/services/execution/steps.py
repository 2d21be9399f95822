"""Durable step handles.

A step handle wraps every externally observable effect of a node:

- ``run(name, fn)`` executes ``fn`` at most once per run, memoized by name
- ``sleep(name, seconds)`` suspends the run, replay-safe
- ``generate(name, fn)`` is ``run`` for long generation calls

``LocalStepHandle`` keeps results in a StepJournal. Re-running a workflow with
the journal of an interrupted run skips every completed step and sleeps only
what remains of an interrupted sleep. The Temporal-backed handle lives in
services/temporal/steps.py and follows the same protocol.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from core.logging import get_logger

logger = get_logger(__name__)

StepFn = Callable[[], Awaitable[Any]]


class StepHandle(Protocol):
    async def run(self, name: str, fn: StepFn) -> Any: ...

    async def sleep(self, name: str, seconds: float) -> None: ...

    async def generate(self, name: str, fn: StepFn) -> Any: ...

    def scoped(self, prefix: str) -> "StepHandle": ...


@dataclass
class StepJournal:
    """Completed step results and pending sleep deadlines for one run."""
    results: Dict[str, Any] = field(default_factory=dict)
    wake_at: Dict[str, str] = field(default_factory=dict)

    def has(self, name: str) -> bool:
        return name in self.results

    def record(self, name: str, value: Any) -> None:
        self.results[name] = value

    def to_dict(self) -> Dict[str, Any]:
        return {"results": dict(self.results), "wake_at": dict(self.wake_at)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "StepJournal":
        data = data or {}
        return cls(results=dict(data.get("results") or {}), wake_at=dict(data.get("wake_at") or {}))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LocalStepHandle:
    """In-process step handle backed by a StepJournal."""

    def __init__(self, journal: Optional[StepJournal] = None, prefix: str = "",
                 clock: Callable[[], datetime] = _utcnow,
                 sleeper: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.journal = journal if journal is not None else StepJournal()
        self.prefix = prefix
        self._clock = clock
        self._sleeper = sleeper

    def _key(self, name: str) -> str:
        return f"{self.prefix}{name}"

    def scoped(self, prefix: str) -> "LocalStepHandle":
        return LocalStepHandle(self.journal, self.prefix + prefix, self._clock, self._sleeper)

    async def run(self, name: str, fn: StepFn) -> Any:
        key = self._key(name)
        if self.journal.has(key):
            logger.debug("Step replayed from journal", step=key)
            return self.journal.results[key]

        result = await fn()
        self.journal.record(key, result)
        logger.debug("Step completed", step=key)
        return result

    async def generate(self, name: str, fn: StepFn) -> Any:
        return await self.run(name, fn)

    def wake_at_iso(self, seconds: float) -> str:
        wake_at = self._clock().timestamp() + max(0.0, float(seconds))
        return datetime.fromtimestamp(wake_at, timezone.utc).isoformat()

    async def sleep(self, name: str, seconds: float) -> None:
        key = self._key(name)
        if self.journal.has(key):
            return

        wake_iso = self.journal.wake_at.get(key)
        if wake_iso is None:
            wake_iso = self.wake_at_iso(seconds)
            self.journal.wake_at[key] = wake_iso
        wake_at = datetime.fromisoformat(wake_iso).timestamp()

        remaining = wake_at - self._clock().timestamp()
        if remaining > 0:
            logger.info("Sleeping", step=key, seconds=round(remaining, 3))
            await self._sleeper(remaining)

        self.journal.wake_at.pop(key, None)
        self.journal.record(key, None)
