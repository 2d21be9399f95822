"""Tests for durable step handles."""

from datetime import timedelta

from services.execution.steps import LocalStepHandle, StepJournal


class Counter:
    def __init__(self):
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        return {"call": self.calls}


async def test_run_is_memoized_by_name():
    step = LocalStepHandle()
    fn = Counter()

    assert await step.run("fetch", fn) == {"call": 1}
    assert await step.run("fetch", fn) == {"call": 1}
    assert await step.generate("other", fn) == {"call": 2}
    assert fn.calls == 2


async def test_scoped_handles_share_the_journal():
    step = LocalStepHandle()
    fn = Counter()

    await step.scoped("loop:0:").run("fetch", fn)
    await step.scoped("loop:1:").run("fetch", fn)

    assert set(step.journal.results) == {"loop:0:fetch", "loop:1:fetch"}
    assert fn.calls == 2


async def test_journal_survives_serialization(clock):
    slept = []

    async def sleeper(seconds):
        slept.append(seconds)

    first = LocalStepHandle(clock=clock, sleeper=sleeper)
    await first.run("a", Counter())
    first.journal.wake_at["wait"] = (clock.now + timedelta(seconds=10)).isoformat()

    restored = StepJournal.from_dict(first.journal.to_dict())
    resumed = LocalStepHandle(restored, clock=clock, sleeper=sleeper)
    fn = Counter()
    await resumed.run("a", fn)
    await resumed.sleep("wait", 60)

    assert fn.calls == 0
    assert slept == [10.0]
    assert restored.wake_at == {}
    assert restored.has("wait")


async def test_elapsed_sleep_does_not_wait(clock):
    slept = []

    async def sleeper(seconds):
        slept.append(seconds)

    journal = StepJournal(wake_at={"wait": (clock.now - timedelta(seconds=5)).isoformat()})
    await LocalStepHandle(journal, clock=clock, sleeper=sleeper).sleep("wait", 60)
    assert slept == []
