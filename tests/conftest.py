"""Shared test fixtures and fakes."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from header_modifier.rules import MemoryRuleTable, MemoryStore, ServiceError

# Fixed reference instant for deterministic expiry computations
NOW_MS = 1_700_000_000_000


class FakeClock:
    """Settable millisecond clock."""

    def __init__(self, now: int = NOW_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeTimer:
    """Timer service that records schedules instead of sleeping."""

    def __init__(self):
        self.scheduled: dict[str, int] = {}
        self.schedule_calls = 0
        self.cancel_calls = 0

    async def schedule_once(self, name: str, at_ms: int) -> None:
        self.schedule_calls += 1
        self.scheduled[name] = at_ms

    async def cancel(self, name: str) -> None:
        self.cancel_calls += 1
        self.scheduled.pop(name, None)


class FailingRuleTable(MemoryRuleTable):
    """Rule table whose apply call fails (optionally only after N successes)."""

    def __init__(self, rules=(), fail_after: int = 0):
        super().__init__(rules)
        self.fail_after = fail_after
        self.attempts = 0

    async def apply_delta(self, remove_ids, add_rules):
        self.attempts += 1
        if self.attempts > self.fail_after:
            raise ServiceError("Failed to update dynamic rules: quota exceeded")
        await super().apply_delta(remove_ids, add_rules)


class FailingStore(MemoryStore):
    """Store whose writes fail while `fail_writes` is set."""

    def __init__(self, initial=None):
        super().__init__(initial)
        self.fail_writes = False

    async def set(self, values):
        if self.fail_writes:
            raise ServiceError("Failed to persist storage: disk full")
        await super().set(values)
