"""External service contracts and reference implementations.

The engine talks to three services: a key/value store, the declarative rule
table, and a one-shot timer. Each is described by a Protocol so the engine
can be driven by the real runtime or by the implementations below (memory
for tests, JSON files for the CLI).
"""

import asyncio
import json
import logging
import os
import tempfile
from collections.abc import Awaitable, Callable, Iterable
from pathlib import Path
from typing import Any, Protocol

from ..utils import now_ms
from .compiler import rule_from_dict, rule_to_dict
from .matcher import headers_for_url
from .types import FilterRule

logger = logging.getLogger(__name__)


class ServiceError(RuntimeError):
    """A persistence, rule-table or timer call failed."""


# =============================================================================
# Contracts
# =============================================================================


class KeyValueStore(Protocol):
    async def get(self, keys: Iterable[str]) -> dict[str, Any]: ...

    async def set(self, values: dict[str, Any]) -> None: ...


class RuleTable(Protocol):
    async def list_installed_rules(self) -> list[FilterRule]: ...

    async def apply_delta(
        self, remove_ids: set[int], add_rules: list[FilterRule]
    ) -> None: ...


class TimerService(Protocol):
    async def schedule_once(self, name: str, at_ms: int) -> None: ...

    async def cancel(self, name: str) -> None: ...


TimerCallback = Callable[[str], Awaitable[None]]


# =============================================================================
# Key/value stores
# =============================================================================


class MemoryStore:
    """In-process key/value store."""

    def __init__(self, initial: dict[str, Any] | None = None):
        self._data: dict[str, Any] = json.loads(json.dumps(initial or {}))

    async def get(self, keys: Iterable[str]) -> dict[str, Any]:
        return {k: json.loads(json.dumps(self._data[k])) for k in keys if k in self._data}

    async def set(self, values: dict[str, Any]) -> None:
        # Round-trip through JSON so stored values behave like persisted ones
        self._data.update(json.loads(json.dumps(values)))

    def snapshot(self) -> dict[str, Any]:
        return json.loads(json.dumps(self._data))


def _write_json_atomic(path: Path, data) -> None:
    """Write JSON to a temp file next to path, then rename over it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def _read_json(path: Path, default):
    if not path.exists():
        return default
    with open(path) as f:
        return json.load(f)


class JsonFileStore:
    """Key/value store backed by a single JSON object on disk."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _load(self) -> dict:
        try:
            data = _read_json(self.path, {})
        except (OSError, json.JSONDecodeError) as e:
            raise ServiceError(f"Failed to read storage {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise ServiceError(f"Failed to read storage {self.path}: not a JSON object")
        return data

    async def get(self, keys: Iterable[str]) -> dict[str, Any]:
        data = self._load()
        return {k: data[k] for k in keys if k in data}

    async def set(self, values: dict[str, Any]) -> None:
        data = self._load()
        data.update(values)
        try:
            _write_json_atomic(self.path, data)
        except (OSError, TypeError) as e:
            raise ServiceError(f"Failed to persist storage {self.path}: {e}") from e


# =============================================================================
# Rule tables
# =============================================================================


def _apply_to_table(
    current: dict[int, FilterRule], remove_ids: set[int], add_rules: list[FilterRule]
) -> dict[int, FilterRule]:
    """Compute the table after a delta, or raise without side effects."""
    updated = {rule_id: rule for rule_id, rule in current.items() if rule_id not in remove_ids}
    for rule in add_rules:
        if rule.id in updated:
            raise ServiceError(f"Failed to update rules: rule id {rule.id} already installed")
        updated[rule.id] = rule
    return updated


class MemoryRuleTable:
    """In-process declarative rule table with atomic delta application."""

    def __init__(self, rules: Iterable[FilterRule] = ()):
        self._rules: dict[int, FilterRule] = {rule.id: rule for rule in rules}
        self.apply_count = 0

    async def list_installed_rules(self) -> list[FilterRule]:
        return [self._rules[rule_id] for rule_id in sorted(self._rules)]

    async def apply_delta(self, remove_ids: set[int], add_rules: list[FilterRule]) -> None:
        self._rules = _apply_to_table(self._rules, set(remove_ids), list(add_rules))
        self.apply_count += 1

    def headers_for(self, url: str) -> dict[str, str]:
        return headers_for_url(list(self._rules.values()), url)


class JsonFileRuleTable:
    """Rule table persisted as a JSON list of declarative rule dicts."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def _load(self) -> dict[int, FilterRule]:
        try:
            data = _read_json(self.path, [])
        except (OSError, json.JSONDecodeError) as e:
            raise ServiceError(f"Failed to read dynamic rules {self.path}: {e}") from e
        if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
            raise ServiceError(
                f"Failed to read dynamic rules {self.path}: not a JSON array of objects"
            )
        try:
            rules = [rule_from_dict(item) for item in data]
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ServiceError(f"Failed to read dynamic rules {self.path}: {e}") from e
        return {rule.id: rule for rule in rules}

    async def list_installed_rules(self) -> list[FilterRule]:
        rules = self._load()
        return [rules[rule_id] for rule_id in sorted(rules)]

    async def apply_delta(self, remove_ids: set[int], add_rules: list[FilterRule]) -> None:
        updated = _apply_to_table(self._load(), set(remove_ids), list(add_rules))
        try:
            _write_json_atomic(
                self.path, [rule_to_dict(updated[rule_id]) for rule_id in sorted(updated)]
            )
        except OSError as e:
            raise ServiceError(f"Failed to update dynamic rules {self.path}: {e}") from e

    def headers_for(self, url: str) -> dict[str, str]:
        return headers_for_url(list(self._load().values()), url)


# =============================================================================
# Timer
# =============================================================================


class AsyncioTimerService:
    """One-shot named timers on the running asyncio loop.

    The delay is computed from the absolute instant when the timer is armed.
    Timers do not survive the process; callers re-arm from persisted state.
    Scheduling a name that is already armed replaces the earlier timer.
    """

    def __init__(
        self,
        callback: TimerCallback | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self._callback = callback
        self._clock = clock
        self._handles: dict[str, asyncio.TimerHandle] = {}
        self._deadlines: dict[str, int] = {}
        self._tasks: set[asyncio.Task] = set()

    def set_callback(self, callback: TimerCallback) -> None:
        self._callback = callback

    async def schedule_once(self, name: str, at_ms: int) -> None:
        await self.cancel(name)
        loop = asyncio.get_running_loop()
        delay = max(0.0, (at_ms - self._clock()) / 1000)
        self._handles[name] = loop.call_later(delay, self._fire, name)
        self._deadlines[name] = at_ms
        logger.debug(f"Timer {name} armed for {at_ms} (in {delay:.1f}s)")

    async def cancel(self, name: str) -> None:
        handle = self._handles.pop(name, None)
        self._deadlines.pop(name, None)
        if handle is not None:
            handle.cancel()
            logger.debug(f"Timer {name} cancelled")

    async def cancel_all(self) -> None:
        for name in list(self._handles):
            await self.cancel(name)

    def pending(self) -> dict[str, int]:
        """Armed timers: name -> instant (ms)."""
        return dict(self._deadlines)

    def _fire(self, name: str) -> None:
        self._handles.pop(name, None)
        self._deadlines.pop(name, None)
        if self._callback is None:
            logger.warning(f"Timer {name} fired with no callback registered")
            return
        task = asyncio.ensure_future(self._callback(name))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Timer callback failed: {task.exception()}")

    async def drain(self) -> None:
        """Wait for callbacks that are already running."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
