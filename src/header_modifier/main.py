"""Long-running process: resynchronize on start, then wait for the expiry timer.

The process may be stopped and restarted at any time; on every start the
rules are healed from persisted state and the expiry timer is re-armed from
the persisted absolute instant (or fired at once if it already passed).
"""

import asyncio
import os
import signal
from pathlib import Path

from . import logging as hm_logging
from .rules import (
    AsyncioTimerService,
    HeaderModifier,
    JsonFileRuleTable,
    JsonFileStore,
    SchedulerState,
)

# Configuration from environment
STATE_DIR = os.environ.get("HEADER_MODIFIER_STATE_DIR", "/tmp/header-modifier")
STORAGE_FILE = "storage.json"
RULES_FILE = "rules.json"


def build_modifier(state_dir: str | Path | None = None) -> tuple[HeaderModifier, AsyncioTimerService]:
    """Create a HeaderModifier backed by JSON files in the state directory."""
    state_path = Path(state_dir or STATE_DIR)
    timer = AsyncioTimerService()
    modifier = HeaderModifier(
        store=JsonFileStore(state_path / STORAGE_FILE),
        rule_table=JsonFileRuleTable(state_path / RULES_FILE),
        timer=timer,
    )
    timer.set_callback(modifier.on_timer)
    return modifier, timer


async def run(state_dir: str | Path | None = None, stop_when_idle: bool = True) -> SchedulerState:
    """Process-start event followed by the event loop.

    Returns when a stop signal arrives, or (with stop_when_idle) as soon as
    nothing is armed any more.
    """
    logger = hm_logging.logger
    logger.info("=" * 50)
    logger.info("Header modifier starting")
    logger.info(f"PID: {os.getpid()}")
    logger.info("=" * 50)

    modifier, timer = build_modifier(state_dir)
    stop_event = asyncio.Event()

    async def on_timer(name: str) -> None:
        await modifier.on_timer(name)
        if stop_when_idle and modifier.scheduler.state is SchedulerState.DISARMED:
            stop_event.set()

    timer.set_callback(on_timer)

    loop = asyncio.get_running_loop()

    def signal_handler(signum):
        logger.info(f"Received signal {signal.Signals(signum).name} ({signum})")
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGHUP):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        state = await modifier.start()
        logger.info(f"Expiry state after start: {state.value}")
        if stop_when_idle and state is SchedulerState.DISARMED:
            return state
        await stop_event.wait()
        await timer.drain()
        return modifier.scheduler.state
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT, signal.SIGHUP):
            loop.remove_signal_handler(sig)
        await timer.cancel_all()
        logger.info("Shutdown complete")
        logger.info("=" * 50)
