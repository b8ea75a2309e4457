"""Expiry scheduler - disables the configuration at a persisted absolute instant.

States:
    DISARMED          no expiry pending, no timer
    ARMED(fire_at)    expiry persisted and one-shot timer scheduled
    FIRED             expiry executed (transient; ends in DISARMED)

Timers do not survive process restarts, so resync() must be called on every
process start: it recomputes the schedule from the persisted absolute
instant, firing immediately when that instant has already passed.
"""

import logging
from collections.abc import Callable
from enum import Enum

from .. import logging as hm_logging
from ..utils import now_ms
from .gateway import PersistenceGateway
from .reconciler import RuleReconciler
from .services import TimerService
from .types import DISARMED, Configuration, ExpiryState

logger = logging.getLogger(__name__)

ALARM_NAME = "header-modifier-expiry"


class SchedulerState(Enum):
    DISARMED = "disarmed"
    ARMED = "armed"
    FIRED = "fired"


class ExpiryScheduler:
    """State machine arming, re-arming and firing the expiry timer.

    The caller is responsible for holding the gateway lock around each call.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        reconciler: RuleReconciler,
        timer: TimerService,
        clock: Callable[[], int] = now_ms,
    ):
        self.gateway = gateway
        self.reconciler = reconciler
        self.timer = timer
        self.clock = clock
        self.state = SchedulerState.DISARMED
        self.fire_at: int | None = None

    async def sync(self, config: Configuration) -> SchedulerState:
        """Bring the schedule in line with a freshly saved configuration."""
        if (
            config.enabled
            and config.expiry_instant is not None
            and config.expiry_instant > self.clock()
        ):
            await self.arm(config.expiry_instant)
        else:
            await self.disarm()
        return self.state

    async def arm(self, fire_at: int) -> None:
        await self.gateway.save_expiry_state(ExpiryState(armed=True, fire_at=fire_at))
        await self.timer.schedule_once(ALARM_NAME, fire_at)
        self._transition(SchedulerState.ARMED, fire_at)

    async def disarm(self) -> None:
        await self.timer.cancel(ALARM_NAME)
        await self.gateway.save_expiry_state(DISARMED)
        if self.state is not SchedulerState.DISARMED:
            self._transition(SchedulerState.DISARMED, None)

    async def fire(self) -> None:
        """Expire now: disable, remove every rule, clear the timer."""
        logger.info("Temporary mode expired, disabling header modifications")
        await self.gateway.disable_after_expiry()
        await self.reconciler.reconcile([])
        await self.timer.cancel(ALARM_NAME)
        self._transition(SchedulerState.FIRED, None)
        self._transition(SchedulerState.DISARMED, None)

    async def on_timer(self, name: str) -> bool:
        """Timer callback. Returns True if the expiry fired."""
        if name != ALARM_NAME:
            logger.debug(f"Ignoring unknown timer {name}")
            return False
        await self.fire()
        return True

    async def resync(self) -> SchedulerState:
        """Re-arm or fire from persisted state (call on every process start)."""
        state = await self.gateway.load_expiry_state()
        if not state.armed:
            await self.timer.cancel(ALARM_NAME)
            self.state, self.fire_at = SchedulerState.DISARMED, None
            return self.state

        if state.is_due(self.clock()):
            logger.info(f"Persisted expiry {state.fire_at} already passed, firing now")
            await self.fire()
        else:
            await self.timer.schedule_once(ALARM_NAME, state.fire_at)
            self._transition(SchedulerState.ARMED, state.fire_at)
        return self.state

    def _transition(self, state: SchedulerState, fire_at: int | None) -> None:
        logger.info(f"Expiry {self.state.value} -> {state.value}")
        hm_logging.log_event(
            event="expiry",
            previous=self.state.value,
            state=state.value,
            fire_at=fire_at,
        )
        self.state = state
        self.fire_at = fire_at
