"""Header modifier service - handles the three external events.

Events:
    save      user submitted the form
    start     the process (re)started
    timer     a one-shot timer fired

Each handler holds the gateway lock for its full duration, so two saves (or
a save and an expiry) never interleave; concurrent callers queue.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass

from ..utils import now_ms
from .compiler import compile_rules
from .expiry import ExpiryScheduler, SchedulerState
from .gateway import PersistenceGateway
from .interchange import ConfigDraft, export_config
from .reconciler import RuleDelta, RuleReconciler
from .services import KeyValueStore, RuleTable, ServiceError, TimerService
from .types import Configuration, FilterRule, StoredConfig
from .validator import ValidationError, validate

logger = logging.getLogger(__name__)


@dataclass
class SaveResult:
    """Outcome of a successful save."""

    config: Configuration
    delta: RuleDelta
    expiry: SchedulerState

    @property
    def message(self) -> str:
        if self.expiry is SchedulerState.ARMED:
            return (
                "Changes applied. Auto-disable in "
                f"{self.config.expiry_minutes} minute(s)."
            )
        return "Changes applied successfully."


@dataclass
class Status:
    """Snapshot of persisted and installed state."""

    stored: StoredConfig
    installed: list[FilterRule]
    expiry: SchedulerState
    fire_at: int | None


class HeaderModifier:
    """Wires validator, compiler, reconciler, scheduler and gateway together.

    Example:
        modifier = HeaderModifier(JsonFileStore(p), JsonFileRuleTable(r), timer)
        timer.set_callback(modifier.on_timer)
        await modifier.start()
        result = await modifier.save(ConfigDraft(headers=[...]))
    """

    def __init__(
        self,
        store: KeyValueStore,
        rule_table: RuleTable,
        timer: TimerService,
        clock: Callable[[], int] = now_ms,
    ):
        self.clock = clock
        self.gateway = PersistenceGateway(store)
        self.rule_table = rule_table
        self.reconciler = RuleReconciler(rule_table)
        self.scheduler = ExpiryScheduler(self.gateway, self.reconciler, timer, clock)

    async def save(self, draft: ConfigDraft) -> SaveResult:
        """Validate and apply a form submission (all-or-nothing).

        Raises:
            ValidationError: nothing was persisted or applied.
            ServiceError: a store or rule-table call failed; the previously
                persisted configuration and its rules are left in place.
        """
        config = draft.validate(now_ms=self.clock())
        return await self.apply(config)

    async def apply(self, config: Configuration) -> SaveResult:
        """Apply an already validated configuration."""
        async with self.gateway.lock:
            previous = await self.gateway.load_config()
            delta = await self.reconciler.reconcile(compile_rules(config))
            try:
                await self.gateway.save_config(config)
            except ServiceError:
                if not delta.empty:
                    await self._restore_rules(previous)
                raise
            expiry = await self.scheduler.sync(config)
            logger.info(
                f"Saved configuration: enabled={config.enabled} "
                f"headers={len(config.headers)} domains={len(config.domains)} "
                f"mode={config.match_mode.value} expiry={config.expiry_instant}"
            )
            return SaveResult(config=config, delta=delta, expiry=expiry)

    async def _restore_rules(self, previous: StoredConfig) -> None:
        logger.warning("Persisting configuration failed, restoring previous rules")
        try:
            await self.reconciler.reconcile(compile_rules(previous.to_configuration()))
        except ServiceError as e:
            logger.error(f"Failed to restore previous rules: {e}")

    async def start(self) -> SchedulerState:
        """Process-start event: normalize storage, heal rules, resync expiry.

        Healing is skipped when the persisted expiry has already passed (the
        resync fires it and removes the rules) and when the persisted record
        no longer validates.
        """
        async with self.gateway.lock:
            stored = await self.gateway.initialize()
            now = self.clock()
            if stored.expiry_state.is_due(now):
                logger.debug("Persisted expiry already passed, skipping rule healing")
            else:
                await self._heal(stored, now)
            return await self.scheduler.resync()

    async def _heal(self, stored: StoredConfig, now: int) -> None:
        if not stored.to_configuration().installs_rules:
            await self.reconciler.reconcile([])
            return
        try:
            config = validate(
                [entry.to_dict() for entry in stored.headers],
                "\n".join(stored.domains),
                stored.match_mode,
                enabled=stored.enabled,
                now_ms=now,
            )
        except ValidationError as e:
            logger.warning(f"Persisted configuration is invalid, not healing rules: {e.message}")
            return
        await self.reconciler.reconcile(compile_rules(config))

    async def on_timer(self, name: str) -> None:
        """Timer-fire event."""
        async with self.gateway.lock:
            await self.scheduler.on_timer(name)

    async def status(self) -> Status:
        """Persisted view: reflects the schedule even if this process never armed it."""
        async with self.gateway.lock:
            stored = await self.gateway.load_config()
            state = stored.expiry_state
            return Status(
                stored=stored,
                installed=await self.rule_table.list_installed_rules(),
                expiry=SchedulerState.ARMED if state.armed else SchedulerState.DISARMED,
                fire_at=state.fire_at,
            )

    async def draft(self) -> ConfigDraft:
        """Form state for the persisted configuration."""
        stored = await self.gateway.load_config()
        return ConfigDraft.from_stored(stored, self.clock())

    async def export(self) -> str:
        """Export the persisted configuration (validated first)."""
        config = (await self.draft()).validate(now_ms=self.clock())
        return export_config(config)
