"""Persistence gateway - the only component that reads or writes durable state.

There is exactly one configuration record. Access to it is serialized by a
single asyncio lock: every event handler (save, start, timer fire) holds the
lock for its whole duration, so reconciliations never interleave.
"""

import asyncio
import logging
import math

from .services import KeyValueStore
from .types import (
    DEFAULT_MATCH_MODE,
    Configuration,
    ExpiryState,
    HeaderEntry,
    MatchMode,
    StoredConfig,
)

logger = logging.getLogger(__name__)

# Storage keys
KEY_HEADERS = "headers"
KEY_ENABLED = "enabled"
KEY_DOMAINS = "domains"
KEY_MATCH_MODE = "domainMatchMode"
KEY_TEMPORARY_UNTIL = "temporaryUntil"

ALL_KEYS = [KEY_HEADERS, KEY_ENABLED, KEY_DOMAINS, KEY_MATCH_MODE, KEY_TEMPORARY_UNTIL]


def _normalize_headers(value) -> list[HeaderEntry]:
    if not isinstance(value, list):
        return []
    return [
        HeaderEntry(key=item["key"], value=item["value"])
        for item in value
        if isinstance(item, dict)
        and isinstance(item.get("key"), str)
        and isinstance(item.get("value"), str)
    ]


def _normalize_instant(value) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return int(value)


def stored_config_from_dict(data: dict) -> StoredConfig:
    """Normalize raw persisted values field by field."""
    enabled = data.get(KEY_ENABLED)
    domains = data.get(KEY_DOMAINS)
    return StoredConfig(
        headers=_normalize_headers(data.get(KEY_HEADERS)),
        enabled=enabled if isinstance(enabled, bool) else True,
        domains=[d for d in domains if isinstance(d, str)] if isinstance(domains, list) else [],
        match_mode=MatchMode.parse(data.get(KEY_MATCH_MODE), default=DEFAULT_MATCH_MODE),
        temporary_until=_normalize_instant(data.get(KEY_TEMPORARY_UNTIL)),
    )


def stored_config_to_dict(stored: StoredConfig) -> dict:
    return {
        KEY_HEADERS: [entry.to_dict() for entry in stored.headers],
        KEY_ENABLED: stored.enabled,
        KEY_DOMAINS: list(stored.domains),
        KEY_MATCH_MODE: stored.match_mode.value,
        KEY_TEMPORARY_UNTIL: stored.temporary_until,
    }


def config_to_dict(config: Configuration) -> dict:
    """Persisted form of a validated configuration."""
    return {
        KEY_HEADERS: [entry.to_dict() for entry in config.headers],
        KEY_ENABLED: config.enabled,
        KEY_DOMAINS: config.sorted_domains,
        KEY_MATCH_MODE: config.match_mode.value,
        KEY_TEMPORARY_UNTIL: config.expiry_instant,
    }


class PersistenceGateway:
    """Mediates all access to the persisted configuration record."""

    def __init__(self, store: KeyValueStore):
        self.store = store
        self.lock = asyncio.Lock()

    async def load_config(self) -> StoredConfig:
        return stored_config_from_dict(await self.store.get(ALL_KEYS))

    async def save_config(self, config: Configuration) -> None:
        await self.store.set(config_to_dict(config))
        logger.debug(
            f"Configuration persisted: enabled={config.enabled} "
            f"headers={len(config.headers)} domains={len(config.domains)}"
        )

    async def restore_config(self, stored: StoredConfig) -> None:
        """Write back a previously loaded record unchanged."""
        await self.store.set(stored_config_to_dict(stored))

    async def load_expiry_state(self) -> ExpiryState:
        return (await self.load_config()).expiry_state

    async def save_expiry_state(self, state: ExpiryState) -> None:
        await self.store.set({KEY_TEMPORARY_UNTIL: state.fire_at if state.armed else None})

    async def disable_after_expiry(self) -> None:
        """Persist the post-expiry state: disabled with no expiry."""
        await self.store.set({KEY_ENABLED: False, KEY_TEMPORARY_UNTIL: None})

    async def initialize(self) -> StoredConfig:
        """Normalize whatever is in storage and write the normalized record back."""
        raw = await self.store.get(ALL_KEYS)
        stored = stored_config_from_dict(raw)
        normalized = stored_config_to_dict(stored)
        if raw != normalized:
            logger.info("Normalizing persisted configuration")
            await self.store.set(normalized)
        return stored
