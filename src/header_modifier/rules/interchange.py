"""JSON export/import of configurations.

Import is lenient: malformed fields degrade to defaults one by one. Only a
document that is not a JSON object fails the whole import.
"""

import json
import math
from dataclasses import dataclass, field

from .types import DEFAULT_MATCH_MODE, Configuration, MatchMode, StoredConfig
from .validator import MAX_EXPIRY_MINUTES, InvalidEnabledFlagError, validate

EXPORT_VERSION = 1
EXPORT_FILENAME = "http-header-modifier-config.json"


def _blank_rows() -> list[dict]:
    return [{"key": "", "value": ""}]


class InvalidImportError(ValueError):
    """The import document could not be parsed as a JSON object."""


@dataclass
class ConfigDraft:
    """Unvalidated form state: what the user is editing before a save."""

    headers: list[dict] = field(default_factory=_blank_rows)
    domain_text: str = ""
    match_mode: str = DEFAULT_MATCH_MODE.value
    expiry_minutes: str = "0"
    enabled: bool = True

    def validate(self, now_ms: int | None = None) -> Configuration:
        return validate(
            self.headers,
            self.domain_text,
            self.match_mode,
            self.expiry_minutes,
            enabled=self.enabled,
            now_ms=now_ms,
        )

    @classmethod
    def from_dict(cls, data: dict) -> "ConfigDraft":
        """Build a draft from a form mapping (CLI draft files).

        Accepts `domains` as a list or a string, `minutes` or
        `temporaryMinutes` for the expiry field. A present `enabled` must be
        a boolean; anything else raises InvalidEnabledFlagError.
        """
        enabled = data.get("enabled", True)
        if not isinstance(enabled, bool):
            raise InvalidEnabledFlagError(
                f"enabled must be true or false, got {enabled!r}", subject=repr(enabled)
            )
        domains = data.get("domains", "")
        if isinstance(domains, list):
            domains = "\n".join(str(d) for d in domains)
        minutes = data.get("minutes", data.get("temporaryMinutes", 0))
        headers = data.get("headers")
        if isinstance(headers, dict):
            headers = [{"key": k, "value": v} for k, v in headers.items()]
        return cls(
            headers=list(headers) if headers else _blank_rows(),
            domain_text=domains or "",
            match_mode=data.get("domainMatchMode", data.get("mode", DEFAULT_MATCH_MODE.value)),
            expiry_minutes="" if minutes is None else str(minutes),
            enabled=enabled,
        )

    @classmethod
    def from_stored(cls, stored: StoredConfig, now_ms: int) -> "ConfigDraft":
        """Form state for a persisted record; remaining expiry rounded up."""
        minutes = 0
        if stored.temporary_until is not None and stored.temporary_until > now_ms:
            remaining = math.ceil((stored.temporary_until - now_ms) / 60_000)
            minutes = max(1, remaining)
        return cls(
            headers=[entry.to_dict() for entry in stored.headers] or _blank_rows(),
            domain_text="\n".join(stored.domains),
            match_mode=stored.match_mode.value,
            expiry_minutes=str(minutes),
            enabled=stored.enabled,
        )


def export_payload(config: Configuration) -> dict:
    return {
        "version": EXPORT_VERSION,
        "enabled": config.enabled,
        "headers": [entry.to_dict() for entry in config.headers],
        "domains": config.sorted_domains,
        "domainMatchMode": config.match_mode.value,
        "temporaryMinutes": config.expiry_minutes,
    }


def export_config(config: Configuration) -> str:
    """Serialize a validated configuration to the interchange JSON document."""
    return json.dumps(export_payload(config), indent=2)


def _import_headers(value) -> list[dict]:
    if not isinstance(value, list):
        return _blank_rows()
    headers = [
        {"key": item["key"], "value": item["value"]}
        for item in value
        if isinstance(item, dict)
        and isinstance(item.get("key"), str)
        and isinstance(item.get("value"), str)
    ]
    return headers or _blank_rows()


def _import_minutes(value) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if not math.isfinite(value):
        return 0
    # JavaScript-style Math.round: halves round up
    return max(0, min(MAX_EXPIRY_MINUTES, math.floor(value + 0.5)))


def import_config(text: str) -> ConfigDraft:
    """Parse an interchange document into a draft, degrading field by field.

    Raises:
        InvalidImportError: the text is not JSON or not a JSON object.
    """
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError) as e:
        raise InvalidImportError(f"Failed to import config JSON: {e}") from e
    if not isinstance(data, dict):
        raise InvalidImportError("Failed to import config JSON: expected an object")

    domains = data.get("domains")
    domain_list = (
        [item for item in domains if isinstance(item, str)]
        if isinstance(domains, list)
        else []
    )
    enabled = data.get("enabled")

    return ConfigDraft(
        headers=_import_headers(data.get("headers")),
        domain_text="\n".join(domain_list),
        match_mode=MatchMode.parse(
            data.get("domainMatchMode"), default=DEFAULT_MATCH_MODE
        ).value,
        expiry_minutes=str(_import_minutes(data.get("temporaryMinutes"))),
        enabled=enabled if isinstance(enabled, bool) else True,
    )
