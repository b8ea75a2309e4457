"""Configuration and filter-rule types."""

from dataclasses import dataclass, field
from enum import Enum


class MatchMode(Enum):
    """How a configured domain is matched against request hosts."""

    EXACT_HOST = "exact"
    HOST_AND_SUBDOMAINS = "include_subdomains"
    SUBDOMAINS_ONLY = "subdomains_only"

    @classmethod
    def parse(cls, value: "MatchMode | str | None", default: "MatchMode | None" = None) -> "MatchMode":
        """Convert a stored/wire mode string to a MatchMode.

        Raises ValueError for unknown values unless a default is given.
        """
        if isinstance(value, MatchMode):
            return value
        for mode in cls:
            if mode.value == value:
                return mode
        if default is not None:
            return default
        raise ValueError(f"Unknown domain match mode: {value!r}")


DEFAULT_MATCH_MODE = MatchMode.HOST_AND_SUBDOMAINS


@dataclass(frozen=True)
class HeaderEntry:
    """A request header override (name and value, both already trimmed)."""

    key: str
    value: str

    def to_dict(self) -> dict:
        return {"key": self.key, "value": self.value}


@dataclass(frozen=True)
class Configuration:
    """Canonical, validated configuration.

    Built fresh by the validator on every save attempt and never mutated.
    expiry_instant is milliseconds since the epoch (None means no expiry);
    expiry_minutes is the validated minutes field it was computed from.
    """

    headers: tuple[HeaderEntry, ...]
    domains: frozenset[str]
    match_mode: MatchMode = DEFAULT_MATCH_MODE
    enabled: bool = True
    expiry_instant: int | None = None
    expiry_minutes: int = 0

    @property
    def sorted_domains(self) -> list[str]:
        return sorted(self.domains)

    @property
    def installs_rules(self) -> bool:
        """True when this configuration produces at least one rule."""
        return self.enabled and bool(self.headers)


# Every resource type the rule table knows about. Conditions are never narrowed.
RESOURCE_TYPES = (
    "main_frame",
    "sub_frame",
    "stylesheet",
    "script",
    "image",
    "font",
    "object",
    "xmlhttprequest",
    "ping",
    "csp_report",
    "media",
    "websocket",
    "webtransport",
    "webbundle",
    "other",
)


class HeaderOperation(Enum):
    SET = "set"


@dataclass(frozen=True)
class HeaderAction:
    """One request-header modification inside a rule."""

    header: str
    value: str
    operation: HeaderOperation = HeaderOperation.SET


class PatternScope(Enum):
    """What an anchored pattern condition is allowed to match."""

    EXACT_HOST = "exact_host"
    ANY_SUBDOMAIN = "any_subdomain"


@dataclass(frozen=True)
class GlobalCondition:
    """Matches every request."""

    resource_types: tuple[str, ...] = RESOURCE_TYPES


@dataclass(frozen=True)
class HostPrefixCondition:
    """Domain-anchored prefix filter (||host/): host plus any subdomain."""

    host: str
    resource_types: tuple[str, ...] = RESOURCE_TYPES

    @property
    def url_filter(self) -> str:
        return f"||{self.host}/"


@dataclass(frozen=True)
class AnchoredPatternCondition:
    """Regular-expression filter anchored at the start of the URL."""

    regex: str
    scope: PatternScope
    resource_types: tuple[str, ...] = RESOURCE_TYPES


UrlCondition = GlobalCondition | HostPrefixCondition | AnchoredPatternCondition


@dataclass(frozen=True)
class FilterRule:
    """A declarative header-modification rule as installed in the rule table."""

    id: int
    priority: int
    header_actions: tuple[HeaderAction, ...]
    condition: UrlCondition

    def __post_init__(self):
        if self.id < 1:
            raise ValueError(f"Rule id must be a positive integer, got {self.id}")


@dataclass(frozen=True)
class ExpiryState:
    """Persisted expiry schedule.

    armed implies fire_at is set. fire_at may already be in the past when
    observed (the process was not running), which means "fire immediately".
    """

    armed: bool = False
    fire_at: int | None = None

    def __post_init__(self):
        if self.armed and self.fire_at is None:
            raise ValueError("An armed expiry state requires fire_at")

    def is_due(self, now: int) -> bool:
        return self.armed and self.fire_at is not None and self.fire_at <= now


DISARMED = ExpiryState()


@dataclass
class StoredConfig:
    """Persisted configuration record, as read back from the key/value store.

    Unlike Configuration this is not validated: it holds whatever was
    persisted, normalized field by field to the expected types.
    """

    headers: list[HeaderEntry] = field(default_factory=list)
    enabled: bool = True
    domains: list[str] = field(default_factory=list)
    match_mode: MatchMode = DEFAULT_MATCH_MODE
    temporary_until: int | None = None

    def to_configuration(self) -> Configuration:
        """View the persisted record as a Configuration for rule compilation."""
        return Configuration(
            headers=tuple(self.headers),
            domains=frozenset(self.domains),
            match_mode=self.match_mode,
            enabled=self.enabled,
            expiry_instant=self.temporary_until,
        )

    @property
    def expiry_state(self) -> ExpiryState:
        if self.enabled and self.temporary_until is not None:
            return ExpiryState(armed=True, fire_at=self.temporary_until)
        return DISARMED
