"""Condition and rule compiler - turns a Configuration into filter rules.

Compilation is deterministic: the same Configuration always yields the same
rules, with ids assigned by position in sorted-domain order, so the
reconciler can detect "no change" by comparing serialized rules.
"""

import json
import re

from .types import (
    RESOURCE_TYPES,
    AnchoredPatternCondition,
    Configuration,
    FilterRule,
    GlobalCondition,
    HeaderAction,
    HeaderOperation,
    HostPrefixCondition,
    MatchMode,
    PatternScope,
    UrlCondition,
)

RULE_PRIORITY = 1
GLOBAL_RULE_ID = 1

# Characters with meaning in the rule table's regex dialect
_PATTERN_SPECIAL = re.compile(r"[.*+?^${}()|\[\]\\]")

_SUBDOMAIN_LABELS = r"(?:[^./]+\.)+"
_PATTERN_PREFIX = r"^https?:\/\/"
_PATTERN_SUFFIX = r"(?::\d+)?\/"


def escape_pattern(text: str) -> str:
    """Escape a literal so it can be embedded in a regex filter."""
    return _PATTERN_SPECIAL.sub(lambda m: "\\" + m.group(0), text)


def strip_wildcard_prefix(domain: str) -> str:
    """Drop a leading "*." - the wildcard only signals intent, not the host."""
    return domain[2:] if domain.startswith("*.") else domain


# =============================================================================
# Condition compiler
# =============================================================================


def compile_condition(domain: str, mode: MatchMode) -> UrlCondition:
    """Compile one validated domain pattern and match mode into a condition."""
    host = strip_wildcard_prefix(domain)

    if mode is MatchMode.HOST_AND_SUBDOMAINS:
        return HostPrefixCondition(host=host)

    escaped = escape_pattern(host)
    if mode is MatchMode.EXACT_HOST:
        return AnchoredPatternCondition(
            regex=f"{_PATTERN_PREFIX}{escaped}{_PATTERN_SUFFIX}",
            scope=PatternScope.EXACT_HOST,
        )
    if mode is MatchMode.SUBDOMAINS_ONLY:
        return AnchoredPatternCondition(
            regex=f"{_PATTERN_PREFIX}{_SUBDOMAIN_LABELS}{escaped}{_PATTERN_SUFFIX}",
            scope=PatternScope.ANY_SUBDOMAIN,
        )
    raise ValueError(f"Unsupported match mode: {mode!r}")


# =============================================================================
# Rule compiler
# =============================================================================


def header_actions(config: Configuration) -> tuple[HeaderAction, ...]:
    return tuple(
        HeaderAction(header=entry.key, value=entry.value, operation=HeaderOperation.SET)
        for entry in config.headers
    )


def compile_rules(config: Configuration) -> list[FilterRule]:
    """Compile the full desired rule set for a configuration.

    - disabled or no headers: no rules
    - no domains: one global rule with id 1
    - otherwise: one rule per domain in sorted order, ids 1..N
    """
    if not config.installs_rules:
        return []

    actions = header_actions(config)
    if not config.domains:
        return [
            FilterRule(
                id=GLOBAL_RULE_ID,
                priority=RULE_PRIORITY,
                header_actions=actions,
                condition=GlobalCondition(),
            )
        ]

    return [
        FilterRule(
            id=index,
            priority=RULE_PRIORITY,
            header_actions=actions,
            condition=compile_condition(domain, config.match_mode),
        )
        for index, domain in enumerate(config.sorted_domains, start=1)
    ]


# =============================================================================
# Wire format (declarative rule dicts)
# =============================================================================


def condition_to_dict(condition: UrlCondition) -> dict:
    """Convert a condition to the rule table's condition format."""
    if isinstance(condition, GlobalCondition):
        result = {"urlFilter": "*"}
    elif isinstance(condition, HostPrefixCondition):
        result = {"urlFilter": condition.url_filter}
    elif isinstance(condition, AnchoredPatternCondition):
        result = {"regexFilter": condition.regex}
    else:
        raise TypeError(f"Unexpected condition type: {type(condition).__name__}")
    result["resourceTypes"] = list(condition.resource_types)
    return result


def condition_from_dict(data: dict) -> UrlCondition:
    """Inverse of condition_to_dict."""
    resource_types = tuple(data.get("resourceTypes") or RESOURCE_TYPES)
    if "regexFilter" in data:
        regex = data["regexFilter"]
        scope = (
            PatternScope.ANY_SUBDOMAIN
            if regex.startswith(_PATTERN_PREFIX + _SUBDOMAIN_LABELS)
            else PatternScope.EXACT_HOST
        )
        return AnchoredPatternCondition(
            regex=regex, scope=scope, resource_types=resource_types
        )

    url_filter = data.get("urlFilter", "*")
    if url_filter == "*":
        return GlobalCondition(resource_types=resource_types)
    if url_filter.startswith("||") and url_filter.endswith("/"):
        return HostPrefixCondition(
            host=url_filter[2:-1], resource_types=resource_types
        )
    raise ValueError(f"Unsupported urlFilter: {url_filter!r}")


def rule_to_dict(rule: FilterRule) -> dict:
    """Convert a FilterRule to the rule table's declarative rule format."""
    return {
        "id": rule.id,
        "priority": rule.priority,
        "action": {
            "type": "modifyHeaders",
            "requestHeaders": [
                {
                    "header": action.header,
                    "operation": action.operation.value,
                    "value": action.value,
                }
                for action in rule.header_actions
            ],
        },
        "condition": condition_to_dict(rule.condition),
    }


def rule_from_dict(data: dict) -> FilterRule:
    """Convert a declarative rule dict back to a FilterRule."""
    action = data.get("action") or {}
    if action.get("type", "modifyHeaders") != "modifyHeaders":
        raise ValueError(f"Unsupported rule action: {action.get('type')!r}")
    return FilterRule(
        id=int(data["id"]),
        priority=int(data.get("priority", RULE_PRIORITY)),
        header_actions=tuple(
            HeaderAction(
                header=item["header"],
                value=item.get("value", ""),
                operation=HeaderOperation(item.get("operation", "set")),
            )
            for item in action.get("requestHeaders", [])
        ),
        condition=condition_from_dict(data.get("condition") or {}),
    )


def serialize_rule(rule: FilterRule) -> str:
    """Canonical serialization used for equality: priority, action, condition.

    The id is excluded; ids only pair rules for comparison.
    """
    data = rule_to_dict(rule)
    del data["id"]
    return json.dumps(data, sort_keys=True, separators=(",", ":"))
