"""Rule evaluation - how the rule table applies installed conditions to a URL.

This models the runtime's declarative matching so compiled rules can be
checked without a browser. Nothing here runs per request in production.
"""

import re
from urllib.parse import urlsplit

from .types import (
    AnchoredPatternCondition,
    FilterRule,
    GlobalCondition,
    HostPrefixCondition,
    UrlCondition,
)


def normalize_url(url: str) -> str:
    """Add the root path to a URL that has none (http://host -> http://host/)."""
    parts = urlsplit(url)
    if parts.netloc and not parts.path:
        return parts._replace(path="/").geturl()
    return url


def match_host_prefix(host_anchor: str, url: str) -> bool:
    """Match a ||host/ filter: the host or any subdomain, any port, any path."""
    parts = urlsplit(normalize_url(url))
    hostname = (parts.hostname or "").lower()
    if not hostname:
        return False
    anchor = host_anchor.lower()
    if hostname != anchor and not hostname.endswith("." + anchor):
        return False
    return parts.path.startswith("/")


def match_pattern(regex: str, url: str) -> bool:
    return re.search(regex, normalize_url(url)) is not None


def condition_matches(condition: UrlCondition, url: str) -> bool:
    """Check whether a rule condition matches a request URL."""
    if isinstance(condition, GlobalCondition):
        return True
    if isinstance(condition, HostPrefixCondition):
        return match_host_prefix(condition.host, url)
    if isinstance(condition, AnchoredPatternCondition):
        return match_pattern(condition.regex, url)
    raise TypeError(f"Unexpected condition type: {type(condition).__name__}")


def headers_for_url(rules: list[FilterRule], url: str) -> dict[str, str]:
    """Compute the request headers a rule set would set for a URL.

    Rules are applied in (priority desc, id asc) order; a header already set
    by an earlier rule is not overridden by a later one.
    """
    result: dict[str, str] = {}
    seen: set[str] = set()
    for rule in sorted(rules, key=lambda r: (-r.priority, r.id)):
        if not condition_matches(rule.condition, url):
            continue
        for action in rule.header_actions:
            folded = action.header.lower()
            if folded in seen:
                continue
            seen.add(folded)
            result[action.header] = action.value
    return result
