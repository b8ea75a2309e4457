"""Configuration validator - turns raw form input into a canonical Configuration.

Uses parsimonious for the header-name and domain-pattern grammars. The
grammar is the source of truth for what a valid header name or domain
pattern is; everything else (blank rows, duplicates, ranges) is checked here.
"""

import logging
from collections.abc import Iterable, Mapping, Sequence

from parsimonious.exceptions import ParseError
from parsimonious.grammar import Grammar

from ..utils import MS_PER_MINUTE, now_ms as current_ms
from .types import Configuration, HeaderEntry, MatchMode

logger = logging.getLogger(__name__)

MAX_EXPIRY_MINUTES = 1440

# =============================================================================
# PEG Grammar (source of truth for syntax)
# =============================================================================

GRAMMAR = Grammar(r"""
header_name     = ~"[!#$%&'*+.^_`|~0-9A-Za-z-]+"

domain_pattern  = host_pattern / ipv4 / localhost
host_pattern    = wildcard? (label ".")+ tld
wildcard        = "*."
label           = ~"[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?"
tld             = ~"[a-z]{2,63}"
localhost       = "localhost"

ipv4            = octet "." octet "." octet "." octet
octet           = ~"25[0-5]" / ~"2[0-4][0-9]" / ~"1[0-9][0-9]" / ~"[1-9]?[0-9]"
""")


def _matches(rule: str, text: str) -> bool:
    """Check whether text fully matches a grammar rule."""
    try:
        GRAMMAR[rule].parse(text)
    except ParseError:
        return False
    return True


def is_valid_header_name(name: str) -> bool:
    return _matches("header_name", name)


def is_valid_domain(domain: str) -> bool:
    return _matches("domain_pattern", domain)


def is_ipv4(domain: str) -> bool:
    return _matches("ipv4", domain)


# =============================================================================
# Errors
# =============================================================================


class ValidationError(ValueError):
    """User-correctable configuration error. Never retried."""

    code = "validation_error"

    def __init__(self, message: str, subject: str | None = None):
        super().__init__(message)
        self.message = message
        self.subject = subject


class EmptyFieldError(ValidationError):
    code = "empty_field"


class InvalidHeaderNameError(ValidationError):
    code = "invalid_header_name"


class InvalidHeaderValueError(ValidationError):
    code = "invalid_header_value"


class InvalidHeaderRowError(ValidationError):
    code = "invalid_header_row"


class DuplicateHeaderKeyError(ValidationError):
    code = "duplicate_header_key"

    def __init__(self, message: str, subject: str, first: str):
        super().__init__(message, subject)
        self.first = first


class InvalidDomainPatternError(ValidationError):
    code = "invalid_domain_pattern"


class UnsupportedModeForDomainError(ValidationError):
    code = "unsupported_mode_for_domain"


class InvalidMatchModeError(ValidationError):
    code = "invalid_match_mode"


class InvalidExpiryMinutesError(ValidationError):
    code = "invalid_expiry_minutes"


class InvalidEnabledFlagError(ValidationError):
    code = "invalid_enabled_flag"


# =============================================================================
# Normalization helpers
# =============================================================================


def _text(field) -> str:
    return "" if field is None else str(field)


def _row_fields(row) -> tuple[str, str]:
    """Extract (key, value) from a header row: mapping, HeaderEntry or pair."""
    if isinstance(row, HeaderEntry):
        return row.key, row.value
    if isinstance(row, Mapping):
        return _text(row.get("key")), _text(row.get("value"))
    if isinstance(row, Sequence) and not isinstance(row, (str, bytes)) and len(row) == 2:
        return _text(row[0]), _text(row[1])
    raise InvalidHeaderRowError(
        f"Header rows must be key/value pairs: {row!r}", subject=repr(row)
    )


def _split_rows(raw_headers: Iterable) -> tuple[list[HeaderEntry], list[ValidationError]]:
    entries, errors = [], []
    for row in raw_headers or ():
        try:
            key, value = _row_fields(row)
        except InvalidHeaderRowError as e:
            errors.append(e)
            continue
        key, value = key.strip(), value.strip()
        if key == "" and value == "":
            continue
        entries.append(HeaderEntry(key=key, value=value))
    return entries, errors


def normalize_headers(raw_headers: Iterable) -> list[HeaderEntry]:
    """Trim header rows and drop rows that are blank in both fields.

    Raises InvalidHeaderRowError for a row that is not a key/value pair.
    """
    entries, errors = _split_rows(raw_headers)
    if errors:
        raise errors[0]
    return entries


def parse_domains(text: str | None) -> list[str]:
    """Split domain text on newlines and commas, lowercase and de-duplicate.

    Keeps first-occurrence order; callers treat the result as a set.
    """
    seen = {}
    for part in (text or "").replace("\r", "\n").replace(",", "\n").split("\n"):
        domain = part.strip().lower()
        if domain:
            seen.setdefault(domain, None)
    return list(seen)


def parse_expiry_minutes(raw) -> int | None:
    """Parse the expiry-minutes field. Blank means 0; None on invalid input."""
    if raw is None:
        return 0
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        minutes = raw
    else:
        text = str(raw).strip()
        if text == "":
            return 0
        if not text.isascii() or not text.isdigit():
            return None
        minutes = int(text)
    if minutes < 0 or minutes > MAX_EXPIRY_MINUTES:
        return None
    return minutes


def _check_headers(entries: list[HeaderEntry]):
    """Yield header errors in input order, each row checked fully first."""
    first_by_key: dict[str, str] = {}
    for entry in entries:
        if entry.key == "" or entry.value == "":
            yield EmptyFieldError(
                "All non-empty headers must include both key and value.",
                subject=entry.key or entry.value,
            )
            continue
        if not is_valid_header_name(entry.key):
            yield InvalidHeaderNameError(
                f"Invalid header key: {entry.key}", subject=entry.key
            )
            continue
        if "\r" in entry.value or "\n" in entry.value:
            yield InvalidHeaderValueError(
                f"Invalid header value for {entry.key}: "
                "newline characters are not allowed.",
                subject=entry.key,
            )
            continue
        folded = entry.key.lower()
        if folded in first_by_key:
            yield DuplicateHeaderKeyError(
                f"Duplicate header key: {entry.key}",
                subject=entry.key,
                first=first_by_key[folded],
            )
            continue
        first_by_key[folded] = entry.key


def _check_domains(domains: list[str], mode: MatchMode | None):
    for domain in domains:
        if not is_valid_domain(domain):
            yield InvalidDomainPatternError(
                f"Invalid domain pattern: {domain}", subject=domain
            )
            continue
        if mode is MatchMode.SUBDOMAINS_ONLY and (
            domain == "localhost" or is_ipv4(domain)
        ):
            yield UnsupportedModeForDomainError(
                f"Subdomains-only mode does not support {domain}.", subject=domain
            )


def _parse_mode(match_mode) -> tuple[MatchMode | None, ValidationError | None]:
    try:
        return MatchMode.parse(match_mode), None
    except ValueError:
        return None, InvalidMatchModeError(
            f"Unknown domain match mode: {match_mode}", subject=str(match_mode)
        )


def _collect(raw_headers, raw_domain_text, match_mode, raw_expiry_minutes):
    """Run every check; returns (headers, domains, mode, minutes, errors)."""
    headers, errors = _split_rows(raw_headers)
    errors.extend(_check_headers(headers))

    mode, mode_error = _parse_mode(match_mode)
    domains = parse_domains(raw_domain_text)
    errors.extend(_check_domains(domains, mode))
    if mode_error:
        errors.append(mode_error)

    minutes = parse_expiry_minutes(raw_expiry_minutes)
    if minutes is None:
        errors.append(
            InvalidExpiryMinutesError(
                "Temporary minutes must be an integer between 0 and "
                f"{MAX_EXPIRY_MINUTES}.",
                subject=str(raw_expiry_minutes),
            )
        )
    return headers, domains, mode, minutes, errors


# =============================================================================
# Public API
# =============================================================================


def find_validation_errors(
    raw_headers,
    raw_domain_text: str | None,
    match_mode,
    raw_expiry_minutes=None,
) -> list[ValidationError]:
    """Validate form input and return every problem found (empty if valid)."""
    return _collect(raw_headers, raw_domain_text, match_mode, raw_expiry_minutes)[4]


def validate(
    raw_headers,
    raw_domain_text: str | None,
    match_mode,
    raw_expiry_minutes=None,
    enabled: bool = True,
    now_ms: int | None = None,
) -> Configuration:
    """Validate raw form input into a canonical Configuration.

    Pure: no state is read or written. The first problem found is raised as
    a ValidationError subclass (header rows in order, then domains, then
    match mode, then expiry minutes).

    Args:
        raw_headers: Header rows as {"key", "value"} mappings, HeaderEntry
            objects or (key, value) pairs.
        raw_domain_text: Domains separated by newlines and/or commas.
        match_mode: MatchMode or its string value.
        raw_expiry_minutes: Minutes until auto-disable (blank/None means 0).
        enabled: Whether the configuration is switched on.
        now_ms: Reference instant for the expiry computation (defaults to now).
    """
    headers, domains, mode, minutes, errors = _collect(
        raw_headers, raw_domain_text, match_mode, raw_expiry_minutes
    )
    if errors:
        logger.debug(f"Validation failed with {len(errors)} error(s): {errors[0]}")
        raise errors[0]

    expiry_instant = None
    if enabled and minutes > 0:
        reference = current_ms() if now_ms is None else now_ms
        expiry_instant = reference + minutes * MS_PER_MINUTE

    return Configuration(
        headers=tuple(headers),
        domains=frozenset(domains),
        match_mode=mode,
        enabled=enabled,
        expiry_instant=expiry_instant,
        expiry_minutes=minutes,
    )
