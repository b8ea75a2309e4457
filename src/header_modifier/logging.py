"""Logging configuration and rule-table event logging."""

import json
import logging
import os
from datetime import datetime, timezone

# Configuration from environment
LOG_FILE = os.environ.get("HEADER_MODIFIER_LOG_FILE", "/tmp/header-modifier.log")
EVENTS_FILE = os.environ.get(
    "HEADER_MODIFIER_EVENTS_FILE", "/tmp/header-modifier-events.jsonl"
)
VERBOSE = os.environ.get("VERBOSE", "0") == "1"

# Module-level state (initialized by init_logging)
logger: logging.Logger = logging.getLogger("header_modifier")
_events_file = None


def init_logging(
    log_file: str | None = None, events_file: str | None = None
) -> logging.Logger:
    """Initialize logging. Returns the package logger."""
    global logger, _events_file

    # Operational logger (human-readable)
    logger = logging.getLogger("header_modifier")
    logger.setLevel(logging.DEBUG if VERBOSE else logging.INFO)
    logger.propagate = False
    logger.handlers.clear()
    handler = logging.FileHandler(log_file or LOG_FILE)
    handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
    logger.addHandler(handler)

    # Rule/expiry events file (JSONL format, line-buffered)
    close_logging()
    _events_file = open(events_file or EVENTS_FILE, "a", buffering=1)

    return logger


def close_logging():
    """Close logging resources."""
    global _events_file
    if _events_file:
        _events_file.close()
        _events_file = None


def log_event(**kwargs) -> None:
    """Log a rule-table or expiry event as JSONL."""
    if not _events_file:
        return
    event = {"ts": datetime.now(timezone.utc).isoformat(timespec="milliseconds")}
    event.update(kwargs)
    _events_file.write(json.dumps(event, separators=(",", ":")) + "\n")
