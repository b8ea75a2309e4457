#!/usr/bin/env python3
"""Command-line utility for header modifier management.

Usage:
    header-modifier save --header X-Test=123 --domain example.com [--minutes 10]
    header-modifier save --file draft.yaml
    header-modifier validate --header X-Test=123 --domain '*.example.com'
    header-modifier status
    header-modifier export [-o config.json]
    header-modifier import config.json [--apply]
    header-modifier check https://api.example.com/
    header-modifier run

Exit codes:
    0 - Success
    1 - Invalid configuration or import document
    2 - File not found, invalid YAML, or storage/rule-table failure
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

import yaml

from . import logging as hm_logging
from .main import build_modifier, run
from .rules import (
    ConfigDraft,
    InvalidImportError,
    MatchMode,
    ServiceError,
    ValidationError,
    find_validation_errors,
    import_config,
    rule_to_dict,
)
from .rules.interchange import EXPORT_FILENAME
from .utils import format_instant


def _fail(message: str, code: int):
    print(f"Error: {message}", file=sys.stderr)
    sys.exit(code)


def _parse_header(text: str) -> dict:
    """Parse a KEY=VALUE header argument (value may be empty)."""
    key, _, value = text.partition("=")
    return {"key": key, "value": value}


def _load_draft_file(path: Path) -> ConfigDraft:
    if not path.exists():
        _fail(f"File not found: {path}", 2)
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        _fail(f"Invalid YAML: {e}", 2)
    if not isinstance(data, dict):
        _fail("Draft file is not a valid YAML mapping", 2)
    try:
        return ConfigDraft.from_dict(data)
    except ValidationError as e:
        _fail(e.message, 1)


def draft_from_args(args) -> ConfigDraft:
    """Build a form draft from --file or from individual flags."""
    if args.file:
        return _load_draft_file(args.file)
    headers = [_parse_header(h) for h in args.header or []]
    return ConfigDraft(
        headers=headers or [{"key": "", "value": ""}],
        domain_text="\n".join(args.domain or []),
        match_mode=args.mode,
        expiry_minutes=args.minutes,
        enabled=not args.disabled,
    )


def _print_rules(rules) -> None:
    for rule in rules:
        print(json.dumps(rule_to_dict(rule), separators=(",", ":")))


def _cmd_save(args) -> None:
    draft = draft_from_args(args)
    modifier, _ = build_modifier(args.state_dir)
    try:
        result = asyncio.run(modifier.save(draft))
    except ValidationError as e:
        _fail(e.message, 1)
    except ServiceError as e:
        _fail(str(e), 2)

    print(result.message)
    if not args.quiet:
        print(
            f"Rules: {len(result.delta.to_add)} added, "
            f"{len(result.delta.to_remove)} removed"
        )
        if result.config.expiry_instant is not None:
            print(
                f"Expires at {format_instant(result.config.expiry_instant)}; "
                "keep `header-modifier run` running to enforce it."
            )


def _cmd_validate(args) -> None:
    draft = draft_from_args(args)
    errors = find_validation_errors(
        draft.headers, draft.domain_text, draft.match_mode, draft.expiry_minutes
    )
    if errors:
        for error in errors:
            print(f"  {error.code}: {error.message}")
        if not args.quiet:
            print(f"\nValidation failed: {len(errors)} error(s)")
        sys.exit(1)
    if not args.quiet:
        print("Validation passed")


def _cmd_status(args) -> None:
    modifier, _ = build_modifier(args.state_dir)
    try:
        status = asyncio.run(modifier.status())
    except ServiceError as e:
        _fail(str(e), 2)

    stored = status.stored
    print(f"Enabled:    {'yes' if stored.enabled else 'no'}")
    print(f"Mode:       {stored.match_mode.value}")
    print(f"Domains:    {', '.join(stored.domains) or '(all)'}")
    print(f"Headers:    {len(stored.headers)}")
    for entry in stored.headers:
        print(f"  {entry.key}: {entry.value}")
    print(f"Expiry:     {status.expiry.value} {format_instant(status.fire_at)}")
    print(f"Installed:  {len(status.installed)} rule(s)")
    if args.verbose:
        _print_rules(status.installed)


def _cmd_export(args) -> None:
    modifier, _ = build_modifier(args.state_dir)
    try:
        text = asyncio.run(modifier.export())
    except ValidationError as e:
        _fail(f"Persisted configuration is invalid: {e.message}", 1)
    except ServiceError as e:
        _fail(str(e), 2)

    if args.output:
        args.output.write_text(text + "\n")
        if not args.quiet:
            print(f"Exported to {args.output}")
    else:
        print(text)


def _cmd_import(args) -> None:
    if not args.path.exists():
        _fail(f"File not found: {args.path}", 2)
    try:
        draft = import_config(args.path.read_text())
    except InvalidImportError as e:
        _fail(str(e), 1)

    if not args.apply:
        print(json.dumps(
            {
                "enabled": draft.enabled,
                "headers": draft.headers,
                "domains": [d for d in draft.domain_text.split("\n") if d],
                "domainMatchMode": draft.match_mode,
                "temporaryMinutes": draft.expiry_minutes,
            },
            indent=2,
        ))
        if not args.quiet:
            print("\nConfig imported. Re-run with --apply to activate.", file=sys.stderr)
        return

    modifier, _ = build_modifier(args.state_dir)
    try:
        result = asyncio.run(modifier.save(draft))
    except ValidationError as e:
        _fail(e.message, 1)
    except ServiceError as e:
        _fail(str(e), 2)
    print(result.message)


def _cmd_check(args) -> None:
    modifier, _ = build_modifier(args.state_dir)
    try:
        headers = modifier.rule_table.headers_for(args.url)
    except ServiceError as e:
        _fail(str(e), 2)
    if not headers:
        print(f"No rule matches {args.url}")
        return
    for key, value in headers.items():
        print(f"{key}: {value}")


def _cmd_run(args) -> None:
    try:
        state = asyncio.run(run(args.state_dir, stop_when_idle=not args.forever))
    except ServiceError as e:
        hm_logging.logger.error(f"Fatal error: {e}")
        _fail(str(e), 2)
    if not args.quiet:
        print(f"Expiry state: {state.value}")


def _add_form_arguments(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--header",
        action="append",
        metavar="KEY=VALUE",
        help="Request header to set (repeatable)",
    )
    p.add_argument(
        "--domain",
        action="append",
        metavar="DOMAIN",
        help="Domain to scope headers to; comma-separated lists allowed (repeatable)",
    )
    p.add_argument(
        "--mode",
        choices=[mode.value for mode in MatchMode],
        default=MatchMode.HOST_AND_SUBDOMAINS.value,
        help="Domain match mode (default: include_subdomains)",
    )
    p.add_argument(
        "--minutes",
        default="0",
        help="Auto-disable after N minutes (0-1440, 0 = never)",
    )
    p.add_argument("--disabled", action="store_true", help="Save switched off")
    p.add_argument(
        "--file",
        type=Path,
        metavar="DRAFT.yaml",
        help="Read the form from a YAML/JSON file instead of flags",
    )


def main():
    parser = argparse.ArgumentParser(
        description="Manage declarative HTTP request-header overrides.",
        epilog="Exit codes: 0=ok, 1=invalid configuration/import, 2=file or service error",
    )
    parser.add_argument(
        "--state-dir",
        type=Path,
        metavar="DIR",
        help="State directory (default: $HEADER_MODIFIER_STATE_DIR or /tmp/header-modifier)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="More output")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only output errors")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_save = subparsers.add_parser("save", help="Validate and apply a configuration")
    _add_form_arguments(p_save)
    p_save.set_defaults(func=_cmd_save)

    p_validate = subparsers.add_parser("validate", help="Report every problem in a configuration")
    _add_form_arguments(p_validate)
    p_validate.set_defaults(func=_cmd_validate)

    p_status = subparsers.add_parser("status", help="Show persisted configuration and rules")
    p_status.set_defaults(func=_cmd_status)

    p_export = subparsers.add_parser("export", help="Export the configuration as JSON")
    p_export.add_argument(
        "-o", "--output", type=Path, metavar=EXPORT_FILENAME, help="Write to a file"
    )
    p_export.set_defaults(func=_cmd_export)

    p_import = subparsers.add_parser("import", help="Import a JSON configuration")
    p_import.add_argument("path", type=Path, help="Exported configuration file")
    p_import.add_argument("--apply", action="store_true", help="Save the imported configuration")
    p_import.set_defaults(func=_cmd_import)

    p_check = subparsers.add_parser("check", help="Show headers installed rules set for a URL")
    p_check.add_argument("url", help="Request URL")
    p_check.set_defaults(func=_cmd_check)

    p_run = subparsers.add_parser("run", help="Resync on start and enforce the expiry timer")
    p_run.add_argument(
        "--forever",
        action="store_true",
        help="Keep running after the expiry fired (until SIGINT/SIGTERM)",
    )
    p_run.set_defaults(func=_cmd_run)

    args = parser.parse_args()
    hm_logging.init_logging()
    try:
        args.func(args)
    finally:
        hm_logging.close_logging()


if __name__ == "__main__":
    main()
