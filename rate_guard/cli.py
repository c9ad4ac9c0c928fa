"""CLI entry point for the rate-guard package."""

from __future__ import annotations

import json
import logging
import os
import platform
import shutil
import sys
from typing import List

MIN_PYTHON = (3, 10)


def _print_setup_banner(port: int, *, for_startup: bool = True) -> None:
    """Print configuration guidance. If for_startup, show the 'started' line; else a 'Setup' header."""
    from .config import get_settings

    settings = get_settings()
    base = f"http://localhost:{port}"
    print()
    if for_startup:
        print("✅ Rate guard started — store: {}".format(settings.store_backend))
    else:
        print("Rate Guard — Setup")
        print("Store: {}  |  Policy file: {}".format(settings.store_backend, settings.policy_file or "none"))
    print(
        "Policy:   {} attempts / {}s window, {}s block".format(
            settings.max_attempts,
            settings.window_seconds,
            settings.block_seconds,
        )
    )
    print()
    print("Docs:     {}/docs".format(base))
    print("Check:    POST {}/guard/check".format(base))
    print("Success:  POST {}/guard/success".format(base))
    print()
    print("────────────────────────────────────────────")
    print("Configure with a .env file in this folder (or real environment variables):")
    print()
    print("   GUARD_MAX_ATTEMPTS=5")
    print("   GUARD_WINDOW_SECONDS=900")
    print("   GUARD_BLOCK_SECONDS=1800")
    print("   GUARD_POLICY_FILE=policies.yaml   # optional per-action overrides")
    print("   DB_PATH=./data/rate_guard.db      # or DATABASE_URL=postgresql://...")
    print("   AUTH_TOKEN=change-me              # optional shared bearer for the HTTP API")
    print()


def _python_version_str() -> str:
    return ".".join(str(part) for part in sys.version_info[:3])


def _ensure_supported_python() -> None:
    if sys.version_info < MIN_PYTHON:
        print(
            "Error: Python {} detected. rate-guard requires Python {}.{}+.".format(
                _python_version_str(),
                MIN_PYTHON[0],
                MIN_PYTHON[1],
            ),
            file=sys.stderr,
        )
        sys.exit(2)


def _print_help() -> None:
    print("Rate Guard CLI")
    print()
    print("Usage:")
    print("  rate-guard                             Start the HTTP server")
    print("  rate-guard setup                       Print setup/env guidance")
    print("  rate-guard doctor                      Print install/environment diagnostics")
    print("  rate-guard check <identity> <action>   Record one attempt and print the decision")
    print("  rate-guard success <identity> <action> Clear attempts and blocks after a success")
    print()


def _print_doctor() -> None:
    from .config import get_settings
    from .storage.db import get_db_info

    settings = get_settings()
    print("Rate Guard Doctor")
    print()
    print(f"Platform: {platform.platform()}")
    print(f"Python:   {_python_version_str()}")
    print(f"Exe:      {sys.executable}")
    print(f"In venv:  {'yes' if sys.prefix != sys.base_prefix else 'no'}")
    print(f"PATH bin: {shutil.which('rate-guard') or 'not found'}")
    print(f"Store:    {settings.store_backend}")
    if settings.store_backend == "sql":
        info = get_db_info()
        location = "DATABASE_URL" if info.dialect == "postgres" else info.db_path
        print(f"Database: {info.dialect} ({location})")
    print(f"Policy:   {settings.policy_file or 'env defaults'}")
    if sys.version_info < MIN_PYTHON:
        print(
            f"Issue: Python is below required minimum {MIN_PYTHON[0]}.{MIN_PYTHON[1]}."
        )


def _run_guard_command(subcommand: str, args: List[str]) -> int:
    """Run check/success against the configured store. Returns the exit code."""
    from .dependencies import build_guard
    from .guard import InvalidInput

    if len(args) != 2:
        print(f"Usage: rate-guard {subcommand} <identity> <action>", file=sys.stderr)
        return 2
    identity, action = args
    guard = build_guard()
    try:
        if subcommand == "check":
            decision = guard.check_and_record(identity, action)
            print(json.dumps(decision.model_dump(mode="json")))
            return 0 if decision.allowed else 1
        guard.record_success(identity, action)
        print(json.dumps({"ok": True}))
        return 0
    except InvalidInput as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2


def main() -> None:
    """Run the rate guard server or handle setup/doctor/check/success commands."""
    _ensure_supported_python()
    from .config import get_settings

    port = get_settings().http_port
    host = os.environ.get("HOST", "0.0.0.0")

    if len(sys.argv) > 1:
        subcommand = sys.argv[1].strip().lower()
        if subcommand in {"-h", "--help", "help"}:
            _print_help()
            sys.exit(0)
        if subcommand == "setup":
            _print_setup_banner(port=port, for_startup=False)
            sys.exit(0)
        if subcommand == "doctor":
            _print_doctor()
            sys.exit(0)
        if subcommand in {"check", "success"}:
            logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
            sys.exit(_run_guard_command(subcommand, sys.argv[2:]))
        print(f"Unknown command: {sys.argv[1]}", file=sys.stderr)
        _print_help()
        sys.exit(2)

    import uvicorn

    _print_setup_banner(port=port, for_startup=True)

    uvicorn.run(
        "rate_guard.main:app",
        host=host,
        port=port,
        factory=False,
    )


if __name__ == "__main__":
    main()
    sys.exit(0)
