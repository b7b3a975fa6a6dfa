"""
Command line entry point for the posting batch.

Usage:
    python -m amortization_batch run [--config settings.yaml]
    python -m amortization_batch refresh-tokens
    python -m amortization_batch init-db
    python -m amortization_batch preview --start 2025-02-06 --end 2025-08-05 --total 6000.00

Settings come from the YAML file named by --config or AMORTIZATION_CONFIG,
overlaid by AMORTIZATION_* environment variables (see
amortization_kernel.config).

Exit codes:
    0  run finished, even if individual entries failed
    1  configuration error, storage unreachable or storage failure mid-run
    2  another posting run holds the run lock
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import date
from typing import Sequence

from amortization_kernel.config import AmortizationSettings, load_settings
from amortization_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
    verify_connection,
)
from amortization_kernel.domain.schedule_generator import generate_schedule
from amortization_kernel.exceptions import (
    ConfigurationError,
    RunLockHeldError,
    ScheduleError,
    StorageError,
)
from amortization_kernel.logging_config import configure_logging, get_logger

from amortization_batch.runtime import PostingRuntime

logger = get_logger("batch.cli")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_LOCKED = 2


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="amortization-batch",
        description="Deferred-recognition posting batch.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", default=None, help="YAML settings file.")
    parser.add_argument("--database-url", default=None, help="Override the database URL.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("run", help="Post every due journal entry.")
    sub.add_parser("refresh-tokens", help="Refresh every connected tenant's tokens.")
    sub.add_parser("init-db", help="Create the kernel tables.")

    preview = sub.add_parser("preview", help="Print a recognition plan without storing it.")
    preview.add_argument("--start", required=True, type=date.fromisoformat)
    preview.add_argument("--end", required=True, type=date.fromisoformat)
    preview.add_argument("--total", required=True, help="Total amount, e.g. 6000.00.")
    return parser.parse_args(argv)


def _settings(args: argparse.Namespace, require_secrets: bool) -> AmortizationSettings:
    return load_settings(
        args.config,
        require_secrets=require_secrets,
        database_url=args.database_url,
    )


def _open_storage(settings: AmortizationSettings):
    engine = init_engine_from_url(settings.database_url)
    verify_connection(engine)
    return get_session_factory()


def cmd_preview(args: argparse.Namespace) -> int:
    try:
        periods = generate_schedule(args.start, args.end, args.total)
    except ScheduleError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    print(f"{'#':>3}  {'period':<23}  {'post on':<10}  {'days':>4}  {'amount':>14}  {'remaining':>14}")
    for p in periods:
        span = f"{p.period_start}..{p.period_end}"
        print(
            f"{p.index + 1:>3}  {span:<23}  {p.posting_date.isoformat():<10}  "
            f"{p.days:>4}  {p.amount:>14}  {p.remaining:>14}"
        )
    return EXIT_OK


def cmd_init_db(args: argparse.Namespace) -> int:
    settings = _settings(args, require_secrets=False)
    configure_logging(level=settings.log_level)
    _open_storage(settings)
    create_tables()
    print("Tables created.")
    return EXIT_OK


def cmd_run(args: argparse.Namespace) -> int:
    settings = _settings(args, require_secrets=True)
    configure_logging(level=settings.log_level)
    logger.info("posting_batch_configured", extra=settings.safe_summary())
    session_factory = _open_storage(settings)

    with PostingRuntime(settings, session_factory) as runtime:
        result = runtime.orchestrator().run()
    print(json.dumps(result.summary(), indent=2))
    return EXIT_OK


def cmd_refresh_tokens(args: argparse.Namespace) -> int:
    settings = _settings(args, require_secrets=True)
    configure_logging(level=settings.log_level)
    session_factory = _open_storage(settings)

    with PostingRuntime(settings, session_factory) as runtime:
        result = runtime.token_refresh_sweep().run()
    print(
        json.dumps(
            {
                "run_id": result.run_id,
                "refreshed": result.refreshed,
                "disconnected": result.disconnected,
                "failed": result.failed,
            },
            indent=2,
        )
    )
    return EXIT_OK


_COMMANDS = {
    "run": cmd_run,
    "refresh-tokens": cmd_refresh_tokens,
    "init-db": cmd_init_db,
    "preview": cmd_preview,
}


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    try:
        return _COMMANDS[args.command](args)
    except ConfigurationError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    except RunLockHeldError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_LOCKED
    except StorageError as exc:
        logger.error("posting_batch_storage_failure", exc_info=True)
        print(f"ERROR: {exc}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
