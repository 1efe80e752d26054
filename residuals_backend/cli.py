from __future__ import annotations

import argparse
import json
import logging
from dataclasses import replace
from datetime import datetime
from pathlib import Path

import pytz

from .settings import DEFAULT_SETTINGS, ResidualsSettings
from .engine import ResidualsEngine, output_filename

log = logging.getLogger("residuals")


def current_month(settings: ResidualsSettings = DEFAULT_SETTINGS) -> str:
    tz = pytz.timezone(settings.timezone)
    return datetime.now(tz).strftime("%Y-%m")


def _print(result) -> None:
    print(json.dumps(result, indent=2, default=str))


def _processor_id(engine: ResidualsEngine, value: str) -> int:
    """Accept a processor id, name or mapping key."""
    for p in engine.store.list_processors():
        if value in (str(p.id), p.name, p.mapping_key):
            return p.id
    raise SystemExit(f"Unknown processor: {value}")


def run_export(engine: ResidualsEngine, month: str, out_dir: str) -> Path:
    out = Path(out_dir) / output_filename(month)
    engine.export_xlsx(month, out)
    print(f"Wrote: {out}")
    return out


def main(argv=None):
    ap = argparse.ArgumentParser(description="Monthly residuals reconciliation")
    ap.add_argument("--db", default=None, help="SQLite database path (default from RESIDUALS_DB_PATH)")
    ap.add_argument("--month", default=None, help="YYYY-MM (default: current month, Eastern time)")
    ap.add_argument("-v", "--verbose", action="store_true")
    sub = ap.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="seed upload tracking for the month")
    sub.add_parser("progress", help="show stage progress")

    up = sub.add_parser("upload", help="ingest a processor file")
    up.add_argument("processor", help="processor id, name or mapping key")
    up.add_argument("file")

    ls = sub.add_parser("lead-sheet", help="ingest the merchant roster")
    ls.add_argument("file")

    sub.add_parser("compile", help="cross-reference monthly data into the master dataset")
    sub.add_parser("carry-forward", help="copy prior-month assignments, then validate")
    sub.add_parser("bulk-parse", help="assign MIDs from their Column I text")
    sub.add_parser("validate", help="run the split validator")
    sub.add_parser("audit", help="run the audit")
    sub.add_parser("cleanup", help="remove duplicate rows and install constraints")

    ex = sub.add_parser("export", help="write the month's workbook")
    ex.add_argument("--out", default=None)

    run = sub.add_parser("run", help="compile, carry forward, audit and export")
    run.add_argument("--out", default=None)

    args = ap.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    settings = DEFAULT_SETTINGS
    if args.db:
        settings = replace(DEFAULT_SETTINGS, db_path=args.db)
    engine = ResidualsEngine.from_settings(settings)
    month = args.month or current_month(settings)

    if args.command == "init":
        _print(engine.initialize(month))
    elif args.command == "progress":
        _print(engine.progress(month))
    elif args.command == "upload":
        _print(engine.ingest_processor_file(month, _processor_id(engine, args.processor), Path(args.file)))
    elif args.command == "lead-sheet":
        _print(engine.ingest_lead_sheet(month, Path(args.file)))
    elif args.command == "compile":
        _print(engine.cross_reference(month))
    elif args.command == "carry-forward":
        _print(engine.auto_populate(month))
    elif args.command == "bulk-parse":
        _print(engine.bulk_parse(month))
    elif args.command == "validate":
        _print(engine.validate_splits(month))
    elif args.command == "audit":
        _print(engine.audit(month))
    elif args.command == "cleanup":
        _print(engine.cleanup_duplicates(month))
    elif args.command == "export":
        run_export(engine, month, args.out or settings.output_dir)
    elif args.command == "run":
        _print(engine.run_cycle(month))
        run_export(engine, month, args.out or settings.output_dir)


if __name__ == "__main__":
    main()
