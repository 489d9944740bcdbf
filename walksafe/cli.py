"""
WalkSafe operator CLI.

Usage:
    walksafe cache-stats
    walksafe cache-cleanup [--force] [--stats]
    walksafe recalculate-risk [--region-id N] [--batch-size N]
    walksafe anonymize
    walksafe expire-occurrences
    walksafe etl-import FILE --source NAME
"""

import argparse
import asyncio
import csv
import json
import sys
from pathlib import Path
from typing import Any, Optional

import structlog

from walksafe.db.engine import close_db, get_session_factory, init_db
from walksafe.exceptions import WalkSafeError
from walksafe.jobs.anonymize import AnonymizeLocationData
from walksafe.jobs.etl_import import EtlImport
from walksafe.jobs.expire_occurrences import ExpireOldOccurrences
from walksafe.jobs.recalculate_risk import RecalculateRiskIndex
from walksafe.logging_config import configure_logging
from walksafe.services.risk_service import RiskService
from walksafe.services.traffic_cache import TrafficCacheManager

logger = structlog.get_logger(__name__)


def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def load_records(path: Path) -> list[dict[str, Any]]:
    """Records from .json (list or {"records": [...]}), .jsonl or .csv."""
    suffix = path.suffix.lower()
    with path.open(encoding="utf-8") as fh:
        if suffix == ".csv":
            return [dict(row) for row in csv.DictReader(fh)]
        if suffix in (".jsonl", ".ndjson"):
            return [json.loads(line) for line in fh if line.strip()]
        body = json.load(fh)
    if isinstance(body, dict):
        body = body.get("records", [])
    if not isinstance(body, list):
        raise ValueError(f"{path}: expected a list of records")
    return body


# ── Commands ─────────────────────────────────────────────────────────────


async def cmd_cache_stats(args: argparse.Namespace) -> int:
    cache = TrafficCacheManager()
    try:
        stats = await cache.get_cache_stats()
        _print({**stats, "hit_rate": TrafficCacheManager.hit_rate(stats)})
    finally:
        await cache.close()
    return 0


async def cmd_cache_cleanup(args: argparse.Namespace) -> int:
    cache = TrafficCacheManager()
    try:
        output: dict[str, Any] = {}
        if args.stats:
            output["before"] = await cache.get_cache_stats()
        output["removed"] = await cache.cleanup_expired_cache(force=args.force)
        if args.stats:
            output["after"] = await cache.get_cache_stats()
        _print(output)
    finally:
        await cache.close()
    return 0


async def cmd_recalculate_risk(args: argparse.Namespace) -> int:
    await init_db()
    job = RecalculateRiskIndex(
        RiskService(get_session_factory()),
        region_id=args.region_id,
        batch_size=args.batch_size,
    )
    result = await job.run()
    _print(result)
    return 1 if result.get("failed") else 0


async def cmd_anonymize(args: argparse.Namespace) -> int:
    await init_db()
    _print(await AnonymizeLocationData(get_session_factory()).run())
    return 0


async def cmd_expire_occurrences(args: argparse.Namespace) -> int:
    await init_db()
    _print(await ExpireOldOccurrences(get_session_factory()).run())
    return 0


async def cmd_etl_import(args: argparse.Namespace) -> int:
    records = load_records(Path(args.file))
    await init_db()
    factory = get_session_factory()
    job = EtlImport(factory, source=args.source, risk_service=RiskService(factory))
    _print(await job.run(records))
    return 0


COMMANDS = {
    "cache-stats": cmd_cache_stats,
    "cache-cleanup": cmd_cache_cleanup,
    "recalculate-risk": cmd_recalculate_risk,
    "anonymize": cmd_anonymize,
    "expire-occurrences": cmd_expire_occurrences,
    "etl-import": cmd_etl_import,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="walksafe", description="WalkSafe operator commands")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("cache-stats", help="Show traffic cache statistics and hit rate")

    cleanup = sub.add_parser("cache-cleanup", help="Remove expired traffic cache entries")
    cleanup.add_argument("--force", action="store_true", help="Also evict nearly-expired entries")
    cleanup.add_argument("--stats", action="store_true", help="Show stats before and after")

    recalc = sub.add_parser("recalculate-risk", help="Recalculate region risk indexes")
    recalc.add_argument("--region-id", type=int, default=None, help="Only this region")
    recalc.add_argument("--batch-size", type=int, default=None, help="Regions per page")

    sub.add_parser("anonymize", help="Anonymize old location data and rebuild cohorts")
    sub.add_parser("expire-occurrences", help="Expire or extend due collaborative occurrences")

    etl = sub.add_parser("etl-import", help="Import official crime records")
    etl.add_argument("file", help="JSON, JSONL or CSV file")
    etl.add_argument("--source", required=True, help="Source name (selects crime code mappings)")
    return parser


async def _run(args: argparse.Namespace) -> int:
    try:
        return await COMMANDS[args.command](args)
    finally:
        await close_db()


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(level=args.log_level)
    try:
        return asyncio.run(_run(args))
    except (WalkSafeError, ValueError, OSError) as e:
        logger.error("command_failed", command=args.command, error=str(e))
        return 2


if __name__ == "__main__":
    sys.exit(main())
