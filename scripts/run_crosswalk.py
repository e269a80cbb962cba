#!/usr/bin/env python3
"""
Match a file of competitor products against our catalog.

Usage:
    python scripts/run_crosswalk.py competitors.json catalog.json
    python scripts/run_crosswalk.py competitors.json catalog.json --output results.json
    python scripts/run_crosswalk.py competitors.json catalog.json --flat --priority high
"""

import argparse
import asyncio
import json
import sys
from collections import Counter
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config.logging import logger
from config.settings import settings
from crosswalk.matching.normalizer import to_flat_record
from crosswalk.matching.scheduler import JobEventKind, JobStatus
from crosswalk.matching.types import Priority
from crosswalk.service import CrosswalkService


def load_records(path: Path) -> list[dict]:
    with open(path) as f:
        data = json.load(f)
    if isinstance(data, dict):
        # {"products": [...]} or {"catalog": [...]}
        for key in ("products", "records", "catalog", "items"):
            if isinstance(data.get(key), list):
                return data[key]
        raise ValueError(f"{path}: expected a list of records")
    return data


def log_event(event):
    if event.kind == JobEventKind.PROGRESS:
        progress = event.progress
        eta = f", ETA {event.eta_ms / 1000:.0f}s" if event.eta_ms is not None else ""
        logger.info(
            f"Progress: {progress.processed}/{progress.total} "
            f"({progress.cached} cached, {progress.failed} errors{eta})"
        )


async def run(args) -> int:
    competitors = load_records(args.competitors)
    catalog = load_records(args.catalog)

    logger.info("=" * 60)
    logger.info("HVAC CROSSWALK MATCHING")
    logger.info("=" * 60)
    logger.info(f"Competitor records: {len(competitors)}")
    logger.info(f"Catalog records: {len(catalog)}")
    logger.info(f"AI stage: {'enabled' if settings.ANTHROPIC_API_KEY else 'disabled'}")
    logger.info(f"Web research: {'enabled' if settings.WEB_RESEARCH_URL else 'disabled'}")
    logger.info("=" * 60)

    service = CrosswalkService.from_settings(settings, database_url=args.database_url)
    service.scheduler.on_event = log_event

    async with service:
        job_id = await service.submit(competitors, catalog, Priority(args.priority))
        job = await service.scheduler.wait_for(job_id)

    if args.flat:
        output = [to_flat_record(r) for r in job.results]
    else:
        output = [r.to_dict() for r in job.results]

    if args.output:
        with open(args.output, "w") as f:
            json.dump({"results": output, "errors": job.errors}, f, indent=2, default=str)
        logger.info(f"Results written to: {args.output}")
    else:
        print(json.dumps({"results": output, "errors": job.errors}, indent=2, default=str))

    stages = Counter(r.stage.value for r in job.results)
    logger.info("=" * 60)
    logger.info(f"Job {job.id}: {job.status.value}")
    logger.info(f"  Resolved:  {job.progress.completed}")
    logger.info(f"  Cached:    {job.progress.cached}")
    logger.info(f"  Errors:    {job.progress.failed}")
    for stage, count in stages.most_common():
        logger.info(f"  {stage:<15} {count}")
    if service.cache:
        cache_stats = service.cache.stats()
        logger.info(f"  Cache entries: {cache_stats.total_entries} (hit rate {cache_stats.hit_rate:.1f}%)")
    logger.info("=" * 60)

    return 0 if job.status == JobStatus.COMPLETED else 1


def main():
    parser = argparse.ArgumentParser(
        description="Resolve competitor HVAC products to catalog equivalents"
    )
    parser.add_argument("competitors", type=Path, help="JSON file of competitor records")
    parser.add_argument("catalog", type=Path, help="JSON file of catalog records")
    parser.add_argument(
        "--priority",
        choices=[p.value for p in Priority],
        default=Priority.NORMAL.value,
        help="Job priority (default: normal)",
    )
    parser.add_argument("--output", "-o", type=Path, help="Write results to this file")
    parser.add_argument(
        "--flat",
        action="store_true",
        help="Emit flattened storage rows instead of full results",
    )
    parser.add_argument(
        "--database-url",
        help="Cache database URL (default: DATABASE_URL setting)",
    )

    args = parser.parse_args()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
