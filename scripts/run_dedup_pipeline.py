# -*- coding: utf-8 -*-
"""
Story Resolution Pipeline Orchestrator

Runs the duplicate/update resolution pipeline over a daily batch of generated
cyber news articles, optionally after backfilling historical articles into the
entity index, and reports index and resolution statistics at the end.

Phase INDEX loads an archive of already published articles into the entity
index without resolving them (first deployment, or after a rebuild). Phase
RESOLVE decides NEW / UPDATE / SKIP for each article of the batch and commits
the result. Phase REPORT logs index and resolution statistics and the last
run summary.

Modes:
    --start-phase    First phase to execute (default: index)
    --end-phase      Last phase to execute (default: report)
    --list-phases    Display all available phases and exit

Examples:
    # Full pipeline: backfill archive, resolve today's batch, report
    python scripts/run_dedup_pipeline.py --archive data/raw/archive.jsonl \\
        --input data/raw/articles_2025-01-15.jsonl

    # Resolve only, no LLM (borderline articles take the fallback policy)
    python scripts/run_dedup_pipeline.py -s resolve -e resolve --input batch.json --no-llm

    # Statistics only
    python scripts/run_dedup_pipeline.py -s report
"""

import argparse
import sys
from datetime import datetime
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from cyberdedup.utils.config import DEFAULT_DB_PATH, DEFAULT_RESOLUTIONS_PATH, DedupConfig
from cyberdedup.utils.errors import ConfigurationError, IndexUnavailableError
from cyberdedup.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)

# Phase definitions in execution order
PHASES = [
    ("index", "Index Backfill"),
    ("resolve", "Story Resolution"),
    ("report", "Index Report"),
]

PHASE_ORDER = [p[0] for p in PHASES]
PHASE_NAMES = {p[0]: p[1] for p in PHASES}


def _build_config(args: argparse.Namespace) -> DedupConfig:
    return DedupConfig.from_env(
        lookback_days=args.lookback_days,
        max_workers=args.workers,
        adjudication_timeout=args.timeout,
        fallback_policy=args.fallback,
        adjudicate_updates=False if args.no_adjudicate_updates else None,
        dry_run=args.dry_run or None,
        force=args.force or None,
    ).validate()


def run_phase_index(args: argparse.Namespace) -> bool:
    """
    Phase INDEX: load historical articles into the entity index.

    Input:  --archive (.json/.jsonl)
    Output: entity index database (--db)

    Returns True if successful (also when no archive was given).
    """
    if args.archive is None:
        logger.info("No --archive given, nothing to backfill")
        return True

    from cyberdedup.processing.dedup.resolution_processor import ResolutionProcessor
    from cyberdedup.storage.entity_index import EntityIndex
    from cyberdedup.utils.io import load_articles

    config = _build_config(args)
    processor = ResolutionProcessor(EntityIndex(args.db), config)
    try:
        stats = processor.backfill(load_articles(args.archive))
    finally:
        processor.close()
    return stats['errors'] == 0 or not args.strict


def run_phase_resolve(args: argparse.Namespace) -> bool:
    """
    Phase RESOLVE: NEW / UPDATE / SKIP for each article of the batch.

    Input:  --input (.json/.jsonl)
    Output: entity index database (--db), resolution records (--output)

    Returns True if successful.
    """
    if args.input is None:
        logger.error("Phase resolve needs --input")
        return False

    from cyberdedup.processing.dedup.resolution_processor import (
        ResolutionProcessor,
        build_adjudicator,
    )
    from cyberdedup.storage.entity_index import EntityIndex
    from cyberdedup.utils.io import load_articles

    config = _build_config(args)

    try:
        adjudicator = build_adjudicator(not args.no_llm)
    except ValueError as e:
        logger.error(f"{e} (or run with --no-llm)")
        return False

    processor = ResolutionProcessor(EntityIndex(args.db), config, adjudicator)
    try:
        summary = processor.run(load_articles(args.input), output_path=args.output)
    finally:
        processor.close()
    return summary.errors == 0 or not args.strict


def run_phase_report(args: argparse.Namespace) -> bool:
    """
    Phase REPORT: index statistics, resolution counts, last run.

    Input:  entity index database (--db)
    Output: log lines, optional JSON report (--report)

    Returns True if successful.
    """
    from cyberdedup.storage.entity_index import EntityIndex
    from cyberdedup.utils.io import save_json

    index = EntityIndex(args.db)
    stats = index.stats()
    resolutions = index.resolution_stats()
    last_run = index.last_run()

    logger.info(f"Articles indexed:   {stats['total_articles']:,} "
                f"({stats['oldest_pub_date']} -> {stats['newest_pub_date']})")
    logger.info(f"CVE references:     {stats['total_cve_refs']:,} ({stats['unique_cves']:,} unique)")
    logger.info(f"Entity references:  {stats['total_entity_refs']:,} "
                f"({stats['unique_entities']:,} unique)")
    for entity_type, count in sorted(stats['entities_by_type'].items()):
        logger.info(f"  {entity_type:<18}{count:,}")
    logger.info(f"Update entries:     {stats['total_updates']:,}")
    logger.info(f"Resolutions:        {resolutions['total']:,} {resolutions['by_decision']}")
    logger.info(f"  by method:        {resolutions['by_method']}")
    if last_run:
        logger.info(f"Last run:           {last_run['run_id']} ({last_run['status']}, "
                    f"finished {last_run['finished_at']})")

    if args.report:
        save_json({'index': stats, 'resolutions': resolutions, 'last_run': last_run}, args.report)
    return True


# Phase runner dispatch
PHASE_RUNNERS = {
    "index": run_phase_index,
    "resolve": run_phase_resolve,
    "report": run_phase_report,
}


def get_phases_to_run(start: str, end: str) -> list:
    """Get list of phases between start and end (inclusive)."""
    try:
        start_idx = PHASE_ORDER.index(start)
        end_idx = PHASE_ORDER.index(end)
    except ValueError as e:
        raise ValueError(f"Invalid phase: {e}. Valid phases: {PHASE_ORDER}")

    if start_idx > end_idx:
        raise ValueError(f"Start phase {start} comes after end phase {end}")

    return PHASE_ORDER[start_idx:end_idx + 1]


def run_pipeline(args: argparse.Namespace) -> bool:
    """
    Run phases start_phase..end_phase (inclusive).

    Returns:
        True if all phases completed successfully
    """
    try:
        phases = get_phases_to_run(args.start_phase, args.end_phase)
    except ValueError as e:
        logger.error(str(e))
        return False

    logger.info("=" * 70)
    logger.info("STORY RESOLUTION PIPELINE")
    logger.info(f"Phases: {args.start_phase} -> {args.end_phase}")
    logger.info(f"Started: {datetime.now().isoformat()}")
    logger.info("=" * 70)

    for phase in phases:
        phase_name = PHASE_NAMES[phase]
        logger.info(f">>> Starting {phase}: {phase_name}")
        try:
            success = PHASE_RUNNERS[phase](args)
        except (ConfigurationError, IndexUnavailableError) as e:
            logger.error(f"Phase {phase} failed: {e}")
            return False

        if not success:
            logger.error(f"Phase {phase} failed")
            return False
        logger.info(f"<<< Completed {phase}: {phase_name}")

    logger.info("=" * 70)
    logger.info("PIPELINE COMPLETE")
    logger.info(f"Finished: {datetime.now().isoformat()}")
    logger.info("=" * 70)
    return True


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run the story resolution pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Phases:
  index    Index Backfill     Load archive articles into the entity index
  resolve  Story Resolution   NEW / UPDATE / SKIP for the input batch
  report   Index Report       Index and resolution statistics

Examples:
  python run_dedup_pipeline.py --archive archive.jsonl --input batch.jsonl
  python run_dedup_pipeline.py -s resolve -e resolve --input batch.jsonl --no-llm
  python run_dedup_pipeline.py -s report --report data/processed/report.json
        """
    )

    parser.add_argument("-s", "--start-phase", default="index", choices=PHASE_ORDER,
                        help="First phase to run (default: index)")
    parser.add_argument("-e", "--end-phase", default="report", choices=PHASE_ORDER,
                        help="Last phase to run (default: report)")
    parser.add_argument("--list-phases", action="store_true",
                        help="List all phases and exit")

    parser.add_argument("--archive", type=Path, default=None,
                        help="Historical articles for the index phase")
    parser.add_argument("--input", "-i", type=Path, default=None,
                        help="Article batch for the resolve phase")
    parser.add_argument("--db", type=Path, default=DEFAULT_DB_PATH,
                        help=f"Entity index database (default: {DEFAULT_DB_PATH})")
    parser.add_argument("--output", "-o", type=Path, default=DEFAULT_RESOLUTIONS_PATH,
                        help="Resolution records JSONL")
    parser.add_argument("--report", type=Path, default=None,
                        help="Write the report phase output as JSON")

    parser.add_argument("--lookback-days", type=int, default=None)
    parser.add_argument("--workers", type=int, default=None)
    parser.add_argument("--timeout", type=float, default=None,
                        help="Adjudication timeout in seconds (default: 60)")
    parser.add_argument("--fallback", choices=["new", "skip"], default=None)
    parser.add_argument("--no-llm", action="store_true",
                        help="Borderline articles take the fallback policy")
    parser.add_argument("--no-adjudicate-updates", action="store_true",
                        help="Merge update-eligible articles without asking the LLM")
    parser.add_argument("--dry-run", action="store_true",
                        help="Resolve against a temporary copy of the index; nothing is written")
    parser.add_argument("--force", action="store_true",
                        help="Re-index / re-resolve already processed articles")
    parser.add_argument("--strict", action="store_true",
                        help="Fail the phase if any article was rejected")
    parser.add_argument("--log-file", default=None)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    if args.list_phases:
        print("\nAvailable phases:")
        for code, name in PHASES:
            print(f"  {code:<8} {name}")
        sys.exit(0)

    setup_logging(log_file=args.log_file)
    success = run_pipeline(args)
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
