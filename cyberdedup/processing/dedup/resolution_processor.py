# -*- coding: utf-8 -*-
"""
Story resolution - main orchestrator.

For every incoming article: extract -> find candidates -> score -> classify
-> adjudicate (borderline, optionally update-eligible) -> commit
(register NEW / merge UPDATE / discard SKIP) -> resolution record.

Concurrency model:
    - Articles are processed in (pub_date, input position) order.
    - Read phases (filter, score, classify, adjudicate) run on a worker pool
      with a bounded number of articles in flight.
    - Commits happen on the calling thread, one at a time, in that order.
    - Each read phase remembers the commit sequence number it started from.
      If a later commit touched any of the article's CVEs or entities, the
      article is re-resolved against the current index before committing,
      so same-run writes are always visible to later articles.
    - Dry runs resolve against a temporary copy of the index, so decisions
      match a real run while the live index stays untouched.

Usage:
    # Resolve a batch
    python -m cyberdedup.processing.dedup.resolution_processor --input data/raw/articles.jsonl

    # Without LLM (borderline -> fallback policy)
    python -m cyberdedup.processing.dedup.resolution_processor --input batch.json --no-llm

    # Backfill historical articles into the index only
    python -m cyberdedup.processing.dedup.resolution_processor --input archive.jsonl --backfill

Outputs:
    - data/processed/entity_index.db (canonical records, index, resolutions, run log)
    - data/processed/resolutions.jsonl (one resolution record per article)
"""

import argparse
import logging
import sys
import tempfile
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Deque, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from tqdm import tqdm

from cyberdedup.processing.dedup.adjudicator import (
    BaseAdjudicator,
    GuardedAdjudicator,
    build_automatic_change,
)
from cyberdedup.processing.dedup.candidate_filter import CandidateFilter
from cyberdedup.processing.dedup.classifier import TieredThresholdClassifier
from cyberdedup.processing.dedup.merge_applier import MergeApplier
from cyberdedup.processing.dedup.similarity_scorer import SimilarityScorer
from cyberdedup.processing.entities.entity_extractor import EntityExtractor
from cyberdedup.storage.entity_index import EntityIndex
from cyberdedup.utils.config import DEBUG_MODE, DEFAULT_DB_PATH, DEFAULT_RESOLUTIONS_PATH, DedupConfig
from cyberdedup.utils.dataclasses import (
    AdjudicationResult,
    Article,
    Classification,
    Decision,
    EntityType,
    ResolutionMethod,
    ResolutionRecord,
    RunSummary,
    SimilarityResult,
    utcnow,
)
from cyberdedup.utils.errors import (
    ConfigurationError,
    IndexUnavailableError,
    MalformedInputError,
)
from cyberdedup.utils.id_generator import generate_run_id
from cyberdedup.utils.io import load_articles, save_jsonl
from cyberdedup.utils.logger import log_banner, setup_logging

logger = logging.getLogger(__name__)


def index_keys(article: Article) -> Set[str]:
    """CVE and typed entity keys of an article, as flat strings."""
    keys = {f"cve:{cve_id}" for cve_id in article.cves}
    for entity_type in EntityType:
        keys.update(f"{entity_type.value}:{key}" for key in article.entities.get(entity_type, {}))
    return keys


@dataclass
class ReadOutcome:
    """Result of the read phase for one article, before commit."""
    article: Article
    snapshot_seq: int
    classification: Classification
    candidate_count: int = 0
    best: Optional[SimilarityResult] = None
    adjudication: Optional[AdjudicationResult] = None

    @property
    def decision(self) -> Decision:
        if self.adjudication is not None:
            return self.adjudication.decision
        return Decision.NEW


# =============================================================================
# MAIN PROCESSOR
# =============================================================================

class ResolutionProcessor:
    """
    Resolves incoming articles against the entity index.

    Configuration is validated here, before the index is touched.
    """

    def __init__(self,
                 index: EntityIndex,
                 config: Optional[DedupConfig] = None,
                 adjudicator: Optional[BaseAdjudicator] = None):
        """
        Args:
            index: Entity index / canonical store
            config: Run configuration (defaults if None)
            adjudicator: Verdict source for borderline matches; None applies
                the fallback policy to every borderline article

        Raises:
            ConfigurationError: invalid weights or thresholds
        """
        self.config = (config or DedupConfig()).validate()
        self.index = index

        self.extractor = EntityExtractor()
        self.candidate_filter = CandidateFilter(
            index, window_days=self.config.lookback_days, candidate_cap=self.config.candidate_cap)
        self.scorer = SimilarityScorer(self.config.weights)
        self.classifier = TieredThresholdClassifier(
            self.config.new_threshold, self.config.update_threshold)
        self.adjudicator = GuardedAdjudicator(
            adjudicator,
            timeout=self.config.adjudication_timeout,
            fallback_policy=self.config.fallback_policy,
        )
        self.merge_applier = MergeApplier(index)

        self.run_id: Optional[str] = None
        self.resolutions: List[ResolutionRecord] = []
        self._commit_lock = threading.Lock()
        self._commit_seq = 0
        self._commit_log: List[Tuple[int, Set[str]]] = []
        self._scratch = False

    # =========================================================================
    # READ PHASE
    # =========================================================================

    def _read_phase(self, article: Article) -> ReadOutcome:
        snapshot_seq = self._commit_seq

        candidates = self.candidate_filter.find_candidates(article, run_id=self.run_id)
        if not candidates:
            self.classifier.classify(None)
            return ReadOutcome(article, snapshot_seq, Classification.NEW)

        records = self.index.get_articles(c.article_id for c in candidates)
        results = self.scorer.score_all(
            article, [records[c.article_id] for c in candidates if c.article_id in records])
        best = self.classifier.select_best(results)
        classification = self.classifier.classify(best)

        outcome = ReadOutcome(article, snapshot_seq, classification,
                              candidate_count=len(candidates), best=best)
        if best is None or classification is Classification.NEW:
            return outcome

        existing = records[best.candidate_id]
        if classification is Classification.BORDERLINE:
            outcome.adjudication = self.adjudicator.adjudicate(article, existing, best)
        elif self.config.adjudicate_updates and self.adjudicator.available:
            outcome.adjudication = self.adjudicator.adjudicate(article, existing, best)
        else:
            outcome.adjudication = AdjudicationResult(
                decision=Decision.UPDATE,
                reasoning=f"Similarity {best.total:.3f} >= update threshold "
                          f"{self.config.update_threshold}",
                method=ResolutionMethod.AUTOMATIC,
                change=build_automatic_change(article, existing),
                confidence='high',
            )
        return outcome

    # =========================================================================
    # COMMIT PHASE
    # =========================================================================

    @property
    def _writes_enabled(self) -> bool:
        # Dry runs write only to their scratch copy of the index
        return not self.config.dry_run or self._scratch

    def _use_index(self, index: EntityIndex) -> None:
        self.index = index
        self.candidate_filter.index = index
        self.merge_applier.index = index

    def _is_stale(self, outcome: ReadOutcome) -> bool:
        keys = index_keys(outcome.article)
        return any(seq > outcome.snapshot_seq and keys & touched
                   for seq, touched in self._commit_log)

    def _commit(self, outcome: ReadOutcome, summary: Optional[RunSummary] = None) -> ResolutionRecord:
        with self._commit_lock:
            if self._is_stale(outcome):
                logger.debug(f"{outcome.article.id}: index changed since read, re-resolving")
                if summary is not None:
                    summary.revalidated += 1
                outcome = self._read_phase(outcome.article)

            article = outcome.article
            decision = outcome.decision
            best = outcome.best
            adjudication = outcome.adjudication

            touched: Set[str] = set()
            if self._writes_enabled:
                if decision is Decision.NEW:
                    self.merge_applier.register(article, run_id=self.run_id)
                    touched = index_keys(article)
                elif decision is Decision.UPDATE:
                    merged = self.merge_applier.merge(best.candidate_id, article, adjudication)
                    touched = index_keys(article) | index_keys(merged)
                else:
                    self.merge_applier.merge(best.candidate_id, article, adjudication)

                if touched:
                    self._commit_seq += 1
                    self._commit_log.append((self._commit_seq, touched))

            record = ResolutionRecord(
                article_id=article.id,
                decision=decision,
                pub_date=article.pub_date,
                resolution_method=adjudication.method if adjudication else ResolutionMethod.AUTOMATIC,
                classification=outcome.classification,
                matched_article_id=best.candidate_id if best and decision is not Decision.NEW else None,
                total_score=best.total if best else None,
                score_breakdown=best.breakdown() if best else None,
                reasoning=adjudication.reasoning if adjudication else self._new_reason(outcome),
                confidence=adjudication.confidence if adjudication else 'high',
                error=adjudication.error if adjudication else None,
            )
            if self._writes_enabled:
                self.index.save_resolution(record, run_id=self.run_id)

        if summary is not None:
            summary.count_decision(decision)
            if outcome.classification is Classification.BORDERLINE:
                summary.borderline += 1
            if adjudication is not None and adjudication.method is ResolutionMethod.LLM:
                summary.adjudicated += 1
            if adjudication is not None and adjudication.method is ResolutionMethod.FALLBACK:
                summary.fallbacks += 1

        logger.debug(f"{article.id}: {decision.value} ({outcome.classification.value}, "
                     f"score={record.total_score if record.total_score is not None else '-'})")
        return record

    @staticmethod
    def _new_reason(outcome: ReadOutcome) -> str:
        if outcome.best is None:
            return "No candidates in lookback window"
        return f"Best similarity {outcome.best.total:.3f} below new-story threshold"

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def resolve(self, article: Article) -> ResolutionRecord:
        """Resolve and commit a single, already extracted article."""
        if self.run_id is None:
            self.run_id = generate_run_id()
        record = self._commit(self._read_phase(article))
        self.resolutions.append(record)
        return record

    def run(self, raw_articles: Sequence[Mapping[str, Any]],
            output_path: Optional[Path] = None) -> RunSummary:
        """
        Resolve a batch of raw article records.

        Args:
            raw_articles: Upstream records, in arrival order
            output_path: Optional JSONL file for the resolution records

        Returns:
            RunSummary (also logged and written to the run log); dry runs
            skip the run log

        Raises:
            IndexUnavailableError: the index failed mid-run (summary is still
                logged, with aborted=True)
        """
        self.run_id = generate_run_id()
        self.resolutions = []
        self._commit_seq = 0
        self._commit_log = []
        summary = RunSummary(run_id=self.run_id, total=len(raw_articles))

        log_banner(logger, f"Story Resolution (run {self.run_id})")
        logger.info(f"Articles: {len(raw_articles)} | window={self.config.lookback_days}d | "
                    f"thresholds={self.config.new_threshold}/{self.config.update_threshold} | "
                    f"workers={self.config.max_workers} | dry_run={self.config.dry_run}")

        live_index = self.index
        scratch_dir = None
        try:
            if self.config.dry_run:
                scratch_dir = tempfile.TemporaryDirectory(prefix='cyberdedup-dry-run-')
                self._use_index(live_index.snapshot(Path(scratch_dir.name) / 'entity_index.db'))
                self._scratch = True
            pending = self._prepare(raw_articles, summary)
            logger.info(f"[2/3] Resolving {len(pending)} articles...")
            self._resolve_pending(pending, summary)
        except IndexUnavailableError as e:
            summary.aborted = True
            summary.abort_reason = str(e)
            logger.error(f"Entity index unavailable, aborting run: {e}")
            raise
        finally:
            summary.finished_at = utcnow()
            self._print_summary(summary)
            self._finish(summary, output_path)
            if scratch_dir is not None:
                self._scratch = False
                self._use_index(live_index)
                scratch_dir.cleanup()

        return summary

    def _prepare(self, raw_articles: Sequence[Mapping[str, Any]],
                 summary: RunSummary) -> List[Article]:
        logger.info("[1/3] Extracting entities...")
        extracted: List[Tuple[int, Article]] = []
        for position, raw in enumerate(raw_articles):
            try:
                extracted.append((position, self.extractor.extract(raw)))
            except MalformedInputError as e:
                summary.errors += 1
                article_id = e.article_id or f"record#{position}"
                logger.warning(f"Rejected {article_id}: {e}")
                self.resolutions.append(ResolutionRecord(
                    article_id=str(article_id), decision=None, error=f"malformed input: {e}"))

        extracted.sort(key=lambda item: (item[1].pub_date, item[0]))

        pending: List[Article] = []
        seen: Set[str] = set()
        for _, article in extracted:
            if article.id in seen:
                summary.errors += 1
                logger.warning(f"Duplicate article id {article.id} in batch, ignoring repeat")
                self.resolutions.append(ResolutionRecord(
                    article_id=article.id, decision=None, pub_date=article.pub_date,
                    error="duplicate article id in batch"))
                continue
            seen.add(article.id)

            if not self.config.force and self.index.get_resolution(article.id) is not None:
                summary.already_resolved += 1
                logger.info(f"{article.id}: already resolved, skipping (use --force to redo)")
                continue
            pending.append(article)

        logger.info(f"Extracted {len(extracted)} articles ({summary.errors} rejected, "
                    f"{summary.already_resolved} already resolved)")
        return pending

    def _resolve_pending(self, pending: List[Article], summary: RunSummary) -> None:
        max_in_flight = self.config.max_workers * 2
        queue = iter(pending)
        in_flight: Deque[Future] = deque()

        pool = ThreadPoolExecutor(max_workers=self.config.max_workers,
                                  thread_name_prefix='resolver')
        try:
            for article in queue:
                in_flight.append(pool.submit(self._read_phase, article))
                if len(in_flight) >= max_in_flight:
                    break

            with tqdm(total=len(pending), desc="Resolving", unit="article") as pbar:
                while in_flight:
                    outcome = in_flight.popleft().result()
                    self.resolutions.append(self._commit(outcome, summary))
                    pbar.update(1)

                    next_article = next(queue, None)
                    if next_article is not None:
                        in_flight.append(pool.submit(self._read_phase, next_article))
        finally:
            pool.shutdown(wait=True, cancel_futures=True)

    def _finish(self, summary: RunSummary, output_path: Optional[Path]) -> None:
        logger.info("[3/3] Writing outputs...")
        if output_path is not None:
            save_jsonl([r.to_dict() for r in self.resolutions], output_path)
        if self.config.dry_run:
            return
        try:
            self.index.log_run(summary, self.config.to_dict())
        except IndexUnavailableError as e:
            logger.error(f"Could not write run log: {e}")

    def backfill(self, raw_articles: Sequence[Mapping[str, Any]]) -> Dict[str, int]:
        """
        Index historical articles without resolving them.

        Already indexed ids are skipped unless config.force is set.

        Returns:
            Counts: indexed, skipped, errors
        """
        log_banner(logger, "Index Backfill")
        stats = {'indexed': 0, 'skipped': 0, 'errors': 0}

        for raw in tqdm(raw_articles, desc="Indexing", unit="article"):
            try:
                article = self.extractor.extract(raw)
            except MalformedInputError as e:
                stats['errors'] += 1
                logger.warning(f"Rejected {e.article_id or 'record'}: {e}")
                continue

            if not self.config.force and self.index.has_article(article.id):
                stats['skipped'] += 1
                continue
            if not self.config.dry_run:
                self.index.index(article)
            stats['indexed'] += 1

        logger.info(f"Indexed {stats['indexed']}, skipped {stats['skipped']}, "
                    f"rejected {stats['errors']}")
        return stats

    def close(self) -> None:
        self.adjudicator.close()

    def _print_summary(self, summary: RunSummary) -> None:
        log_banner(logger, "RESOLUTION SUMMARY" + (" (ABORTED)" if summary.aborted else ""))
        logger.info(f"Articles received:  {summary.total:,}")
        logger.info(f"NEW:                {summary.new:,}")
        logger.info(f"UPDATE:             {summary.update:,}")
        logger.info(f"SKIP:               {summary.skip:,}")
        logger.info(f"BORDERLINE:         {summary.borderline:,}")
        logger.info(f"  LLM verdicts:     {summary.adjudicated:,}")
        logger.info(f"  Fallbacks:        {summary.fallbacks:,}")
        logger.info(f"Already resolved:   {summary.already_resolved:,}")
        logger.info(f"Re-resolved:        {summary.revalidated:,}")
        logger.info(f"Errors:             {summary.errors:,}")
        if summary.aborted:
            logger.info(f"Abort reason:       {summary.abort_reason}")
        if summary.finished_at:
            elapsed = (summary.finished_at - summary.started_at).total_seconds()
            logger.info(f"Elapsed:            {elapsed:.1f}s")


# =============================================================================
# CLI
# =============================================================================

def build_adjudicator(use_llm: bool) -> Optional[BaseAdjudicator]:
    """LLMAdjudicator, or None when disabled."""
    if not use_llm:
        return None
    from cyberdedup.processing.dedup.adjudicator import LLMAdjudicator
    return LLMAdjudicator()


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description='Resolve cyber news articles into NEW / UPDATE / SKIP',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment:
  TOGETHER_API_KEY       required unless --no-llm
  DEDUP_DB_PATH          default index location
  DEDUP_<SETTING>        overrides, e.g. DEDUP_LOOKBACK_DAYS=14, DEDUP_WEIGHT_CVE=0.5
"""
    )
    parser.add_argument('--input', '-i', type=Path, required=True,
                        help='Article batch (.json or .jsonl)')
    parser.add_argument('--db', type=Path, default=DEFAULT_DB_PATH,
                        help=f'Entity index database (default: {DEFAULT_DB_PATH})')
    parser.add_argument('--output', '-o', type=Path, default=DEFAULT_RESOLUTIONS_PATH,
                        help=f'Resolution records JSONL (default: {DEFAULT_RESOLUTIONS_PATH})')
    parser.add_argument('--lookback-days', type=int, default=None,
                        help='Candidate window in days (default: 30)')
    parser.add_argument('--workers', type=int, default=None,
                        help='Read-phase worker threads (default: 4)')
    parser.add_argument('--timeout', type=float, default=None,
                        help='Adjudication timeout in seconds (default: 60)')
    parser.add_argument('--fallback', choices=['new', 'skip'], default=None,
                        help='Decision for borderline articles when adjudication fails (default: new)')
    parser.add_argument('--no-llm', action='store_true',
                        help='Do not call the LLM; borderline articles take the fallback')
    parser.add_argument('--no-adjudicate-updates', action='store_true',
                        help='Merge update-eligible articles without asking the LLM')
    parser.add_argument('--backfill', action='store_true',
                        help='Only index the input articles (historical backfill)')
    parser.add_argument('--dry-run', action='store_true',
                        help='Resolve against a temporary copy of the index; nothing is written')
    parser.add_argument('--force', action='store_true',
                        help='Re-resolve / re-index articles already processed')
    parser.add_argument('--log-file', type=str, default=None,
                        help='Also write logs to this file')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Debug logging')

    args = parser.parse_args(argv)
    setup_logging(level=logging.DEBUG if args.verbose or DEBUG_MODE else logging.INFO, log_file=args.log_file)

    try:
        config = DedupConfig.from_env(
            lookback_days=args.lookback_days,
            max_workers=args.workers,
            adjudication_timeout=args.timeout,
            fallback_policy=args.fallback,
            adjudicate_updates=False if args.no_adjudicate_updates else None,
            dry_run=args.dry_run or None,
            force=args.force or None,
        ).validate()
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    try:
        adjudicator = None if args.backfill else build_adjudicator(not args.no_llm)
    except ValueError as e:
        logger.error(f"{e} (or run with --no-llm)")
        return 2

    raw_articles = load_articles(args.input)

    try:
        index = EntityIndex(args.db)
        processor = ResolutionProcessor(index, config, adjudicator)
        try:
            if args.backfill:
                processor.backfill(raw_articles)
            else:
                processor.run(raw_articles, output_path=args.output)
        finally:
            processor.close()
    except IndexUnavailableError as e:
        logger.error(f"Run aborted: {e}")
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
