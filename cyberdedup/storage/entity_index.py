# -*- coding: utf-8 -*-
"""
SQLite-backed entity index and canonical article store.

Maps CVE ids and typed entity keys to the articles that mention them and
answers time-windowed overlap queries for the candidate filter. The same
database holds the canonical article records, their append-only update
history, the per-article resolution audit trail, and the run log.

Write path (single writer, the orchestrator thread):
    index()         - insert or re-index an article (idempotent per id)
    save_merge()    - union sets + append one history entry, one transaction
    save_resolution(), log_run()

Read path (safe from worker threads, one connection per call, WAL mode):
    query(), get_article(), get_articles(), has_article(), stats(), ...

Every sqlite3 failure surfaces as IndexUnavailableError.

Example:
    index = EntityIndex("data/processed/entity_index.db")
    index.index(article)
    candidates = index.query(
        cve_ids={"CVE-2023-4966"},
        entities={EntityType.THREAT_ACTOR: {"lockbit"}},
        as_of=date(2025, 1, 15),
        window_days=30,
        exclude_id="art_abc",
    )
"""

# Standard library
import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Union

# Local
from cyberdedup.storage.schema import SCHEMA_STATEMENTS, SCHEMA_VERSION
from cyberdedup.utils.dataclasses import (
    Article,
    Candidate,
    CVEEntry,
    EntityType,
    ResolutionRecord,
    RunSummary,
    SourceRef,
    UpdateEntry,
    parse_date,
    parse_timestamp,
    utcnow,
)
from cyberdedup.utils.errors import IndexUnavailableError

logger = logging.getLogger(__name__)


class EntityIndex:
    """
    Durable entity index over canonical article records.

    Rows are never deleted except when an article is re-indexed, which
    replaces that article's own CVE/entity rows.
    """

    def __init__(self, db_path: Union[str, Path], max_retries: int = 3, retry_delay: float = 0.5):
        """
        Open (and create if needed) the index database.

        Args:
            db_path: SQLite file path (parent directory is created)
            max_retries: Connection attempts while the database is locked
            retry_delay: Seconds between attempts

        Raises:
            IndexUnavailableError: database cannot be opened or initialized
        """
        self.db_path = Path(db_path)
        self.max_retries = max_retries
        self.retry_delay = retry_delay

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise IndexUnavailableError(f"Cannot create index directory {self.db_path.parent}: {e}")

        self.init_schema()

    # ========================================================================
    # CONNECTIONS
    # ========================================================================

    def _connect(self) -> sqlite3.Connection:
        last_error = None
        for attempt in range(self.max_retries):
            try:
                conn = sqlite3.connect(str(self.db_path), timeout=30.0)
                conn.row_factory = sqlite3.Row
                conn.execute('PRAGMA journal_mode=WAL;')
                conn.execute('PRAGMA synchronous=NORMAL;')
                conn.execute('PRAGMA foreign_keys=ON;')
                return conn
            except sqlite3.OperationalError as e:
                last_error = e
                if "locked" in str(e) and attempt < self.max_retries - 1:
                    logger.warning(f"Index locked, retrying in {self.retry_delay}s (attempt {attempt + 1})")
                    time.sleep(self.retry_delay)
                    continue
                break
            except sqlite3.Error as e:
                last_error = e
                break
        raise IndexUnavailableError(f"Cannot open entity index {self.db_path}: {last_error}")

    @contextmanager
    def get_connection(self) -> Iterator[sqlite3.Connection]:
        """
        Connection scoped to one unit of work.

        Commits on success, rolls back on any exception. sqlite3 errors are
        re-raised as IndexUnavailableError.
        """
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise IndexUnavailableError(f"Entity index error: {e}") from e
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_schema(self) -> None:
        with self.get_connection() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
            conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        logger.debug(f"Entity index ready at {self.db_path}")

    def snapshot(self, db_path: Union[str, Path]) -> 'EntityIndex':
        """
        Consistent copy of the whole index, opened as a separate EntityIndex.

        Writes to the copy never reach this index.

        Raises:
            IndexUnavailableError: the copy could not be written
        """
        target = Path(db_path)
        source = self._connect()
        try:
            dest = sqlite3.connect(str(target))
            try:
                source.backup(dest)
            finally:
                dest.close()
        except sqlite3.Error as e:
            raise IndexUnavailableError(f"Cannot copy entity index to {target}: {e}") from e
        finally:
            source.close()
        logger.debug(f"Copied entity index to {target}")
        return EntityIndex(target, max_retries=self.max_retries, retry_delay=self.retry_delay)

    # ========================================================================
    # WRITE PATH
    # ========================================================================

    def index(self, article: Article, run_id: Optional[str] = None) -> None:
        """
        Insert an article, or overwrite the sets of an already indexed id.

        id, slug and created_at of an existing row are kept.

        Args:
            article: Article to index (created_at/updated_at default to now)
            run_id: Run that committed the article (drives same-run visibility)
        """
        now = utcnow()
        created_at = article.created_at or now
        updated_at = article.updated_at or created_at

        with self.get_connection() as conn:
            conn.execute('''
                INSERT INTO articles (id, slug, pub_date, headline, summary, full_text,
                                      raw_entities, created_at, updated_at, indexed_run_id, indexed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    pub_date = excluded.pub_date,
                    headline = excluded.headline,
                    summary = excluded.summary,
                    full_text = excluded.full_text,
                    raw_entities = excluded.raw_entities,
                    updated_at = excluded.updated_at,
                    indexed_run_id = excluded.indexed_run_id,
                    indexed_at = excluded.indexed_at
            ''', (
                article.id, article.slug, article.pub_date.isoformat(), article.headline,
                article.summary, article.full_text, json.dumps(article.raw_entities, ensure_ascii=False),
                created_at.isoformat(), updated_at.isoformat(), run_id, now.isoformat(),
            ))

            conn.execute('DELETE FROM article_cves WHERE article_id = ?', (article.id,))
            conn.execute('DELETE FROM article_entities WHERE article_id = ?', (article.id,))
            conn.execute('DELETE FROM article_sources WHERE article_id = ?', (article.id,))
            self._insert_sets(conn, article)

        logger.debug(f"Indexed {article.id} ({len(article.cves)} CVEs, "
                     f"{sum(len(v) for v in article.entities.values())} entities)")

    def save_merge(self, merged: Article, entry: UpdateEntry) -> bool:
        """
        Persist a merge: overwrite content fields, union sets, append history.

        Runs in one transaction. If entry.update_id is already recorded for
        this article nothing is written.

        Args:
            merged: Canonical article with merged content and unioned sets
            entry: History entry to append

        Returns:
            True if the merge was written, False if it was a replay
        """
        with self.get_connection() as conn:
            exists = conn.execute(
                'SELECT 1 FROM article_updates WHERE update_id = ?', (entry.update_id,)
            ).fetchone()
            if exists:
                return False

            updated = conn.execute('''
                UPDATE articles
                SET headline = ?, summary = ?, full_text = ?, raw_entities = ?, updated_at = ?
                WHERE id = ?
            ''', (
                merged.headline, merged.summary, merged.full_text,
                json.dumps(merged.raw_entities, ensure_ascii=False),
                entry.timestamp.isoformat(), merged.id,
            ))
            if updated.rowcount == 0:
                raise IndexUnavailableError(f"Canonical article {merged.id} not found in index")

            self._insert_sets(conn, merged)

            seq = conn.execute(
                'SELECT COALESCE(MAX(seq), 0) + 1 FROM article_updates WHERE article_id = ?',
                (merged.id,)
            ).fetchone()[0]
            conn.execute('''
                INSERT INTO article_updates (update_id, article_id, seq, timestamp, change_summary,
                                             added_entities, added_cves, severity_delta, source_article_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                entry.update_id, merged.id, seq, entry.timestamp.isoformat(), entry.change_summary,
                json.dumps(entry.added_entities, ensure_ascii=False), json.dumps(entry.added_cves),
                entry.severity_delta, entry.source_article_id,
            ))
            conn.executemany('''
                INSERT OR IGNORE INTO article_update_sources (update_id, source_key, url, title, website, date)
                VALUES (?, ?, ?, ?, ?, ?)
            ''', [
                (entry.update_id, source.key, source.url, source.title, source.website, source.date)
                for source in entry.sources
            ])
        return True

    @staticmethod
    def _insert_sets(conn: sqlite3.Connection, article: Article) -> None:
        conn.executemany('''
            INSERT OR IGNORE INTO article_cves (article_id, cve_id, cvss_score, severity, known_exploited)
            VALUES (?, ?, ?, ?, ?)
        ''', [
            (article.id, cve.id, cve.cvss_score, cve.severity, int(cve.known_exploited))
            for cve in article.cves.values()
        ])
        conn.executemany('''
            INSERT OR IGNORE INTO article_entities (article_id, entity_type, entity_key, entity_name)
            VALUES (?, ?, ?, ?)
        ''', [
            (article.id, entity_type.value, key, name)
            for entity_type, names in article.entities.items()
            for key, name in names.items()
        ])
        conn.executemany('''
            INSERT OR IGNORE INTO article_sources (article_id, source_key, url, title, website, date)
            VALUES (?, ?, ?, ?, ?, ?)
        ''', [
            (article.id, source.key, source.url, source.title, source.website, source.date)
            for source in article.sources
        ])

    def save_resolution(self, record: ResolutionRecord, run_id: Optional[str] = None) -> None:
        """Store (or replace) the resolution of one incoming article."""
        if record.decision is None:
            raise ValueError(f"Cannot store a resolution without a decision ({record.article_id})")

        with self.get_connection() as conn:
            conn.execute('''
                INSERT OR REPLACE INTO article_resolutions (
                    article_id, pub_date, decision, classification, resolution_method,
                    matched_article_id, canonical_article_id, total_score, score_breakdown,
                    reasoning, confidence, run_id, resolved_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                record.article_id,
                record.pub_date.isoformat() if record.pub_date else None,
                record.decision.value,
                record.classification.value if record.classification else None,
                record.resolution_method.value,
                record.matched_article_id,
                record.canonical_article_id,
                record.total_score,
                json.dumps(record.score_breakdown) if record.score_breakdown else None,
                record.reasoning,
                record.confidence,
                run_id,
                record.resolved_at.isoformat(),
            ))

    def log_run(self, summary: RunSummary, config: Optional[Dict[str, Any]] = None) -> None:
        """Record a run summary in the run log."""
        if summary.aborted:
            status = 'aborted'
        elif summary.errors:
            status = 'completed_with_errors'
        else:
            status = 'completed'

        with self.get_connection() as conn:
            conn.execute('''
                INSERT OR REPLACE INTO pipeline_runs (run_id, started_at, finished_at, status, summary, config)
                VALUES (?, ?, ?, ?, ?, ?)
            ''', (
                summary.run_id,
                summary.started_at.isoformat(),
                summary.finished_at.isoformat() if summary.finished_at else None,
                status,
                json.dumps(summary.to_dict()),
                json.dumps(config) if config is not None else None,
            ))

    # ========================================================================
    # READ PATH
    # ========================================================================

    def query(
        self,
        cve_ids: Optional[Iterable[str]] = None,
        entities: Optional[Dict[EntityType, Set[str]]] = None,
        as_of: Optional[date] = None,
        window_days: int = 30,
        exclude_id: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> List[Candidate]:
        """
        Articles sharing at least one CVE or entity key, with overlap counts.

        Visibility window is [as_of - window_days, as_of). Articles committed
        by run_id are also visible on as_of itself. exclude_id is never
        returned.

        Args:
            cve_ids: Normalized CVE ids of the incoming article
            entities: {EntityType: normalized keys} of the incoming article
            as_of: Publication date of the incoming article (default: today)
            window_days: Lookback in days
            exclude_id: Incoming article id
            run_id: Current run id

        Returns:
            Candidates (ranking_score not set), unordered
        """
        cve_ids = sorted(set(cve_ids or ()))
        entities = {t: sorted(keys) for t, keys in (entities or {}).items() if keys}
        if not cve_ids and not entities:
            return []

        as_of = as_of or date.today()
        start = (as_of - timedelta(days=window_days)).isoformat()
        window_sql = '''
            a.id != ? AND a.pub_date >= ?
            AND (a.pub_date < ? OR (a.indexed_run_id IS NOT NULL AND a.indexed_run_id = ? AND a.pub_date = ?))
        '''
        window_params = [exclude_id or '', start, as_of.isoformat(), run_id, as_of.isoformat()]

        candidates: Dict[str, Candidate] = {}

        with self.get_connection() as conn:
            if cve_ids:
                placeholders = ','.join('?' * len(cve_ids))
                rows = conn.execute(f'''
                    SELECT c.article_id, a.pub_date, COUNT(*) AS shared
                    FROM article_cves c JOIN articles a ON a.id = c.article_id
                    WHERE c.cve_id IN ({placeholders}) AND {window_sql}
                    GROUP BY c.article_id
                ''', cve_ids + window_params).fetchall()
                for row in rows:
                    candidate = candidates.setdefault(
                        row['article_id'], Candidate(row['article_id'], parse_date(row['pub_date'])))
                    candidate.shared_cves = row['shared']

            if entities:
                clauses = []
                params: List[Any] = []
                for entity_type, keys in entities.items():
                    clauses.append(f"(e.entity_type = ? AND e.entity_key IN ({','.join('?' * len(keys))}))")
                    params.append(entity_type.value)
                    params.extend(keys)
                rows = conn.execute(f'''
                    SELECT e.article_id, a.pub_date, e.entity_type, COUNT(*) AS shared
                    FROM article_entities e JOIN articles a ON a.id = e.article_id
                    WHERE ({' OR '.join(clauses)}) AND {window_sql}
                    GROUP BY e.article_id, e.entity_type
                ''', params + window_params).fetchall()
                for row in rows:
                    candidate = candidates.setdefault(
                        row['article_id'], Candidate(row['article_id'], parse_date(row['pub_date'])))
                    candidate.shared_entities[EntityType(row['entity_type'])] = row['shared']

        return list(candidates.values())

    def has_article(self, article_id: str) -> bool:
        with self.get_connection() as conn:
            row = conn.execute('SELECT 1 FROM articles WHERE id = ?', (article_id,)).fetchone()
        return row is not None

    def get_article(self, article_id: str) -> Optional[Article]:
        """Full canonical record with sets and update history, or None."""
        return self.get_articles([article_id]).get(article_id)

    def get_articles(self, article_ids: Iterable[str]) -> Dict[str, Article]:
        """Load several canonical records in one connection, keyed by id."""
        article_ids = list(dict.fromkeys(article_ids))
        if not article_ids:
            return {}

        articles: Dict[str, Article] = {}
        with self.get_connection() as conn:
            for article_id in article_ids:
                row = conn.execute('SELECT * FROM articles WHERE id = ?', (article_id,)).fetchone()
                if row is not None:
                    articles[article_id] = self._load_article(conn, row)
        return articles

    def _load_article(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Article:
        article_id = row['id']

        cves = {
            r['cve_id']: CVEEntry(
                id=r['cve_id'],
                cvss_score=r['cvss_score'],
                severity=r['severity'],
                known_exploited=bool(r['known_exploited']),
            )
            for r in conn.execute(
                'SELECT * FROM article_cves WHERE article_id = ? ORDER BY cve_id', (article_id,))
        }

        entities: Dict[EntityType, Dict[str, str]] = {}
        for r in conn.execute(
                'SELECT * FROM article_entities WHERE article_id = ? ORDER BY entity_type, entity_key',
                (article_id,)):
            entities.setdefault(EntityType(r['entity_type']), {})[r['entity_key']] = r['entity_name']

        sources = [
            _source_ref(r) for r in conn.execute(
                'SELECT * FROM article_sources WHERE article_id = ? ORDER BY rowid', (article_id,))
        ]

        history = [
            UpdateEntry(
                update_id=r['update_id'],
                timestamp=parse_timestamp(r['timestamp']),
                change_summary=r['change_summary'],
                added_entities=json.loads(r['added_entities']),
                added_cves=json.loads(r['added_cves']),
                severity_delta=r['severity_delta'],
                source_article_id=r['source_article_id'],
                sources=[
                    _source_ref(s) for s in conn.execute(
                        'SELECT * FROM article_update_sources WHERE update_id = ? ORDER BY rowid',
                        (r['update_id'],))
                ],
            )
            for r in conn.execute(
                'SELECT * FROM article_updates WHERE article_id = ? ORDER BY seq', (article_id,))
        ]

        return Article(
            id=article_id,
            slug=row['slug'],
            pub_date=parse_date(row['pub_date']),
            summary=row['summary'],
            headline=row['headline'] or '',
            full_text=row['full_text'] or '',
            cves=cves,
            entities=entities,
            raw_entities=json.loads(row['raw_entities'] or '[]'),
            sources=sources,
            update_history=history,
            created_at=parse_timestamp(row['created_at']),
            updated_at=parse_timestamp(row['updated_at']),
        )

    def get_resolution(self, article_id: str) -> Optional[Dict[str, Any]]:
        with self.get_connection() as conn:
            row = conn.execute(
                'SELECT * FROM article_resolutions WHERE article_id = ?', (article_id,)).fetchone()
        return _resolution_row(row) if row is not None else None

    def list_resolutions(self, pub_date: Optional[date] = None,
                         decision: Optional[str] = None) -> List[Dict[str, Any]]:
        """Stored resolutions, optionally filtered by publication date and decision."""
        sql = 'SELECT * FROM article_resolutions WHERE 1 = 1'
        params: List[Any] = []
        if pub_date is not None:
            sql += ' AND pub_date = ?'
            params.append(pub_date.isoformat())
        if decision is not None:
            sql += ' AND decision = ?'
            params.append(decision.upper())
        sql += ' ORDER BY resolved_at, article_id'

        with self.get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_resolution_row(row) for row in rows]

    def get_updates_to(self, canonical_id: str) -> List[Dict[str, Any]]:
        """Resolutions that merged into the given canonical article."""
        with self.get_connection() as conn:
            rows = conn.execute('''
                SELECT * FROM article_resolutions
                WHERE canonical_article_id = ? AND decision = 'UPDATE'
                ORDER BY resolved_at
            ''', (canonical_id,)).fetchall()
        return [_resolution_row(row) for row in rows]

    def resolution_stats(self) -> Dict[str, Any]:
        """Counts of stored resolutions by decision and by method."""
        with self.get_connection() as conn:
            by_decision = {
                row['decision']: row['n'] for row in conn.execute(
                    'SELECT decision, COUNT(*) AS n FROM article_resolutions GROUP BY decision')
            }
            by_method = {
                row['resolution_method']: row['n'] for row in conn.execute(
                    'SELECT resolution_method, COUNT(*) AS n FROM article_resolutions '
                    'GROUP BY resolution_method')
            }
        return {
            'total': sum(by_decision.values()),
            'by_decision': by_decision,
            'by_method': by_method,
        }

    def stats(self) -> Dict[str, Any]:
        """Index statistics: article/CVE/entity counts, date range, entity type breakdown."""
        with self.get_connection() as conn:
            articles = conn.execute(
                'SELECT COUNT(*) AS n, MIN(pub_date) AS oldest, MAX(pub_date) AS newest FROM articles'
            ).fetchone()
            cves = conn.execute(
                'SELECT COUNT(*) AS n, COUNT(DISTINCT cve_id) AS uniq FROM article_cves').fetchone()
            entities = conn.execute(
                "SELECT COUNT(*) AS n, COUNT(DISTINCT entity_type || '|' || entity_key) AS uniq "
                "FROM article_entities").fetchone()
            by_type = {
                row['entity_type']: row['n'] for row in conn.execute(
                    'SELECT entity_type, COUNT(*) AS n FROM article_entities GROUP BY entity_type')
            }
            updates = conn.execute('SELECT COUNT(*) AS n FROM article_updates').fetchone()
            runs = conn.execute('SELECT COUNT(*) AS n FROM pipeline_runs').fetchone()

        return {
            'total_articles': articles['n'],
            'oldest_pub_date': articles['oldest'],
            'newest_pub_date': articles['newest'],
            'total_cve_refs': cves['n'],
            'unique_cves': cves['uniq'],
            'total_entity_refs': entities['n'],
            'unique_entities': entities['uniq'],
            'entities_by_type': by_type,
            'total_updates': updates['n'],
            'total_runs': runs['n'],
        }

    def last_run(self) -> Optional[Dict[str, Any]]:
        with self.get_connection() as conn:
            row = conn.execute(
                'SELECT * FROM pipeline_runs ORDER BY started_at DESC LIMIT 1').fetchone()
        if row is None:
            return None
        return {
            'run_id': row['run_id'],
            'status': row['status'],
            'started_at': row['started_at'],
            'finished_at': row['finished_at'],
            'summary': json.loads(row['summary']),
        }


def _resolution_row(row: sqlite3.Row) -> Dict[str, Any]:
    record = dict(row)
    if record.get('score_breakdown'):
        record['score_breakdown'] = json.loads(record['score_breakdown'])
    return record


def _source_ref(row: sqlite3.Row) -> SourceRef:
    return SourceRef(url=row['url'], title=row['title'], website=row['website'], date=row['date'])
