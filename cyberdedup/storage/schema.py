# -*- coding: utf-8 -*-
"""
SQLite schema for the entity index.

articles holds the canonical records; article_cves and article_entities are
the inverted index used for candidate retrieval; article_sources holds the
unioned source references of a canonical record (one row per url and
website); article_updates is the append-only history (update_id is the
de-dup key) and article_update_sources the sources each update brought in;
article_resolutions is the per-article audit trail; pipeline_runs logs one
row per run.

Dates are stored as ISO-8601 text so window predicates compare lexically.
"""

SCHEMA_VERSION = 2

SCHEMA_STATEMENTS = [
    '''
    CREATE TABLE IF NOT EXISTS articles (
        id TEXT PRIMARY KEY,
        slug TEXT NOT NULL,
        pub_date TEXT NOT NULL,
        headline TEXT,
        summary TEXT NOT NULL,
        full_text TEXT,
        raw_entities TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        indexed_run_id TEXT,
        indexed_at TEXT NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS article_cves (
        article_id TEXT NOT NULL REFERENCES articles(id),
        cve_id TEXT NOT NULL,
        cvss_score REAL,
        severity TEXT,
        known_exploited INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (article_id, cve_id)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS article_entities (
        article_id TEXT NOT NULL REFERENCES articles(id),
        entity_type TEXT NOT NULL,
        entity_key TEXT NOT NULL,
        entity_name TEXT NOT NULL,
        PRIMARY KEY (article_id, entity_type, entity_key)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS article_updates (
        update_id TEXT PRIMARY KEY,
        article_id TEXT NOT NULL REFERENCES articles(id),
        seq INTEGER NOT NULL,
        timestamp TEXT NOT NULL,
        change_summary TEXT NOT NULL,
        added_entities TEXT NOT NULL,
        added_cves TEXT NOT NULL,
        severity_delta TEXT NOT NULL,
        source_article_id TEXT,
        UNIQUE (article_id, seq)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS article_sources (
        article_id TEXT NOT NULL REFERENCES articles(id),
        source_key TEXT NOT NULL,
        url TEXT NOT NULL,
        title TEXT NOT NULL,
        website TEXT,
        date TEXT,
        PRIMARY KEY (article_id, source_key)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS article_update_sources (
        update_id TEXT NOT NULL REFERENCES article_updates(update_id),
        source_key TEXT NOT NULL,
        url TEXT NOT NULL,
        title TEXT NOT NULL,
        website TEXT,
        date TEXT,
        PRIMARY KEY (update_id, source_key)
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS article_resolutions (
        article_id TEXT PRIMARY KEY,
        pub_date TEXT,
        decision TEXT NOT NULL CHECK (decision IN ('NEW', 'UPDATE', 'SKIP')),
        classification TEXT,
        resolution_method TEXT NOT NULL,
        matched_article_id TEXT,
        canonical_article_id TEXT,
        total_score REAL,
        score_breakdown TEXT,
        reasoning TEXT,
        confidence TEXT,
        run_id TEXT,
        resolved_at TEXT NOT NULL
    )
    ''',
    '''
    CREATE TABLE IF NOT EXISTS pipeline_runs (
        run_id TEXT PRIMARY KEY,
        started_at TEXT NOT NULL,
        finished_at TEXT,
        status TEXT NOT NULL,
        summary TEXT NOT NULL,
        config TEXT
    )
    ''',
    'CREATE INDEX IF NOT EXISTS idx_articles_pub_date ON articles(pub_date)',
    'CREATE INDEX IF NOT EXISTS idx_article_cves_cve ON article_cves(cve_id)',
    'CREATE INDEX IF NOT EXISTS idx_article_entities_key ON article_entities(entity_type, entity_key)',
    'CREATE INDEX IF NOT EXISTS idx_article_updates_article ON article_updates(article_id)',
    'CREATE INDEX IF NOT EXISTS idx_resolutions_pub_date ON article_resolutions(pub_date)',
    'CREATE INDEX IF NOT EXISTS idx_resolutions_canonical ON article_resolutions(canonical_article_id)',
]
