# -*- coding: utf-8 -*-
"""
Entity extractor for upstream article records.

Turns a raw article mapping (as produced by the news generation step) into a
normalized Article: CVE set keyed by upper-cased id, and typed entity sets
restricted to the indexed types. Pure transform, no I/O.

Indexed types: threat_actor, malware, product, company (vendor is folded
into company), government_agency. Everything else (person, technology,
security_organization, other, unknown tags) stays in raw_entities for
display and never reaches the index.

Example:
    extractor = EntityExtractor()
    article = extractor.extract({
        "pub_date": "2025-01-15",
        "headline": "LockBit exploits Citrix Bleed",
        "summary": "...",
        "cves": [{"id": "CVE-2023-4966", "cvss_score": 9.4, "kev": True}],
        "entities": [{"name": "LockBit", "type": "threat_actor"}],
    })
"""

# Standard library
import logging
import re
import unicodedata
from typing import Any, Dict, List, Mapping, Optional

# Local
from cyberdedup.utils.dataclasses import (
    Article,
    CVEEntry,
    EntityType,
    SourceRef,
    parse_date,
    parse_timestamp,
)
from cyberdedup.utils.errors import MalformedInputError
from cyberdedup.utils.id_generator import generate_article_id, slugify

logger = logging.getLogger(__name__)

CVE_PATTERN = re.compile(r'^CVE-\d{4}-\d{4,}$')

# Upstream tag -> indexed type. Tags not listed here are display-only.
TYPE_MAP = {
    'threat_actor': EntityType.THREAT_ACTOR,
    'malware': EntityType.MALWARE,
    'product': EntityType.PRODUCT,
    'company': EntityType.COMPANY,
    'vendor': EntityType.COMPANY,
    'government_agency': EntityType.GOVERNMENT_AGENCY,
}

# Known upstream tags that are intentionally not indexed
DISPLAY_ONLY_TYPES = {'person', 'technology', 'security_organization', 'other'}


class EntityExtractor:
    """
    Normalize raw article records.

    Stats track how many entities were indexed or dropped so a batch run can
    report extraction quality.
    """

    def __init__(self):
        self.stats = {
            'articles': 0,
            'cves': 0,
            'invalid_cves': 0,
            'entities_indexed': 0,
            'entities_display_only': 0,
            'entities_unknown_type': 0,
            'sources': 0,
            'invalid_sources': 0,
        }

    @staticmethod
    def normalize_name(name: str) -> str:
        """
        Set-membership key for an entity name.

        NFKC unicode normalization, casefold, whitespace collapse.
        """
        normalized = unicodedata.normalize('NFKC', name)
        normalized = normalized.casefold()
        return ' '.join(normalized.split())

    @staticmethod
    def normalize_cve_id(cve_id: str) -> Optional[str]:
        """Upper-cased CVE id, or None when it does not look like one."""
        candidate = ' '.join(str(cve_id).split()).upper().replace(' ', '')
        if CVE_PATTERN.match(candidate):
            return candidate
        return None

    def extract(self, raw: Mapping[str, Any]) -> Article:
        """
        Build an Article from a raw upstream record.

        Args:
            raw: Mapping with pub_date, summary, optional id/slug/headline,
                 full_text (or full_report), cves[], entities[],
                 sources[]

        Returns:
            Article with normalized CVE and entity sets

        Raises:
            MalformedInputError: missing/unparseable pub_date or empty summary
        """
        if not isinstance(raw, Mapping):
            raise MalformedInputError(f"Article record must be an object, got {type(raw).__name__}")

        article_id = raw.get('id') or raw.get('article_id')
        pub_date_raw = raw.get('pub_date') or raw.get('published_at')
        if not pub_date_raw:
            raise MalformedInputError("Missing pub_date", article_id=article_id)
        try:
            pub_date = parse_date(pub_date_raw)
        except (TypeError, ValueError):
            raise MalformedInputError(f"Unparseable pub_date: {pub_date_raw!r}", article_id=article_id)

        summary = (raw.get('summary') or '').strip()
        if not summary:
            raise MalformedInputError("Missing summary", article_id=article_id)

        headline = (raw.get('headline') or raw.get('title') or '').strip()
        full_text = (raw.get('full_text') or raw.get('full_report') or '').strip()

        slug = raw.get('slug') or slugify(headline or summary[:80])
        if not article_id:
            article_id = generate_article_id(slug, pub_date.isoformat())

        try:
            created_at = parse_timestamp(raw.get('created_at'))
        except ValueError:
            raise MalformedInputError(f"Unparseable created_at: {raw.get('created_at')!r}",
                                      article_id=article_id)

        raw_entities = list(raw.get('entities') or [])
        article = Article(
            id=str(article_id),
            slug=str(slug),
            pub_date=pub_date,
            summary=summary,
            headline=headline,
            full_text=full_text,
            cves=self._extract_cves(raw.get('cves') or [], article_id),
            entities=self._extract_entities(raw_entities, article_id),
            raw_entities=raw_entities,
            sources=self._extract_sources(raw.get('sources') or [], article_id),
            created_at=created_at,
            updated_at=created_at,
        )

        self.stats['articles'] += 1
        return article

    def extract_batch(self, raw_articles: List[Mapping[str, Any]]) -> List[Article]:
        """Extract every record; malformed records are logged and skipped."""
        articles = []
        for position, raw in enumerate(raw_articles):
            try:
                articles.append(self.extract(raw))
            except MalformedInputError as e:
                logger.warning(f"Skipping record #{position} ({e.article_id or 'no id'}): {e}")
        return articles

    def _extract_cves(self, raw_cves: List[Any], article_id: str) -> Dict[str, CVEEntry]:
        cves: Dict[str, CVEEntry] = {}
        for raw_cve in raw_cves:
            if isinstance(raw_cve, Mapping):
                raw_id = raw_cve.get('id') or raw_cve.get('cve_id') or ''
            else:
                raw_id, raw_cve = raw_cve, {}

            cve_id = self.normalize_cve_id(raw_id)
            if cve_id is None:
                self.stats['invalid_cves'] += 1
                logger.warning(f"{article_id}: dropping invalid CVE id {raw_id!r}")
                continue

            entry = CVEEntry(
                id=cve_id,
                cvss_score=_to_float(raw_cve.get('cvss_score')),
                severity=raw_cve.get('severity'),
                known_exploited=bool(raw_cve.get('known_exploited', raw_cve.get('kev', False))),
            )
            # First occurrence wins, later ones only fill gaps
            existing = cves.get(cve_id)
            if existing is not None:
                entry = CVEEntry(
                    id=cve_id,
                    cvss_score=existing.cvss_score if existing.cvss_score is not None else entry.cvss_score,
                    severity=existing.severity or entry.severity,
                    known_exploited=existing.known_exploited or entry.known_exploited,
                )
            cves[cve_id] = entry

        self.stats['cves'] += len(cves)
        return cves

    def _extract_entities(self, raw_entities: List[Any],
                          article_id: str) -> Dict[EntityType, Dict[str, str]]:
        entities: Dict[EntityType, Dict[str, str]] = {}
        for raw_entity in raw_entities:
            if not isinstance(raw_entity, Mapping):
                self.stats['entities_unknown_type'] += 1
                continue

            name = ' '.join(str(raw_entity.get('name') or '').split())
            tag = str(raw_entity.get('type') or '').strip().lower()
            if not name:
                continue

            entity_type = TYPE_MAP.get(tag)
            if entity_type is None:
                if tag in DISPLAY_ONLY_TYPES:
                    self.stats['entities_display_only'] += 1
                else:
                    self.stats['entities_unknown_type'] += 1
                    logger.debug(f"{article_id}: unknown entity type {tag!r} for {name!r}, not indexed")
                continue

            key = self.normalize_name(name)
            bucket = entities.setdefault(entity_type, {})
            if key not in bucket:
                bucket[key] = name
                self.stats['entities_indexed'] += 1

        return entities

    def _extract_sources(self, raw_sources: List[Any], article_id: str) -> List[SourceRef]:
        """Source references in upstream order, de-duplicated on url and website."""
        sources: List[SourceRef] = []
        seen = set()
        for raw_source in raw_sources:
            if isinstance(raw_source, str):
                raw_source = {'url': raw_source}
            if not isinstance(raw_source, Mapping):
                self.stats['invalid_sources'] += 1
                continue

            url = str(raw_source.get('url') or '').strip()
            if not url:
                self.stats['invalid_sources'] += 1
                logger.debug(f"{article_id}: dropping source without url")
                continue

            source = SourceRef(
                url=url,
                title=str(raw_source.get('title') or '').strip() or "Source not available",
                website=raw_source.get('website') or raw_source.get('domain') or None,
                date=_to_text(raw_source.get('date') or raw_source.get('published_at')),
            )
            if source.key not in seen:
                seen.add(source.key)
                sources.append(source)

        self.stats['sources'] += len(sources)
        return sources


def _to_float(value: Any) -> Optional[float]:
    if value is None or value == '':
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_text(value: Any) -> Optional[str]:
    if value is None or value == '':
        return None
    if hasattr(value, 'isoformat'):
        return value.isoformat()
    return str(value)
