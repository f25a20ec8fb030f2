# -*- coding: utf-8 -*-
"""
Core data structures for the cyber news resolution engine.

Single source of truth for the records that flow between the extractor, the
entity index, the scorer, the classifier and the merge applier. Import from
this module rather than redefining shapes locally.

Examples:
    from cyberdedup.utils.dataclasses import Article, CVEEntry, EntityType

    article = Article(
        id="art_3f1c9a0b2d4e",
        slug="lockbit-exploits-citrix-bleed",
        pub_date=date(2025, 1, 15),
        summary="LockBit affiliates exploit CVE-2023-4966...",
        cves={"CVE-2023-4966": CVEEntry("CVE-2023-4966", cvss_score=9.4)},
        entities={EntityType.THREAT_ACTOR: {"lockbit": "LockBit"}},
    )
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set


# ============================================================================
# ENUMS
# ============================================================================

class EntityType(Enum):
    """Entity types that participate in candidate retrieval and scoring."""
    THREAT_ACTOR = "threat_actor"
    MALWARE = "malware"
    PRODUCT = "product"
    COMPANY = "company"
    GOVERNMENT_AGENCY = "government_agency"


class Classification(Enum):
    """Threshold band of the best candidate's total score."""
    NEW = "NEW"
    BORDERLINE = "BORDERLINE"
    UPDATE = "UPDATE"


class Decision(Enum):
    """Final outcome for an incoming article."""
    NEW = "NEW"
    UPDATE = "UPDATE"
    SKIP = "SKIP"


class ResolutionMethod(Enum):
    """How a decision was reached."""
    AUTOMATIC = "automatic"   # thresholds only
    LLM = "llm"               # adjudicator verdict
    FALLBACK = "fallback"     # adjudicator failed, policy applied


class FallbackPolicy(Enum):
    """Decision applied to a borderline article when adjudication fails."""
    NEW = "new"
    SKIP = "skip"


class SeverityDelta(Enum):
    INCREASED = "increased"
    DECREASED = "decreased"
    UNCHANGED = "unchanged"
    UNKNOWN = "unknown"


# Dimension names in scoring order
DIMENSIONS = ("cve", "text", "threat_actor", "malware", "product", "company")


def utcnow() -> datetime:
    """Timezone-aware current UTC time, truncated to seconds."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp (accepts a trailing 'Z'). None passes through."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_date(value: Any) -> date:
    """Parse a publication date; datetimes and ISO timestamps keep their date part."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip()[:10])


# ============================================================================
# ARTICLE RECORD
# ============================================================================

@dataclass(frozen=True)
class CVEEntry:
    """CVE reference with optional scoring metadata. Identity is the CVE id."""
    id: str
    cvss_score: Optional[float] = None
    severity: Optional[str] = None
    known_exploited: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'cvss_score': self.cvss_score,
            'severity': self.severity,
            'known_exploited': self.known_exploited,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CVEEntry':
        return cls(
            id=data['id'],
            cvss_score=data.get('cvss_score'),
            severity=data.get('severity'),
            known_exploited=bool(data.get('known_exploited', data.get('kev', False))),
        )


@dataclass(frozen=True)
class SourceRef:
    """
    Upstream source an article was written from.

    Two references are the same source when url and website match; the
    title and date are display metadata.
    """
    url: str
    title: str = "Source not available"
    website: Optional[str] = None
    date: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.url}||{self.website or ''}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'url': self.url,
            'title': self.title,
            'website': self.website,
            'date': self.date,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SourceRef':
        return cls(
            url=data.get('url') or 'unknown',
            title=data.get('title') or "Source not available",
            website=data.get('website'),
            date=data.get('date'),
        )


@dataclass
class UpdateEntry:
    """
    One append-only history entry on a canonical article.

    update_id is the de-duplication key: replaying the same merge payload
    produces the same id and is ignored by the store.
    """
    update_id: str
    timestamp: datetime
    change_summary: str
    added_entities: List[Dict[str, str]] = field(default_factory=list)
    added_cves: List[str] = field(default_factory=list)
    severity_delta: str = SeverityDelta.UNKNOWN.value
    source_article_id: Optional[str] = None
    sources: List[SourceRef] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'update_id': self.update_id,
            'timestamp': self.timestamp.isoformat(),
            'change_summary': self.change_summary,
            'added_entities': list(self.added_entities),
            'added_cves': list(self.added_cves),
            'severity_delta': self.severity_delta,
            'source_article_id': self.source_article_id,
            'sources': [source.to_dict() for source in self.sources],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'UpdateEntry':
        return cls(
            update_id=data['update_id'],
            timestamp=parse_timestamp(data['timestamp']),
            change_summary=data.get('change_summary', ''),
            added_entities=list(data.get('added_entities') or []),
            added_cves=list(data.get('added_cves') or []),
            severity_delta=data.get('severity_delta') or SeverityDelta.UNKNOWN.value,
            source_article_id=data.get('source_article_id'),
            sources=[SourceRef.from_dict(s) for s in data.get('sources') or []],
        )


@dataclass
class Article:
    """
    Canonical news article record.

    Entity sets are stored per type as {normalized_key: display_name}; set
    operations use the keys. raw_entities keeps the upstream list verbatim
    (including types that are never indexed) for display.
    """
    id: str
    slug: str
    pub_date: date
    summary: str
    headline: str = ""
    full_text: str = ""
    cves: Dict[str, CVEEntry] = field(default_factory=dict)
    entities: Dict[EntityType, Dict[str, str]] = field(default_factory=dict)
    raw_entities: List[Dict[str, Any]] = field(default_factory=list)
    sources: List[SourceRef] = field(default_factory=list)
    update_history: List[UpdateEntry] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def cve_ids(self) -> Set[str]:
        return set(self.cves)

    def entity_keys(self, entity_type: EntityType) -> Set[str]:
        return set(self.entities.get(entity_type, {}))

    def typed_entities(self) -> List[Dict[str, str]]:
        """Flat [{name, type, key}] list over all indexed types, sorted for stable output."""
        flat = []
        for entity_type in EntityType:
            for key, name in sorted(self.entities.get(entity_type, {}).items()):
                flat.append({'name': name, 'type': entity_type.value, 'key': key})
        return flat

    @property
    def has_index_keys(self) -> bool:
        """True when the article can match anything in the index."""
        return bool(self.cves) or any(self.entities.get(t) for t in EntityType)

    @property
    def body_text(self) -> str:
        """Text used for trigram similarity: full body, summary when empty."""
        return self.full_text or self.summary or ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'slug': self.slug,
            'pub_date': self.pub_date.isoformat(),
            'headline': self.headline,
            'summary': self.summary,
            'full_text': self.full_text,
            'cves': [self.cves[cve_id].to_dict() for cve_id in sorted(self.cves)],
            'entities': [{'name': e['name'], 'type': e['type']} for e in self.typed_entities()],
            'raw_entities': list(self.raw_entities),
            'sources': [source.to_dict() for source in self.sources],
            'update_history': [entry.to_dict() for entry in self.update_history],
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None,
        }


# ============================================================================
# CANDIDATES AND SCORING
# ============================================================================

@dataclass
class Candidate:
    """Prior article sharing index keys with the incoming one. Never persisted."""
    article_id: str
    pub_date: date
    shared_cves: int = 0
    shared_entities: Dict[EntityType, int] = field(default_factory=dict)
    ranking_score: int = 0

    @property
    def shared_high_value(self) -> int:
        return (self.shared_entities.get(EntityType.THREAT_ACTOR, 0)
                + self.shared_entities.get(EntityType.MALWARE, 0))

    @property
    def shared_entity_total(self) -> int:
        return sum(self.shared_entities.values())


@dataclass
class DimensionScore:
    """Raw Jaccard score of one dimension and its configured weight."""
    score: float
    weight: float

    @property
    def weighted(self) -> float:
        return self.score * self.weight

    def to_dict(self) -> Dict[str, float]:
        return {
            'score': round(self.score, 4),
            'weight': self.weight,
            'weighted': round(self.weighted, 4),
        }


@dataclass
class SimilarityResult:
    """Scored pair (incoming article, candidate)."""
    article_id: str
    candidate_id: str
    candidate_pub_date: date
    dimensions: Dict[str, DimensionScore]
    total: float
    classification: Optional[Classification] = None

    def breakdown(self) -> Dict[str, Dict[str, float]]:
        return {name: self.dimensions[name].to_dict() for name in DIMENSIONS if name in self.dimensions}


# ============================================================================
# ADJUDICATION AND RESOLUTION
# ============================================================================

@dataclass
class ChangeObject:
    """What an update adds to the canonical story."""
    timestamp: datetime
    change_summary: str
    new_entities: List[str] = field(default_factory=list)
    new_cves: List[str] = field(default_factory=list)
    severity_delta: str = SeverityDelta.UNKNOWN.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp.isoformat(),
            'change_summary': self.change_summary,
            'new_entities': list(self.new_entities),
            'new_cves': list(self.new_cves),
            'severity_delta': self.severity_delta,
        }


@dataclass
class AdjudicationResult:
    """Verdict for one (incoming, candidate) pair. change is set iff decision is UPDATE."""
    decision: Decision
    reasoning: str
    method: ResolutionMethod
    change: Optional[ChangeObject] = None
    confidence: str = "medium"
    error: Optional[str] = None


@dataclass
class ResolutionRecord:
    """Per-article outcome, emitted for every incoming article."""
    article_id: str
    decision: Optional[Decision]
    resolution_method: ResolutionMethod = ResolutionMethod.AUTOMATIC
    classification: Optional[Classification] = None
    matched_article_id: Optional[str] = None
    total_score: Optional[float] = None
    score_breakdown: Optional[Dict[str, Dict[str, float]]] = None
    reasoning: Optional[str] = None
    confidence: Optional[str] = None
    error: Optional[str] = None
    pub_date: Optional[date] = None
    resolved_at: datetime = field(default_factory=utcnow)

    @property
    def canonical_article_id(self) -> Optional[str]:
        """Record that now carries the story: own id for NEW, matched id for UPDATE."""
        if self.decision is Decision.NEW:
            return self.article_id
        if self.decision is Decision.UPDATE:
            return self.matched_article_id
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'article_id': self.article_id,
            'pub_date': self.pub_date.isoformat() if self.pub_date else None,
            'decision': self.decision.value if self.decision else None,
            'classification': self.classification.value if self.classification else None,
            'resolution_method': self.resolution_method.value,
            'matched_article_id': self.matched_article_id,
            'canonical_article_id': self.canonical_article_id,
            'total_score': round(self.total_score, 4) if self.total_score is not None else None,
            'score_breakdown': self.score_breakdown,
            'reasoning': self.reasoning,
            'confidence': self.confidence,
            'error': self.error,
            'resolved_at': self.resolved_at.isoformat(),
        }


@dataclass
class RunSummary:
    """Counts reported (and persisted) at the end of every run."""
    run_id: str
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    total: int = 0
    new: int = 0
    update: int = 0
    skip: int = 0
    borderline: int = 0
    adjudicated: int = 0
    fallbacks: int = 0
    errors: int = 0
    already_resolved: int = 0
    revalidated: int = 0
    aborted: bool = False
    abort_reason: Optional[str] = None

    def count_decision(self, decision: Decision) -> None:
        if decision is Decision.NEW:
            self.new += 1
        elif decision is Decision.UPDATE:
            self.update += 1
        elif decision is Decision.SKIP:
            self.skip += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'run_id': self.run_id,
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'total': self.total,
            'new': self.new,
            'update': self.update,
            'skip': self.skip,
            'borderline': self.borderline,
            'adjudicated': self.adjudicated,
            'fallbacks': self.fallbacks,
            'errors': self.errors,
            'already_resolved': self.already_resolved,
            'revalidated': self.revalidated,
            'aborted': self.aborted,
            'abort_reason': self.abort_reason,
        }
