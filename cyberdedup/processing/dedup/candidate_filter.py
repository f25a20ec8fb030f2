# -*- coding: utf-8 -*-
"""
Candidate filter: cheap pre-selection of prior articles worth scoring.

Queries the entity index for articles inside the lookback window that share
keys with the incoming article, keeps those that meet at least one
qualification rule, ranks them by a weighted overlap count and truncates to
the candidate cap.

Qualification (any one suffices):
    - >= 1 shared CVE
    - >= 2 shared high-value entities (threat_actor + malware)
    - >= 3 shared entities of any indexed type

Ranking score: CVE x4, threat_actor/malware x2, product/company x1.
Ties: most recent publication date first, then article id.
"""

# Standard library
import logging
from typing import List, Optional

# Local
from cyberdedup.storage.entity_index import EntityIndex
from cyberdedup.utils.dataclasses import Article, Candidate, EntityType

logger = logging.getLogger(__name__)

MIN_SHARED_CVES = 1
MIN_SHARED_HIGH_VALUE = 2
MIN_SHARED_ENTITIES = 3

RANKING_WEIGHTS = {
    'cve': 4,
    EntityType.THREAT_ACTOR: 2,
    EntityType.MALWARE: 2,
    EntityType.PRODUCT: 1,
    EntityType.COMPANY: 1,
    EntityType.GOVERNMENT_AGENCY: 0,
}


class CandidateFilter:
    """Windowed, capped candidate retrieval over the entity index."""

    def __init__(self, index: EntityIndex, window_days: int = 30, candidate_cap: int = 50):
        self.index = index
        self.window_days = window_days
        self.candidate_cap = candidate_cap

    @staticmethod
    def qualifies(candidate: Candidate) -> bool:
        return (candidate.shared_cves >= MIN_SHARED_CVES
                or candidate.shared_high_value >= MIN_SHARED_HIGH_VALUE
                or candidate.shared_entity_total >= MIN_SHARED_ENTITIES)

    @staticmethod
    def ranking_score(candidate: Candidate) -> int:
        score = candidate.shared_cves * RANKING_WEIGHTS['cve']
        for entity_type, shared in candidate.shared_entities.items():
            score += shared * RANKING_WEIGHTS[entity_type]
        return score

    def find_candidates(self, article: Article, window_days: Optional[int] = None,
                        run_id: Optional[str] = None) -> List[Candidate]:
        """
        Qualified candidates for an article, best first.

        Args:
            article: Incoming article
            window_days: Override of the configured lookback
            run_id: Current run (articles it committed are visible same-day)

        Returns:
            Up to candidate_cap candidates; empty if the article has no CVEs
            or indexed entities
        """
        if not article.has_index_keys:
            logger.debug(f"{article.id}: no CVEs or indexed entities, no candidates")
            return []

        window_days = window_days if window_days is not None else self.window_days
        matches = self.index.query(
            cve_ids=article.cve_ids,
            entities={t: article.entity_keys(t) for t in EntityType},
            as_of=article.pub_date,
            window_days=window_days,
            exclude_id=article.id,
            run_id=run_id,
        )

        qualified = [c for c in matches if self.qualifies(c)]
        for candidate in qualified:
            candidate.ranking_score = self.ranking_score(candidate)

        qualified.sort(key=lambda c: c.article_id)
        qualified.sort(key=lambda c: (c.ranking_score, c.pub_date), reverse=True)

        if len(qualified) > self.candidate_cap:
            logger.debug(f"{article.id}: truncating {len(qualified)} candidates to {self.candidate_cap}")

        logger.debug(f"{article.id}: {len(matches)} overlapping, {len(qualified)} qualified "
                     f"(window={window_days}d)")
        return qualified[:self.candidate_cap]
