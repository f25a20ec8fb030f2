# -*- coding: utf-8 -*-
"""
Six-dimension weighted Jaccard similarity between two articles.

Dimensions and default weights:
    cve           0.40   CVE id sets
    text          0.20   character trigram sets of the body text
    threat_actor  0.12
    malware       0.12
    product       0.08
    company       0.08

Each dimension is a Jaccard index (0.0 when both sets are empty); the total
is the weighted sum, which lies in [0, 1] because the weights sum to 1.0.
Government agencies are indexed for retrieval but not scored.
"""

# Standard library
import logging
from typing import AbstractSet, Dict, Iterable, List, Optional, Set

# Local
from cyberdedup.utils.config import DEFAULT_WEIGHTS
from cyberdedup.utils.dataclasses import (
    DIMENSIONS,
    Article,
    DimensionScore,
    EntityType,
    SimilarityResult,
)

logger = logging.getLogger(__name__)

ENTITY_DIMENSIONS = {
    'threat_actor': EntityType.THREAT_ACTOR,
    'malware': EntityType.MALWARE,
    'product': EntityType.PRODUCT,
    'company': EntityType.COMPANY,
}


def jaccard(a: AbstractSet, b: AbstractSet) -> float:
    """|A ∩ B| / |A ∪ B|, 0.0 when both are empty."""
    if not a and not b:
        return 0.0
    return len(a & b) / len(a | b)


def normalize_text(text: str) -> str:
    """Lower-case, trim, collapse whitespace."""
    return ' '.join(text.lower().split())


def char_trigrams(text: str) -> Set[str]:
    """Set of overlapping 3-character substrings of the normalized text."""
    normalized = normalize_text(text)
    return {normalized[i:i + 3] for i in range(len(normalized) - 2)}


class SimilarityScorer:
    """
    Weighted Jaccard scorer.

    Weights are taken as given; DedupConfig.validate() is where they are
    checked, before a scorer is built.
    """

    def __init__(self, weights: Optional[Dict[str, float]] = None):
        self.weights = dict(weights or DEFAULT_WEIGHTS)

    def text_similarity(self, text_a: str, text_b: str) -> float:
        return jaccard(char_trigrams(text_a), char_trigrams(text_b))

    def score(self, article: Article, candidate: Article) -> SimilarityResult:
        """
        Score one (incoming, candidate) pair.

        Returns:
            SimilarityResult with every dimension filled in
        """
        dimensions = {
            'cve': DimensionScore(jaccard(article.cve_ids, candidate.cve_ids), self.weights['cve']),
            'text': DimensionScore(
                self.text_similarity(article.body_text, candidate.body_text), self.weights['text']),
        }
        for name, entity_type in ENTITY_DIMENSIONS.items():
            dimensions[name] = DimensionScore(
                jaccard(article.entity_keys(entity_type), candidate.entity_keys(entity_type)),
                self.weights[name],
            )

        total = sum(dimensions[name].weighted for name in DIMENSIONS)
        total = min(1.0, max(0.0, total))

        return SimilarityResult(
            article_id=article.id,
            candidate_id=candidate.id,
            candidate_pub_date=candidate.pub_date,
            dimensions=dimensions,
            total=total,
        )

    def score_all(self, article: Article, candidates: Iterable[Article]) -> List[SimilarityResult]:
        """Score every candidate, highest total first."""
        results = [self.score(article, candidate) for candidate in candidates]
        results.sort(key=lambda r: r.candidate_id)
        results.sort(key=lambda r: (r.total, r.candidate_pub_date), reverse=True)
        if results:
            best = results[0]
            logger.debug(f"{article.id}: best of {len(results)} is {best.candidate_id} "
                         f"({best.total:.3f})")
        return results
