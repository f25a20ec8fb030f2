"""
Candidate filter test suite.

Tests qualification rules (CVE, high-value entities, any-type entities),
ranking order with date tie-breaks, the candidate cap, and the empty-entity
short circuit.

Run: pytest cyberdedup/processing/dedup/tests/test_candidate_filter.py -v
"""

import pytest
from datetime import date, timedelta
from unittest.mock import Mock

from cyberdedup.processing.dedup.candidate_filter import CandidateFilter
from cyberdedup.storage.entity_index import EntityIndex
from cyberdedup.utils.dataclasses import Article, Candidate, CVEEntry, EntityType


TODAY = date(2025, 2, 1)


def make_article(article_id, days_ago=1, cves=(), threat_actors=(), malware=(), products=(), companies=()):
    entities = {}
    for entity_type, names in ((EntityType.THREAT_ACTOR, threat_actors),
                               (EntityType.MALWARE, malware),
                               (EntityType.PRODUCT, products),
                               (EntityType.COMPANY, companies)):
        if names:
            entities[entity_type] = {name.lower(): name for name in names}
    return Article(
        id=article_id,
        slug=article_id,
        pub_date=TODAY - timedelta(days=days_ago),
        summary=f"Summary of {article_id}",
        cves={cve_id: CVEEntry(cve_id) for cve_id in cves},
        entities=entities,
    )


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def index(tmp_path):
    return EntityIndex(tmp_path / 'index.db')


@pytest.fixture
def candidate_filter(index):
    return CandidateFilter(index, window_days=30, candidate_cap=50)


# ============================================================================
# QUALIFICATION
# ============================================================================

class TestQualification:
    """At least one rule must hold"""

    def test_single_shared_cve_qualifies(self):
        assert CandidateFilter.qualifies(Candidate('a', TODAY, shared_cves=1)) is True

    def test_single_threat_actor_does_not_qualify(self):
        candidate = Candidate('a', TODAY, shared_entities={EntityType.THREAT_ACTOR: 1})
        assert CandidateFilter.qualifies(candidate) is False

    def test_two_high_value_entities_qualify(self):
        candidate = Candidate('a', TODAY, shared_entities={
            EntityType.THREAT_ACTOR: 1, EntityType.MALWARE: 1})
        assert CandidateFilter.qualifies(candidate) is True

    def test_three_entities_of_any_type_qualify(self):
        candidate = Candidate('a', TODAY, shared_entities={
            EntityType.PRODUCT: 1, EntityType.COMPANY: 1, EntityType.GOVERNMENT_AGENCY: 1})
        assert CandidateFilter.qualifies(candidate) is True

    def test_two_low_value_entities_do_not_qualify(self):
        candidate = Candidate('a', TODAY, shared_entities={EntityType.PRODUCT: 1, EntityType.COMPANY: 1})
        assert CandidateFilter.qualifies(candidate) is False

    def test_ranking_score(self):
        candidate = Candidate('a', TODAY, shared_cves=2, shared_entities={
            EntityType.THREAT_ACTOR: 1, EntityType.MALWARE: 1,
            EntityType.PRODUCT: 1, EntityType.GOVERNMENT_AGENCY: 3})
        assert CandidateFilter.ranking_score(candidate) == 2 * 4 + 2 * 2 + 1


# ============================================================================
# RETRIEVAL
# ============================================================================

class TestFindCandidates:
    """End-to-end over a real index"""

    def test_filters_non_qualifying(self, index, candidate_filter):
        index.index(make_article('shares_cve', cves=['CVE-2025-0001']))
        index.index(make_article('shares_one_actor', threat_actors=['LockBit']))

        incoming = make_article('incoming', days_ago=0, cves=['CVE-2025-0001'], threat_actors=['LockBit'])
        found = [c.article_id for c in candidate_filter.find_candidates(incoming)]
        assert found == ['shares_cve']

    def test_ranked_best_first(self, index, candidate_filter):
        index.index(make_article('cve_only', cves=['CVE-2025-0001']))
        index.index(make_article('cve_and_actor', cves=['CVE-2025-0001'], threat_actors=['LockBit']))
        index.index(make_article('two_cves', cves=['CVE-2025-0001', 'CVE-2025-0002']))

        incoming = make_article('incoming', days_ago=0, cves=['CVE-2025-0001', 'CVE-2025-0002'],
                                threat_actors=['LockBit'])
        found = candidate_filter.find_candidates(incoming)
        assert [c.article_id for c in found] == ['two_cves', 'cve_and_actor', 'cve_only']
        assert [c.ranking_score for c in found] == [8, 6, 4]

    def test_ties_prefer_recent(self, index, candidate_filter):
        index.index(make_article('older', days_ago=10, cves=['CVE-2025-0001']))
        index.index(make_article('newer', days_ago=2, cves=['CVE-2025-0001']))

        incoming = make_article('incoming', days_ago=0, cves=['CVE-2025-0001'])
        assert [c.article_id for c in candidate_filter.find_candidates(incoming)] == ['newer', 'older']

    def test_cap(self, index):
        for i in range(6):
            index.index(make_article(f'art_{i}', days_ago=i + 1, cves=['CVE-2025-0001']))

        capped = CandidateFilter(index, window_days=30, candidate_cap=3)
        incoming = make_article('incoming', days_ago=0, cves=['CVE-2025-0001'])
        assert [c.article_id for c in capped.find_candidates(incoming)] == ['art_0', 'art_1', 'art_2']

    def test_window_override(self, index, candidate_filter):
        index.index(make_article('ten_days', days_ago=10, cves=['CVE-2025-0001']))
        incoming = make_article('incoming', days_ago=0, cves=['CVE-2025-0001'])

        assert candidate_filter.find_candidates(incoming, window_days=7) == []
        assert len(candidate_filter.find_candidates(incoming, window_days=14)) == 1

    def test_empty_entity_article_skips_index(self):
        """No CVEs, no entities -> no query at all"""
        index = Mock()
        incoming = make_article('incoming', days_ago=0)
        assert CandidateFilter(index).find_candidates(incoming) == []
        index.query.assert_not_called()
