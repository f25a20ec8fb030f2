"""
Resolution processor test suite.

End-to-end runs over a temporary SQLite index: configuration validation,
same-run visibility, malformed input, index failure, resume behaviour,
dry runs, adjudication and fallbacks, and the JSONL output.

Run: pytest cyberdedup/processing/dedup/tests/test_resolution_processor.py -v
"""

import threading
import pytest
from datetime import date, timedelta
from unittest.mock import Mock, patch

from cyberdedup.processing.dedup.adjudicator import BaseAdjudicator
from cyberdedup.processing.dedup.resolution_processor import ResolutionProcessor, index_keys
from cyberdedup.processing.dedup.similarity_scorer import SimilarityScorer
from cyberdedup.processing.entities.entity_extractor import EntityExtractor
from cyberdedup.storage.entity_index import EntityIndex
from cyberdedup.utils.config import DedupConfig
from cyberdedup.utils.dataclasses import (
    AdjudicationResult,
    Classification,
    Decision,
    ResolutionMethod,
)
from cyberdedup.utils.errors import (
    ConfigurationError,
    IndexUnavailableError,
    WeightConfigurationError,
)
from cyberdedup.utils.io import load_jsonl


TODAY = date(2025, 3, 1)


def raw_article(article_id, pub_date=TODAY, cves=(), threat_actors=(), companies=(),
                text='', summary=None):
    entities = [{'name': name, 'type': 'threat_actor'} for name in threat_actors]
    entities += [{'name': name, 'type': 'company'} for name in companies]
    return {
        'id': article_id,
        'pub_date': pub_date.isoformat(),
        'headline': f"Headline {article_id}",
        'summary': summary or f"Summary of {article_id}",
        'full_text': text,
        'cves': [{'id': cve_id, 'cvss_score': 8.1} for cve_id in cves],
        'entities': entities,
    }


class StubAdjudicator(BaseAdjudicator):
    """Fixed verdict, optionally blocking until released"""

    def __init__(self, decision=Decision.SKIP, block_on=None):
        self.decision = decision
        self.block_on = block_on
        self.calls = []

    def adjudicate(self, incoming, existing, similarity):
        self.calls.append((incoming.id, existing.id, similarity.classification))
        if self.block_on is not None:
            self.block_on.wait(timeout=5)
        return AdjudicationResult(self.decision, f"stub says {self.decision.value}", ResolutionMethod.LLM)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def index(tmp_path):
    return EntityIndex(tmp_path / 'index.db')


@pytest.fixture
def processor(index):
    proc = ResolutionProcessor(index, DedupConfig(max_workers=2))
    yield proc
    proc.close()


# ============================================================================
# CONFIGURATION
# ============================================================================

class TestConfiguration:
    """Invalid configuration is rejected before the index is used"""

    def test_bad_weights_fail_before_index_use(self):
        index = Mock()
        weights = {'cve': 0.5, 'text': 0.5, 'threat_actor': 0.5,
                   'malware': 0.0, 'product': 0.0, 'company': 0.0}
        with pytest.raises(WeightConfigurationError):
            ResolutionProcessor(index, DedupConfig(weights=weights))
        assert index.method_calls == []

    def test_inverted_thresholds(self):
        with pytest.raises(ConfigurationError):
            ResolutionProcessor(Mock(), DedupConfig(new_threshold=0.8, update_threshold=0.7))


# ============================================================================
# DECISIONS
# ============================================================================

class TestRun:
    """Batch resolution"""

    def test_article_without_entities_is_new(self, index, processor):
        summary = processor.run([raw_article('art_plain')])

        assert summary.new == 1
        record = processor.resolutions[0]
        assert record.decision is Decision.NEW
        assert record.classification is Classification.NEW
        assert record.matched_article_id is None
        assert index.has_article('art_plain')

    def test_same_run_duplicate_becomes_update(self, index, processor):
        """Second copy of a same-day story sees the first one committed in this run"""
        body = 'Fortinet confirms FortiOS SSL-VPN flaw exploited by Volt Typhoon against utilities.'
        batch = [
            raw_article('art_first', cves=['CVE-2025-1111'], threat_actors=['Volt Typhoon'], text=body),
            raw_article('art_second', cves=['CVE-2025-1111'], threat_actors=['Volt Typhoon'], text=body),
        ]
        summary = processor.run(batch)

        assert (summary.new, summary.update) == (1, 1)
        by_id = {r.article_id: r for r in processor.resolutions}
        assert by_id['art_first'].decision is Decision.NEW
        assert by_id['art_second'].decision is Decision.UPDATE
        assert by_id['art_second'].matched_article_id == 'art_first'
        assert by_id['art_second'].resolution_method is ResolutionMethod.AUTOMATIC
        assert not index.has_article('art_second')
        assert len(index.get_article('art_first').update_history) == 1

    def test_batch_processed_in_date_order(self, index, processor):
        body = 'Citrix Bleed session hijacking continues against NetScaler appliances worldwide.'
        batch = [
            raw_article('art_later', pub_date=TODAY, cves=['CVE-2023-4966'],
                        threat_actors=['LockBit'], text=body),
            raw_article('art_earlier', pub_date=TODAY - timedelta(days=2), cves=['CVE-2023-4966'],
                        threat_actors=['LockBit'], text=body),
        ]
        processor.run(batch)

        by_id = {r.article_id: r for r in processor.resolutions}
        assert by_id['art_earlier'].decision is Decision.NEW
        assert by_id['art_later'].matched_article_id == 'art_earlier'

    def test_malformed_input_counted(self, index, processor, tmp_path):
        batch = [
            raw_article('art_ok'),
            {'id': 'art_no_date', 'summary': 'Missing a publication date'},
            {'id': 'art_no_summary', 'pub_date': '2025-03-01'},
        ]
        output = tmp_path / 'resolutions.jsonl'
        summary = processor.run(batch, output_path=output)

        assert summary.errors == 2
        assert summary.new == 1
        rows = {row['article_id']: row for row in load_jsonl(output)}
        assert rows['art_no_date']['decision'] is None
        assert 'malformed input' in rows['art_no_date']['error']
        assert index.get_resolution('art_no_date') is None
        assert index.last_run()['status'] == 'completed_with_errors'

    def test_duplicate_id_in_batch(self, processor):
        summary = processor.run([raw_article('art_twice'), raw_article('art_twice')])
        assert summary.new == 1
        assert summary.errors == 1

    def test_jsonl_output(self, index, processor, tmp_path):
        output = tmp_path / 'out' / 'resolutions.jsonl'
        processor.run([raw_article('art_a', cves=['CVE-2025-2222'])], output_path=output)

        rows = load_jsonl(output)
        assert len(rows) == 1
        assert rows[0]['decision'] == 'NEW'
        assert rows[0]['canonical_article_id'] == 'art_a'
        assert rows[0]['pub_date'] == TODAY.isoformat()

    def test_run_log(self, index, processor):
        summary = processor.run([raw_article('art_a')])
        last = index.last_run()
        assert last['run_id'] == summary.run_id
        assert last['status'] == 'completed'
        assert last['summary']['new'] == 1


# ============================================================================
# FAILURE AND RESUME
# ============================================================================

class TestFailureAndResume:
    """Index failures abort, reruns skip resolved articles"""

    def test_index_unavailable_aborts(self, index, processor):
        with patch.object(index, 'query', side_effect=IndexUnavailableError('disk gone')):
            with pytest.raises(IndexUnavailableError):
                processor.run([raw_article('art_a', cves=['CVE-2025-3333'])])

        last = index.last_run()
        assert last['status'] == 'aborted'
        assert last['summary']['abort_reason'] == 'disk gone'
        assert index.get_resolution('art_a') is None

    def test_already_resolved_skipped(self, index, processor):
        batch = [raw_article('art_a', cves=['CVE-2025-4444'])]
        processor.run(batch)
        summary = processor.run(batch)

        assert summary.already_resolved == 1
        assert summary.new == 0
        assert index.stats()['total_articles'] == 1

    def test_force_re_resolves(self, index):
        batch = [raw_article('art_a', cves=['CVE-2025-4444'])]
        first = ResolutionProcessor(index, DedupConfig())
        first.run(batch)
        first.close()

        forced = ResolutionProcessor(index, DedupConfig(force=True))
        summary = forced.run(batch)
        forced.close()

        assert summary.already_resolved == 0
        assert summary.new == 1

    def test_dry_run_writes_nothing(self, index, tmp_path):
        processor = ResolutionProcessor(index, DedupConfig(dry_run=True))
        output = tmp_path / 'dry.jsonl'
        summary = processor.run([raw_article('art_a', cves=['CVE-2025-5555'])], output_path=output)
        processor.close()

        assert summary.new == 1
        assert index.stats()['total_articles'] == 0
        assert index.get_resolution('art_a') is None
        assert index.last_run() is None
        assert len(load_jsonl(output)) == 1

    def test_dry_run_sees_its_own_decisions(self, index):
        """Two copies of a same-day story in a dry run resolve as NEW then UPDATE"""
        body = 'Ivanti Connect Secure zero-day exploited by UNC5221 against government networks.'
        batch = [
            raw_article('art_first', cves=['CVE-2025-0282'], threat_actors=['UNC5221'], text=body),
            raw_article('art_second', cves=['CVE-2025-0282'], threat_actors=['UNC5221'], text=body),
        ]
        processor = ResolutionProcessor(index, DedupConfig(dry_run=True))
        try:
            summary = processor.run(batch)
        finally:
            processor.close()

        assert (summary.new, summary.update) == (1, 1)
        by_id = {r.article_id: r for r in processor.resolutions}
        assert by_id['art_second'].matched_article_id == 'art_first'
        assert index.stats()['total_articles'] == 0
        assert index.list_resolutions() == []
        assert processor.index is index

    def test_dry_run_matches_existing_index(self, index):
        body = 'Ivanti Connect Secure zero-day exploited by UNC5221 against government networks.'
        archive = ResolutionProcessor(index, DedupConfig())
        archive.run([raw_article('art_old', pub_date=TODAY - timedelta(days=3), cves=['CVE-2025-0282'],
                                 threat_actors=['UNC5221'], text=body)])
        archive.close()

        processor = ResolutionProcessor(index, DedupConfig(dry_run=True))
        try:
            processor.run([raw_article('art_new', cves=['CVE-2025-0282'], threat_actors=['UNC5221'], text=body)])
        finally:
            processor.close()

        assert processor.resolutions[0].decision is Decision.UPDATE
        assert index.get_article('art_old').update_history == []


# ============================================================================
# ADJUDICATION
# ============================================================================

class TestAdjudication:
    """Borderline matches go to the adjudicator, failures to the fallback"""

    @pytest.fixture
    def archive(self, index):
        """One indexed story from a week ago"""
        backfill = ResolutionProcessor(index, DedupConfig())
        backfill.backfill([raw_article('art_archived', pub_date=TODAY - timedelta(days=7),
                                       cves=['CVE-2025-6666'], threat_actors=['APT29'])])
        backfill.close()

    @pytest.fixture(autouse=True)
    def no_text_overlap(self):
        with patch.object(SimilarityScorer, 'text_similarity', return_value=0.0):
            yield

    def incoming(self):
        # Shared CVE, different actor: 0.40 -> borderline
        return raw_article('art_incoming', cves=['CVE-2025-6666'], threat_actors=['APT28'])

    def test_borderline_goes_to_adjudicator(self, index, archive):
        stub = StubAdjudicator(decision=Decision.SKIP)
        processor = ResolutionProcessor(index, DedupConfig(), adjudicator=stub)
        summary = processor.run([self.incoming()])
        processor.close()

        assert stub.calls == [('art_incoming', 'art_archived', Classification.BORDERLINE)]
        assert summary.skip == 1
        assert summary.borderline == 1
        assert summary.adjudicated == 1
        record = processor.resolutions[0]
        assert record.total_score == pytest.approx(0.40)
        assert record.matched_article_id == 'art_archived'
        # SKIP leaves the canonical record alone and registers nothing
        assert index.get_article('art_archived').update_history == []
        assert not index.has_article('art_incoming')

    def test_borderline_without_adjudicator_is_new(self, index, archive):
        processor = ResolutionProcessor(index, DedupConfig())
        summary = processor.run([self.incoming()])
        processor.close()

        assert summary.new == 1
        assert summary.fallbacks == 1
        assert processor.resolutions[0].resolution_method is ResolutionMethod.FALLBACK

    def test_timeout_takes_fallback(self, index, archive):
        release = threading.Event()
        stub = StubAdjudicator(decision=Decision.UPDATE, block_on=release)
        processor = ResolutionProcessor(
            index, DedupConfig(adjudication_timeout=0.1, fallback_policy='skip'), adjudicator=stub)
        try:
            summary = processor.run([self.incoming()])
        finally:
            release.set()
            processor.close()

        assert summary.skip == 1
        assert summary.fallbacks == 1
        assert 'within 0.1s' in processor.resolutions[0].error

    def test_update_eligible_skips_llm_when_disabled(self, index, archive):
        stub = StubAdjudicator(decision=Decision.SKIP)
        processor = ResolutionProcessor(index, DedupConfig(adjudicate_updates=False), adjudicator=stub)
        incoming = raw_article('art_incoming', cves=['CVE-2025-6666'], threat_actors=['APT29'])
        with patch.object(SimilarityScorer, 'text_similarity', return_value=1.0):
            summary = processor.run([incoming])
        processor.close()

        # 0.40 + 0.20 + 0.12 = 0.72
        assert summary.update == 1
        assert stub.calls == []
        assert processor.resolutions[0].resolution_method is ResolutionMethod.AUTOMATIC


def test_index_keys():
    article = EntityExtractor().extract(
        raw_article('art_a', cves=['CVE-2025-0001'], threat_actors=['LockBit']))
    assert index_keys(article) == {'cve:CVE-2025-0001', 'threat_actor:lockbit'}
