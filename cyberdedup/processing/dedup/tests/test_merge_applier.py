"""
Merge applier test suite.

Tests canonical record identity, set unions, history append, replay
idempotency, SKIP handling and registration of new stories against a real
SQLite entity index.

Run: pytest cyberdedup/processing/dedup/tests/test_merge_applier.py -v
"""

import pytest
from datetime import date, datetime, timezone

from cyberdedup.processing.dedup.merge_applier import MergeApplier
from cyberdedup.storage.entity_index import EntityIndex
from cyberdedup.utils.dataclasses import (
    AdjudicationResult,
    Article,
    ChangeObject,
    CVEEntry,
    Decision,
    EntityType,
    ResolutionMethod,
    SourceRef,
)
from cyberdedup.utils.errors import IndexUnavailableError


CREATED = datetime(2025, 1, 10, 8, 0, tzinfo=timezone.utc)
CHANGED = datetime(2025, 1, 14, 12, 30, tzinfo=timezone.utc)


def make_article(article_id, pub_date, cves=(), threat_actors=(), companies=(), **fields):
    entities = {}
    if threat_actors:
        entities[EntityType.THREAT_ACTOR] = {name.lower(): name for name in threat_actors}
    if companies:
        entities[EntityType.COMPANY] = {name.lower(): name for name in companies}
    return Article(
        id=article_id,
        slug=fields.pop('slug', article_id.replace('_', '-')),
        pub_date=pub_date,
        summary=fields.pop('summary', f"Summary of {article_id}"),
        cves={cve_id: CVEEntry(cve_id) for cve_id in cves},
        entities=entities,
        **fields,
    )


def update_verdict(summary="Vendor released patches; second CVE exploited.",
                   new_entities=('UNC5337',), new_cves=('CVE-2025-0283',)):
    return AdjudicationResult(
        decision=Decision.UPDATE,
        reasoning="Same campaign",
        method=ResolutionMethod.LLM,
        change=ChangeObject(
            timestamp=CHANGED,
            change_summary=summary,
            new_entities=list(new_entities),
            new_cves=list(new_cves),
            severity_delta='increased',
        ),
    )


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def index(tmp_path):
    return EntityIndex(tmp_path / 'index.db')


@pytest.fixture
def applier(index):
    return MergeApplier(index)


@pytest.fixture
def canonical(applier):
    original = make_article(
        'art_original', date(2025, 1, 10),
        cves=['CVE-2025-0282'], companies=['Ivanti'],
        headline='Ivanti zero-day exploited', full_text='Original body.',
        raw_entities=[{'name': 'Ivanti', 'type': 'company'}],
        sources=[SourceRef('https://news.example/ivanti-0day', 'Ivanti zero-day', website='news.example')],
        created_at=CREATED,
    )
    return applier.register(original, run_id='run_a')


@pytest.fixture
def incoming():
    return make_article(
        'art_followup', date(2025, 1, 14),
        cves=['CVE-2025-0282', 'CVE-2025-0283'],
        threat_actors=['UNC5337'], companies=['Ivanti'],
        headline='Ivanti patches second flaw', full_text='',
        raw_entities=[{'name': 'UNC5337', 'type': 'threat_actor'}, {'name': 'ivanti', 'type': 'company'}],
        sources=[
            SourceRef('https://news.example/ivanti-0day', 'Ivanti zero-day (updated)', website='news.example'),
            SourceRef('https://vendor.example/advisory', 'Security advisory', website='vendor.example'),
            SourceRef('https://news.example/ivanti-0day', 'Syndicated copy', website='mirror.example'),
        ],
    )


# ============================================================================
# REGISTRATION
# ============================================================================

class TestRegister:
    """NEW articles become canonical records"""

    def test_register_keeps_created_at(self, index, canonical):
        stored = index.get_article('art_original')
        assert stored.created_at == CREATED
        assert stored.updated_at == CREATED
        assert stored.update_history == []

    def test_register_fills_missing_created_at(self, index, applier):
        record = applier.register(make_article('art_fresh', date(2025, 1, 12)))
        assert record.created_at is not None
        assert index.get_article('art_fresh').created_at == record.created_at

    def test_register_does_not_mutate_input(self, applier):
        article = make_article('art_input', date(2025, 1, 12))
        applier.register(article)
        assert article.created_at is None


# ============================================================================
# MERGE
# ============================================================================

class TestMerge:
    """UPDATE verdicts applied to canonical records"""

    def test_identity_is_stable(self, index, applier, canonical, incoming):
        merged = applier.merge('art_original', incoming, update_verdict())
        stored = index.get_article('art_original')

        for record in (merged, stored):
            assert record.id == 'art_original'
            assert record.slug == 'art-original'
            assert record.created_at == CREATED
            assert record.pub_date == date(2025, 1, 10)
            assert record.updated_at == CHANGED

    def test_sets_are_unioned(self, index, applier, canonical, incoming):
        applier.merge('art_original', incoming, update_verdict())
        stored = index.get_article('art_original')

        assert stored.cve_ids == {'CVE-2025-0282', 'CVE-2025-0283'}
        assert stored.entity_keys(EntityType.THREAT_ACTOR) == {'unc5337'}
        assert stored.entity_keys(EntityType.COMPANY) == {'ivanti'}

    def test_content_overwritten_only_when_present(self, index, applier, canonical, incoming):
        applier.merge('art_original', incoming, update_verdict())
        stored = index.get_article('art_original')

        assert stored.headline == 'Ivanti patches second flaw'
        assert stored.summary == 'Summary of art_followup'
        # Empty incoming full text keeps the canonical body
        assert stored.full_text == 'Original body.'

    def test_raw_entities_deduplicated(self, index, applier, canonical, incoming):
        applier.merge('art_original', incoming, update_verdict())
        names = [e['name'] for e in index.get_article('art_original').raw_entities]
        assert names == ['Ivanti', 'UNC5337']

    def test_exactly_one_history_entry(self, index, applier, canonical, incoming):
        applier.merge('art_original', incoming, update_verdict())
        history = index.get_article('art_original').update_history

        assert len(history) == 1
        entry = history[0]
        assert entry.update_id.startswith('upd_')
        assert entry.timestamp == CHANGED
        assert entry.source_article_id == 'art_followup'
        assert entry.added_cves == ['CVE-2025-0283']
        assert entry.added_entities == [{'name': 'UNC5337', 'type': 'threat_actor'}]
        assert entry.severity_delta == 'increased'

    def test_replay_is_idempotent(self, index, applier, canonical, incoming):
        verdict = update_verdict()
        applier.merge('art_original', incoming, verdict)
        first = index.get_article('art_original')

        applier.merge('art_original', incoming, verdict)
        second = index.get_article('art_original')

        assert len(second.update_history) == 1
        assert second.cve_ids == first.cve_ids
        assert second.updated_at == first.updated_at
        assert applier.stats['merged'] == 1
        assert applier.stats['replayed'] == 1

    def test_distinct_updates_append_in_order(self, index, applier, canonical, incoming):
        applier.merge('art_original', incoming, update_verdict(summary="First follow-up"))
        applier.merge('art_original', incoming, update_verdict(summary="Second follow-up"))

        history = index.get_article('art_original').update_history
        assert [e.change_summary for e in history] == ['First follow-up', 'Second follow-up']

    def test_skip_leaves_record_untouched(self, index, applier, canonical, incoming):
        before = index.get_article('art_original')
        verdict = AdjudicationResult(Decision.SKIP, 'Rephrased', ResolutionMethod.LLM)

        assert applier.merge('art_original', incoming, verdict) is None
        after = index.get_article('art_original')
        assert after.cve_ids == before.cve_ids
        assert after.updated_at == before.updated_at
        assert after.update_history == []
        assert after.sources == before.sources

    def test_new_verdict_rejected(self, applier, canonical, incoming):
        verdict = AdjudicationResult(Decision.NEW, 'Different story', ResolutionMethod.LLM)
        with pytest.raises(ValueError):
            applier.merge('art_original', incoming, verdict)

    def test_update_without_change_rejected(self, applier, canonical, incoming):
        verdict = AdjudicationResult(Decision.UPDATE, 'same', ResolutionMethod.LLM)
        with pytest.raises(ValueError):
            applier.merge('art_original', incoming, verdict)

    def test_missing_canonical(self, applier, incoming):
        with pytest.raises(IndexUnavailableError):
            applier.merge('art_missing', incoming, update_verdict())


# ============================================================================
# SOURCE ATTRIBUTION
# ============================================================================

class TestSources:
    """Source references follow the story into its canonical record"""

    def test_registered_sources_persisted(self, index, canonical):
        stored = index.get_article('art_original')
        assert [s.url for s in stored.sources] == ['https://news.example/ivanti-0day']

    def test_sources_unioned_on_url_and_website(self, index, applier, canonical, incoming):
        applier.merge('art_original', incoming, update_verdict())

        stored = index.get_article('art_original')
        assert [(s.url, s.website) for s in stored.sources] == [
            ('https://news.example/ivanti-0day', 'news.example'),
            ('https://vendor.example/advisory', 'vendor.example'),
            ('https://news.example/ivanti-0day', 'mirror.example'),
        ]
        # Existing reference keeps its original title
        assert stored.sources[0].title == 'Ivanti zero-day'

    def test_history_entry_records_incoming_sources(self, index, applier, canonical, incoming):
        merged = applier.merge('art_original', incoming, update_verdict())

        entry = index.get_article('art_original').update_history[0]
        assert entry.sources == incoming.sources
        assert merged.update_history[0].sources == incoming.sources
        assert entry.to_dict()['sources'][1]['url'] == 'https://vendor.example/advisory'

    def test_replay_adds_no_sources(self, index, applier, canonical, incoming):
        applier.merge('art_original', incoming, update_verdict())
        applier.merge('art_original', incoming, update_verdict())
        assert len(index.get_article('art_original').sources) == 3

    def test_skip_adds_no_sources(self, index, applier, canonical, incoming):
        verdict = AdjudicationResult(Decision.SKIP, 'Rephrased', ResolutionMethod.LLM)
        applier.merge('art_original', incoming, verdict)
        stored = index.get_article('art_original')
        assert [s.website for s in stored.sources] == ['news.example']
