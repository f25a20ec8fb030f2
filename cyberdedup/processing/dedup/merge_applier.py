# -*- coding: utf-8 -*-
"""
Merge applier: the only writer of canonical article records.

    UPDATE -> union CVE/entity sets and source references into the
              canonical record, overwrite content fields with non-empty
              incoming values, append exactly one history entry (carrying
              the incoming sources), set updated_at to the adjudication time
    NEW    -> register the incoming article as a canonical record
    SKIP   -> nothing

id, slug and created_at of a canonical record never change. History entries
carry a content-derived update_id, so replaying a merge is a no-op.
"""

# Standard library
import copy
import logging
from typing import Dict, List, Optional

# Local
from cyberdedup.storage.entity_index import EntityIndex
from cyberdedup.utils.dataclasses import (
    AdjudicationResult,
    Article,
    Decision,
    EntityType,
    UpdateEntry,
    utcnow,
)
from cyberdedup.utils.errors import IndexUnavailableError
from cyberdedup.utils.id_generator import generate_update_id

logger = logging.getLogger(__name__)


class MergeApplier:
    """Applies resolution decisions to the entity index."""

    def __init__(self, index: EntityIndex):
        self.index = index
        self.stats = {
            'registered': 0,
            'merged': 0,
            'replayed': 0,
            'skipped': 0,
        }

    def register(self, incoming: Article, run_id: Optional[str] = None) -> Article:
        """Store a NEW article as a canonical record with empty history."""
        record = copy.deepcopy(incoming)
        record.created_at = record.created_at or utcnow()
        record.updated_at = record.created_at
        record.update_history = []

        self.index.index(record, run_id=run_id)
        self.stats['registered'] += 1
        logger.debug(f"Registered {record.id} as new story")
        return record

    def merge(self, article_id: str, incoming: Article,
              adjudication: AdjudicationResult) -> Optional[Article]:
        """
        Apply an UPDATE verdict to canonical record article_id.

        Args:
            article_id: Canonical record to update
            incoming: Article carrying the new information
            adjudication: Verdict with decision UPDATE and a change object
                (SKIP is accepted and leaves the record untouched)

        Returns:
            The canonical record after the merge, None for SKIP

        Raises:
            ValueError: NEW verdict, or UPDATE without a change object
            IndexUnavailableError: canonical record missing or store failure
        """
        if adjudication.decision is Decision.SKIP:
            self.stats['skipped'] += 1
            logger.info(f"{incoming.id}: SKIP, {article_id} left unchanged")
            return None
        if adjudication.decision is not Decision.UPDATE:
            raise ValueError(f"merge() needs an UPDATE verdict, got {adjudication.decision.value}")
        if adjudication.change is None:
            raise ValueError(f"UPDATE verdict for {incoming.id} has no change object")

        canonical = self.index.get_article(article_id)
        if canonical is None:
            raise IndexUnavailableError(f"Canonical article {article_id} missing from index")

        change = adjudication.change
        added_cves = sorted(incoming.cve_ids - canonical.cve_ids)
        added_entities = self._added_entities(canonical, incoming)

        # Keyed on the verdict payload, not on the set differences, which
        # shrink to nothing once the merge has been applied
        entry = UpdateEntry(
            update_id=generate_update_id(
                canonical.id,
                incoming.id,
                change.change_summary,
                [name.casefold() for name in change.new_entities],
                change.new_cves,
            ),
            timestamp=change.timestamp,
            change_summary=change.change_summary,
            added_entities=added_entities,
            added_cves=added_cves,
            severity_delta=change.severity_delta,
            source_article_id=incoming.id,
            sources=list(incoming.sources),
        )

        if any(e.update_id == entry.update_id for e in canonical.update_history):
            self.stats['replayed'] += 1
            logger.info(f"{incoming.id}: update {entry.update_id} already applied to {canonical.id}")
            return canonical

        merged = self._merged_record(canonical, incoming)
        if not self.index.save_merge(merged, entry):
            self.stats['replayed'] += 1
            logger.info(f"{incoming.id}: update {entry.update_id} already applied to {canonical.id}")
            return canonical

        merged.update_history.append(entry)
        merged.updated_at = entry.timestamp
        self.stats['merged'] += 1
        logger.debug(f"Merged {incoming.id} into {canonical.id} "
                     f"(+{len(added_cves)} CVEs, +{len(added_entities)} entities)")
        return merged

    @staticmethod
    def _added_entities(canonical: Article, incoming: Article) -> List[Dict[str, str]]:
        added = []
        for entity_type in EntityType:
            existing = canonical.entity_keys(entity_type)
            for key, name in sorted(incoming.entities.get(entity_type, {}).items()):
                if key not in existing:
                    added.append({'name': name, 'type': entity_type.value})
        return added

    @staticmethod
    def _merged_record(canonical: Article, incoming: Article) -> Article:
        merged = copy.deepcopy(canonical)

        for cve_id, cve in incoming.cves.items():
            merged.cves.setdefault(cve_id, cve)
        for entity_type, names in incoming.entities.items():
            bucket = merged.entities.setdefault(entity_type, {})
            for key, name in names.items():
                bucket.setdefault(key, name)

        seen = {(str(e.get('name', '')).casefold(), str(e.get('type', '')).lower())
                for e in merged.raw_entities if isinstance(e, dict)}
        for raw_entity in incoming.raw_entities:
            if not isinstance(raw_entity, dict):
                continue
            marker = (str(raw_entity.get('name', '')).casefold(), str(raw_entity.get('type', '')).lower())
            if marker not in seen:
                seen.add(marker)
                merged.raw_entities.append(raw_entity)

        # Sources are one record per url and website
        known = {source.key for source in merged.sources}
        for source in incoming.sources:
            if source.key not in known:
                known.add(source.key)
                merged.sources.append(source)

        if incoming.headline:
            merged.headline = incoming.headline
        if incoming.summary:
            merged.summary = incoming.summary
        if incoming.full_text:
            merged.full_text = incoming.full_text
        return merged
