# -*- coding: utf-8 -*-
"""
Threshold classifier for the best-scoring candidate.

    total <  new_threshold                     -> NEW
    new_threshold <= total < update_threshold  -> BORDERLINE (adjudicate)
    total >= update_threshold                  -> UPDATE

Only the single best candidate is classified; ties on total go to the most
recently published candidate, then the lowest id.
"""

# Standard library
import logging
import threading
from typing import List, Optional

# Local
from cyberdedup.utils.dataclasses import Classification, SimilarityResult

logger = logging.getLogger(__name__)


class TieredThresholdClassifier:
    """Two-threshold banding of similarity totals."""

    def __init__(self, new_threshold: float = 0.35, update_threshold: float = 0.70):
        self.new_threshold = new_threshold
        self.update_threshold = update_threshold
        self.stats = {
            'new': 0,
            'borderline': 0,
            'update': 0,
        }
        self._lock = threading.Lock()

    def band(self, total: float) -> Classification:
        if total < self.new_threshold:
            return Classification.NEW
        if total < self.update_threshold:
            return Classification.BORDERLINE
        return Classification.UPDATE

    @staticmethod
    def select_best(results: List[SimilarityResult]) -> Optional[SimilarityResult]:
        """Highest total; ties -> most recent candidate pub_date, then lowest id."""
        if not results:
            return None
        return min(results, key=lambda r: (-r.total, -r.candidate_pub_date.toordinal(), r.candidate_id))

    def classify(self, best: Optional[SimilarityResult]) -> Classification:
        """
        Classify the best candidate (None means no candidates -> NEW).

        Sets best.classification as a side effect.
        """
        if best is None:
            classification = Classification.NEW
        else:
            classification = self.band(best.total)
            best.classification = classification

        with self._lock:
            self.stats[classification.value.lower()] += 1
        return classification
