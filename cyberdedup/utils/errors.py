# -*- coding: utf-8 -*-
"""
Exception hierarchy for the resolution engine.

Per-article errors (malformed input, adjudication trouble) are recovered by
the orchestrator; index and configuration errors stop the run.
"""


class DedupError(Exception):
    """Base class for all resolution engine errors."""


class MalformedInputError(DedupError):
    """Raw article is missing required fields or has unparseable values."""

    def __init__(self, message: str, article_id: str = None):
        super().__init__(message)
        self.article_id = article_id


class IndexUnavailableError(DedupError):
    """Entity index cannot be read or written. Aborts the run."""


class AdjudicationError(DedupError):
    """Adjudicator failed or returned an unusable verdict."""


class AdjudicationTimeoutError(AdjudicationError):
    """Adjudicator did not answer within the configured timeout."""


class ConfigurationError(DedupError):
    """Invalid run configuration, detected before any article is processed."""


class WeightConfigurationError(ConfigurationError):
    """Similarity weights are missing, negative, or do not sum to 1.0."""
