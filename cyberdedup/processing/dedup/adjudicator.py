# -*- coding: utf-8 -*-
"""
Adjudication of borderline (and optionally update-eligible) matches.

BaseAdjudicator is the capability the orchestrator depends on: given the
incoming article, the best candidate and its similarity result, return NEW,
UPDATE (with a change object) or SKIP.

LLMAdjudicator implements it with a Together.ai chat model, rate-limited and
at temperature 0. GuardedAdjudicator wraps any adjudicator with a bounded
timeout and a deterministic fallback:

    BORDERLINE + failure      -> fallback policy (default NEW, or SKIP)
    UPDATE-eligible + failure -> direct merge with an automatic change object

Example:
    guarded = GuardedAdjudicator(LLMAdjudicator(), timeout=60, fallback_policy=FallbackPolicy.NEW)
    result = guarded.adjudicate(incoming, existing, similarity)
"""

# Standard library
import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

# Local
from cyberdedup.processing.entities.entity_extractor import EntityExtractor
from cyberdedup.utils.config import (
    ADJUDICATION_BODY_CHARS,
    ADJUDICATION_MAX_RPM,
    ADJUDICATION_MAX_TOKENS,
    ADJUDICATION_MODEL,
    ADJUDICATION_TEMPERATURE,
)
from cyberdedup.utils.dataclasses import (
    AdjudicationResult,
    Article,
    ChangeObject,
    Classification,
    Decision,
    EntityType,
    FallbackPolicy,
    ResolutionMethod,
    SeverityDelta,
    SimilarityResult,
    utcnow,
)
from cyberdedup.utils.errors import AdjudicationError, AdjudicationTimeoutError

logger = logging.getLogger(__name__)

CONFIDENCE_LEVELS = ('high', 'medium', 'low')


class BaseAdjudicator(ABC):
    """Decides NEW / UPDATE / SKIP for one (incoming, candidate) pair."""

    @abstractmethod
    def adjudicate(self, incoming: Article, existing: Article,
                   similarity: SimilarityResult) -> AdjudicationResult:
        """
        Raises:
            AdjudicationError: no usable verdict
        """


# ============================================================================
# AUTOMATIC CHANGE OBJECTS
# ============================================================================

def severity_delta(incoming: Article, existing: Article) -> str:
    """Compare the highest CVSS score of each article."""
    incoming_scores = [c.cvss_score for c in incoming.cves.values() if c.cvss_score is not None]
    existing_scores = [c.cvss_score for c in existing.cves.values() if c.cvss_score is not None]
    if not incoming_scores or not existing_scores:
        return SeverityDelta.UNKNOWN.value
    new_max, old_max = max(incoming_scores), max(existing_scores)
    if new_max > old_max:
        return SeverityDelta.INCREASED.value
    if new_max < old_max:
        return SeverityDelta.DECREASED.value
    return SeverityDelta.UNCHANGED.value


def build_automatic_change(incoming: Article, existing: Article) -> ChangeObject:
    """
    Change object for merges decided without an adjudicator verdict.

    The incoming summary becomes the change summary; new entities and CVEs
    are the set differences against the existing record.
    """
    new_entities = []
    for entity_type in EntityType:
        existing_keys = existing.entity_keys(entity_type)
        for key, name in sorted(incoming.entities.get(entity_type, {}).items()):
            if key not in existing_keys:
                new_entities.append(name)

    return ChangeObject(
        timestamp=utcnow(),
        change_summary=incoming.summary,
        new_entities=new_entities,
        new_cves=sorted(incoming.cve_ids - existing.cve_ids),
        severity_delta=severity_delta(incoming, existing),
    )


# ============================================================================
# LLM ADJUDICATOR (Together.ai)
# ============================================================================

class LLMAdjudicator(BaseAdjudicator):
    """
    Together.ai chat model as story editor.

    Prompt carries both bodies (truncated), CVEs and entities; the reply must
    be a JSON object (markdown fences are tolerated).
    """

    def __init__(self,
                 model: str = ADJUDICATION_MODEL,
                 api_key: Optional[str] = None,
                 max_rpm: int = ADJUDICATION_MAX_RPM,
                 temperature: float = ADJUDICATION_TEMPERATURE,
                 max_tokens: int = ADJUDICATION_MAX_TOKENS,
                 body_chars: int = ADJUDICATION_BODY_CHARS,
                 client: Any = None):
        """
        Args:
            model: Together model name
            api_key: API key (TOGETHER_API_KEY env var if not given)
            max_rpm: Requests per minute across all threads
            temperature: Sampling temperature
            max_tokens: Maximum reply tokens
            body_chars: Body characters per article included in the prompt
            client: Pre-built client (tests inject a mock)
        """
        from dotenv import load_dotenv
        from cyberdedup.prompts.prompts import ADJUDICATION_PROMPT
        from cyberdedup.utils.rate_limiter import RateLimiter

        load_dotenv()

        if client is None:
            from together import Together

            api_key = api_key or os.getenv('TOGETHER_API_KEY')
            if not api_key:
                raise ValueError(
                    "Together.ai API key required. "
                    "Set TOGETHER_API_KEY environment variable or pass api_key parameter."
                )
            client = Together(api_key=api_key)

        self.client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.body_chars = body_chars
        self.prompt_template = ADJUDICATION_PROMPT
        self.rate_limiter = RateLimiter(max_calls_per_minute=max_rpm)
        self._stats_lock = threading.Lock()
        self.stats = {
            'calls': 0,
            'new': 0,
            'update': 0,
            'skip': 0,
            'errors': 0,
        }

    def _bump(self, key: str) -> None:
        with self._stats_lock:
            self.stats[key] += 1

    def build_prompt(self, incoming: Article, existing: Article, similarity: SimilarityResult) -> str:
        classification = similarity.classification.value if similarity.classification else 'UNSCORED'
        return self.prompt_template.format(
            similarity_score=similarity.total,
            classification=classification,
            original_pub_date=existing.pub_date.isoformat(),
            original_id=existing.id,
            original_headline=existing.headline or existing.slug,
            original_summary=existing.summary,
            original_body=self._excerpt(existing.body_text),
            original_cves=_format_cves(existing),
            original_entities=_format_entities(existing),
            candidate_pub_date=incoming.pub_date.isoformat(),
            candidate_id=incoming.id,
            candidate_headline=incoming.headline or incoming.slug,
            candidate_summary=incoming.summary,
            candidate_body=self._excerpt(incoming.body_text),
            candidate_cves=_format_cves(incoming),
            candidate_entities=_format_entities(incoming),
        )

    def _excerpt(self, text: str) -> str:
        if len(text) <= self.body_chars:
            return text
        return text[:self.body_chars].rsplit(' ', 1)[0] + ' [...]'

    def adjudicate(self, incoming: Article, existing: Article,
                   similarity: SimilarityResult) -> AdjudicationResult:
        prompt = self.build_prompt(incoming, existing, similarity)

        self.rate_limiter.acquire()
        self._bump('calls')

        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
            content = response.choices[0].message.content or ''
        except Exception as e:
            self._bump('errors')
            raise AdjudicationError(f"LLM call failed for {incoming.id} vs {existing.id}: {e}") from e

        try:
            result = self.parse_response(content)
        except AdjudicationError:
            self._bump('errors')
            raise

        self._bump(result.decision.value.lower())
        return result

    @staticmethod
    def _strip_fences(content: str) -> str:
        content = content.strip()
        if content.startswith("```"):
            content = content.split("\n", 1)[1] if "\n" in content else content[3:]
            if content.endswith("```"):
                content = content.rsplit("```", 1)[0]
        content = content.strip()
        # Tolerate prose around the object
        if not content.startswith('{') and '{' in content and '}' in content:
            content = content[content.index('{'):content.rindex('}') + 1]
        return content

    def parse_response(self, content: str) -> AdjudicationResult:
        """
        Parse the model's JSON verdict.

        Raises:
            AdjudicationError: not JSON, unknown decision, or UPDATE without a
                change summary
        """
        cleaned = self._strip_fences(content)
        try:
            payload = json.loads(cleaned)
        except json.JSONDecodeError as e:
            raise AdjudicationError(f"Verdict is not valid JSON ({e}): {content[:200]!r}")
        if not isinstance(payload, dict):
            raise AdjudicationError(f"Verdict must be a JSON object: {content[:200]!r}")

        raw_decision = str(payload.get('decision', '')).strip().upper()
        try:
            decision = Decision(raw_decision)
        except ValueError:
            raise AdjudicationError(f"Unknown decision {raw_decision!r}")

        confidence = str(payload.get('confidence', 'medium')).strip().lower()
        if confidence not in CONFIDENCE_LEVELS:
            confidence = 'medium'

        change = None
        if decision is Decision.UPDATE:
            change = self._parse_change(payload.get('update'))

        return AdjudicationResult(
            decision=decision,
            reasoning=str(payload.get('reasoning', '')).strip(),
            method=ResolutionMethod.LLM,
            change=change,
            confidence=confidence,
        )

    @staticmethod
    def _parse_change(update: Any) -> ChangeObject:
        if not isinstance(update, dict):
            raise AdjudicationError("UPDATE verdict without an update object")

        change_summary = str(update.get('change_summary') or update.get('summary') or '').strip()
        if not change_summary:
            raise AdjudicationError("UPDATE verdict without a change summary")

        delta = str(update.get('severity_delta') or update.get('severity_change') or 'unknown').lower()
        if delta not in {d.value for d in SeverityDelta}:
            delta = SeverityDelta.UNKNOWN.value

        new_cves = []
        for raw_cve in update.get('new_cves') or []:
            cve_id = EntityExtractor.normalize_cve_id(raw_cve)
            if cve_id and cve_id not in new_cves:
                new_cves.append(cve_id)

        return ChangeObject(
            timestamp=utcnow(),
            change_summary=change_summary,
            new_entities=[str(e).strip() for e in update.get('new_entities') or [] if str(e).strip()],
            new_cves=new_cves,
            severity_delta=delta,
        )


def _format_cves(article: Article) -> str:
    if not article.cves:
        return 'None'
    parts = []
    for cve in sorted(article.cves.values(), key=lambda c: c.id):
        extras = []
        if cve.cvss_score is not None:
            extras.append(f"CVSS {cve.cvss_score}")
        if cve.known_exploited:
            extras.append("KEV")
        parts.append(f"{cve.id} ({', '.join(extras)})" if extras else cve.id)
    return ', '.join(parts)


def _format_entities(article: Article) -> str:
    entities = article.typed_entities()
    if not entities:
        return 'None'
    return ', '.join(f"{e['name']} ({e['type']})" for e in entities)


# ============================================================================
# TIMEOUT + FALLBACK
# ============================================================================

class GuardedAdjudicator:
    """
    Bounded-time adjudication with a deterministic fallback.

    Each call runs on its own daemon thread and the timeout is measured from
    the moment that thread starts, so a slow or hung verdict only costs its
    own article the timeout. Hung calls are abandoned rather than joined;
    they hold no shared capacity and later calls start immediately.
    Fallbacks are logged as warnings and counted. With no wrapped
    adjudicator every call takes the fallback.
    """

    @property
    def available(self) -> bool:
        return self.adjudicator is not None

    def __init__(self,
                 adjudicator: Optional[BaseAdjudicator],
                 timeout: float = 60.0,
                 fallback_policy: FallbackPolicy = FallbackPolicy.NEW):
        self.adjudicator = adjudicator
        self.timeout = timeout
        self.fallback_policy = fallback_policy
        self._stats_lock = threading.Lock()
        self._abandoned: List[threading.Thread] = []
        self.stats = {
            'adjudicated': 0,
            'timeouts': 0,
            'failures': 0,
            'fallbacks': 0,
        }

    def _bump(self, key: str) -> None:
        with self._stats_lock:
            self.stats[key] += 1

    def _call_with_deadline(self, incoming: Article, existing: Article,
                            similarity: SimilarityResult) -> AdjudicationResult:
        """Run one verdict on a fresh thread; AdjudicationTimeoutError if it outlives the timeout."""
        outcome: Dict[str, Any] = {}

        def target():
            try:
                outcome['result'] = self.adjudicator.adjudicate(incoming, existing, similarity)
            except Exception as e:
                outcome['error'] = e

        worker = threading.Thread(target=target, name=f"adjudicate-{incoming.id}", daemon=True)
        worker.start()
        worker.join(self.timeout)

        if worker.is_alive():
            with self._stats_lock:
                self._abandoned = [t for t in self._abandoned if t.is_alive()]
                self._abandoned.append(worker)
            raise AdjudicationTimeoutError(
                f"No verdict for {incoming.id} vs {existing.id} within {self.timeout}s")
        if 'error' in outcome:
            raise outcome['error']
        return outcome['result']

    def adjudicate(self, incoming: Article, existing: Article,
                   similarity: SimilarityResult) -> AdjudicationResult:
        """Verdict from the wrapped adjudicator, or the fallback on timeout/failure."""
        if self.adjudicator is None:
            return self.fallback(incoming, existing, similarity,
                                 AdjudicationError("no adjudicator configured"))

        try:
            result = self._call_with_deadline(incoming, existing, similarity)
        except AdjudicationTimeoutError as e:
            self._bump('timeouts')
            return self.fallback(incoming, existing, similarity, e)
        except Exception as e:
            self._bump('failures')
            error = e if isinstance(e, AdjudicationError) else AdjudicationError(
                f"{type(e).__name__}: {e}")
            return self.fallback(incoming, existing, similarity, error)

        if result.decision is Decision.UPDATE and result.change is None:
            result.change = build_automatic_change(incoming, existing)
        self._bump('adjudicated')
        return result

    def fallback(self, incoming: Article, existing: Article, similarity: SimilarityResult,
                 error: AdjudicationError) -> AdjudicationResult:
        """Deterministic verdict used when adjudication fails."""
        self._bump('fallbacks')

        if similarity.classification is Classification.UPDATE:
            logger.warning(f"{incoming.id}: {error} -> merging into {existing.id} without verdict")
            return AdjudicationResult(
                decision=Decision.UPDATE,
                reasoning=f"Adjudication failed ({error}); score {similarity.total:.3f} "
                          f"above update threshold, merged automatically",
                method=ResolutionMethod.FALLBACK,
                change=build_automatic_change(incoming, existing),
                confidence='low',
                error=str(error),
            )

        decision = Decision.SKIP if self.fallback_policy is FallbackPolicy.SKIP else Decision.NEW
        logger.warning(f"{incoming.id}: {error} -> fallback {decision.value}")
        return AdjudicationResult(
            decision=decision,
            reasoning=f"Adjudication failed ({error}); fallback policy {self.fallback_policy.value}",
            method=ResolutionMethod.FALLBACK,
            confidence='low',
            error=str(error),
        )

    def close(self) -> None:
        with self._stats_lock:
            hung = [t for t in self._abandoned if t.is_alive()]
            self._abandoned = []
        if hung:
            logger.warning(f"{len(hung)} timed-out adjudication call(s) still running; abandoned")
