# cyberdedup/utils/config.py

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from cyberdedup.utils.dataclasses import DIMENSIONS, FallbackPolicy
from cyberdedup.utils.errors import ConfigurationError, WeightConfigurationError

load_dotenv()

logger = logging.getLogger(__name__)

# Project Paths
PROJECT_ROOT = Path(__file__).parent.parent.parent
DATA_PATH = PROJECT_ROOT / "data"
PROCESSED_DATA_PATH = DATA_PATH / "processed"

DEFAULT_DB_PATH = Path(os.getenv("DEDUP_DB_PATH", str(PROCESSED_DATA_PATH / "entity_index.db")))
DEFAULT_RESOLUTIONS_PATH = PROCESSED_DATA_PATH / "resolutions.jsonl"

# API Keys
TOGETHER_API_KEY = os.getenv("TOGETHER_API_KEY")

# Adjudication LLM (Together.ai)
ADJUDICATION_MODEL = os.getenv("ADJUDICATION_MODEL", "mistralai/Mistral-7B-Instruct-v0.3")
ADJUDICATION_TEMPERATURE = 0.0  # Deterministic verdicts
ADJUDICATION_MAX_TOKENS = 1024
ADJUDICATION_MAX_RPM = 600
ADJUDICATION_BODY_CHARS = 6000  # Per-article body excerpt sent to the model

# Debug
DEBUG_MODE = os.getenv("DEBUG_MODE", "false").lower() == "true"

# Floating point slack when checking the weight sum
WEIGHT_SUM_TOLERANCE = 1e-6


# ============================================================================
# RESOLUTION DEFAULTS
# ============================================================================

DEFAULT_WEIGHTS = {
    'cve': 0.40,
    'text': 0.20,
    'threat_actor': 0.12,
    'malware': 0.12,
    'product': 0.08,
    'company': 0.08,
}

DEDUP_CONFIG = {
    'lookback_days': 30,
    'new_threshold': 0.35,
    'update_threshold': 0.70,
    'candidate_cap': 50,
    'max_workers': 4,
    'adjudication_timeout': 60.0,   # seconds
    'fallback_policy': 'new',
    'adjudicate_updates': True,
    'dry_run': False,
    'force': False,
}


@dataclass
class DedupConfig:
    """
    Run configuration for the resolution engine.

    Call validate() before processing anything; the processor does this in
    its constructor so a bad configuration never touches the index.
    """
    lookback_days: int = DEDUP_CONFIG['lookback_days']
    weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_WEIGHTS))
    new_threshold: float = DEDUP_CONFIG['new_threshold']
    update_threshold: float = DEDUP_CONFIG['update_threshold']
    candidate_cap: int = DEDUP_CONFIG['candidate_cap']
    max_workers: int = DEDUP_CONFIG['max_workers']
    adjudication_timeout: float = DEDUP_CONFIG['adjudication_timeout']
    fallback_policy: FallbackPolicy = FallbackPolicy.NEW
    adjudicate_updates: bool = DEDUP_CONFIG['adjudicate_updates']
    dry_run: bool = DEDUP_CONFIG['dry_run']
    force: bool = DEDUP_CONFIG['force']

    def __post_init__(self):
        if isinstance(self.fallback_policy, str):
            try:
                self.fallback_policy = FallbackPolicy(self.fallback_policy.lower())
            except ValueError:
                raise ConfigurationError(
                    f"Unknown fallback policy '{self.fallback_policy}'. "
                    f"Valid: {[p.value for p in FallbackPolicy]}"
                )

    def validate(self) -> 'DedupConfig':
        """
        Check weights and thresholds.

        Raises:
            WeightConfigurationError: missing/unknown/negative weights or sum != 1.0
            ConfigurationError: thresholds out of order, non-positive window/cap/workers
        """
        missing = [name for name in DIMENSIONS if name not in self.weights]
        unknown = [name for name in self.weights if name not in DIMENSIONS]
        if missing or unknown:
            raise WeightConfigurationError(
                f"Weights must cover exactly {list(DIMENSIONS)} "
                f"(missing={missing}, unknown={unknown})"
            )

        negative = {name: w for name, w in self.weights.items() if w < 0}
        if negative:
            raise WeightConfigurationError(f"Weights must be non-negative: {negative}")

        total = sum(self.weights.values())
        if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
            raise WeightConfigurationError(f"Weights must sum to 1.0 (got {total:.6f})")

        if not 0.0 <= self.new_threshold < self.update_threshold <= 1.0:
            raise ConfigurationError(
                f"Thresholds must satisfy 0 <= new ({self.new_threshold}) "
                f"< update ({self.update_threshold}) <= 1"
            )

        for name in ('lookback_days', 'candidate_cap', 'max_workers'):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be >= 1 (got {getattr(self, name)})")

        if self.adjudication_timeout <= 0:
            raise ConfigurationError(
                f"adjudication_timeout must be positive (got {self.adjudication_timeout})"
            )

        return self

    @classmethod
    def from_dict(cls, overrides: Optional[Dict[str, Any]] = None) -> 'DedupConfig':
        """Build from DEDUP_CONFIG defaults plus overrides (unknown keys rejected)."""
        values = dict(DEDUP_CONFIG)
        values['weights'] = dict(DEFAULT_WEIGHTS)
        for key, value in (overrides or {}).items():
            if key not in values:
                raise ConfigurationError(f"Unknown configuration key: {key}")
            values[key] = value
        return cls(**values)

    @classmethod
    def from_env(cls, **overrides) -> 'DedupConfig':
        """
        Defaults, then DEDUP_* environment variables, then explicit overrides.

        Weights come from DEDUP_WEIGHT_<DIMENSION> (e.g. DEDUP_WEIGHT_CVE=0.5).
        """
        values: Dict[str, Any] = {}
        parsers = {
            'lookback_days': int,
            'new_threshold': float,
            'update_threshold': float,
            'candidate_cap': int,
            'max_workers': int,
            'adjudication_timeout': float,
            'fallback_policy': str,
            'adjudicate_updates': _parse_bool,
        }
        for key, parse in parsers.items():
            raw = os.getenv(f"DEDUP_{key.upper()}")
            if raw is not None:
                try:
                    values[key] = parse(raw)
                except ValueError:
                    raise ConfigurationError(f"Invalid value for DEDUP_{key.upper()}: {raw!r}")

        weights = dict(DEFAULT_WEIGHTS)
        for name in DIMENSIONS:
            raw = os.getenv(f"DEDUP_WEIGHT_{name.upper()}")
            if raw is not None:
                try:
                    weights[name] = float(raw)
                except ValueError:
                    raise WeightConfigurationError(f"Invalid weight for {name}: {raw!r}")
        values['weights'] = weights

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.from_dict(values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'lookback_days': self.lookback_days,
            'weights': dict(self.weights),
            'new_threshold': self.new_threshold,
            'update_threshold': self.update_threshold,
            'candidate_cap': self.candidate_cap,
            'max_workers': self.max_workers,
            'adjudication_timeout': self.adjudication_timeout,
            'fallback_policy': self.fallback_policy.value,
            'adjudicate_updates': self.adjudicate_updates,
            'dry_run': self.dry_run,
            'force': self.force,
        }


def _parse_bool(raw: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in ('1', 'true', 'yes', 'on'):
        return True
    if lowered in ('0', 'false', 'no', 'off'):
        return False
    raise ValueError(raw)
