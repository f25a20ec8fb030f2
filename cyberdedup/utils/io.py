# -*- coding: utf-8 -*-
"""
I/O utilities for article batches and resolution output.

JSON/JSONL helpers with consistent UTF-8 encoding and logging. Article
batches can arrive either as a JSON array, a JSON object with an
"articles" key, or JSONL; load_articles() accepts all three.

Examples:
    from cyberdedup.utils.io import load_articles, save_jsonl
    raw_articles = load_articles("data/raw/articles_2025-01-15.jsonl")
    save_jsonl([r.to_dict() for r in records], "data/processed/resolutions.jsonl")
"""
import json
import logging
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Union

logger = logging.getLogger(__name__)


# ============================================================================
# JSON
# ============================================================================

def load_json(path: Union[str, Path]) -> Any:
    """Load a JSON file."""
    path = Path(path)
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    logger.info(f"Loaded {path} ({_size_str(path)})")
    return data


def save_json(data: Any, path: Union[str, Path], indent: int = 2) -> str:
    """
    Save data to a JSON file (parent directories are created).

    Returns:
        Path string
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=indent, ensure_ascii=False, default=_serialize)

    logger.info(f"Saved {path} ({_size_str(path)})")
    return str(path)


# ============================================================================
# JSONL
# ============================================================================

def load_jsonl(path: Union[str, Path]) -> List[Dict]:
    """Load a JSONL file as a list of records (blank lines skipped)."""
    path = Path(path)
    records = list(stream_jsonl(path))
    logger.info(f"Loaded {len(records)} records from {path}")
    return records


def save_jsonl(records: List[Dict], path: Union[str, Path]) -> str:
    """
    Save records to a JSONL file, one object per line.

    Returns:
        Path string
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, 'w', encoding='utf-8') as f:
        for record in records:
            f.write(json.dumps(record, ensure_ascii=False, default=_serialize) + '\n')

    logger.info(f"Saved {len(records)} records to {path}")
    return str(path)


def stream_jsonl(path: Union[str, Path]) -> Iterator[Dict]:
    """Yield JSONL records one at a time."""
    path = Path(path)
    with open(path, 'r', encoding='utf-8') as f:
        for line in f:
            if line.strip():
                yield json.loads(line)


# ============================================================================
# ARTICLE BATCHES
# ============================================================================

def load_articles(path: Union[str, Path]) -> List[Dict]:
    """
    Load a batch of raw article records.

    Args:
        path: .jsonl file, or .json file holding a list or {"articles": [...]}

    Returns:
        List of raw article dicts in file order

    Raises:
        ValueError: JSON file with an unsupported top-level shape
    """
    path = Path(path)
    if path.suffix == '.jsonl':
        return load_jsonl(path)

    data = load_json(path)
    if isinstance(data, dict) and isinstance(data.get('articles'), list):
        return data['articles']
    if isinstance(data, list):
        return data
    raise ValueError(f"{path}: expected a list of articles or an object with an 'articles' list")


# ============================================================================
# HELPERS
# ============================================================================

def _serialize(obj: Any) -> Any:
    """Convert non-JSON-serializable objects."""
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    if hasattr(obj, 'to_dict'):
        return obj.to_dict()
    if hasattr(obj, '__dict__'):
        return obj.__dict__
    return str(obj)


def _size_str(path: Path) -> str:
    """Human-readable file size."""
    size = path.stat().st_size
    for unit in ['B', 'KB', 'MB', 'GB']:
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"
