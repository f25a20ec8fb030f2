# -*- coding: utf-8 -*-
"""
Deterministic ID generation for articles, history entries and runs.

All content-derived IDs are truncated SHA-256 hashes of normalized,
"|"-joined fields, so the same input yields the same ID across runs.

Example:
    from cyberdedup.utils.id_generator import generate_article_id

    article_id = generate_article_id("LockBit exploits Citrix Bleed", "2025-01-15")
    # Returns: "art_<12-char-hex>"
"""

import hashlib
import re
import unicodedata
import uuid
from typing import Iterable

_SLUG_STRIP = re.compile(r'[^a-z0-9]+')


def _hash_string(content: str, length: int = 12) -> str:
    """Truncated SHA-256 hex digest (12 chars = 48 bits)."""
    return hashlib.sha256(content.encode('utf-8')).hexdigest()[:length]


# ============================================================================
# ARTICLE IDS
# ============================================================================

def generate_article_id(title: str, pub_date: str) -> str:
    """
    Article ID for upstream records that arrive without one.

    Args:
        title: Headline, slug or summary prefix (lowercased and stripped)
        pub_date: ISO publication date

    Returns:
        "art_<12-char-hex>"
    """
    content = f"{title.lower().strip()}|{pub_date.strip()}"
    return f"art_{_hash_string(content)}"


def slugify(text: str, max_length: int = 80) -> str:
    """
    URL slug from free text: ASCII-folded, lowercase, hyphen-separated.

    Example:
        >>> slugify("Ivanti Connect Secure: CVE-2025-0282 exploited!")
        'ivanti-connect-secure-cve-2025-0282-exploited'
    """
    folded = unicodedata.normalize('NFKD', text).encode('ascii', 'ignore').decode('ascii')
    slug = _SLUG_STRIP.sub('-', folded.lower()).strip('-')
    if len(slug) > max_length:
        slug = slug[:max_length].rsplit('-', 1)[0] or slug[:max_length]
    return slug


# ============================================================================
# HISTORY ENTRIES
# ============================================================================

def generate_update_id(
    canonical_id: str,
    source_article_id: str,
    change_summary: str,
    added_entities: Iterable[str],
    added_cves: Iterable[str],
) -> str:
    """
    De-duplication key for an update history entry.

    The adjudication timestamp is not part of the key: replaying the same
    merge later maps to the same key.

    Returns:
        "upd_<16-char-hex>"
    """
    content = "|".join([
        canonical_id,
        source_article_id or "",
        " ".join(change_summary.split()).lower(),
        ",".join(sorted(added_entities)),
        ",".join(sorted(added_cves)),
    ])
    return f"upd_{_hash_string(content, length=16)}"


def generate_run_id() -> str:
    """Random run identifier, "run_<12-char-hex>"."""
    return f"run_{uuid.uuid4().hex[:12]}"
