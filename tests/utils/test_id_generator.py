"""
ID generation tests.

Run: pytest tests/utils/test_id_generator.py -v
"""

from cyberdedup.utils.id_generator import (
    generate_article_id,
    generate_run_id,
    generate_update_id,
    slugify,
)


def test_article_id_is_deterministic():
    first = generate_article_id("LockBit exploits Citrix Bleed", "2025-01-15")
    second = generate_article_id("  lockbit exploits citrix bleed ", "2025-01-15")
    assert first == second
    assert first.startswith('art_') and len(first) == 16


def test_article_id_depends_on_date():
    assert generate_article_id("Same title", "2025-01-15") != generate_article_id("Same title", "2025-01-16")


def test_slugify():
    assert slugify("Ivanti Connect Secure: CVE-2025-0282 exploited!") == \
        'ivanti-connect-secure-cve-2025-0282-exploited'
    assert slugify("Café résumé") == 'cafe-resume'


def test_slugify_truncates_on_word_boundary():
    slug = slugify("alpha beta gamma delta", max_length=14)
    assert slug == 'alpha-beta'


def test_update_id_ignores_order_and_whitespace():
    first = generate_update_id('art_1', 'art_2', "Patch  released", ['b', 'a'], ['CVE-2025-0002', 'CVE-2025-0001'])
    second = generate_update_id('art_1', 'art_2', "patch released", ['a', 'b'], ['CVE-2025-0001', 'CVE-2025-0002'])
    assert first == second
    assert first.startswith('upd_') and len(first) == 20


def test_update_id_depends_on_source():
    assert generate_update_id('art_1', 'art_2', "x", [], []) != generate_update_id('art_1', 'art_3', "x", [], [])


def test_run_ids_are_unique():
    assert generate_run_id() != generate_run_id()
