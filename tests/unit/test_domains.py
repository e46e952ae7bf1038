"""Unit tests for domain canonicalization and bucket assignment."""

from __future__ import annotations

import pytest

from ct_firstseen.domains import bucket_for, canonical_domains, canonicalize


def test_canonicalize_casefolds_and_strips_trailing_dot() -> None:
    assert canonicalize("  WWW.Example.COM. ") == "www.example.com"


def test_canonicalize_keeps_wildcard_labels() -> None:
    assert canonicalize("*.Example.com") == "*.example.com"


def test_canonicalize_normalizes_unicode_to_nfc() -> None:
    decomposed = "cafe\u0301.example"
    composed = "caf\u00e9.example"

    assert canonicalize(decomposed) == canonicalize(composed) == composed


@pytest.mark.parametrize("name", ["", "   ", ".", "a,b.com", "a;b.com", "a b.com", 'x".com', "x\n.com"])
def test_canonicalize_rejects_unusable_names(name: str) -> None:
    assert canonicalize(name) is None


def test_canonicalize_is_idempotent() -> None:
    once = canonicalize("Sub.Example.ORG.")

    assert canonicalize(once) == once


def test_canonical_domains_deduplicates_after_canonicalization() -> None:
    domains = canonical_domains(["Example.com", "example.com.", "EXAMPLE.COM", "b.example", "bad,name"])

    assert domains == ("b.example", "example.com")
    assert len(set(domains)) == len(domains)


def test_bucket_for_matches_known_md5_prefix() -> None:
    # md5("example.com") starts with 5a ab bd 60 ..., little-endian low byte 0x5a
    assert bucket_for("example.com", 128) == 0x5A % 128
    assert bucket_for("example.com", 16) == 0x5A % 16
    assert bucket_for("www.example.org", 128) == 0xFD % 128


def test_bucket_for_is_deterministic_and_in_range() -> None:
    names = [f"host{i}.example.net" for i in range(500)]

    first = [bucket_for(n, 7) for n in names]
    second = [bucket_for(n, 7) for n in names]

    assert first == second
    assert all(0 <= b < 7 for b in first)
    assert len(set(first)) == 7


def test_bucket_for_rejects_non_positive_counts() -> None:
    with pytest.raises(ValueError):
        bucket_for("example.com", 0)
