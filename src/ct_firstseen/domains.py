"""
Domain canonicalization and bucket assignment.

Both the extraction and the sharding stage run names through
`canonicalize` so deduplication and hashing see identical strings.
"""

import hashlib
import re
import unicodedata
from typing import Iterable, Optional, Tuple

# Characters that would corrupt the CSV row layout or are never valid in a name.
_FORBIDDEN = re.compile(r'[\s,;"\x00-\x1f\x7f]')


def canonicalize(name: str) -> Optional[str]:
    """
    Strip, NFC-normalize and casefold a DNS name, dropping one trailing dot.

    Wildcard and `www.` labels are kept. Returns None for names that are
    empty or contain forbidden characters.
    """
    name = unicodedata.normalize("NFC", name.strip().casefold())
    if name.endswith("."):
        name = name[:-1]
    if not name or _FORBIDDEN.search(name):
        return None
    return name


def canonical_domains(names: Iterable[str]) -> Tuple[str, ...]:
    """Canonical, deduplicated, sorted domain set."""
    canonical = set()
    for name in names:
        domain = canonicalize(name)
        if domain is not None:
            canonical.add(domain)
    return tuple(sorted(canonical))


def bucket_for(domain: str, buckets: int) -> int:
    """
    Stable bucket id in `[0, buckets)`: the first 8 bytes of the MD5 digest,
    read as an unsigned little-endian integer, modulo `buckets`.
    """
    if buckets < 1:
        raise ValueError(f"bucket count must be >= 1, got {buckets}")
    digest = hashlib.md5(domain.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "little", signed=False) % buckets
