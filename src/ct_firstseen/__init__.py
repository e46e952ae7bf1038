"""
Certificate Transparency first-seen/last-seen domain tables.

Three batch jobs:
  ingest  scan an index range of a CT log into rotated zstd CSV files
  shard   partition those files into domain-hash buckets
  reduce  fold each bucket into sorted (domain, first_seen, last_seen) rows
"""

__version__ = "1.0.0"

from .config import IngestConfig, ReduceConfig, ShardConfig  # noqa: E402
from .decoder import DecodedCertificate, DecodeError, VariantMismatchError, decode_entry  # noqa: E402
from .domains import bucket_for, canonical_domains, canonicalize  # noqa: E402
from .extractor import Extractor, run_ingest, run_pipeline  # noqa: E402
from .ledger import (  # noqa: E402
    ClassicLedgerClient,
    EntryType,
    LedgerClient,
    RawEntry,
    SignedTreeHead,
    TiledCheckpoint,
    TiledLedgerClient,
    open_ledger,
)
from .models import (  # noqa: E402
    DomainOccurrence,
    DomainStat,
    ExtractedRecord,
    ExtractorStats,
    ReduceStats,
    ShardStats,
)
from .reducer import Reducer, run_reduce  # noqa: E402
from .rotator import OutputRotator  # noqa: E402
from .sharder import BucketPool, Sharder, run_shard  # noqa: E402

__all__ = [
    "BucketPool",
    "ClassicLedgerClient",
    "DecodeError",
    "DecodedCertificate",
    "DomainOccurrence",
    "DomainStat",
    "EntryType",
    "ExtractedRecord",
    "Extractor",
    "ExtractorStats",
    "IngestConfig",
    "LedgerClient",
    "OutputRotator",
    "RawEntry",
    "ReduceConfig",
    "ReduceStats",
    "Reducer",
    "ShardConfig",
    "ShardStats",
    "Sharder",
    "SignedTreeHead",
    "TiledCheckpoint",
    "TiledLedgerClient",
    "VariantMismatchError",
    "bucket_for",
    "canonical_domains",
    "canonicalize",
    "decode_entry",
    "open_ledger",
    "run_ingest",
    "run_pipeline",
    "run_reduce",
    "run_shard",
]
