"""Records passed between the pipeline stages, and per-run counters."""

from dataclasses import dataclass, field, fields
from typing import List, Optional, Tuple

# Column order of the rotated ingest files
RECORD_COLUMNS = (
    "index",
    "common_name",
    "domains",
    "is_precert",
    "not_before",
    "not_after",
    "leaf_timestamp",
)
DOMAIN_DELIMITER = ";"


@dataclass(frozen=True)
class ExtractedRecord:
    """One certificate's domain metadata, ready to be written out."""

    index: int
    domains: Tuple[str, ...]
    is_precert: bool
    not_before: int
    not_after: int
    leaf_timestamp: Optional[int] = None
    common_name: Optional[str] = None

    def __post_init__(self):
        if not self.domains:
            raise ValueError(f"Record {self.index} has no domains")


@dataclass(frozen=True)
class DomainOccurrence:
    domain: str
    timestamp: int


@dataclass(frozen=True)
class DomainStat:
    domain: str
    first_seen: int
    last_seen: int


@dataclass
class ExtractorStats:
    """Counters for one ingest run"""

    dispatched: int = 0
    emitted: int = 0
    filtered_by_cutoff: int = 0
    without_domains: int = 0
    decode_failures: int = 0
    variant_mismatches: int = 0
    precerts_skipped: int = 0


@dataclass
class ShardStats:
    """Counters for one shard run (or one input file of it)"""

    files_processed: int = 0
    files_failed: int = 0
    lines_read: int = 0
    malformed_lines: int = 0
    occurrences_written: int = 0

    def merge(self, other: "ShardStats") -> None:
        for f in fields(self):
            setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))


@dataclass
class ReduceStats:
    """Counters for one reduce run"""

    buckets_processed: int = 0
    buckets_failed: int = 0
    rows_read: int = 0
    malformed_rows: int = 0
    domains_written: int = 0
    unexpected_buckets: int = 0
    output_files: List[str] = field(default_factory=list)
