"""Run parameters for the ingest, shard and reduce jobs."""

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple

# Certificates issued on or before this instant are ignored.
DEFAULT_CUTOFF = int(datetime(2017, 1, 1, tzinfo=timezone.utc).timestamp())
DEFAULT_BUCKETS = 128
DEFAULT_MAX_ROWS_PER_FILE = 10_000_000
DEFAULT_SHARD_PATTERNS = ("*.csv.zst", "*.csv")


def _require_positive(**values: int) -> None:
    for name, value in values.items():
        if value < 1:
            raise ValueError(f"{name} must be >= 1, got {value}")


@dataclass
class IngestConfig:
    """
    Parameters of one ingest run over `[start, end)` of a log.

    Attributes:
        url: Log base URL
        out: Output path prefix; files become `<out>-<n>.csv.zst`
        start: First index (inclusive)
        end: Last index (exclusive); None scans to the pinned tree size
        cutoff: Epoch seconds; entries need `not_before > cutoff`
        include_precerts: Decode precertificate entries too
        max_records_per_file: Rotation threshold
        max_in_flight: Cap on concurrently running decode tasks
        channel_capacity: Records buffered between decoders and the writer
        decode_workers: Decoder processes; 0 decodes inline on the event loop
        parallel_fetches: Concurrent HTTP requests against the log
        batch_size: Entries requested per get-entries call (classic logs)
        tiled: Use the static/tiled log API
        progress_every: Log progress at indexes divisible by this
    """

    url: str
    out: str
    start: int = 0
    end: Optional[int] = None
    cutoff: int = DEFAULT_CUTOFF
    include_precerts: bool = True
    max_records_per_file: int = DEFAULT_MAX_ROWS_PER_FILE
    max_in_flight: int = 2000
    channel_capacity: int = 1000
    decode_workers: int = 4
    parallel_fetches: int = 10
    batch_size: int = 1000
    tiled: bool = False
    progress_every: int = 10_000

    def __post_init__(self):
        if not self.url:
            raise ValueError("url is required")
        if not self.out:
            raise ValueError("out is required")
        if self.start < 0:
            raise ValueError(f"start must be >= 0, got {self.start}")
        if self.end is not None and self.end <= self.start:
            raise ValueError(f"end ({self.end}) must be greater than start ({self.start})")
        if self.decode_workers < 0:
            raise ValueError(f"decode_workers must be >= 0, got {self.decode_workers}")
        _require_positive(
            max_records_per_file=self.max_records_per_file,
            max_in_flight=self.max_in_flight,
            channel_capacity=self.channel_capacity,
            parallel_fetches=self.parallel_fetches,
            batch_size=self.batch_size,
            progress_every=self.progress_every,
        )


@dataclass
class ShardConfig:
    input_dir: Path
    output_dir: Path
    buckets: int = DEFAULT_BUCKETS
    workers: int = 1
    patterns: Tuple[str, ...] = DEFAULT_SHARD_PATTERNS

    def __post_init__(self):
        self.input_dir = Path(self.input_dir)
        self.output_dir = Path(self.output_dir)
        _require_positive(buckets=self.buckets, workers=self.workers)
        if not self.patterns:
            raise ValueError("at least one input pattern is required")


@dataclass
class ReduceConfig:
    input_dir: Path
    output_dir: Path
    max_rows_per_file: int = DEFAULT_MAX_ROWS_PER_FILE
    # Bucket count the shard run used; ids at or above it are reported
    buckets: Optional[int] = None

    def __post_init__(self):
        self.input_dir = Path(self.input_dir)
        self.output_dir = Path(self.output_dir)
        _require_positive(max_rows_per_file=self.max_rows_per_file)
        if self.buckets is not None:
            _require_positive(buckets=self.buckets)
