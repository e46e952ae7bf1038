"""
Partition rotated ingest files into `bucket_<id>.csv` files by domain hash.

Every occurrence of a domain lands in the same bucket, so each bucket can
later be reduced on its own with memory proportional to its share of the
domain namespace.
"""

import csv
import logging
import re
import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import IO, DefaultDict, Dict, Iterator, List, Sequence, Tuple

import zstandard

from .config import ShardConfig
from .domains import bucket_for, canonical_domains
from .models import DOMAIN_DELIMITER, RECORD_COLUMNS, DomainOccurrence, ShardStats
from .storage import ErrorLog, open_text_reader

logger = logging.getLogger(__name__)

# Errors that make the rest of one input file unreadable
READ_ERRORS = (OSError, zstandard.ZstdError, UnicodeDecodeError, csv.Error)

BUCKET_FILE_NAME = re.compile(r"^bucket_(\d+)\.csv$")

# Occurrences buffered per file before they are handed to the bucket pool
FLUSH_EVERY = 50_000


class BucketWriteError(RuntimeError):
    """Writing to a bucket file failed; fatal for the whole shard run."""


def occurrence_timestamp(row: Sequence[str]) -> int:
    """Log integration time when present, else notAfter."""
    leaf_timestamp = row[RECORD_COLUMNS.index("leaf_timestamp")].strip()
    not_after = row[RECORD_COLUMNS.index("not_after")].strip()
    return int(leaf_timestamp or not_after)


def occurrences_from_row(row: Sequence[str]) -> List[DomainOccurrence]:
    """
    Explode one ingest row into domain occurrences.

    Raises:
        ValueError: wrong column count or a non-integer timestamp
    """
    if len(row) != len(RECORD_COLUMNS):
        raise ValueError(f"expected {len(RECORD_COLUMNS)} columns, got {len(row)}")
    timestamp = occurrence_timestamp(row)
    names = row[RECORD_COLUMNS.index("domains")].split(DOMAIN_DELIMITER)
    return [DomainOccurrence(domain, timestamp) for domain in canonical_domains(names)]


class BucketPool:
    """
    Owner of the bucket file handles of one shard run.

    `handle()` is the only way to obtain a handle: it opens the file in
    append mode on first use and returns the same handle afterwards. Each
    bucket has its own lock so concurrent writers never interleave rows.
    """

    def __init__(self, directory: Path, buckets: int):
        self.directory = Path(directory)
        self.buckets = buckets
        self._handles: Dict[int, IO[str]] = {}
        self._locks: Dict[int, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def open_count(self) -> int:
        return len(self._handles)

    def path_for(self, bucket_id: int) -> Path:
        return self.directory / f"bucket_{bucket_id}.csv"

    def handle(self, bucket_id: int) -> Tuple[IO[str], threading.Lock]:
        if not 0 <= bucket_id < self.buckets:
            raise ValueError(f"bucket {bucket_id} outside [0, {self.buckets})")
        with self._registry_lock:
            if bucket_id not in self._handles:
                try:
                    f = open(self.path_for(bucket_id), "a", encoding="utf-8", newline="")
                except OSError as e:
                    raise BucketWriteError(f"cannot open bucket {bucket_id}: {e}") from e
                self._handles[bucket_id] = f
                self._locks[bucket_id] = threading.Lock()
            return self._handles[bucket_id], self._locks[bucket_id]

    def write(self, bucket_id: int, occurrences: List[DomainOccurrence]) -> None:
        f, lock = self.handle(bucket_id)
        lines = "".join(f"{o.domain},{o.timestamp}\n" for o in occurrences)
        with lock:
            try:
                f.write(lines)
            except OSError as e:
                raise BucketWriteError(f"cannot write bucket {bucket_id}: {e}") from e

    def close(self) -> None:
        with self._registry_lock:
            handles = list(self._handles.items())
            self._handles.clear()
            self._locks.clear()
        errors = []
        for bucket_id, f in handles:
            try:
                f.close()
            except OSError as e:
                errors.append(f"bucket {bucket_id}: {e}")
        if errors:
            raise BucketWriteError(f"failed to close bucket files: {'; '.join(errors)}")


class Sharder:
    """Explodes ingest rows into occurrences and routes them to bucket files."""

    def __init__(self, config: ShardConfig):
        self.config = config
        self.stats = ShardStats()

    def input_files(self) -> List[Path]:
        """Matching files under the input directory, minus this run's own bucket files."""
        output_dir = self.config.output_dir.resolve()
        found = set()
        for pattern in self.config.patterns:
            for path in self.config.input_dir.rglob(pattern):
                if path.is_file() and not (
                    path.resolve().parent == output_dir and BUCKET_FILE_NAME.match(path.name)
                ):
                    found.add(path)
        return sorted(found)

    def run(self) -> ShardStats:
        config = self.config
        if not config.input_dir.is_dir():
            raise ValueError(f"Input directory {config.input_dir} does not exist")
        config.output_dir.mkdir(parents=True, exist_ok=True)

        files = self.input_files()
        logger.info(
            f"Sharding {len(files)} file(s) from {config.input_dir} into "
            f"{config.buckets} buckets under {config.output_dir}"
        )

        with ErrorLog(config.output_dir) as error_log, BucketPool(
            config.output_dir, config.buckets
        ) as pool:
            if config.workers == 1:
                for path in files:
                    self.stats.merge(self.shard_file(path, pool, error_log))
            else:
                with ThreadPoolExecutor(max_workers=config.workers) as executor:
                    for file_stats in executor.map(
                        lambda p: self.shard_file(p, pool, error_log), files
                    ):
                        self.stats.merge(file_stats)

        s = self.stats
        logger.info(
            f"Sharding done: {s.files_processed} file(s), {s.files_failed} failed, "
            f"{s.lines_read} lines, {s.malformed_lines} malformed, "
            f"{s.occurrences_written} occurrences"
        )
        return s

    def shard_file(self, path: Path, pool: BucketPool, error_log: ErrorLog) -> ShardStats:
        """
        Shard one input file. Read failures end this file only; lines read
        before the failure are kept. Bucket write failures propagate.
        """
        stats = ShardStats(files_processed=1)
        pending: DefaultDict[int, List[DomainOccurrence]] = defaultdict(list)
        buffered = 0

        try:
            for line_number, row in self._rows(path):
                stats.lines_read += 1
                try:
                    occurrences = occurrences_from_row(row)
                except ValueError as e:
                    stats.malformed_lines += 1
                    error_log.record(
                        f"Skipping invalid entry in file {path} line {line_number}: "
                        f"{','.join(row)!r} ({e})"
                    )
                    continue

                for occurrence in occurrences:
                    pending[bucket_for(occurrence.domain, pool.buckets)].append(occurrence)
                buffered += len(occurrences)
                if buffered >= FLUSH_EVERY:
                    stats.occurrences_written += self._flush(pending, pool)
                    buffered = 0
        except READ_ERRORS as e:
            stats.files_failed += 1
            logger.warning(f"Error reading {path}, skipping rest of file: {e}")
            error_log.record(f"Error reading file {path}, rest of file skipped: {e!r}")

        stats.occurrences_written += self._flush(pending, pool)
        return stats

    @staticmethod
    def _rows(path: Path) -> Iterator[Tuple[int, List[str]]]:
        with open_text_reader(path) as stream:
            for line_number, row in enumerate(csv.reader(stream), start=1):
                yield line_number, row

    @staticmethod
    def _flush(pending: DefaultDict[int, List[DomainOccurrence]], pool: BucketPool) -> int:
        written = 0
        for bucket_id, occurrences in pending.items():
            if occurrences:
                pool.write(bucket_id, occurrences)
                written += len(occurrences)
        pending.clear()
        return written


def run_shard(config: ShardConfig) -> ShardStats:
    return Sharder(config).run()
