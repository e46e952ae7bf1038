"""
Fold bucket files into per-domain first/last-seen rows.

Buckets partition the domain namespace, so each bucket is reduced on its
own and the rows of all output files together hold every domain exactly
once. Only one bucket's table is in memory at a time.
"""

import csv
import logging
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Tuple

from .config import ReduceConfig
from .models import DomainOccurrence, DomainStat, ReduceStats
from .sharder import BUCKET_FILE_NAME, READ_ERRORS
from .storage import ErrorLog, RotatingWriter, open_text_reader

logger = logging.getLogger(__name__)

# domain -> [first_seen, last_seen]
SeenTable = Dict[str, List[int]]


def fold(occurrences: Iterable[DomainOccurrence], table: SeenTable) -> SeenTable:
    """Update `table` in place with min/max timestamps per domain."""
    for occurrence in occurrences:
        seen = table.get(occurrence.domain)
        if seen is None:
            table[occurrence.domain] = [occurrence.timestamp, occurrence.timestamp]
        elif occurrence.timestamp < seen[0]:
            seen[0] = occurrence.timestamp
        elif occurrence.timestamp > seen[1]:
            seen[1] = occurrence.timestamp
    return table


def sorted_stats(table: SeenTable) -> Iterator[DomainStat]:
    for domain in sorted(table):
        first_seen, last_seen = table[domain]
        yield DomainStat(domain, first_seen, last_seen)


def parse_bucket_row(row: List[str]) -> DomainOccurrence:
    """
    Raises:
        ValueError: wrong column count, empty domain or non-integer timestamp
    """
    if len(row) != 2:
        raise ValueError(f"expected 2 columns, got {len(row)}")
    domain = row[0].strip()
    if not domain:
        raise ValueError("empty domain")
    return DomainOccurrence(domain, int(row[1]))


class Reducer:
    """Reduces `bucket_<id>.csv` files into rotated `output_<n>.csv` files."""

    def __init__(self, config: ReduceConfig):
        self.config = config
        self.stats = ReduceStats()

    def bucket_files(self) -> List[Path]:
        buckets: List[Tuple[int, Path]] = []
        for path in self.config.input_dir.iterdir():
            match = BUCKET_FILE_NAME.match(path.name)
            if match and path.is_file():
                buckets.append((int(match.group(1)), path))
        return [path for _, path in sorted(buckets)]

    def run(self) -> ReduceStats:
        config = self.config
        if not config.input_dir.is_dir():
            raise ValueError(f"Input directory {config.input_dir} does not exist")
        config.output_dir.mkdir(parents=True, exist_ok=True)

        files = self.bucket_files()
        logger.info(f"Reducing {len(files)} bucket file(s) from {config.input_dir}")

        writer = RotatingWriter(
            path_for=lambda n: config.output_dir / f"output_{n}.csv",
            max_rows=config.max_rows_per_file,
        )
        with ErrorLog(config.output_dir) as error_log, writer:
            for path in files:
                self.check_bucket_id(path, error_log)
                try:
                    table = self.fold_bucket(path, error_log)
                except READ_ERRORS as e:
                    self.stats.buckets_failed += 1
                    logger.warning(f"Error reading {path}, bucket skipped: {e}")
                    error_log.record(f"Error reading bucket {path}, bucket skipped: {e!r}")
                    continue

                for stat in sorted_stats(table):
                    writer.write_row((stat.domain, stat.first_seen, stat.last_seen))
                self.stats.buckets_processed += 1
                self.stats.domains_written += len(table)
                logger.info(f"Reduced {path.name}: {len(table)} domains")
                del table

        self.stats.output_files = [str(p) for p in writer.files]
        s = self.stats
        logger.info(
            f"Reduce done: {s.buckets_processed} bucket(s), {s.buckets_failed} failed, "
            f"{s.rows_read} rows, {s.malformed_rows} malformed, "
            f"{s.domains_written} domains in {len(s.output_files)} file(s), "
            f"{s.unexpected_buckets} unexpected bucket id(s)"
        )
        return s

    def check_bucket_id(self, path: Path, error_log: ErrorLog) -> None:
        """Report bucket ids a shard run with `config.buckets` buckets cannot produce."""
        buckets = self.config.buckets
        match = BUCKET_FILE_NAME.match(path.name)
        if buckets is None or match is None or int(match.group(1)) < buckets:
            return
        self.stats.unexpected_buckets += 1
        logger.warning(
            f"{path.name} is outside [0, {buckets}); the shard run used a different bucket count"
        )
        error_log.record(f"Bucket file {path} has an id outside [0, {buckets}), reducing it anyway")

    def fold_bucket(self, path: Path, error_log: ErrorLog) -> SeenTable:
        table: SeenTable = {}
        with open_text_reader(path) as stream:
            for line_number, row in enumerate(csv.reader(stream), start=1):
                self.stats.rows_read += 1
                try:
                    occurrence = parse_bucket_row(row)
                except ValueError as e:
                    self.stats.malformed_rows += 1
                    error_log.record(
                        f"Skipping invalid entry in file {path} line {line_number}: "
                        f"{','.join(row)!r} ({e})"
                    )
                    continue
                fold((occurrence,), table)
        return table


def run_reduce(config: ReduceConfig) -> ReduceStats:
    return Reducer(config).run()
