"""Single writer that drains the extraction channel into rotated zstd CSV files."""

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

from .models import DOMAIN_DELIMITER, ExtractedRecord
from .storage import RotatingWriter

logger = logging.getLogger(__name__)

# Sentinel the producer puts on the channel once every record is sent
CLOSE = None


def record_to_row(record: ExtractedRecord) -> List[str]:
    """Fields in `RECORD_COLUMNS` order; absent optionals become empty fields."""
    return [
        str(record.index),
        record.common_name or "",
        DOMAIN_DELIMITER.join(record.domains),
        "1" if record.is_precert else "0",
        str(record.not_before),
        str(record.not_after),
        "" if record.leaf_timestamp is None else str(record.leaf_timestamp),
    ]


class OutputRotator:
    """
    Owns the output stream for an ingest run.

    Files are named `<prefix>-<n>.csv.zst` with n counting from 1. Only
    `consume` writes, so records from concurrent decode tasks never
    interleave within a row.
    """

    DEFAULT_MAX_RECORDS = 10_000_000

    def __init__(
        self,
        prefix: str,
        max_records_per_file: int = DEFAULT_MAX_RECORDS,
        compress: bool = True,
    ):
        suffix = ".csv.zst" if compress else ".csv"
        self.prefix = prefix
        self.records_written = 0
        self._writer = RotatingWriter(
            path_for=lambda n: Path(f"{prefix}-{n}{suffix}"),
            max_rows=max_records_per_file,
            first_number=1,
            compress=compress,
        )

    @property
    def files(self) -> List[Path]:
        return list(self._writer.files)

    def open(self) -> None:
        self._writer.open()

    def write(self, record: ExtractedRecord) -> None:
        self._writer.write_row(record_to_row(record))
        self.records_written += 1

    def close(self) -> None:
        self._writer.close()

    async def consume(self, channel: "asyncio.Queue[Optional[ExtractedRecord]]") -> int:
        """Write records until the channel is closed; always closes the current file."""
        try:
            while True:
                record = await channel.get()
                if record is CLOSE:
                    break
                self.write(record)
        finally:
            self.close()
        logger.info(
            f"Wrote {self.records_written} records to {len(self._writer.files)} file(s) "
            f"under {self.prefix}"
        )
        return self.records_written
