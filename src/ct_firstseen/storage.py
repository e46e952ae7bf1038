"""
File sinks and sources shared by all stages.

- `RotatingWriter` writes CSV rows into sequentially numbered files,
  zstd-compressed or plain, starting a new file every `max_rows` rows.
- `open_text_reader` opens a `.zst` or plain file as a text stream.
- `ErrorLog` appends timestamped lines about skipped data to
  `error_log.txt` in a job's output directory.
"""

import csv
import io
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Callable, Generator, List, Optional, Sequence, Union

import zstandard

logger = logging.getLogger(__name__)

COMPRESSION_LEVEL = 7
PathLike = Union[str, Path]


@contextmanager
def open_text_reader(path: PathLike) -> Generator[IO[str], None, None]:
    """
    Context manager yielding a UTF-8 text stream over `path`.

    Files ending in `.zst` are decompressed on the fly; anything else is read
    as plain text. Decompression errors surface as `zstandard.ZstdError` while
    reading.
    """
    path = Path(path)
    if path.suffix != ".zst":
        f = open(path, "r", encoding="utf-8", newline="")
        try:
            yield f
        finally:
            f.close()
        return

    raw = open(path, "rb")
    try:
        stream = zstandard.ZstdDecompressor().stream_reader(raw)
        text = io.TextIOWrapper(stream, encoding="utf-8", newline="")
        try:
            yield text
        finally:
            text.close()
    finally:
        raw.close()


class RotatingWriter:
    """
    Single-owner CSV sink that rotates every `max_rows` rows.

    File k (counting from `first_number`) holds exactly `max_rows` rows except
    possibly the last. Every file is flushed, fsynced and closed on rotation
    and on `close()`; write and flush errors propagate to the caller.
    """

    def __init__(
        self,
        path_for: Callable[[int], Path],
        max_rows: int,
        first_number: int = 0,
        compress: bool = False,
        compression_level: int = COMPRESSION_LEVEL,
    ):
        if max_rows < 1:
            raise ValueError(f"max_rows must be >= 1, got {max_rows}")
        self.max_rows = max_rows
        self.compress = compress
        self.files: List[Path] = []
        self.rows_in_file = 0
        self._path_for = path_for
        self._next_number = first_number
        self._compressor = zstandard.ZstdCompressor(level=compression_level) if compress else None
        self._file: Optional[IO[bytes]] = None
        self._sink: Optional[IO[bytes]] = None
        self._line = io.StringIO()
        self._csv = csv.writer(self._line, lineterminator="\n")

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @property
    def is_open(self) -> bool:
        return self._file is not None

    def open(self) -> None:
        """Create the first file. Failing here aborts a job before any work."""
        if self._file is None:
            self._open_next()

    def write_row(self, fields: Sequence[object]) -> None:
        if self._file is None:
            self._open_next()
        elif self.rows_in_file >= self.max_rows:
            self._close_current()
            self._open_next()

        self._line.seek(0)
        self._line.truncate()
        self._csv.writerow(fields)
        assert self._sink is not None
        self._sink.write(self._line.getvalue().encode("utf-8"))
        self.rows_in_file += 1

    def close(self) -> None:
        if self._file is not None:
            self._close_current()

    def _open_next(self) -> None:
        path = Path(self._path_for(self._next_number))
        path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(path, "wb")
        if self._compressor is not None:
            self._sink = self._compressor.stream_writer(self._file, closefd=False)
        else:
            self._sink = self._file
        self._next_number += 1
        self.rows_in_file = 0
        self.files.append(path)
        logger.info(f"Writing {path}")

    def _close_current(self) -> None:
        assert self._file is not None
        file, sink = self._file, self._sink
        self._file = None
        self._sink = None
        try:
            if sink is not file and sink is not None:
                sink.close()  # ends the zstd frame
            file.flush()
            os.fsync(file.fileno())
        finally:
            file.close()
        logger.info(f"Closed {self.files[-1]} after {self.rows_in_file} rows")


class ErrorLog:
    """Append-only, timestamped log of skipped lines and failed files."""

    FILENAME = "error_log.txt"

    def __init__(self, directory: PathLike):
        self.path = Path(directory) / self.FILENAME
        self.entries = 0
        self._count_lock = threading.Lock()
        self._handler = logging.FileHandler(self.path, mode="a", encoding="utf-8", delay=True)
        self._handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
        self._logger = logging.getLogger(f"{__name__}.error_log.{self.path.resolve()}")
        self._logger.propagate = False
        self._logger.setLevel(logging.INFO)
        self._logger.addHandler(self._handler)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def record(self, message: str) -> None:
        self._logger.info(message)
        with self._count_lock:
            self.entries += 1

    def close(self) -> None:
        self._logger.removeHandler(self._handler)
        self._handler.close()
