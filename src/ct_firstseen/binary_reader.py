"""Minimal cursor over TLS-encoded binary structures used by CT logs."""

from enum import Enum


class Endianness(Enum):
    BIG = "big"
    LITTLE = "little"


class DataType(Enum):
    UINT = "uint"
    BYTES = "bytes"


class BinaryReader:
    """Sequential reader for length-prefixed CT structures."""

    def __init__(self, data: bytes, endianness: Endianness = Endianness.BIG):
        self._data = data
        self._pos = 0
        self._endianness = endianness

    @property
    def remaining(self) -> int:
        return len(self._data) - self._pos

    def has_bytes(self, count: int) -> bool:
        return self.remaining >= count

    def skip(self, count: int) -> None:
        self._take(count)

    def read(self, data_type: DataType, length: int):
        """
        Read `length` bytes as an unsigned integer or as raw bytes.

        Raises:
            ValueError: if fewer than `length` bytes remain
        """
        chunk = self._take(length)
        if data_type is DataType.UINT:
            return int.from_bytes(chunk, self._endianness.value, signed=False)
        return chunk

    def _take(self, count: int) -> bytes:
        if count < 0 or not self.has_bytes(count):
            raise ValueError(
                f"Truncated data: need {count} bytes at offset {self._pos}, "
                f"have {self.remaining}"
            )
        chunk = self._data[self._pos:self._pos + count]
        self._pos += count
        return chunk
