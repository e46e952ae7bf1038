"""
CT log clients that scan a bounded index range.

Both the classic RFC 6962 JSON API and the static/tiled API are supported.
`prepare()` pins the tree size for a run; `scan()` then yields every entry
of `[start, end)` exactly once, in no particular order, while up to
`parallel_fetches` HTTP requests are in flight.
"""

import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional, Set, Tuple, Union, cast

import httpx

from . import __version__
from .binary_reader import BinaryReader, DataType, Endianness
from .httpx_ratelimit import RateLimitedTransport

logger = logging.getLogger(__name__)


class EntryType(IntEnum):
    """CT log entry types"""

    X509_ENTRY = 0
    PRECERT_ENTRY = 1


@dataclass
class SignedTreeHead:
    """Signed Tree Head from a classic CT log"""

    tree_size: int
    timestamp: int
    sha256_root_hash: str
    tree_head_signature: str

    @property
    def size(self) -> int:
        return self.tree_size


@dataclass
class TiledCheckpoint:
    """Checkpoint information from a tiled CT log"""

    origin: str
    size: int
    hash: str


@dataclass(frozen=True)
class RawEntry:
    """Undecoded log entry: the certificate or precertificate DER plus its leaf metadata."""

    index: int
    timestamp: int  # milliseconds since epoch, log integration time
    entry_type: EntryType
    cert_data: bytes

    @property
    def is_precert(self) -> bool:
        return self.entry_type == EntryType.PRECERT_ENTRY


LogHead = Union[SignedTreeHead, TiledCheckpoint]


class LedgerClient:
    """Shared scanning machinery; subclasses supply the head and window fetches."""

    DEFAULT_USER_AGENT = f"ct-firstseen/{__version__}"

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        user_agent: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        parallel_fetches: int = 10,
        batch_size: int = 1000,
    ):
        if parallel_fetches < 1:
            raise ValueError(f"parallel_fetches must be >= 1, got {parallel_fetches}")
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self.url = url
        self.parallel_fetches = parallel_fetches
        self.batch_size = batch_size
        self._head: Optional[LogHead] = None
        self._client = httpx.AsyncClient(
            base_url=url,
            timeout=timeout,
            headers={"User-Agent": user_agent or self.DEFAULT_USER_AGENT},
            transport=transport or RateLimitedTransport(),
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Close the HTTP client"""
        await self._client.aclose()

    @property
    def tree_size(self) -> int:
        if self._head is None:
            raise RuntimeError("prepare() must be called before scanning")
        return self._head.size

    async def prepare(self) -> LogHead:
        """Fetch and pin the log head that bounds this run."""
        self._head = await self._fetch_head()
        return self._head

    async def _fetch_head(self) -> LogHead:
        raise NotImplementedError

    def _windows(self, start: int, end: int) -> Iterator[Tuple[int, int]]:
        raise NotImplementedError

    async def _fetch_window(self, lo: int, hi: int) -> List[RawEntry]:
        raise NotImplementedError

    def clamp_range(self, start: int, end: Optional[int]) -> Tuple[int, int]:
        """Bound `[start, end)` by the pinned tree size; `end=None` means the whole tree."""
        tree_size = self.tree_size
        if end is None or end > tree_size:
            if end is not None:
                logger.warning(f"End index {end} beyond tree size {tree_size} of {self.url}, clamping")
            end = tree_size
        return max(start, 0), end

    async def scan(self, start: int, end: Optional[int] = None) -> AsyncIterator[RawEntry]:
        """
        Yield every entry in `[start, end)` exactly once.

        Windows are fetched concurrently; a window's entries are yielded as
        soon as that window completes, so the order across windows is
        unspecified. Any fetch error is raised to the caller after the
        remaining requests are cancelled.
        """
        start, end = self.clamp_range(start, end)
        if start >= end:
            return

        windows = self._windows(start, end)
        pending: Set["asyncio.Task[List[RawEntry]]"] = set()
        try:
            while True:
                while len(pending) < self.parallel_fetches:
                    window = next(windows, None)
                    if window is None:
                        break
                    pending.add(asyncio.create_task(self._fetch_window(*window)))
                if not pending:
                    return

                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    for entry in task.result():
                        if start <= entry.index < end:
                            yield entry
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)


class ClassicLedgerClient(LedgerClient):
    """Client for RFC 6962 logs (`/ct/v1/get-sth`, `/ct/v1/get-entries`)"""

    async def _fetch_head(self) -> SignedTreeHead:
        response = await self._client.get("/ct/v1/get-sth")
        response.raise_for_status()
        data = cast(Dict[str, Any], response.json())
        return SignedTreeHead(
            tree_size=int(data["tree_size"]),
            timestamp=int(data["timestamp"]),
            sha256_root_hash=data["sha256_root_hash"],
            tree_head_signature=data["tree_head_signature"],
        )

    def _windows(self, start: int, end: int) -> Iterator[Tuple[int, int]]:
        for lo in range(start, end, self.batch_size):
            yield lo, min(lo + self.batch_size, end)

    async def get_entries(self, start: int, end: int) -> List[Dict[str, str]]:
        """Get raw JSON entries for the inclusive range `[start, end]`"""
        params = {"start": start, "end": end}
        response = await self._client.get("/ct/v1/get-entries", params=params)
        response.raise_for_status()
        data = cast(Dict[str, Any], response.json())
        return cast(List[Dict[str, str]], data.get("entries", []))

    async def _fetch_window(self, lo: int, hi: int) -> List[RawEntry]:
        # Logs may return fewer entries than asked for; keep asking until covered.
        entries: List[RawEntry] = []
        current = lo
        while current < hi:
            raw_entries = await self.get_entries(current, hi - 1)
            if not raw_entries:
                raise ValueError(f"{self.url} returned no entries for [{current}, {hi})")
            raw_entries = raw_entries[: hi - current]
            entries.extend(self._parse_classic_entries(current, raw_entries))
            current += len(raw_entries)
        return entries

    def _parse_classic_entries(
        self, first_index: int, raw_entries: List[Dict[str, str]]
    ) -> List[RawEntry]:
        """Parse get-entries items; an unreadable leaf is logged and skipped."""
        parsed: List[RawEntry] = []
        for offset, entry_data in enumerate(raw_entries):
            index = first_index + offset
            try:
                parsed.append(self._parse_leaf(index, entry_data))
            except (KeyError, ValueError, binascii.Error) as e:
                logger.warning(f"Skipping unreadable leaf {index} from {self.url}: {e}")
        return parsed

    @staticmethod
    def _parse_leaf(index: int, entry_data: Dict[str, str]) -> RawEntry:
        leaf_input = base64.b64decode(entry_data["leaf_input"])

        # MerkleTreeLeaf: version(1) + leaf_type(1) + timestamp(8) + entry_type(2) + ...
        reader = BinaryReader(leaf_input, Endianness.BIG)
        version = reader.read(DataType.UINT, 1)
        if version != 0:
            raise ValueError(f"Invalid MerkleTreeLeaf version: {version}")
        leaf_type = reader.read(DataType.UINT, 1)
        if leaf_type != 0:
            raise ValueError(f"Invalid leaf_type: {leaf_type}")

        timestamp = reader.read(DataType.UINT, 8)
        entry_type_val = reader.read(DataType.UINT, 2)

        if entry_type_val == EntryType.X509_ENTRY:
            cert_len = reader.read(DataType.UINT, 3)
            cert_data = reader.read(DataType.BYTES, cert_len)
        elif entry_type_val == EntryType.PRECERT_ENTRY:
            # The leaf only holds the TBSCertificate; the full precertificate
            # is the first element of extra_data (PrecertChainEntry).
            extra_reader = BinaryReader(base64.b64decode(entry_data["extra_data"]), Endianness.BIG)
            cert_len = extra_reader.read(DataType.UINT, 3)
            cert_data = extra_reader.read(DataType.BYTES, cert_len)
        else:
            raise ValueError(f"Unknown entry type: {entry_type_val}")

        return RawEntry(
            index=index,
            timestamp=timestamp,
            entry_type=EntryType(entry_type_val),
            cert_data=cert_data,
        )


class TiledLedgerClient(LedgerClient):
    """Client for static/tiled CT logs (`/checkpoint`, `/tile/data/...`)"""

    TILE_SIZE = 256

    async def _fetch_head(self) -> TiledCheckpoint:
        response = await self._client.get("/checkpoint")
        response.raise_for_status()

        lines = response.text.strip().split("\n")
        if len(lines) < 3:
            raise ValueError(
                f"Invalid checkpoint format: expected at least 3 lines, got {len(lines)}"
            )
        return TiledCheckpoint(origin=lines[0], size=int(lines[1]), hash=lines[2])

    def _windows(self, start: int, end: int) -> Iterator[Tuple[int, int]]:
        first_tile = start // self.TILE_SIZE
        last_tile = (end - 1) // self.TILE_SIZE
        for tile_index in range(first_tile, last_tile + 1):
            yield tile_index, tile_index + 1

    async def _fetch_window(self, lo: int, hi: int) -> List[RawEntry]:
        tile_index = lo
        base = tile_index * self.TILE_SIZE
        width = min(self.TILE_SIZE, self.tree_size - base)
        partial_width = width if width < self.TILE_SIZE else None

        tile_path = self._encode_tile_path(tile_index)
        if partial_width is not None:
            tile_path = f"{tile_path}.p/{partial_width}"

        response = await self._client.get(f"/tile/data/{tile_path}")
        response.raise_for_status()

        entries = self._parse_tile_data(base, response.content)
        if len(entries) != width:
            raise ValueError(
                f"Tile {tile_index} of {self.url} has {len(entries)} entries, expected {width}"
            )
        return entries

    @staticmethod
    def _encode_tile_path(index: int) -> str:
        """
        Encode a tile index into the proper path format.
        Example: 1234567 -> x001/x234/567
        """
        if index == 0:
            return "000"

        groups = []
        n = index
        while n > 0:
            groups.append(n % 1000)
            n //= 1000
        groups.reverse()

        parts = [f"x{g:03d}" for g in groups[:-1]] + [f"{groups[-1]:03d}"]
        return "/".join(parts)

    @staticmethod
    def _parse_tile_data(base_index: int, data: bytes) -> List[RawEntry]:
        """Parse binary tile data; truncated data raises ValueError."""
        reader = BinaryReader(data, Endianness.BIG)
        entries: List[RawEntry] = []

        while reader.remaining > 0:
            timestamp = reader.read(DataType.UINT, 8)
            entry_type = reader.read(DataType.UINT, 2)

            if entry_type == EntryType.X509_ENTRY:
                cert_len = reader.read(DataType.UINT, 3)
                cert_data = reader.read(DataType.BYTES, cert_len)
                reader.skip(reader.read(DataType.UINT, 2))  # extensions
            elif entry_type == EntryType.PRECERT_ENTRY:
                reader.skip(32)  # issuer key hash
                reader.skip(reader.read(DataType.UINT, 3))  # TBSCertificate
                reader.skip(reader.read(DataType.UINT, 2))  # extensions
                cert_len = reader.read(DataType.UINT, 3)
                cert_data = reader.read(DataType.BYTES, cert_len)
            else:
                raise ValueError(f"Unknown entry type: {entry_type}")

            reader.skip(reader.read(DataType.UINT, 2))  # chain fingerprints

            entries.append(
                RawEntry(
                    index=base_index + len(entries),
                    timestamp=timestamp,
                    entry_type=EntryType(entry_type),
                    cert_data=cert_data,
                )
            )

        return entries


def open_ledger(url: str, tiled: bool = False, **kwargs) -> LedgerClient:
    """Create the client matching the log's API flavour."""
    if tiled:
        return TiledLedgerClient(url, **kwargs)
    return ClassicLedgerClient(url, **kwargs)
