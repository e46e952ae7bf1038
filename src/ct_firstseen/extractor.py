"""
Extraction stage of the ingest job.

Raw entries are pulled from the log client and each one is handed to a
decode task. A semaphore caps the number of live tasks and every task
finishes by putting its record on a bounded queue read by the single
`OutputRotator`. When the writer falls behind, the queue fills, tasks stay
alive holding their slots, and the dispatch loop stops pulling entries:
that is the whole backpressure mechanism.
"""

import asyncio
import logging
from concurrent.futures import Executor, ProcessPoolExecutor
from contextlib import aclosing
from pathlib import Path
from typing import AsyncIterator, Optional, Set, Tuple

from .config import DEFAULT_CUTOFF, IngestConfig
from .decoder import DecodedCertificate, DecodeError, VariantMismatchError, decode_or_error
from .domains import canonical_domains
from .ledger import RawEntry, open_ledger
from .models import ExtractedRecord, ExtractorStats
from .rotator import CLOSE, OutputRotator

logger = logging.getLogger(__name__)

RecordChannel = "asyncio.Queue[Optional[ExtractedRecord]]"


class Extractor:
    """Turns raw log entries into `ExtractedRecord`s under a bounded task group."""

    def __init__(
        self,
        cutoff: int = DEFAULT_CUTOFF,
        include_precerts: bool = True,
        max_in_flight: int = 2000,
        executor: Optional[Executor] = None,
        progress_every: int = 10_000,
    ):
        if max_in_flight < 1:
            raise ValueError(f"max_in_flight must be >= 1, got {max_in_flight}")
        self.cutoff = cutoff
        self.include_precerts = include_precerts
        self.max_in_flight = max_in_flight
        self.progress_every = progress_every
        self.stats = ExtractorStats()
        self._executor = executor
        self._slots = asyncio.Semaphore(max_in_flight)
        self._tasks: Set["asyncio.Task[None]"] = set()
        self._failure: Optional[BaseException] = None

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def build_record(
        self, entry: RawEntry, decoded: DecodedCertificate
    ) -> Optional[ExtractedRecord]:
        """Apply the cutoff and domain rules; None means the entry is dropped."""
        if decoded.not_before <= self.cutoff:
            self.stats.filtered_by_cutoff += 1
            return None

        domains = canonical_domains(decoded.dns_names)
        if not domains:
            self.stats.without_domains += 1
            logger.debug(f"Entry {entry.index} has no usable DNS names")
            return None

        return ExtractedRecord(
            index=entry.index,
            domains=domains,
            is_precert=entry.is_precert,
            not_before=decoded.not_before,
            not_after=decoded.not_after,
            leaf_timestamp=entry.timestamp // 1000,
            common_name=decoded.common_name,
        )

    async def run(self, entries: AsyncIterator[RawEntry], channel: RecordChannel) -> ExtractorStats:
        """
        Dispatch every entry, wait for all tasks, then close the channel.

        If the source raises, in-flight tasks are still drained and the
        channel closed before the error propagates, so the writer can finish
        its file. If this coroutine is cancelled, tasks are cancelled and the
        channel is left open.
        """
        cancelled = False
        try:
            async with aclosing(entries):
                async for entry in entries:
                    if self._failure is not None:
                        break
                    await self._slots.acquire()
                    self.stats.dispatched += 1
                    task = asyncio.create_task(self._process(entry, channel))
                    self._tasks.add(task)
                    task.add_done_callback(self._on_task_done)
        except asyncio.CancelledError:
            cancelled = True
            for task in list(self._tasks):
                task.cancel()
            raise
        finally:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            if not cancelled:
                await channel.put(CLOSE)

        if self._failure is not None:
            raise self._failure
        self._log_summary()
        return self.stats

    def _on_task_done(self, task: "asyncio.Task[None]") -> None:
        self._tasks.discard(task)
        self._slots.release()
        if task.cancelled() or self._failure is not None:
            return
        if task.exception() is not None:
            self._failure = task.exception()
            logger.error(f"Decode task failed, stopping dispatch: {self._failure!r}")

    async def _process(self, entry: RawEntry, channel: RecordChannel) -> None:
        if entry.index % self.progress_every == 0:
            logger.info(f"At {entry.index}")

        if entry.is_precert and not self.include_precerts:
            self.stats.precerts_skipped += 1
            return

        decoded, error = await self._decode(entry)
        if error is not None:
            if isinstance(error, VariantMismatchError):
                self.stats.variant_mismatches += 1
            else:
                self.stats.decode_failures += 1
            kind = "precert" if entry.is_precert else "cert"
            logger.warning(f"Process {kind} at index {entry.index}: <unparsed: {error}>")
            return

        assert decoded is not None
        record = self.build_record(entry, decoded)
        if record is None:
            return

        await channel.put(record)
        self.stats.emitted += 1

    async def _decode(
        self, entry: RawEntry
    ) -> Tuple[Optional[DecodedCertificate], Optional[DecodeError]]:
        if self._executor is None:
            return decode_or_error(entry.cert_data, int(entry.entry_type))
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, decode_or_error, entry.cert_data, int(entry.entry_type)
        )

    def _log_summary(self) -> None:
        s = self.stats
        logger.info(
            f"Extraction done: {s.dispatched} dispatched, {s.emitted} emitted, "
            f"{s.filtered_by_cutoff} before cutoff, {s.without_domains} without domains, "
            f"{s.decode_failures} undecodable, {s.variant_mismatches} variant mismatches, "
            f"{s.precerts_skipped} precerts skipped"
        )


async def run_pipeline(
    entries: AsyncIterator[RawEntry],
    extractor: Extractor,
    rotator: OutputRotator,
    channel_capacity: int = 1000,
) -> ExtractorStats:
    """
    Run extractor and writer over one bounded channel.

    A writer failure cancels the extractor and is re-raised. A source or
    decode failure lets the writer flush what was already produced, then is
    re-raised. The rotator is closed on every path.
    """
    if channel_capacity < 1:
        raise ValueError(f"channel_capacity must be >= 1, got {channel_capacity}")
    channel: RecordChannel = asyncio.Queue(maxsize=channel_capacity)
    rotator.open()

    writer = asyncio.create_task(rotator.consume(channel))
    producer = asyncio.create_task(extractor.run(entries, channel))
    try:
        await asyncio.wait({writer, producer}, return_when=asyncio.FIRST_EXCEPTION)

        if writer.done() and not writer.cancelled() and writer.exception() is not None:
            error = writer.exception()
            logger.error(f"Output writer failed, aborting run: {error}")
            producer.cancel()
            await asyncio.gather(producer, return_exceptions=True)
            raise error

        if producer.done() and not producer.cancelled() and producer.exception() is not None:
            logger.error(f"Extraction failed, flushing written records: {producer.exception()}")

        await writer
        return producer.result()
    finally:
        for task in (producer, writer):
            if not task.done():
                task.cancel()
        await asyncio.gather(producer, writer, return_exceptions=True)
        rotator.close()


async def run_ingest(config: IngestConfig) -> ExtractorStats:
    """Scan `[config.start, config.end)` of a log into rotated output files."""
    Path(config.out).parent.mkdir(parents=True, exist_ok=True)
    executor = (
        ProcessPoolExecutor(max_workers=config.decode_workers)
        if config.decode_workers > 0
        else None
    )
    try:
        async with open_ledger(
            config.url,
            tiled=config.tiled,
            parallel_fetches=config.parallel_fetches,
            batch_size=config.batch_size,
        ) as ledger:
            head = await ledger.prepare()
            logger.info(f"Got tree head: {head}")

            extractor = Extractor(
                cutoff=config.cutoff,
                include_precerts=config.include_precerts,
                max_in_flight=config.max_in_flight,
                executor=executor,
                progress_every=config.progress_every,
            )
            rotator = OutputRotator(config.out, config.max_records_per_file)
            return await run_pipeline(
                ledger.scan(config.start, config.end),
                extractor,
                rotator,
                channel_capacity=config.channel_capacity,
            )
    finally:
        if executor is not None:
            executor.shutdown(wait=True, cancel_futures=True)
