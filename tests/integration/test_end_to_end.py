"""Ingest a mocked CT log, shard the output and reduce it to first/last-seen rows."""

from __future__ import annotations

import asyncio
import csv
from typing import Dict, List, Tuple

import httpx

from conftest import build_certificate, classic_leaf, utc
from ct_firstseen.config import DEFAULT_CUTOFF, ReduceConfig, ShardConfig
from ct_firstseen.extractor import Extractor, run_pipeline
from ct_firstseen.ledger import ClassicLedgerClient
from ct_firstseen.reducer import Reducer
from ct_firstseen.rotator import OutputRotator
from ct_firstseen.sharder import Sharder

LOG_URL = "https://log.example/2024"

EXPECTED = {
    "example.com": (1699999000, 1700005000),
    "www.example.com": (1700000000, 1700000000),
    "shop.example.net": (1700001000, 1700001000),
    "b.example.org": (1699999000, 1699999000),
}


def _log_items() -> List[dict]:
    return [
        classic_leaf(build_certificate(["Example.com", "www.example.com"]), 1700000000000),
        classic_leaf(build_certificate(["example.com"]), 1700005000000),
        classic_leaf(build_certificate(["shop.example.net"], precert=True), 1700001000000, precert=True),
        classic_leaf(build_certificate(["old.example"], not_before=utc(2016), not_after=utc(2017, 6)), 1700002000000),
        classic_leaf(build_certificate(["example.com.", "b.example.org"]), 1699999000000),
        classic_leaf(b"not a certificate", 1700003000000),
    ]


def _transport(items: List[dict]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/ct/v1/get-sth"):
            return httpx.Response(
                200,
                json={"tree_size": len(items), "timestamp": 1, "sha256_root_hash": "", "tree_head_signature": ""},
            )
        start = int(request.url.params["start"])
        end = int(request.url.params["end"])
        return httpx.Response(200, json={"entries": items[start : min(end + 1, start + 2)]})

    return httpx.MockTransport(handler)


def _ingest(prefix: str) -> Tuple[OutputRotator, object]:
    async def _run():
        async with ClassicLedgerClient(LOG_URL, transport=_transport(_log_items()), batch_size=2) as ledger:
            await ledger.prepare()
            rotator = OutputRotator(prefix, max_records_per_file=2)
            stats = await run_pipeline(
                ledger.scan(0),
                Extractor(cutoff=DEFAULT_CUTOFF, max_in_flight=3),
                rotator,
                channel_capacity=1,
            )
            return rotator, stats

    return asyncio.run(_run())


def _reduced(directory) -> Dict[str, List[Tuple[int, int]]]:
    seen: Dict[str, List[Tuple[int, int]]] = {}
    for path in directory.glob("output_*.csv"):
        with open(path, newline="") as f:
            for domain, first_seen, last_seen in csv.reader(f):
                seen.setdefault(domain, []).append((int(first_seen), int(last_seen)))
    return seen


def test_pipeline_reports_each_domain_once_with_min_and_max(tmp_path) -> None:
    rotator, stats = _ingest(str(tmp_path / "ingest" / "ct"))

    assert stats.emitted == 4
    assert stats.filtered_by_cutoff == 1
    assert stats.decode_failures == 1
    assert [p.name for p in rotator.files] == ["ct-1.csv.zst", "ct-2.csv.zst"]

    shard_stats = Sharder(ShardConfig(tmp_path / "ingest", tmp_path / "buckets", buckets=3, workers=2)).run()
    assert shard_stats.malformed_lines == 0
    assert shard_stats.occurrences_written == 6

    reduce_stats = Reducer(ReduceConfig(tmp_path / "buckets", tmp_path / "out", max_rows_per_file=2)).run()
    assert reduce_stats.domains_written == len(EXPECTED)

    seen = _reduced(tmp_path / "out")
    assert {domain: rows[0] for domain, rows in seen.items()} == EXPECTED
    assert all(len(rows) == 1 for rows in seen.values())


def test_resharding_into_existing_buckets_does_not_change_result(tmp_path) -> None:
    _ingest(str(tmp_path / "ingest" / "ct"))
    config = ShardConfig(tmp_path / "ingest", tmp_path / "buckets", buckets=4)
    Sharder(config).run()
    Sharder(config).run()

    Reducer(ReduceConfig(tmp_path / "buckets", tmp_path / "out")).run()

    seen = _reduced(tmp_path / "out")
    assert {domain: rows[0] for domain, rows in seen.items()} == EXPECTED
    assert all(len(rows) == 1 for rows in seen.values())
