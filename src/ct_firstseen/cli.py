"""Command line entry point: `ct-firstseen {ingest,shard,reduce}`."""

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timezone
from typing import List, Optional

from . import __version__
from .config import (
    DEFAULT_BUCKETS,
    DEFAULT_CUTOFF,
    DEFAULT_MAX_ROWS_PER_FILE,
    DEFAULT_SHARD_PATTERNS,
    IngestConfig,
    ReduceConfig,
    ShardConfig,
)
from .extractor import run_ingest
from .reducer import run_reduce
from .sharder import run_shard

logger = logging.getLogger(__name__)


def parse_cutoff(value: str) -> int:
    """ISO date or datetime (UTC unless an offset is given) to epoch seconds."""
    try:
        moment = datetime.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}: {e}") from e
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return int(moment.timestamp())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ct-firstseen",
        description="Build first/last-seen tables of domains from a CT log.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    ingest = sub.add_parser("ingest", help="Scan a log index range into rotated zstd CSV files")
    ingest.add_argument("--out", required=True, help="Output path prefix")
    ingest.add_argument("--url", required=True, help="CT log base URL")
    ingest.add_argument("--from", dest="start", type=int, default=0, help="First index (inclusive)")
    ingest.add_argument(
        "--to", dest="end", type=int, default=None, help="Last index (exclusive, default: tree size)"
    )
    ingest.add_argument(
        "--no-precert", action="store_true", help="Skip precertificate entries"
    )
    ingest.add_argument(
        "--since",
        type=parse_cutoff,
        default=DEFAULT_CUTOFF,
        help="Keep certificates with notBefore strictly after this date (default 2017-01-01)",
    )
    ingest.add_argument(
        "--max-records-per-file", type=int, default=DEFAULT_MAX_ROWS_PER_FILE
    )
    ingest.add_argument("--max-in-flight", type=int, default=2000, help="Decode task cap")
    ingest.add_argument("--channel-capacity", type=int, default=1000)
    ingest.add_argument(
        "--decode-workers", type=int, default=4, help="Decoder processes (0 decodes inline)"
    )
    ingest.add_argument("--parallel-fetches", type=int, default=10)
    ingest.add_argument("--batch-size", type=int, default=1000)
    ingest.add_argument("--tiled", action="store_true", help="Log uses the static/tiled API")

    shard = sub.add_parser("shard", help="Partition ingest files into domain-hash buckets")
    shard.add_argument("--input-dir", required=True)
    shard.add_argument("--output-dir", required=True)
    shard.add_argument("--buckets", type=int, default=DEFAULT_BUCKETS)
    shard.add_argument("--workers", type=int, default=1, help="Input files read in parallel")
    shard.add_argument(
        "--pattern",
        dest="patterns",
        action="append",
        help="Input file glob, repeatable (default *.csv.zst and *.csv)",
    )

    reduce = sub.add_parser("reduce", help="Fold bucket files into first/last-seen rows")
    reduce.add_argument("--input-dir", required=True)
    reduce.add_argument("--output-dir", required=True)
    reduce.add_argument("--max-rows-per-file", type=int, default=DEFAULT_MAX_ROWS_PER_FILE)
    reduce.add_argument(
        "--buckets",
        type=int,
        default=None,
        help="Bucket count of the shard run; bucket ids outside it are reported",
    )

    return parser


def _build_config(parser: argparse.ArgumentParser, args: argparse.Namespace):
    try:
        if args.command == "ingest":
            return IngestConfig(
                url=args.url,
                out=args.out,
                start=args.start,
                end=args.end,
                cutoff=args.since,
                include_precerts=not args.no_precert,
                max_records_per_file=args.max_records_per_file,
                max_in_flight=args.max_in_flight,
                channel_capacity=args.channel_capacity,
                decode_workers=args.decode_workers,
                parallel_fetches=args.parallel_fetches,
                batch_size=args.batch_size,
                tiled=args.tiled,
            )
        if args.command == "shard":
            return ShardConfig(
                input_dir=args.input_dir,
                output_dir=args.output_dir,
                buckets=args.buckets,
                workers=args.workers,
                patterns=tuple(args.patterns or DEFAULT_SHARD_PATTERNS),
            )
        return ReduceConfig(
            input_dir=args.input_dir,
            output_dir=args.output_dir,
            max_rows_per_file=args.max_rows_per_file,
            buckets=args.buckets,
        )
    except ValueError as e:
        parser.error(str(e))


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = _build_config(parser, args)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "ingest":
            asyncio.run(run_ingest(config))
        elif args.command == "shard":
            run_shard(config)
        else:
            run_reduce(config)
    except KeyboardInterrupt:
        logger.error("Interrupted")
        return 130
    except Exception as e:
        logger.error(f"{args.command} failed: {e}", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
