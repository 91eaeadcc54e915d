"""
Command line entry point.

Usage:
    multisource-mdm process --entity-type veteran --batch-id B1 \
        --source-dir data/sources --warehouse data/warehouse/mdm.db
    multisource-mdm verify --warehouse data/warehouse/mdm.db
    multisource-mdm audit --entity-type veteran --batch-id B1
"""

import argparse
import logging
import os
import sys
from datetime import datetime
from typing import List, Optional

from dotenv import load_dotenv
from pyspark.sql import SparkSession

from .config import settings
from .pipelines.reconciliation import (
    BatchProcessor,
    ConflictLogger,
    FileSourceAdapter,
    Warehouse,
    verify_dimension_integrity,
)

logger = logging.getLogger(__name__)


def create_spark_session(app_name: str = "multisource-mdm", master: str = "local[*]") -> SparkSession:
    """Local SparkSession with UTC timestamps."""
    return (
        SparkSession.builder
        .appName(app_name)
        .master(master)
        .config("spark.sql.session.timeZone", "UTC")
        .config("spark.sql.shuffle.partitions", "8")
        .getOrCreate()
    )


def _parse_as_of(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid timestamp: {value}") from exc


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--warehouse",
        default=None,
        help=f"SQLite warehouse path (default: MDM_WAREHOUSE_PATH or {settings.WAREHOUSE_DB_PATH})",
    )
    common.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
    )

    parser = argparse.ArgumentParser(
        prog="multisource-mdm",
        description="Reconcile two source systems into versioned master records.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    process = subparsers.add_parser("process", parents=[common], help="Process one entity type batch")
    process.add_argument("--entity-type", required=True)
    process.add_argument("--batch-id", required=True)
    process.add_argument("--source-dir", default=None, help="Root of <entity>/<source>/ files")
    process.add_argument("--format", default="csv", choices=["csv", "json", "parquet"])
    process.add_argument("--as-of", type=_parse_as_of, default=None, help="Processing time (ISO 8601, UTC)")
    process.add_argument("--master", default="local[*]", help="Spark master URL")

    verify = subparsers.add_parser("verify", parents=[common], help="Check at-most-one-current dimension versions")
    verify.add_argument("--entity-type", default=None)

    audit = subparsers.add_parser("audit", parents=[common], help="Check logged conflict resolutions")
    audit.add_argument("--entity-type", required=True)
    audit.add_argument("--batch-id", default=None)

    return parser


def _process(args, warehouse: Warehouse) -> int:
    source_dir = args.source_dir or os.environ.get("MDM_SOURCE_PATH", settings.SOURCE_DATA_PATH)
    spark = create_spark_session(master=args.master)
    try:
        adapter = FileSourceAdapter(spark, source_dir, file_format=args.format)
        processor = BatchProcessor(spark, adapter, warehouse)
        result = processor.process_batch(args.entity_type, args.batch_id, as_of=args.as_of)
    finally:
        spark.stop()

    if not result.succeeded:
        print(f"FAILED: {result.error}", file=sys.stderr)
        return 1

    print(
        f"SUCCEEDED: {result.row_count} merged, {result.crosswalk_count} crosswalk entries, "
        f"{result.orphan_count} orphans, {result.conflict_count} conflicts, "
        f"{result.versions_opened} versions opened, {result.versions_closed} closed"
    )
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # .env values loaded above take effect here, after settings was imported
    warehouse_path = args.warehouse or os.environ.get("MDM_WAREHOUSE_PATH", settings.WAREHOUSE_DB_PATH)
    warehouse = Warehouse(warehouse_path)

    if args.command == "process":
        return _process(args, warehouse)

    if args.command == "verify":
        duplicates = verify_dimension_integrity(warehouse, args.entity_type)
        if duplicates:
            print(f"{len(duplicates)} master ids have more than one current version", file=sys.stderr)
            return 1
        print("OK: at most one current version per master id")
        return 0

    violations = ConflictLogger(warehouse).audit(args.entity_type, args.batch_id)
    if violations:
        print(f"{len(violations)} conflict resolutions disagree with their rule", file=sys.stderr)
        return 1
    print("OK: every conflict kept the preferred source's value")
    return 0


if __name__ == "__main__":
    sys.exit(main())
