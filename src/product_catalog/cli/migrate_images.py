from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Optional

from ..config import ServiceSettings
from ..errors import CatalogError
from ..image_processing.codec import (
    FormatSupport,
    ImageCodec,
    ProbedFormatSupport,
    StaticFormatSupport,
)
from ..media.blob_store import DEFAULT_BUCKET, BlobStoreClient
from ..migration.engine import MigrationConfig, MigrationEngine
from ..remote.data_service import RestDataService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Move inline catalog images into object storage"
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--status",
        action="store_true",
        help="Only report how many products still carry inline images",
    )
    mode.add_argument("--product-id", type=int, default=None, help="Migrate a single product")
    parser.add_argument("--batch-size", type=int, default=5, help="Products fetched per batch")
    parser.add_argument(
        "--delay", type=float, default=0.0, help="Seconds to wait between batches"
    )
    parser.add_argument(
        "--fallback-to-inline",
        action="store_true",
        help="Keep the inline image when its upload fails instead of recording an error",
    )
    parser.add_argument("--bucket", default=DEFAULT_BUCKET, help="Storage bucket for images")
    parser.add_argument(
        "--static-format",
        choices=("avif", "webp"),
        default=None,
        help="Skip the AVIF probe and force the output format",
    )
    return parser.parse_args(argv)


def _format_support(choice: Optional[str]) -> FormatSupport:
    if choice is None:
        return ProbedFormatSupport()
    return StaticFormatSupport(preferred=choice == "avif")


async def _run(
    args: argparse.Namespace, settings: ServiceSettings, config: MigrationConfig
) -> int:
    async with RestDataService(settings.url, settings.api_key, timeout=settings.timeout) as service:
        codec = ImageCodec(_format_support(args.static_format))
        engine = MigrationEngine(service, BlobStoreClient(service, codec, bucket=args.bucket), config)

        if args.status:
            status = await engine.check_status()
            print(
                f"total={status.total} need_migration={status.with_base64} "
                f"optimized={status.migrated} estimated_savings={status.estimated_savings}"
            )
            return 0

        if args.product_id is not None:
            outcome = await engine.migrate_by_id(args.product_id)
            print(f"{outcome.entry_id} {outcome.entry_name}: {outcome.status} - {outcome.message}")
            return 0 if outcome.status != "error" else 2

        summary = await engine.run()
        for outcome in summary.results:
            if outcome.status == "error":
                logger.error("%s %s: %s", outcome.entry_id, outcome.entry_name, outcome.message)
        print(
            f"total={summary.total} migrated={summary.migrated} skipped={summary.skipped} "
            f"errors={summary.errors} saved_bytes={summary.total_saved}"
        )
        return 0


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    try:
        settings = ServiceSettings.from_env()
        config = MigrationConfig(
            batch_size=args.batch_size,
            batch_delay=args.delay,
            fallback_to_inline=args.fallback_to_inline,
        )
    except ValueError as exc:
        logger.error("Configuration error: %s", exc)
        raise SystemExit(1) from exc
    try:
        code = asyncio.run(_run(args, settings, config))
    except CatalogError as exc:
        logger.error("Migration failed: %s", exc)
        raise SystemExit(2) from exc
    raise SystemExit(code)


if __name__ == "__main__":
    main()
