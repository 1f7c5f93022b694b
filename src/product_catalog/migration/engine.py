from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, List, Optional

from ..media.blob_store import BlobStoreClient
from ..models import (
    MigrationOutcome,
    MigrationStatus,
    MigrationSummary,
    inline_payload_size,
    is_inline_image,
    utc_now_iso,
)
from ..remote.data_service import DataService, Filter, Order

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MigrationConfig:
    batch_size: int = 5
    batch_delay: float = 0.0
    fallback_to_inline: bool = False
    collection: str = "products"

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.batch_delay < 0:
            raise ValueError("batch_delay must not be negative")


def chunked(values: Iterable[Any], size: int) -> Iterator[List[Any]]:
    batch: List[Any] = []
    for value in values:
        batch.append(value)
        if len(batch) == size:
            yield batch
            batch = []
    if batch:
        yield batch


def inline_images_size(images: Iterable[str]) -> int:
    return sum(inline_payload_size(img) for img in images if is_inline_image(img))


class MigrationEngine:
    """Move inline-encoded catalog images into object storage, a few entries at a time."""

    def __init__(
        self,
        service: DataService,
        blob_store: BlobStoreClient,
        config: MigrationConfig | None = None,
    ) -> None:
        self.service = service
        self.blob_store = blob_store
        self.config = config or MigrationConfig()

    async def run(self) -> MigrationSummary:
        """Migrate every entry; only the initial id listing may abort the run."""

        entries = await self.service.query(
            self.config.collection, "id,name", order=Order("id")
        )
        summary = MigrationSummary(total=len(entries))
        if not entries:
            logger.info("No products found")
            return summary

        batches = list(chunked(entries, self.config.batch_size))
        logger.info(
            "Found %s products, processing %s at a time", len(entries), self.config.batch_size
        )
        for number, batch in enumerate(batches, start=1):
            if number > 1 and self.config.batch_delay:
                await asyncio.sleep(self.config.batch_delay)
            logger.info("Batch %s/%s", number, len(batches))
            await self._run_batch(batch, summary)

        logger.info(
            "Migration complete: migrated=%s skipped=%s errors=%s saved=%.2fMB",
            summary.migrated,
            summary.skipped,
            summary.errors,
            summary.total_saved / 1024 / 1024,
        )
        return summary

    async def migrate_by_id(self, entry_id: Any) -> MigrationOutcome:
        logger.info("Migrating single product %s", entry_id)
        try:
            rows = await self.service.query(
                self.config.collection,
                "id,name,images,thumbnail",
                [Filter("id", "eq", entry_id)],
            )
        except Exception as exc:  # noqa: BLE001
            return MigrationOutcome(entry_id, "Unknown", "error", str(exc) or type(exc).__name__)
        if not rows:
            return MigrationOutcome(entry_id, "Unknown", "error", "Product not found")
        return await self.migrate_record(rows[0])

    async def check_status(self) -> MigrationStatus:
        """Count entries still carrying inline images without changing anything."""

        rows = await self.service.query(self.config.collection, "id,images")
        with_base64 = 0
        estimated_savings = 0
        for row in rows:
            images = row.get("images") or []
            if any(is_inline_image(img) for img in images):
                with_base64 += 1
                estimated_savings += inline_images_size(images)

        status = MigrationStatus(
            total=len(rows),
            with_base64=with_base64,
            migrated=len(rows) - with_base64,
            estimated_savings=estimated_savings,
        )
        logger.info(
            "Migration status: total=%s need_migration=%s optimized=%s estimated_savings=%.2fMB",
            status.total,
            status.with_base64,
            status.migrated,
            status.estimated_savings / 1024 / 1024,
        )
        return status

    async def migrate_record(self, record: dict) -> MigrationOutcome:
        entry_id = record.get("id")
        name = record.get("name") or ""
        images: List[str] = list(record.get("images") or [])

        if not any(is_inline_image(img) for img in images):
            return MigrationOutcome(entry_id, name, "skipped", "Already migrated")

        original_size = inline_images_size(images)
        logger.info("Migrating %s (%.0f KB)", name, original_size / 1024)
        fallback = self.config.fallback_to_inline
        uploaded: List[str] = []
        try:
            new_images = await self.blob_store.upload_many(
                images, entry_id, fallback_to_inline=fallback
            )
            uploaded = [new for old, new in zip(images, new_images) if new != old]
            thumbnail: Optional[str] = record.get("thumbnail")
            if is_inline_image(images[0]):
                thumbnail = await self.blob_store.upload_thumbnail(
                    images[0], entry_id, fallback_to_inline=fallback
                )
                if thumbnail != images[0]:
                    uploaded.append(thumbnail)
            elif new_images:
                thumbnail = new_images[0]

            await self.service.update(
                self.config.collection,
                entry_id,
                {"images": new_images, "thumbnail": thumbnail, "updated_at": utc_now_iso()},
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Migration of %s failed: %s", name, exc)
            # the record still points at the inline data
            await self.blob_store.discard(uploaded)
            return MigrationOutcome(entry_id, name, "error", str(exc) or type(exc).__name__)

        new_size = sum(len(img.encode("utf-8")) for img in new_images)
        savings = f"{(1 - new_size / original_size) * 100:.1f}" if original_size else "0.0"
        kept_inline = sum(1 for img in new_images if is_inline_image(img))
        if kept_inline:
            return MigrationOutcome(
                entry_id,
                name,
                "error",
                f"Kept {kept_inline} inline image(s) after upload failure",
                original_size=original_size,
                new_size=new_size,
                savings=savings,
            )
        return MigrationOutcome(
            entry_id,
            name,
            "success",
            f"Saved {original_size / 1024:.0f} KB",
            original_size=original_size,
            new_size=new_size,
            savings=savings,
        )

    async def _run_batch(self, batch: List[dict], summary: MigrationSummary) -> None:
        ids = [item.get("id") for item in batch]
        try:
            rows = await self.service.query(
                self.config.collection,
                "id,name,images,thumbnail",
                [Filter("id", "in", ids)],
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Batch fetch for %s failed: %s", ids, exc)
            for item in batch:
                summary.record(
                    MigrationOutcome(item.get("id"), item.get("name") or "", "error", str(exc))
                )
            return

        by_id = {row.get("id"): row for row in rows}
        for item in batch:
            row = by_id.get(item.get("id"))
            if row is None:
                outcome = MigrationOutcome(
                    item.get("id"), item.get("name") or "", "error", "Product not found"
                )
            else:
                outcome = await self.migrate_record(row)
            summary.record(outcome)
