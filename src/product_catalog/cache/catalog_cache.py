from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple

from ..errors import DuplicateNameError, NotFound
from ..media.blob_store import BlobStoreClient
from ..models import CatalogEntry, SaveResult, is_inline_image
from ..remote.data_service import DataService, Filter, Order
from .local_store import KeyValueStore
from .subscribers import SubscriberRegistry

logger = logging.getLogger(__name__)

Snapshot = Tuple[CatalogEntry, ...]
SnapshotListener = Callable[[Snapshot], None]


@dataclass(slots=True)
class CatalogCacheConfig:
    stale_after: float = 300.0
    cache_key: str = "catalogProducts_v2"
    timestamp_key: str = "catalogProducts_v2_timestamp"
    max_persist_bytes: int = 4 * 1024 * 1024
    collection: str = "products"


class CatalogCache:
    """In-memory catalog snapshot mirrored to a local store, refreshed in the background.

    Reads never wait on the network. The snapshot is an immutable tuple that
    is swapped whole after a successful fetch, save or delete, so readers
    always see a complete catalog. Writers are this object's own refresh,
    :meth:`save` and :meth:`remove` paths.
    """

    def __init__(
        self,
        service: DataService,
        store: KeyValueStore,
        *,
        config: CatalogCacheConfig | None = None,
        blob_store: Optional[BlobStoreClient] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.service = service
        self.store = store
        self.config = config or CatalogCacheConfig()
        self.blob_store = blob_store
        self._clock = clock
        self._snapshot: Snapshot = ()
        self._persisted_loaded = False
        self._last_refreshed: Optional[float] = None
        self._init_task: Optional[asyncio.Task] = None
        self._background_task: Optional[asyncio.Task] = None
        self._subscribers: SubscriberRegistry[Snapshot] = SubscriberRegistry()

    @classmethod
    def create(cls, service: DataService, store: KeyValueStore, **kwargs: Any) -> "CatalogCache":
        cache = cls(service, store, **kwargs)
        cache.load_persisted()
        return cache

    async def dispose(self) -> None:
        tasks = {
            task
            for task in (self._init_task, self._background_task)
            if task is not None and not task.done()
        }
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._subscribers.clear()

    async def __aenter__(self) -> "CatalogCache":
        self.load_persisted()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.dispose()

    @property
    def last_refreshed(self) -> Optional[float]:
        return self._last_refreshed

    def is_stale(self) -> bool:
        if self._last_refreshed is None:
            return True
        return self._clock() - self._last_refreshed >= self.config.stale_after

    def load_persisted(self) -> Snapshot:
        """Read the persisted mirror once; corruption leaves the cache empty."""

        if self._persisted_loaded:
            return self._snapshot
        self._persisted_loaded = True
        try:
            raw = self.store.get(self.config.cache_key)
            raw_timestamp = self.store.get(self.config.timestamp_key)
        except (OSError, ValueError) as exc:
            logger.warning("Could not read catalog cache: %s", exc)
            return self._snapshot
        if not raw:
            return self._snapshot

        try:
            entries = tuple(CatalogEntry.from_cache_dict(item) for item in json.loads(raw))
        except (ValueError, TypeError, AttributeError) as exc:
            logger.warning("Ignoring corrupt catalog cache: %s", exc)
            return self._snapshot

        self._snapshot = entries
        if raw_timestamp:
            try:
                self._last_refreshed = float(raw_timestamp)
            except ValueError:
                logger.debug("Ignoring corrupt catalog cache timestamp %r", raw_timestamp)
        logger.info("Loaded %s products from cache", len(entries))
        return self._snapshot

    def get_snapshot(self) -> Snapshot:
        self.load_persisted()
        return self._snapshot

    def get_snapshot_with_refresh(self) -> Snapshot:
        snapshot = self.get_snapshot()
        if self.is_stale():
            self._schedule_refresh()
        return snapshot

    async def initialize(self) -> Snapshot:
        """Load the mirror and run the first fetch; concurrent callers share it."""

        self.load_persisted()
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self.refresh())
        return await asyncio.shield(self._init_task)

    async def refresh(self) -> Snapshot:
        self.load_persisted()
        previous = self._snapshot
        logger.debug("Fetching fresh products")
        try:
            rows = await self.service.query(
                self.config.collection, "*", order=Order("created_at", ascending=False)
            )
            entries = tuple(CatalogEntry.from_record(row) for row in rows)
        except Exception as exc:  # noqa: BLE001
            logger.error("Catalog refresh failed, keeping %s cached products: %s", len(previous), exc)
            return previous

        if not entries:
            logger.info("Keeping cached products (remote returned no entries)")
            return previous

        self._last_refreshed = self._clock()
        if entries == previous:
            self._persist()
            return previous
        logger.info("Fresh products loaded: %s", len(entries))
        self._replace(entries)
        return entries

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        unsubscribe = self._subscribers.add(listener)
        self._subscribers.deliver(listener, self.get_snapshot())
        return unsubscribe

    async def save(self, entry: CatalogEntry, is_new: bool) -> SaveResult:
        name = entry.name.strip()
        logger.info("Saving product %r", name)
        original = entry
        try:
            if is_new:
                await self._ensure_unique_name(name)
            entry = await self._ingest_images(entry, is_new)
            record = entry.to_record()
            if is_new:
                row = await self.service.insert(self.config.collection, record)
            else:
                if entry.id is None:
                    raise NotFound("Cannot update a product without an id")
                row = await self.service.update(self.config.collection, entry.id, record)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Saving product %r failed: %s", name, exc)
            await self._discard_uploads(original, entry)
            return SaveResult(success=False, error=str(exc) or type(exc).__name__)

        saved = CatalogEntry.from_record(row)
        current = self.get_snapshot()
        if is_new or not any(item.id == saved.id for item in current):
            updated = (saved,) + tuple(item for item in current if item.id != saved.id)
        else:
            updated = tuple(saved if item.id == saved.id else item for item in current)
        self._replace(updated)
        logger.info("Product saved, id=%s", saved.id)
        return SaveResult(success=True, entry=saved)

    async def remove(self, entry_id: Any) -> bool:
        try:
            await self.service.delete(self.config.collection, entry_id)
        except Exception as exc:  # noqa: BLE001
            logger.error("Delete of product %s failed: %s", entry_id, exc)
            return False
        self._replace(tuple(item for item in self.get_snapshot() if item.id != entry_id))
        return True

    def clear_persisted(self) -> None:
        for key in (self.config.cache_key, self.config.timestamp_key):
            try:
                self.store.remove(key)
            except OSError as exc:
                logger.warning("Could not clear %s: %s", key, exc)

    def cache_info(self) -> dict[str, int]:
        try:
            raw = self.store.get(self.config.cache_key)
            if raw:
                parsed = json.loads(raw)
                return {
                    "size_kb": round(len(raw.encode("utf-8")) / 1024),
                    "count": len(parsed) if isinstance(parsed, list) else 0,
                }
        except (OSError, ValueError) as exc:
            logger.debug("Could not inspect catalog cache: %s", exc)
        return {"size_kb": 0, "count": 0}

    def _schedule_refresh(self) -> None:
        if self._background_task is not None and not self._background_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, background refresh skipped")
            return
        self._background_task = loop.create_task(self.refresh())
        if self._init_task is None:
            self._init_task = self._background_task

    def _replace(self, snapshot: Snapshot) -> None:
        self._snapshot = snapshot
        self._persist()
        self._subscribers.notify(snapshot)

    def _persist(self) -> bool:
        try:
            payload = json.dumps(
                [entry.to_cache_dict() for entry in self._snapshot], separators=(",", ":")
            )
        except (TypeError, ValueError) as exc:
            logger.warning("Could not serialize products for cache: %s", exc)
            return False

        size = len(payload.encode("utf-8"))
        if size > self.config.max_persist_bytes:
            logger.warning("Cache data too large: %.2f MB - skipping cache", size / 1024 / 1024)
            return False

        try:
            self.store.set(self.config.cache_key, payload)
            if self._last_refreshed is not None:
                self.store.set(self.config.timestamp_key, repr(self._last_refreshed))
        except (OSError, ValueError) as exc:
            logger.error("Could not persist product cache: %s", exc)
            self.clear_persisted()
            return False
        logger.debug("Cached %s products (%.2f MB)", len(self._snapshot), size / 1024 / 1024)
        return True

    async def _ensure_unique_name(self, name: str) -> None:
        rows = await self.service.query(
            self.config.collection, "id,name", [Filter("name", "ilike", f"*{name}*")]
        )
        wanted = name.casefold()
        if any((row.get("name") or "").strip().casefold() == wanted for row in rows):
            raise DuplicateNameError(name)

    async def _ingest_images(self, entry: CatalogEntry, is_new: bool) -> CatalogEntry:
        if self.blob_store is None or not any(is_inline_image(img) for img in entry.images):
            return entry

        key = f"new-{int(self._clock() * 1000)}" if is_new else entry.id
        originals = list(entry.images)
        images = await self.blob_store.upload_many(originals, key, fallback_to_inline=True)
        thumbnail = entry.thumbnail
        if images:
            if is_inline_image(originals[0]):
                thumbnail = await self.blob_store.upload_thumbnail(
                    originals[0], key, fallback_to_inline=True
                )
            else:
                thumbnail = images[0]
        return dataclasses.replace(entry, images=images, thumbnail=thumbnail)

    async def _discard_uploads(self, original: CatalogEntry, ingested: CatalogEntry) -> None:
        if self.blob_store is None or ingested is original:
            return
        known = set(original.images)
        if original.thumbnail:
            known.add(original.thumbnail)
        fresh = {
            ref
            for ref in (*ingested.images, ingested.thumbnail)
            if ref and ref not in known and not is_inline_image(ref)
        }
        await self.blob_store.discard(fresh)
