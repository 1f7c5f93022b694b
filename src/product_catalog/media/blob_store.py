from __future__ import annotations

import asyncio
import logging
import re
import secrets
import string
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Union

import httpx

from ..errors import SizeExceededError, StoreUnavailableError
from ..image_processing.codec import FULL_PROFILE, THUMBNAIL_PROFILE, ImageCodec, ImageSource
from ..models import CompressedImage, format_file_size
from ..remote.data_service import DataService

logger = logging.getLogger(__name__)

DEFAULT_BUCKET = "product-images"
MAX_SOURCE_BYTES = 50 * 1024 * 1024
MAX_VIDEO_BYTES = 50 * 1024 * 1024
THUMBNAIL_INDEX = 999

_SUFFIX_ALPHABET = string.digits + string.ascii_lowercase

EntryKey = Union[int, str]


def is_durable_reference(value: object) -> bool:
    return isinstance(value, str) and not value.startswith("data:")


@dataclass(frozen=True, slots=True)
class VideoSizeCheck:
    is_valid: bool
    message: str
    size: int


def check_video_size(size: int, limit: int = MAX_VIDEO_BYTES) -> VideoSizeCheck:
    """Flag a video over *limit*; oversized videos are reported, not rejected."""

    if size > limit:
        return VideoSizeCheck(
            False,
            f"Video is too large ({format_file_size(size)}). Maximum allowed size is "
            f"{format_file_size(limit)}. Please compress the video before uploading.",
            size,
        )
    return VideoSizeCheck(True, "", size)


class BlobStoreClient:
    """Compress images and keep them in remote object storage."""

    def __init__(
        self,
        service: DataService,
        codec: Optional[ImageCodec] = None,
        *,
        bucket: str = DEFAULT_BUCKET,
        max_source_bytes: int = MAX_SOURCE_BYTES,
        timeout: float = 20.0,
        retries: int = 2,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.service = service
        self.codec = codec or ImageCodec()
        self.bucket = bucket
        self.max_source_bytes = max_source_bytes
        self.timeout = timeout
        self.retries = retries
        self._clock = clock
        self._path_pattern = re.compile(rf"{re.escape(bucket)}/(.+)$")

    def path_for(self, entry_id: EntryKey, index: int, extension: str = "avif") -> str:
        timestamp = int(self._clock() * 1000)
        suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(6))
        return f"{entry_id}/{timestamp}-{index}-{suffix}.{extension}"

    def public_url(self, path: str) -> str:
        return self.service.public_url(self.bucket, path)

    async def upload(
        self,
        image: ImageSource,
        entry_id: EntryKey,
        index: int = 0,
        *,
        fallback_to_inline: bool = False,
    ) -> str:
        """Compress *image* with the full profile and return its public URL.

        Durable references are returned untouched. With *fallback_to_inline*,
        a failing inline string is handed back as-is instead of raising.
        """

        if is_durable_reference(image):
            logger.debug("Image %s: already a URL, skipping upload", index)
            return image  # type: ignore[return-value]

        try:
            data = self.codec.load_source(image)
            self._check_size(len(data))
            compressed = await self.codec.compress_async(data, FULL_PROFILE)
            return await self.upload_compressed(compressed, entry_id, index)
        except Exception as exc:  # noqa: BLE001
            if fallback_to_inline and isinstance(image, str):
                logger.warning("Upload of image %s for %s failed, keeping inline data: %s", index, entry_id, exc)
                return image
            raise

    async def upload_compressed(
        self, compressed: CompressedImage, entry_id: EntryKey, index: int
    ) -> str:
        path = self.path_for(entry_id, index, compressed.extension)
        logger.info("Uploading %s (%.0fKB)", path, compressed.size / 1024)
        try:
            stored = await self.service.upload_blob(
                self.bucket, path, compressed.data, compressed.content_type
            )
        except StoreUnavailableError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise StoreUnavailableError(f"Upload of {path} rejected: {exc}") from exc
        url = self.public_url(stored)
        logger.debug("Uploaded %s", url)
        return url

    async def upload_thumbnail(
        self,
        image: ImageSource,
        entry_id: EntryKey,
        *,
        fallback_to_inline: bool = False,
    ) -> str:
        try:
            if is_durable_reference(image):
                data = await self._fetch_reference(image)  # type: ignore[arg-type]
            else:
                data = self.codec.load_source(image)
            self._check_size(len(data))
            compressed = await self.codec.compress_async(data, THUMBNAIL_PROFILE)
            return await self.upload_compressed(compressed, entry_id, THUMBNAIL_INDEX)
        except Exception as exc:  # noqa: BLE001
            if fallback_to_inline and isinstance(image, str):
                logger.warning("Thumbnail upload for %s failed, keeping original: %s", entry_id, exc)
                return image
            raise

    async def upload_many(
        self,
        images: Iterable[ImageSource],
        entry_id: EntryKey,
        *,
        fallback_to_inline: bool = False,
    ) -> List[str]:
        """Upload all *images* concurrently, preserving order and index.

        Every upload settles before the first failure, if any, is raised.
        Objects stored by the successful siblings of a failed call are
        removed again before raising.
        """

        images = list(images)
        logger.info("Uploading %s images for %s", len(images), entry_id)
        results = await asyncio.gather(
            *(
                self.upload(image, entry_id, index, fallback_to_inline=fallback_to_inline)
                for index, image in enumerate(images)
            ),
            return_exceptions=True,
        )
        failures = [result for result in results if isinstance(result, BaseException)]
        if failures:
            await self.discard(
                result
                for image, result in zip(images, results)
                if isinstance(result, str) and result != image
            )
            raise failures[0]
        return list(results)  # type: ignore[arg-type]

    async def discard(self, references: Iterable[str]) -> None:
        """Remove every reference in *references*, best effort."""

        references = list(references)
        if references:
            logger.info("Removing %s uploaded images", len(references))
            await asyncio.gather(*(self.remove(reference) for reference in references))

    async def remove(self, reference: str) -> None:
        """Delete a stored image by public URL or storage path, best effort."""

        match = self._path_pattern.search(reference)
        path = match.group(1) if match else reference
        try:
            deleted = await self.service.delete_blob(self.bucket, path)
        except Exception as exc:  # noqa: BLE001
            logger.error("Delete of %s failed: %s", path, exc)
            return
        if deleted:
            logger.info("Deleted %s", path)
        else:
            logger.info("Nothing to delete at %s", path)

    def _check_size(self, size: int) -> None:
        if size > self.max_source_bytes:
            raise SizeExceededError(size, self.max_source_bytes)

    async def _fetch_reference(self, url: str) -> bytes:
        last_error: Optional[Exception] = None
        for attempt in range(self.retries + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                    logger.debug("Downloading image %s (attempt %s)", url, attempt + 1)
                    response = await client.get(url)
                    response.raise_for_status()
                    return response.content
            except httpx.HTTPError as exc:
                logger.warning("Failed to download %s: %s", url, exc)
                last_error = exc
        raise StoreUnavailableError(f"Unable to download image {url}") from last_error
