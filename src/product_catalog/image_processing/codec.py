from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import BinaryIO, Optional, Union

from PIL import Image

from ..errors import DecodeError, EncodeError
from ..models import CompressedImage

logger = logging.getLogger(__name__)

PREFERRED_FORMAT = "avif"
FALLBACK_FORMAT = "webp"

ImageSource = Union[bytes, bytearray, memoryview, str, Path, BinaryIO, Image.Image]


@dataclass(frozen=True, slots=True)
class CompressionProfile:
    name: str
    max_width: int
    max_height: int
    quality: float


FULL_PROFILE = CompressionProfile("full", max_width=800, max_height=800, quality=0.75)
THUMBNAIL_PROFILE = CompressionProfile("thumbnail", max_width=300, max_height=225, quality=0.60)


class FormatSupport:
    """Answers whether the preferred (AVIF) encoder is usable in this runtime."""

    def supports_preferred(self) -> bool:
        raise NotImplementedError


class StaticFormatSupport(FormatSupport):
    def __init__(self, preferred: bool) -> None:
        self.preferred = preferred

    def supports_preferred(self) -> bool:
        return self.preferred


class ProbedFormatSupport(FormatSupport):
    """Round-trips a 1x1 AVIF through Pillow once and remembers the answer."""

    def __init__(self) -> None:
        self._result: Optional[bool] = None

    def supports_preferred(self) -> bool:
        if self._result is None:
            self._result = self._probe()
            logger.info("AVIF support: %s", self._result)
        return self._result

    def _probe(self) -> bool:
        buffer = BytesIO()
        try:
            Image.new("RGB", (1, 1), "white").save(buffer, format="AVIF")
            buffer.seek(0)
            with Image.open(buffer) as probe:
                probe.load()
                return probe.width > 0 and probe.height > 0
        except (KeyError, OSError, ValueError) as exc:
            logger.debug("AVIF probe failed: %s", exc)
            return False


def parse_data_uri(value: str) -> tuple[str, bytes]:
    """Split an inline ``data:`` URI into its mime type and decoded bytes."""

    if not value.startswith("data:") or "," not in value:
        raise DecodeError("Not an inline-encoded image")
    header, payload = value.split(",", 1)
    mime = header[5:].split(";", 1)[0] or "image/jpeg"
    if not header.endswith(";base64"):
        raise DecodeError("Inline image is not base64 encoded")
    try:
        return mime, base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise DecodeError("Inline image payload is not valid base64") from exc


class ImageCodec:
    """Decode, downscale and re-encode images for a compression profile."""

    def __init__(self, format_support: FormatSupport | None = None) -> None:
        self.format_support = format_support or ProbedFormatSupport()

    def detect_preferred_format_support(self) -> bool:
        return self.format_support.supports_preferred()

    def load_source(self, source: ImageSource) -> bytes:
        """Return the raw encoded bytes behind *source*."""

        if isinstance(source, (bytes, bytearray, memoryview)):
            return bytes(source)
        if isinstance(source, str):
            return parse_data_uri(source)[1]
        if isinstance(source, Path):
            try:
                return source.read_bytes()
            except OSError as exc:
                raise DecodeError(f"Failed to read file {source}") from exc
        if isinstance(source, Image.Image):
            buffer = BytesIO()
            source.save(buffer, format="PNG")
            return buffer.getvalue()
        if hasattr(source, "read"):
            data = source.read()
            if isinstance(data, (bytes, bytearray)):
                return bytes(data)
        raise DecodeError(f"Unsupported image source: {type(source).__name__}")

    @staticmethod
    def target_size(width: int, height: int, profile: CompressionProfile) -> tuple[int, int]:
        if width <= profile.max_width and height <= profile.max_height:
            return width, height
        ratio = min(profile.max_width / width, profile.max_height / height)
        return max(round(width * ratio), 1), max(round(height * ratio), 1)

    def decode(self, source: ImageSource) -> tuple[Image.Image, int]:
        if isinstance(source, Image.Image):
            return source.copy(), 0
        data = self.load_source(source)
        try:
            with Image.open(BytesIO(data)) as opened:
                opened.load()
                image = opened.copy()
        except (OSError, ValueError, Image.DecompressionBombError) as exc:
            raise DecodeError("Failed to load image") from exc
        return image, len(data)

    def compress(
        self, source: ImageSource, profile: CompressionProfile = FULL_PROFILE
    ) -> CompressedImage:
        image, source_size = self.decode(source)
        image = self._normalize_mode(image)

        width, height = self.target_size(image.width, image.height, profile)
        if (width, height) != image.size:
            logger.debug(
                "Resizing %sx%s -> %sx%s (%s)", image.width, image.height, width, height, profile.name
            )
            image = image.resize((width, height), Image.Resampling.LANCZOS)

        formats = [FALLBACK_FORMAT]
        if self.detect_preferred_format_support():
            formats.insert(0, PREFERRED_FORMAT)

        quality = max(0, min(100, round(profile.quality * 100)))
        last_error: Optional[Exception] = None
        for fmt in formats:
            try:
                data = self._encode(image, fmt, quality)
            except (KeyError, OSError, ValueError) as exc:
                logger.warning("Encoding to %s failed: %s", fmt, exc)
                last_error = exc
                continue
            if source_size:
                logger.debug(
                    "Compressed (%s): %.0fKB -> %.0fKB (%.0f%% smaller)",
                    fmt.upper(),
                    source_size / 1024,
                    len(data) / 1024,
                    (1 - len(data) / source_size) * 100,
                )
            return CompressedImage(
                data=data, format=fmt, width=width, height=height, source_size=source_size
            )
        raise EncodeError("Failed to compress image") from last_error

    async def compress_async(
        self, source: ImageSource, profile: CompressionProfile = FULL_PROFILE
    ) -> CompressedImage:
        return await asyncio.to_thread(self.compress, source, profile)

    def _normalize_mode(self, image: Image.Image) -> Image.Image:
        if image.mode in ("RGB", "RGBA"):
            return image
        has_alpha = image.mode in ("LA", "PA") or "transparency" in image.info
        return image.convert("RGBA" if has_alpha else "RGB")

    def _encode(self, image: Image.Image, fmt: str, quality: int) -> bytes:
        buffer = BytesIO()
        image.save(buffer, format=fmt.upper(), quality=quality)
        data = buffer.getvalue()
        if not data:
            raise ValueError(f"{fmt} encoder produced no data")
        return data
