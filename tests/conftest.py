from __future__ import annotations

import asyncio
import base64
import copy
import re
from io import BytesIO
from typing import Any, Callable, List, Optional, Sequence

import pytest
from PIL import Image

from product_catalog.errors import NotFound, StoreUnavailableError
from product_catalog.remote.data_service import DataService, Filter, Order


def _matches(row: dict, flt: Filter) -> bool:
    value = row.get(flt.column)
    if flt.op == "eq":
        return value == flt.value
    if flt.op == "in":
        return value in list(flt.value)
    pattern = re.escape(str(flt.value)).replace(r"\*", ".*").replace("%", ".*")
    return value is not None and re.fullmatch(pattern, str(value), re.IGNORECASE) is not None


class FakeDataService(DataService):
    """In-memory stand-in for the remote service."""

    def __init__(self, rows: Optional[List[dict]] = None) -> None:
        self.rows: List[dict] = [dict(row) for row in rows or []]
        self.blobs: dict[tuple[str, str], tuple[bytes, str]] = {}
        self.emails: List[dict] = []
        self.query_calls: List[tuple[str, str, tuple]] = []
        self.updates: List[tuple[Any, dict]] = []
        self.fail_queries = False
        self.fail_when: Optional[Callable[[str, Sequence[Filter]], bool]] = None
        self.fail_uploads = False
        self.fail_upload_prefixes: set[str] = set()
        self.upload_error: Callable[[str], Exception] = StoreUnavailableError
        self.fail_writes = False
        self.fail_emails = False
        self.query_delay = 0.0
        self._next_id = max((row.get("id") or 0 for row in self.rows), default=0) + 1
        self._clock = 0

    async def query(
        self,
        collection: str,
        projection: str = "*",
        filters: Sequence[Filter] = (),
        order: Optional[Order] = None,
    ) -> List[dict]:
        self.query_calls.append((collection, projection, tuple(filters)))
        if self.query_delay:
            await asyncio.sleep(self.query_delay)
        if self.fail_queries or (self.fail_when is not None and self.fail_when(projection, filters)):
            raise StoreUnavailableError("query failed")
        rows = [row for row in self.rows if all(_matches(row, flt) for flt in filters)]
        if order is not None:
            rows.sort(
                key=lambda row: (row.get(order.column) is None, row.get(order.column)),
                reverse=not order.ascending,
            )
        if projection != "*":
            columns = [column.strip() for column in projection.split(",")]
            rows = [{column: row.get(column) for column in columns} for row in rows]
        return copy.deepcopy(rows)

    async def insert(self, collection: str, record: dict) -> dict:
        if self.fail_writes:
            raise StoreUnavailableError("insert failed")
        self._clock += 1
        row = dict(record, id=self._next_id, created_at=f"2024-01-01T00:00:{self._clock:02d}")
        self._next_id += 1
        self.rows.append(row)
        return copy.deepcopy(row)

    async def update(self, collection: str, id: Any, patch: dict) -> dict:
        if self.fail_writes:
            raise StoreUnavailableError("update failed")
        for row in self.rows:
            if row.get("id") == id:
                row.update(copy.deepcopy(patch))
                self.updates.append((id, patch))
                return copy.deepcopy(row)
        raise NotFound(f"No record matched {collection} id={id}")

    async def delete(self, collection: str, id: Any) -> None:
        if self.fail_writes:
            raise StoreUnavailableError("delete failed")
        before = len(self.rows)
        self.rows = [row for row in self.rows if row.get("id") != id]
        if len(self.rows) == before:
            raise NotFound(f"No record matched {collection} id={id}")

    async def upload_blob(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        await asyncio.sleep(0)
        if self.fail_uploads or any(path.startswith(prefix) for prefix in self.fail_upload_prefixes):
            raise self.upload_error(f"upload of {path} failed")
        self.blobs[(bucket, path)] = (data, content_type)
        return path

    def public_url(self, bucket: str, path: str) -> str:
        return f"https://cdn.test/storage/v1/object/public/{bucket}/{path}"

    async def delete_blob(self, bucket: str, path: str) -> bool:
        return self.blobs.pop((bucket, path), None) is not None

    async def invoke_email(self, payload: dict) -> dict:
        if self.fail_emails:
            raise StoreUnavailableError("function unavailable")
        self.emails.append(payload)
        return {"id": f"email-{len(self.emails)}"}


def encode_image(image: Image.Image, fmt: str = "PNG") -> bytes:
    buffer = BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


def to_data_uri(data: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


@pytest.fixture
def service() -> FakeDataService:
    return FakeDataService()


@pytest.fixture
def make_service() -> Callable[..., FakeDataService]:
    return FakeDataService


@pytest.fixture
def make_png() -> Callable[..., bytes]:
    def factory(width: int = 64, height: int = 48, noisy: bool = False) -> bytes:
        if noisy:
            image = Image.effect_noise((width, height), 80).convert("RGB")
        else:
            image = Image.new("RGB", (width, height), (200, 40, 40))
        return encode_image(image)

    return factory


@pytest.fixture
def make_data_uri(make_png: Callable[..., bytes]) -> Callable[..., str]:
    def factory(width: int = 64, height: int = 48, noisy: bool = False) -> str:
        return to_data_uri(make_png(width, height, noisy))

    return factory
