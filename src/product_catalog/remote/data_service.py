from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence

import httpx

from ..errors import NotFound, RemoteValidationError, StoreUnavailableError

logger = logging.getLogger(__name__)

FILTER_OPS = ("eq", "in", "ilike")


@dataclass(frozen=True, slots=True)
class Filter:
    column: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in FILTER_OPS:
            raise ValueError(f"Unsupported filter operator: {self.op}")


@dataclass(frozen=True, slots=True)
class Order:
    column: str
    ascending: bool = True


class DataService:
    """Remote system of record: rows, blobs and side-effect functions."""

    async def query(
        self,
        collection: str,
        projection: str = "*",
        filters: Sequence[Filter] = (),
        order: Optional[Order] = None,
    ) -> List[dict]:
        raise NotImplementedError

    async def insert(self, collection: str, record: dict) -> dict:
        raise NotImplementedError

    async def update(self, collection: str, id: Any, patch: dict) -> dict:
        raise NotImplementedError

    async def delete(self, collection: str, id: Any) -> None:
        raise NotImplementedError

    async def upload_blob(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        raise NotImplementedError

    def public_url(self, bucket: str, path: str) -> str:
        raise NotImplementedError

    async def delete_blob(self, bucket: str, path: str) -> bool:
        """Delete a stored object; returns False when nothing was there."""
        raise NotImplementedError

    async def invoke_email(self, payload: dict) -> Any:
        raise NotImplementedError


def _format_filter(flt: Filter) -> str:
    if flt.op == "in":
        values = ",".join(str(v) for v in flt.value)
        return f"in.({values})"
    return f"{flt.op}.{flt.value}"


class RestDataService(DataService):
    """DataService over a PostgREST-style REST API with object storage and functions."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def __aenter__(self) -> "RestDataService":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def query(
        self,
        collection: str,
        projection: str = "*",
        filters: Sequence[Filter] = (),
        order: Optional[Order] = None,
    ) -> List[dict]:
        params: list[tuple[str, str]] = [("select", projection)]
        params.extend((flt.column, _format_filter(flt)) for flt in filters)
        if order is not None:
            direction = "asc" if order.ascending else "desc"
            params.append(("order", f"{order.column}.{direction}"))
        response = await self._request("GET", f"/rest/v1/{collection}", params=params)
        return list(self._json(response) or [])

    async def insert(self, collection: str, record: dict) -> dict:
        response = await self._request(
            "POST",
            f"/rest/v1/{collection}",
            json=[record],
            headers={"Prefer": "return=representation"},
        )
        return self._single(response, f"insert into {collection}")

    async def update(self, collection: str, id: Any, patch: dict) -> dict:
        response = await self._request(
            "PATCH",
            f"/rest/v1/{collection}",
            params=[("id", f"eq.{id}")],
            json=patch,
            headers={"Prefer": "return=representation"},
        )
        return self._single(response, f"{collection} id={id}")

    async def delete(self, collection: str, id: Any) -> None:
        response = await self._request(
            "DELETE",
            f"/rest/v1/{collection}",
            params=[("id", f"eq.{id}")],
            headers={"Prefer": "return=representation"},
        )
        self._single(response, f"{collection} id={id}")

    async def upload_blob(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        response = await self._request(
            "POST",
            f"/storage/v1/object/{bucket}/{path}",
            content=data,
            headers={
                "Content-Type": content_type,
                "Cache-Control": "max-age=31536000",
                "x-upsert": "true",
            },
        )
        payload = self._json(response) or {}
        key = payload.get("Key") if isinstance(payload, dict) else None
        if key and key.startswith(f"{bucket}/"):
            return key[len(bucket) + 1 :]
        return path

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{bucket}/{path}"

    async def delete_blob(self, bucket: str, path: str) -> bool:
        try:
            response = await self._request(
                "DELETE", f"/storage/v1/object/{bucket}", json={"prefixes": [path]}
            )
        except NotFound:
            return False
        return bool(self._json(response))

    async def invoke_email(self, payload: dict) -> Any:
        response = await self._request("POST", "/functions/v1/send-email", json=payload)
        return self._json(response) or {}

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        headers = self._build_headers(kwargs.pop("headers", None))
        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("HTTP error while calling %s %s: %s", method, url, exc)
            raise StoreUnavailableError(f"{method} {url} failed: {exc}") from exc

        if response.status_code >= 500:
            logger.warning("Remote service %s %s returned status %s", method, url, response.status_code)
            raise StoreUnavailableError(
                f"{method} {url} returned status {response.status_code}"
            )
        if response.status_code == 404:
            raise NotFound(self._error_message(response))
        if response.status_code >= 400:
            raise RemoteValidationError(self._error_message(response), response.status_code)
        return response

    def _build_headers(self, extra: Optional[dict[str, str]] = None) -> dict[str, str]:
        headers = {"apikey": self.api_key, "Authorization": f"Bearer {self.api_key}"}
        if extra:
            headers.update(extra)
        return headers

    def _json(self, response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except json.JSONDecodeError as exc:
            raise StoreUnavailableError(f"Unable to decode JSON from {response.url}") from exc

    def _single(self, response: httpx.Response, what: str) -> dict:
        rows = self._json(response)
        if isinstance(rows, dict):
            return rows
        rows = list(rows or [])
        if not rows:
            raise NotFound(f"No record matched {what}")
        return rows[0]

    def _error_message(self, response: httpx.Response) -> str:
        try:
            payload = response.json()
        except json.JSONDecodeError:
            return response.text or f"status {response.status_code}"
        if isinstance(payload, dict):
            return str(payload.get("message") or payload.get("error") or payload)
        return str(payload)
