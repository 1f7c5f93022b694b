from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from product_catalog.errors import NotFound, RemoteValidationError, StoreUnavailableError
from product_catalog.remote.data_service import Filter, Order, RestDataService
from product_catalog.remote.notifications import EmailNotifier

BASE_URL = "https://project.example.co"


def make_service(handler) -> RestDataService:
    client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return RestDataService(BASE_URL, "anon-key", client=client)


def run(service: RestDataService, coroutine_factory):
    async def scenario():
        async with service:
            return await coroutine_factory(service)

    return asyncio.run(scenario())


def test_query_encodes_projection_filters_and_order() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = request.url
        seen["headers"] = request.headers
        return httpx.Response(200, json=[{"id": 1, "name": "A"}])

    rows = run(
        make_service(handler),
        lambda service: service.query(
            "products",
            "id,name",
            [Filter("id", "in", [1, 2, 3]), Filter("name", "ilike", "*tea*")],
            Order("created_at", ascending=False),
        ),
    )

    assert rows == [{"id": 1, "name": "A"}]
    assert seen["url"].path == "/rest/v1/products"
    params = seen["url"].params
    assert params["select"] == "id,name"
    assert params["id"] == "in.(1,2,3)"
    assert params["name"] == "ilike.*tea*"
    assert params["order"] == "created_at.desc"
    assert seen["headers"]["apikey"] == "anon-key"
    assert seen["headers"]["authorization"] == "Bearer anon-key"


def test_filter_rejects_unknown_operator() -> None:
    with pytest.raises(ValueError):
        Filter("id", "gt", 1)


def test_insert_returns_saved_record() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "POST"
        assert request.headers["prefer"] == "return=representation"
        assert json.loads(request.content) == [{"name": "Tea"}]
        return httpx.Response(201, json=[{"id": 9, "name": "Tea"}])

    saved = run(make_service(handler), lambda service: service.insert("products", {"name": "Tea"}))

    assert saved == {"id": 9, "name": "Tea"}


def test_update_of_missing_record_raises_not_found() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["id"] == "eq.5"
        return httpx.Response(200, json=[])

    with pytest.raises(NotFound):
        run(make_service(handler), lambda service: service.update("products", 5, {"name": "x"}))


@pytest.mark.parametrize(
    "status, error",
    [(400, RemoteValidationError), (409, RemoteValidationError), (404, NotFound), (503, StoreUnavailableError)],
)
def test_error_statuses_map_to_catalog_errors(status, error) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"message": "duplicate key value"})

    with pytest.raises(error) as excinfo:
        run(make_service(handler), lambda service: service.delete("products", 1))
    if status < 500:
        assert "duplicate key value" in str(excinfo.value)


def test_validation_error_keeps_status_code() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, json={"message": "name is required"})

    with pytest.raises(RemoteValidationError) as excinfo:
        run(make_service(handler), lambda service: service.insert("products", {}))
    assert excinfo.value.status_code == 422


def test_transport_errors_become_store_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(StoreUnavailableError):
        run(make_service(handler), lambda service: service.query("products"))


def test_upload_blob_returns_storage_path() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/storage/v1/object/product-images/1/a.webp"
        assert request.headers["content-type"] == "image/webp"
        assert request.headers["x-upsert"] == "true"
        assert request.content == b"bytes"
        return httpx.Response(200, json={"Key": "product-images/1/a.webp"})

    service = make_service(handler)
    path = run(service, lambda s: s.upload_blob("product-images", "1/a.webp", b"bytes", "image/webp"))

    assert path == "1/a.webp"
    assert service.public_url("product-images", path) == (
        f"{BASE_URL}/storage/v1/object/public/product-images/1/a.webp"
    )


def test_delete_blob_reports_absence() -> None:
    responses = iter([httpx.Response(200, json=[{"name": "1/a.webp"}]), httpx.Response(200, json=[]), httpx.Response(404)])

    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content) == {"prefixes": ["1/a.webp"]}
        return next(responses)

    service = make_service(handler)

    async def scenario(s):
        return [await s.delete_blob("product-images", "1/a.webp") for _ in range(3)]

    assert run(service, scenario) == [True, False, False]


def test_email_notifier_reports_success_and_failure() -> None:
    payloads = []

    def handler(request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        payloads.append(payload)
        if payload["type"] == "welcome":
            return httpx.Response(200, json={"id": "email-1"})
        return httpx.Response(500, json={"error": "provider down"})

    service = make_service(handler)

    async def scenario(s):
        notifier = EmailNotifier(s)
        return (
            await notifier.send_welcome("buyer@example.com", "Asha"),
            await notifier.send_enquiry_update("buyer@example.com", "Asha", "Tea", 7, "quoted"),
        )

    assert run(service, scenario) == (True, False)
    assert payloads[0] == {"type": "welcome", "to": "buyer@example.com", "userName": "Asha"}
    assert payloads[1]["newStatus"] == "quoted"
    assert payloads[1]["enquiryId"] == 7


def test_email_notifier_accepts_non_object_responses() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=["queued"])

    service = make_service(handler)

    sent = run(service, lambda s: EmailNotifier(s).send_password_changed("buyer@example.com", "Asha"))

    assert sent is True
