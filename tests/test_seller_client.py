from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from sellersync.domain.error_codes import ErrorCode
from sellersync.domain.exceptions import ConnectivityLost, NotFound, ServerError, ValidationError
from sellersync.domain.models import (
    NotificationFilters,
    NotificationKind,
    Pagination,
    TransactionDirection,
    TransactionFilters,
)
from sellersync.infra.cache.query_cache import QueryCache
from sellersync.infra.http.remote_client import HttpRemoteResourceClient
from sellersync.infra.http.seller_client import SellerApiClient
from sellersync.usecases.transaction_query import TransactionQueryEngine


def make_client(transport: httpx.AsyncBaseTransport, *, retries: int = 0) -> SellerApiClient:
    return SellerApiClient(
        baseUrl="https://seller.local/api",
        token="secret-token",
        retries=retries,
        retryBackoffSeconds=0,
        transport=transport,
    )


def run(client: SellerApiClient, coro_factory):
    async def scenario():
        try:
            return await coro_factory()
        finally:
            await client.aclose()

    return asyncio.run(scenario())


def test_get_sends_bearer_token_and_drops_empty_params():
    seen = {}

    def responder(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("Authorization")
        seen["params"] = dict(request.url.params)
        seen["path"] = request.url.path
        return httpx.Response(200, json={"ok": True})

    client = make_client(httpx.MockTransport(responder))

    data = run(client, lambda: client.getJson("/notifications", params={"page": 1, "type": None}))

    assert data == {"ok": True}
    assert seen["auth"] == "Bearer secret-token"
    assert seen["params"] == {"page": "1"}
    assert seen["path"] == "/api/notifications"


def test_get_retries_on_503_and_succeeds():
    calls = {"count": 0}

    def responder(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(503, text="busy")
        return httpx.Response(200, json={"ok": True})

    client = make_client(httpx.MockTransport(responder), retries=2)

    assert run(client, lambda: client.getJson("/notifications")) == {"ok": True}
    assert client.getRetryAttempts() == 1


def test_mutations_are_not_retried():
    calls = {"count": 0}

    def responder(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(503, text="busy")

    client = make_client(httpx.MockTransport(responder), retries=3)

    with pytest.raises(ServerError) as exc:
        run(client, lambda: client.requestJson("PATCH", "/notifications/read-all"))

    assert exc.value.status == 503
    assert exc.value.retryable
    assert calls["count"] == 1


def test_network_error_becomes_connectivity_lost_after_retries():
    calls = {"count": 0}

    def responder(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        raise httpx.ConnectError("boom", request=request)

    client = make_client(httpx.MockTransport(responder), retries=1)

    with pytest.raises(ConnectivityLost) as exc:
        run(client, lambda: client.getJson("/notifications/unread"))

    assert exc.value.code == ErrorCode.CONNECTIVITY_LOST.value
    assert calls["count"] == 2


@pytest.mark.parametrize(
    "status,expected",
    [(404, NotFound), (400, ValidationError), (422, ValidationError), (401, ServerError), (500, ServerError)],
)
def test_status_mapping(status, expected):
    def responder(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"message": "rejected"})

    client = make_client(httpx.MockTransport(responder))

    with pytest.raises(expected) as exc:
        run(client, lambda: client.getJson("/seller/me/transactions/abc"))

    assert exc.value.status_code == status


def test_validation_error_keeps_server_message():
    def responder(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, json={"message": "limit must be positive"})

    client = make_client(httpx.MockTransport(responder))

    with pytest.raises(ValidationError) as exc:
        run(client, lambda: client.getJson("/notifications"))

    assert exc.value.message == "limit must be positive"


def test_invalid_json_is_server_error():
    def responder(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>")

    client = make_client(httpx.MockTransport(responder))

    with pytest.raises(ServerError) as exc:
        run(client, lambda: client.getJson("/notifications"))

    assert exc.value.code == ErrorCode.INVALID_JSON.value


def test_empty_body_returns_none():
    client = make_client(httpx.MockTransport(lambda request: httpx.Response(204)))

    assert run(client, lambda: client.requestJson("DELETE", "/notifications/n1")) is None


def test_notification_list_request_and_mapping():
    seen = {}

    def responder(request: httpx.Request) -> httpx.Response:
        seen["params"] = dict(request.url.params)
        return httpx.Response(
            200,
            json={
                "status": "success",
                "data": {
                    "notifications": [
                        {
                            "_id": "n1",
                            "type": "payout",
                            "title": "Payout sent",
                            "message": "Your payout is on its way",
                            "read": False,
                            "createdAt": "2024-05-01T12:00:00.000Z",
                            "actionUrl": "/seller/payouts/p1",
                            "metadata": {"payoutId": "p1"},
                        }
                    ],
                    "pagination": {"total": 41, "page": 2, "limit": 20},
                },
            },
        )

    client = make_client(httpx.MockTransport(responder))
    remote = HttpRemoteResourceClient(client)

    page = run(
        client,
        lambda: remote.list_notifications(
            NotificationFilters(read=False, kind=NotificationKind.PAYOUT),
            Pagination(page=2, limit=20),
        ),
    )

    assert seen["params"] == {"page": "2", "limit": "20", "type": "payout", "read": "false"}
    assert (page.page, page.limit, page.total, page.total_pages) == (2, 20, 41, 3)
    record = page.records[0]
    assert record.id == "n1"
    assert record.kind is NotificationKind.PAYOUT
    assert record.action_target == "/seller/payouts/p1"
    assert record.created_at.year == 2024


def test_mutation_paths():
    seen = []

    def responder(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path))
        return httpx.Response(200, json={"message": "ok"})

    client = make_client(httpx.MockTransport(responder))
    remote = HttpRemoteResourceClient(client)

    async def calls():
        await remote.mark_notification_read("n/1")
        await remote.mark_all_notifications_read()
        ack = await remote.delete_notification("n2")
        return ack

    ack = run(client, calls)

    assert ack.ok
    assert ack.message == "ok"
    assert [method for method, _ in seen] == ["PATCH", "PATCH", "DELETE"]
    assert seen[1][1] == "/api/notifications/read-all"
    assert seen[2][1] == "/api/notifications/n2"


def test_unread_count_mapping():
    client = make_client(httpx.MockTransport(lambda request: httpx.Response(200, json={"data": {"unreadCount": 3}})))
    remote = HttpRemoteResourceClient(client)

    assert run(client, remote.get_unread_aggregate).count == 3


def test_transaction_filters_are_sent_as_query_params():
    seen = {}

    def responder(request: httpx.Request) -> httpx.Response:
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json={"data": {"transactions": [], "total": 0}})

    client = make_client(httpx.MockTransport(responder))
    remote = HttpRemoteResourceClient(client)

    run(
        client,
        lambda: remote.list_transactions(
            TransactionFilters(direction=TransactionDirection.DEBIT, search_term="payout"),
            1,
            20,
        ),
    )

    assert seen["params"] == {"page": "1", "limit": "20", "type": "debit", "search": "payout"}


def test_missing_direct_endpoint_falls_back_to_list_scan():
    def responder(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/transactions/tx-2"):
            return httpx.Response(404, text="Cannot GET")
        body = {
            "data": {
                "transactions": [
                    {"_id": "tx-1", "amount": 10, "createdAt": "2024-05-01T00:00:00Z"},
                    {"_id": "tx-2", "amount": -4.5, "status": "pending", "payoutRequest": {"_id": "w-9"}},
                ],
                "total": 2,
            }
        }
        return httpx.Response(200, content=json.dumps(body).encode("utf-8"))

    client = make_client(httpx.MockTransport(responder))
    engine = TransactionQueryEngine(HttpRemoteResourceClient(client), QueryCache())

    record = run(client, lambda: engine.resolve_by_id("tx-2"))

    assert record.id == "tx-2"
    assert record.direction is TransactionDirection.DEBIT
    assert record.references.withdrawal_id == "w-9"


def test_scan_finds_target_past_record_with_unknown_status():
    def responder(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/transactions/target"):
            return httpx.Response(404, text="Cannot GET")
        body = {
            "data": {
                "transactions": [
                    {"_id": "x", "amount": 1, "status": "reversed"},
                    {"_id": "target", "amount": 7, "status": "completed"},
                ]
            }
        }
        return httpx.Response(200, json=body)

    client = make_client(httpx.MockTransport(responder))
    engine = TransactionQueryEngine(HttpRemoteResourceClient(client), QueryCache())

    record = run(client, lambda: engine.resolve_by_id("target"))

    assert record.id == "target"
    assert record.amount == 7
