from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from sellersync.domain.exceptions import ConnectivityLost, ValidationError
from sellersync.domain.models import (
    DateRange,
    PageResult,
    TransactionDirection,
    TransactionFilters,
    TransactionStatus,
)
from sellersync.infra.cache.query_cache import QueryCache
from sellersync.usecases.transaction_query import TransactionQueryEngine

MAY_1 = datetime(2024, 5, 1, tzinfo=timezone.utc)
MAY_6 = datetime(2024, 5, 6, tzinfo=timezone.utc)


def make_engine(remote, **kwargs):
    return TransactionQueryEngine(remote, QueryCache(), **kwargs)


def mixed_transactions(make_transaction):
    return [
        make_transaction("t1", amount=120.0, order_id="ORD-77"),
        make_transaction("t2", amount=-50.0, days=1, description="Payout"),
        make_transaction("t3", amount=30.0, status=TransactionStatus.PENDING, days=2),
        make_transaction("t4", amount=15.0, days=10),
        make_transaction("t5", amount=40.0, days=3, description="Refund adjustment"),
    ]


def combined_filters():
    return TransactionFilters(
        direction=TransactionDirection.CREDIT,
        status=TransactionStatus.COMPLETED,
        date_range=DateRange(start=MAY_1, end=MAY_6),
        search_term="ORD",
    )


def ignore_server_filters(remote):
    original = remote.list_transactions

    async def list_transactions(filters, page, limit):
        return await original(None, page, limit)

    remote.list_transactions = list_transactions


def test_combined_filters_are_applied_with_and(remote, make_transaction):
    remote.transactions = mixed_transactions(make_transaction)

    async def scenario():
        page = await make_engine(remote).fetch_page(combined_filters())
        assert [r.id for r in page.records] == ["t1"]

    asyncio.run(scenario())


def test_records_outside_filters_are_dropped_locally(remote, make_transaction):
    remote.transactions = mixed_transactions(make_transaction)
    ignore_server_filters(remote)

    async def scenario():
        filters = combined_filters()
        page = await make_engine(remote).fetch_page(filters)
        assert [r.id for r in page.records] == ["t1"]
        assert all(filters.matches(r) for r in page.records)

    asyncio.run(scenario())


def test_search_matches_references_case_insensitively(remote, make_transaction):
    remote.transactions = mixed_transactions(make_transaction)

    async def scenario():
        page = await make_engine(remote).fetch_page(TransactionFilters(search_term="ord-77"))
        assert [r.id for r in page.records] == ["t1"]

    asyncio.run(scenario())


def test_page_beyond_last_returns_empty_records_with_metadata(remote, make_transaction):
    remote.transactions = [make_transaction(f"t{i}") for i in range(45)]

    async def scenario():
        page = await make_engine(remote).fetch_page(page=5, limit=20)
        assert page.records == ()
        assert (page.page, page.limit, page.total, page.total_pages) == (5, 20, 45, 3)

    asyncio.run(scenario())


def test_records_returned_beyond_total_pages_are_discarded(remote, make_transaction):
    records = [make_transaction("t1"), make_transaction("t2")]

    async def list_transactions(filters, page, limit):
        return PageResult.build(records, page=page, limit=limit, total=2)

    remote.list_transactions = list_transactions

    async def scenario():
        page = await make_engine(remote).fetch_page(page=4, limit=20)
        assert page.records == ()
        assert page.total_pages == 1

    asyncio.run(scenario())


@pytest.mark.parametrize("page,limit", [(0, 20), (1, 0), (-3, 10)])
def test_invalid_pagination_is_rejected(remote, page, limit):
    async def scenario():
        with pytest.raises(ValidationError):
            await make_engine(remote).fetch_page(page=page, limit=limit)

    asyncio.run(scenario())
    assert remote.count("list_transactions") == 0


def test_default_limit_is_used(remote, make_transaction):
    remote.transactions = [make_transaction(f"t{i}") for i in range(30)]

    async def scenario():
        page = await make_engine(remote, default_limit=20).fetch_page()
        assert len(page.records) == 20
        assert page.total_pages == 2

    asyncio.run(scenario())


def test_pages_are_cached_until_invalidated(remote, make_transaction):
    remote.transactions = [make_transaction("t1")]

    async def scenario():
        engine = make_engine(remote)
        await engine.fetch_page()
        await engine.fetch_page()
        assert remote.count("list_transactions") == 1

        engine.invalidate()
        await engine.fetch_page()
        assert remote.count("list_transactions") == 2

    asyncio.run(scenario())


def test_offline_page_is_empty(remote, make_transaction):
    remote.transactions = [make_transaction("t1")]
    remote.fail["list_transactions"] = ConnectivityLost()

    async def scenario():
        page = await make_engine(remote).fetch_page(page=2, limit=10)
        assert page.records == ()
        assert (page.page, page.limit, page.total) == (2, 10, 0)

    asyncio.run(scenario())


def test_observer_reports_loading_then_data(remote, make_transaction):
    remote.transactions = [make_transaction("t1")]

    async def scenario():
        engine = make_engine(remote)
        states = []
        observer = engine.observe_page(on_change=states.append)
        assert observer.state.is_loading

        await engine.cache.wait_idle()
        assert [r.id for r in observer.data.records] == ["t1"]
        assert not observer.state.is_loading
        assert not states[-1].is_fetching
        observer.close()

    asyncio.run(scenario())


def test_naive_date_range_bounds_are_treated_as_utc(remote, make_transaction):
    remote.transactions = [make_transaction("t1"), make_transaction("t2", days=-200)]

    async def scenario():
        date_range = DateRange(start=datetime(2024, 1, 1), end=datetime(2024, 12, 31))
        assert date_range.start.tzinfo == timezone.utc
        assert date_range.end == datetime(2024, 12, 31, tzinfo=timezone.utc)

        page = await make_engine(remote).fetch_page(TransactionFilters(date_range=date_range))
        assert [r.id for r in page.records] == ["t1"]

    asyncio.run(scenario())


def test_dropped_records_are_removed_from_total(remote, make_transaction):
    remote.transactions = mixed_transactions(make_transaction)
    ignore_server_filters(remote)

    async def scenario():
        page = await make_engine(remote).fetch_page(TransactionFilters(direction=TransactionDirection.DEBIT))
        assert [r.id for r in page.records] == ["t2"]
        assert (page.total, page.total_pages) == (1, 1)

    asyncio.run(scenario())
