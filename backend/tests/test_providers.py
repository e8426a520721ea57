"""
Tests for banking providers and the provider factory

Tests:
- Akahu request headers, response mapping and cursor handling
- Akahu error handling (HTTP errors, missing tokens)
- Page ceiling in fetch_all_transactions
- Provider category parsing
- Factory selection by stored provider type

Run with: pytest tests/test_providers.py -v
"""

import json
import pytest
from datetime import date, datetime, timezone
from decimal import Decimal

import httpx

from config import Settings
from database.sync_models import ProviderType
from sync.errors import ConnectionNotFoundError, ProviderError, UnsupportedProviderError
from sync.providers.akahu import AkahuPersonalProvider
from sync.providers.base import FetchTransactionsOptions, ProviderCategory
from sync.providers.factory import BankingProviderFactory

from conftest import FakeProvider, make_transaction


AKAHU_URL = "https://api.akahu.io/v1"

ACCOUNTS_BODY = {
    "success": True,
    "items": [
        {
            "_id": "acc_1",
            "name": "Everyday",
            "type": "CHECKING",
            "status": "ACTIVE",
            "formatted_account": "12-3456-7890123-00",
            "connection": {"name": "ANZ"},
            "balance": {"current": 1234.56, "available": 1200.0},
        },
        {
            "_id": "acc_2",
            "name": "KiwiSaver",
            "type": "KIWISAVER",
            "connection": {"name": "Simplicity"},
        },
    ],
}


def _transaction_item(tx_id, amount=-45.0, **extra):
    item = {
        "_id": tx_id,
        "date": "2024-01-09T11:00:00.000Z",
        "amount": amount,
        "description": "PAK N SAVE 123",
        "type": "EFTPOS",
        "balance": 955.0,
    }
    item.update(extra)
    return item


def _provider(db, handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=AKAHU_URL)
    return AkahuPersonalProvider(db, http_client=client, **kwargs)


class TestAkahuProvider:

    @pytest.mark.asyncio
    async def test_fetch_accounts_sends_tokens_and_maps(self, db, seed):
        connection = await seed.connection(app_token="app_abc", user_token="user_xyz")
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=ACCOUNTS_BODY)

        accounts = await _provider(db, handler).fetch_accounts(connection.id)

        assert seen[0].url.path == "/v1/accounts"
        assert seen[0].headers["X-Akahu-Id"] == "app_abc"
        assert seen[0].headers["Authorization"] == "Bearer user_xyz"

        assert [a.external_account_id for a in accounts] == ["acc_1", "acc_2"]
        everyday = accounts[0]
        assert everyday.institution == "ANZ"
        assert everyday.account_number == "12-3456-7890123-00"
        assert everyday.balance.current == Decimal("1234.56")
        assert everyday.balance.available == Decimal("1200.0")
        assert accounts[1].balance is None
        assert accounts[1].status == "ACTIVE"

    @pytest.mark.asyncio
    async def test_fetch_transactions_maps_page(self, db, seed):
        connection = await seed.connection()
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={
                "success": True,
                "items": [_transaction_item(
                    "trans_1",
                    merchant={"name": "Pak'nSave"},
                    category={"name": "Supermarkets and grocery stores", "groups": {"personal_finance": {"name": "Food"}}}
                )],
                "cursor": {"next": "page_2"},
            })

        start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        page = await _provider(db, handler).fetch_transactions(
            connection.id, "acc_1", FetchTransactionsOptions(start_date=start, cursor="page_1")
        )

        assert seen[0].url.path == "/v1/accounts/acc_1/transactions"
        assert seen[0].url.params["cursor"] == "page_1"
        assert seen[0].url.params["start"] == start.isoformat()
        assert "end" not in seen[0].url.params

        assert page.has_more is True
        assert page.cursor == "page_2"
        tx = page.transactions[0]
        assert tx.external_transaction_id == "trans_1"
        assert tx.date == date(2024, 1, 10)
        assert tx.amount == Decimal("-45.0")
        assert tx.merchant == "Pak'nSave"
        assert tx.category == ProviderCategory(name="Supermarkets and grocery stores", group="Food")
        assert tx.balance == Decimal("955.0")
        assert tx.raw_data["_id"] == "trans_1"

    @pytest.mark.asyncio
    async def test_fetch_all_follows_cursor(self, db, seed):
        connection = await seed.connection()

        def handler(request):
            if request.url.params.get("cursor") == "next_1":
                return httpx.Response(200, json={"success": True, "items": [_transaction_item("trans_2")], "cursor": {"next": None}})
            return httpx.Response(200, json={"success": True, "items": [_transaction_item("trans_1")], "cursor": {"next": "next_1"}})

        transactions = await _provider(db, handler).fetch_all_transactions(connection.id, "acc_1")

        assert [t.external_transaction_id for t in transactions] == ["trans_1", "trans_2"]

    @pytest.mark.asyncio
    async def test_http_error_raises_provider_error(self, db, seed):
        connection = await seed.connection()

        def handler(request):
            return httpx.Response(401, json={"success": False, "message": "Unauthorized"})

        with pytest.raises(ProviderError) as exc_info:
            await _provider(db, handler).fetch_accounts(connection.id)

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_unsuccessful_body_raises_provider_error(self, db, seed):
        connection = await seed.connection()

        def handler(request):
            return httpx.Response(200, json={"success": False, "message": "Token expired"})

        with pytest.raises(ProviderError, match="Token expired"):
            await _provider(db, handler).fetch_accounts(connection.id)

    @pytest.mark.asyncio
    async def test_transport_error_raises_provider_error(self, db, seed):
        connection = await seed.connection()

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ProviderError, match="Akahu request failed"):
            await _provider(db, handler).fetch_accounts(connection.id)

    @pytest.mark.asyncio
    async def test_connection_test_reports_invalid(self, db, seed):
        connection = await seed.connection()

        def handler(request):
            return httpx.Response(401, text="Unauthorized")

        status = await _provider(db, handler).test_connection(connection.id)

        assert status.is_valid is False
        assert "401" in status.error

    @pytest.mark.asyncio
    async def test_connection_test_reports_valid(self, db, seed):
        connection = await seed.connection()

        def handler(request):
            return httpx.Response(200, json=ACCOUNTS_BODY)

        status = await _provider(db, handler).test_connection(connection.id)

        assert status.is_valid is True
        assert status.error is None

    @pytest.mark.asyncio
    async def test_missing_user_token(self, db, seed):
        connection = await seed.connection(user_token=None)

        def handler(request):
            return httpx.Response(200, json=ACCOUNTS_BODY)

        with pytest.raises(ProviderError, match="User token not configured"):
            await _provider(db, handler).fetch_accounts(connection.id)

    @pytest.mark.asyncio
    async def test_unknown_connection(self, db):
        def handler(request):
            return httpx.Response(200, json=ACCOUNTS_BODY)

        with pytest.raises(ConnectionNotFoundError):
            await _provider(db, handler).fetch_accounts("missing")

    @pytest.mark.asyncio
    async def test_dates_follow_configured_zone(self, db, seed):
        connection = await seed.connection()
        items = [
            _transaction_item("trans_nz_midnight", date="2024-01-09T11:00:00.000Z"),
            _transaction_item("trans_winter", date="2024-06-30T12:00:00.000Z"),
        ]

        def handler(request):
            return httpx.Response(200, json={"success": True, "items": items})

        nz_page = await _provider(db, handler).fetch_transactions(connection.id, "acc_1")
        utc_page = await _provider(db, handler, timezone="UTC").fetch_transactions(connection.id, "acc_1")

        # NZDT is UTC+13, NZST is UTC+12
        assert [t.date for t in nz_page.transactions] == [date(2024, 1, 10), date(2024, 7, 1)]
        assert [t.date for t in utc_page.transactions] == [date(2024, 1, 9), date(2024, 6, 30)]

    @pytest.mark.asyncio
    async def test_malformed_category_keeps_page(self, db, seed):
        connection = await seed.connection()

        def handler(request):
            return httpx.Response(200, json={
                "success": True,
                "items": [
                    _transaction_item("trans_1", category="{not json"),
                    _transaction_item("trans_2", merchant={"name": "Z Energy", "category": {"name": "Fuel"}}),
                ],
            })

        page = await _provider(db, handler).fetch_transactions(connection.id, "acc_1")

        assert [t.external_transaction_id for t in page.transactions] == ["trans_1", "trans_2"]
        assert page.transactions[0].category == ProviderCategory(name="{not json")
        assert page.transactions[1].category == ProviderCategory(name="Fuel")


class TestFetchAllTransactions:

    @pytest.mark.asyncio
    async def test_stops_at_max_pages(self):
        provider = FakeProvider(
            transactions={"acc_1": [
                make_transaction(f"trans_{i}", date(2024, 1, 10), "-1.00", "Parking") for i in range(5)
            ]},
            page_size=1
        )
        provider.max_pages = 2

        transactions = await provider.fetch_all_transactions("conn-1", "acc_1")

        assert len(transactions) == 2
        assert len(provider.fetch_calls) == 2

    @pytest.mark.asyncio
    async def test_passes_window_and_cursor(self):
        provider = FakeProvider(
            transactions={"acc_1": [
                make_transaction(f"trans_{i}", date(2024, 1, 10), "-1.00", "Parking") for i in range(3)
            ]},
            page_size=2
        )
        start = datetime(2024, 1, 1, tzinfo=timezone.utc)

        transactions = await provider.fetch_all_transactions("conn-1", "acc_1", start_date=start)

        assert len(transactions) == 3
        assert [call.cursor for call in provider.fetch_calls] == [None, "2"]
        assert all(call.start_date == start for call in provider.fetch_calls)


class TestProviderCategory:

    def test_none(self):
        assert ProviderCategory.from_raw(None) is None

    def test_plain_name(self):
        assert ProviderCategory.from_raw("Groceries") == ProviderCategory(name="Groceries")

    def test_blank(self):
        assert ProviderCategory.from_raw("   ") is None

    def test_dict_with_group(self):
        raw = {"name": "Cafes and restaurants", "groups": {"personal_finance": {"name": "Lifestyle"}}}

        assert ProviderCategory.from_raw(raw) == ProviderCategory(name="Cafes and restaurants", group="Lifestyle")

    def test_json_string(self):
        raw = json.dumps({"name": "Fuel", "group": "Transport"})

        assert ProviderCategory.from_raw(raw) == ProviderCategory(name="Fuel", group="Transport")

    def test_dict_without_name(self):
        assert ProviderCategory.from_raw({"groups": {}}) is None

    def test_malformed_json_string(self):
        assert ProviderCategory.from_raw('{"name": "Fuel"') == ProviderCategory(name='{"name": "Fuel"')


class TestProviderFactory:

    @pytest.fixture
    def factory(self):
        return BankingProviderFactory(Settings(ENVIRONMENT="test"))

    @pytest.mark.asyncio
    async def test_creates_akahu_personal(self, factory, db, seed):
        connection = await seed.connection(provider=ProviderType.AKAHU_PERSONAL)

        provider = await factory.create_provider(db, connection.id)

        assert isinstance(provider, AkahuPersonalProvider)
        assert provider.get_provider_name() == "AKAHU_PERSONAL"
        assert provider.tz.key == "Pacific/Auckland"
        await provider.aclose()

    @pytest.mark.asyncio
    async def test_unsupported_provider(self, factory, db, seed):
        connection = await seed.connection(provider=ProviderType.PLAID)

        with pytest.raises(UnsupportedProviderError, match="Plaid provider not yet implemented"):
            await factory.create_provider(db, connection.id)

    @pytest.mark.asyncio
    async def test_missing_connection(self, factory, db):
        with pytest.raises(ConnectionNotFoundError):
            await factory.create_provider(db, "missing")

    def test_supported_providers(self, factory):
        assert factory.get_supported_providers() == ["AKAHU_PERSONAL"]
        assert factory.is_provider_supported("AKAHU_PERSONAL") is True
        assert factory.is_provider_supported("PLAID") is False

    @pytest.mark.asyncio
    async def test_register_builder(self, factory, db, seed):
        connection = await seed.connection(provider=ProviderType.PLAID)
        fake = FakeProvider()
        factory.register(ProviderType.PLAID, lambda session, settings: fake)

        assert await factory.create_provider(db, connection.id) is fake
