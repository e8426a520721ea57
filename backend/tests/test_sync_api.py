"""
API tests for the bank sync endpoints

Mounts the sync router on a bare FastAPI app backed by the SQLite test
database and a fake provider.

Run with: pytest tests/test_sync_api.py -v
"""

import asyncio
import pytest
import pytest_asyncio
from datetime import date, datetime
from functools import partial
from unittest.mock import AsyncMock, MagicMock

import httpx
from fastapi import FastAPI

from config import Settings
from database.connection import get_db
from sync.endpoints.sync_api import router
from sync.errors import UnsupportedProviderError
from sync.services.sync_orchestrator import SyncOrchestrator
from sync.workers.sync_runner import SyncRunner

from conftest import FakeProvider, make_account, make_transaction


class BlockingProvider(FakeProvider):
    """Holds the run at the connection test until released."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.release = asyncio.Event()

    async def test_connection(self, connection_id):
        await self.release.wait()
        return await super().test_connection(connection_id)


@pytest.fixture
def factory():
    factory = MagicMock()
    factory.create_provider = AsyncMock(return_value=FakeProvider(
        accounts=[make_account("acc_1")],
        transactions={"acc_1": [make_transaction("trans_1", date(2024, 1, 10), "-9.99", "Netflix")]}
    ))
    return factory


@pytest.fixture
def app(session_factory, factory):
    app = FastAPI()
    app.include_router(router, prefix="/api")
    app.state.sync_runner = SyncRunner(
        session_factory,
        factory=factory,
        orchestrator_class=partial(
            SyncOrchestrator,
            settings=Settings(ENVIRONMENT="test", SYNC_ACCOUNT_DELAY_SECONDS=0),
            sleep=AsyncMock()
        )
    )

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    return app


@pytest_asyncio.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


class TestTriggerEndpoint:

    @pytest.mark.asyncio
    async def test_trigger_then_poll(self, app, client, seed):
        connection = await seed.connection()
        account = await seed.account()
        await seed.linked_account(connection.id, "acc_1", account.id)

        response = await client.post("/api/sync/trigger", json={"connection_id": connection.id})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "IN_PROGRESS"

        await app.state.sync_runner.wait_for(body["sync_run_id"])

        status = await client.get(f"/api/sync/status/{body['sync_run_id']}")
        assert status.status_code == 200
        assert status.json()["status"] == "COMPLETED"
        assert status.json()["transactions_imported"] == 1

    @pytest.mark.asyncio
    async def test_trigger_while_running_conflicts(self, app, client, factory, seed):
        connection = await seed.connection()
        provider = BlockingProvider()
        factory.create_provider.return_value = provider

        first = await client.post("/api/sync/trigger", json={"connection_id": connection.id})
        second = await client.post("/api/sync/trigger", json={"connection_id": connection.id})
        provider.release.set()
        await app.state.sync_runner.shutdown()

        assert first.status_code == 200
        assert second.status_code == 409

    @pytest.mark.asyncio
    async def test_unsupported_provider(self, client, factory, seed):
        connection = await seed.connection()
        factory.create_provider.side_effect = UnsupportedProviderError("PLAID", "Plaid provider not yet implemented")

        response = await client.post("/api/sync/trigger", json={"connection_id": connection.id})

        assert response.status_code == 400
        assert response.json()["detail"] == "Plaid provider not yet implemented"

    @pytest.mark.asyncio
    async def test_unknown_run(self, client):
        response = await client.get("/api/sync/status/missing")

        assert response.status_code == 404


class TestHistoryAndReview:

    @pytest.mark.asyncio
    async def test_history(self, client, seed):
        connection = await seed.connection()
        await seed.sync_run(connection.id, datetime(2024, 1, 1, 9, 0))

        response = await client.get("/api/sync/history", params={"connection_id": connection.id})

        assert response.status_code == 200
        assert response.json()["total"] == 1

    @pytest.mark.asyncio
    async def test_review_flow(self, client, seed):
        connection = await seed.connection()
        account = await seed.account()
        linked = await seed.linked_account(connection.id, "acc_1", account.id)
        ext_tx = await seed.external_transaction(
            linked.id, "trans_1", date(2024, 1, 10), "-8.50", "COFFEE SUPREMO",
            needs_review=True, is_duplicate=True, duplicate_confidence=73
        )

        listing = await client.get("/api/sync/review", params={"connection_id": connection.id})
        assert [item["id"] for item in listing.json()["items"]] == [ext_tx.id]

        rejected = await client.post(f"/api/sync/review/{ext_tx.id}/reject")
        assert rejected.json() == {"success": True}

        listing = await client.get("/api/sync/review", params={"connection_id": connection.id})
        assert listing.json()["items"] == []

    @pytest.mark.asyncio
    async def test_review_missing_transaction(self, client):
        response = await client.post("/api/sync/review/missing/approve")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_link_missing_local_transaction(self, client, seed):
        connection = await seed.connection()
        linked = await seed.linked_account(connection.id, "acc_1", None)
        ext_tx = await seed.external_transaction(linked.id, "trans_1", date(2024, 1, 10), "-8.50", "COFFEE")

        response = await client.post(
            f"/api/sync/review/{ext_tx.id}/link",
            json={"local_transaction_id": "missing"}
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_providers(self, client):
        response = await client.get("/api/sync/providers")

        assert response.json() == {"providers": ["AKAHU_PERSONAL"]}
