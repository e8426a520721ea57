"""
Shared fixtures for the bank sync tests.

Integration tests run against a throwaway SQLite database (aiosqlite) with
the real models; providers are replaced by FakeProvider.
"""

import os
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
import pytest_asyncio

from database.connection import Base, build_engine, build_session_factory
from database.sync_models import (
    AccountDB,
    BankConnectionDB,
    CategoryDB,
    ExternalTransactionDB,
    LedgerTransactionDB,
    LinkedAccountDB,
    ProviderType,
    SyncRunDB,
    SyncStatus,
    SyncType,
    TransactionStatus,
    TransactionType,
    generate_uuid,
)
from sync.errors import ProviderError
from sync.providers.base import (
    AccountBalance,
    BankDataProvider,
    ConnectionStatus,
    ExternalAccount,
    ExternalTransactionData,
    FetchTransactionsOptions,
    PaginatedTransactions,
)


# ==================== FAKE PROVIDER ====================

class FakeProvider(BankDataProvider):
    """
    In-memory provider. Transactions are served in pages of page_size with
    the next index as the cursor.
    """

    def __init__(
        self,
        accounts: Optional[List[ExternalAccount]] = None,
        transactions: Optional[Dict[str, List[ExternalTransactionData]]] = None,
        valid: bool = True,
        error: Optional[str] = None,
        failing_accounts: Optional[List[str]] = None,
        page_size: int = 50
    ):
        self.accounts = accounts or []
        self.transactions = transactions or {}
        self.valid = valid
        self.error = error
        self.failing_accounts = set(failing_accounts or [])
        self.page_size = page_size
        self.fetch_calls: List[FetchTransactionsOptions] = []
        self.closed = False

    def get_provider_name(self) -> str:
        return "FAKE"

    async def test_connection(self, connection_id: str) -> ConnectionStatus:
        return ConnectionStatus(is_valid=self.valid, error=self.error)

    async def fetch_accounts(self, connection_id: str) -> List[ExternalAccount]:
        return list(self.accounts)

    async def fetch_transactions(
        self,
        connection_id: str,
        external_account_id: str,
        options: Optional[FetchTransactionsOptions] = None
    ) -> PaginatedTransactions:
        options = options or FetchTransactionsOptions()
        self.fetch_calls.append(options)

        if external_account_id in self.failing_accounts:
            raise ProviderError("Provider unavailable", status_code=503)

        items = self.transactions.get(external_account_id, [])
        start = int(options.cursor or 0)
        page = items[start:start + self.page_size]
        next_index = start + self.page_size
        has_more = next_index < len(items)

        return PaginatedTransactions(
            transactions=page,
            cursor=str(next_index) if has_more else None,
            has_more=has_more
        )

    async def aclose(self):
        self.closed = True


def make_account(external_account_id: str, name: str = "Everyday", balance: Optional[str] = "1000.00") -> ExternalAccount:
    return ExternalAccount(
        external_account_id=external_account_id,
        name=name,
        type="CHECKING",
        institution="Test Bank",
        status="ACTIVE",
        account_number="12-3456-7890123-00",
        balance=AccountBalance(current=Decimal(balance)) if balance is not None else None,
    )


def make_transaction(
    external_id: str,
    tx_date: date,
    amount: str,
    description: str,
    **kwargs
) -> ExternalTransactionData:
    return ExternalTransactionData(
        external_transaction_id=external_id,
        date=tx_date,
        amount=Decimal(amount),
        description=description,
        type=kwargs.pop("type", "EFTPOS"),
        **kwargs
    )


# ==================== DATABASE ====================

@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'bank_sync_test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


class Seeder:
    """Creates committed rows for a test."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def _save(self, row):
        async with self.session_factory() as session:
            session.add(row)
            await session.commit()
        return row

    async def connection(self, user_id: str = "user-1", provider: ProviderType = ProviderType.AKAHU_PERSONAL, **kwargs) -> BankConnectionDB:
        return await self._save(BankConnectionDB(
            id=generate_uuid(),
            user_id=user_id,
            provider=provider,
            app_token=kwargs.pop("app_token", "app_token_test"),
            user_token=kwargs.pop("user_token", "user_token_test"),
            **kwargs
        ))

    async def account(self, user_id: str = "user-1", name: str = "Everyday", initial_balance: str = "0.00") -> AccountDB:
        return await self._save(AccountDB(
            id=generate_uuid(),
            user_id=user_id,
            name=name,
            initial_balance=Decimal(initial_balance),
        ))

    async def linked_account(
        self,
        connection_id: str,
        external_account_id: str,
        local_account_id: Optional[str],
        external_name: str = "Everyday",
        last_sync: Optional[datetime] = None,
        sync_enabled: bool = True
    ) -> LinkedAccountDB:
        return await self._save(LinkedAccountDB(
            id=generate_uuid(),
            connection_id=connection_id,
            external_account_id=external_account_id,
            external_name=external_name,
            external_type="CHECKING",
            institution="Test Bank",
            local_account_id=local_account_id,
            last_sync=last_sync,
            sync_enabled=sync_enabled,
        ))

    async def ledger_transaction(
        self,
        account_id: str,
        tx_date: date,
        amount: str,
        description: str,
        user_id: str = "user-1",
        is_from_bank: bool = False
    ) -> LedgerTransactionDB:
        value = Decimal(amount)
        return await self._save(LedgerTransactionDB(
            id=generate_uuid(),
            user_id=user_id,
            account_id=account_id,
            type=TransactionType.INCOME if value >= 0 else TransactionType.EXPENSE,
            amount=value,
            date=tx_date,
            description=description,
            status=TransactionStatus.PENDING,
            is_from_bank=is_from_bank,
        ))

    async def external_transaction(
        self,
        linked_account_id: str,
        external_id: str,
        tx_date: date,
        amount: str,
        description: str,
        **kwargs
    ) -> ExternalTransactionDB:
        return await self._save(ExternalTransactionDB(
            id=generate_uuid(),
            linked_account_id=linked_account_id,
            external_transaction_id=external_id,
            date=tx_date,
            amount=Decimal(amount),
            description=description,
            type=kwargs.pop("type", "EFTPOS"),
            **kwargs
        ))

    async def sync_run(self, connection_id: str, started_at: datetime, status: SyncStatus = SyncStatus.COMPLETED) -> SyncRunDB:
        return await self._save(SyncRunDB(
            id=generate_uuid(),
            connection_id=connection_id,
            type=SyncType.INCREMENTAL,
            status=status,
            started_at=started_at,
        ))

    async def category(self, name: str, parent_id: Optional[str] = None, user_id: Optional[str] = None) -> CategoryDB:
        return await self._save(CategoryDB(
            id=generate_uuid(),
            name=name,
            parent_id=parent_id,
            user_id=user_id,
        ))


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)
