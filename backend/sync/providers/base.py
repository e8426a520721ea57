"""
Banking Data Provider Interface

Every banking provider (Akahu, Plaid, TrueLayer, ...) implements
BankDataProvider. The sync pipeline only talks to this interface, so adding
a provider means adding an implementation and registering it with the
factory, not editing the orchestrator.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAGES = 100


# ==================== DATA CLASSES ====================

@dataclass
class ConnectionStatus:
    is_valid: bool
    error: Optional[str] = None
    last_checked: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class AccountBalance:
    current: Decimal
    available: Optional[Decimal] = None


@dataclass
class ExternalAccount:
    """An account as reported by the provider."""
    external_account_id: str
    name: str
    type: str
    institution: str
    status: str
    account_number: Optional[str] = None
    balance: Optional[AccountBalance] = None
    metadata: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class ProviderCategory:
    """
    Provider taxonomy for a transaction: a category name and the optional
    group it belongs to (e.g. "Supermarkets and grocery stores" in "Food").
    """
    name: str
    group: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["ProviderCategory"]:
        """
        Parse provider category data. Accepts a plain name, a JSON string or
        a dict shaped like {"name": ..., "groups": {"personal_finance": {"name": ...}}}.
        """
        if raw is None:
            return None

        if isinstance(raw, str):
            text = raw.strip()
            if not text:
                return None
            if not text.startswith("{"):
                return cls(name=text)
            try:
                raw = json.loads(text)
            except ValueError:
                return cls(name=text)

        if not isinstance(raw, dict):
            return None

        name = (raw.get("name") or "").strip()
        if not name:
            return None

        groups = raw.get("groups") or {}
        group = (groups.get("personal_finance") or {}).get("name") or raw.get("group")
        return cls(name=name, group=group.strip() if isinstance(group, str) and group.strip() else None)


@dataclass
class ExternalTransactionData:
    """
    A transaction as reported by the provider, prior to any matching decision.

    amount is signed: positive = credit, negative = debit.
    """
    external_transaction_id: str
    date: date
    amount: Decimal
    description: str
    type: str
    merchant: Optional[str] = None
    category: Optional[ProviderCategory] = None
    balance: Optional[Decimal] = None
    raw_data: Optional[Dict[str, Any]] = None


@dataclass
class PaginatedTransactions:
    transactions: List[ExternalTransactionData]
    cursor: Optional[str] = None
    has_more: bool = False


@dataclass
class FetchTransactionsOptions:
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    cursor: Optional[str] = None


# ==================== INTERFACE ====================

class BankDataProvider(ABC):
    """
    Contract every banking provider implements.
    """

    max_pages: int = DEFAULT_MAX_PAGES

    @abstractmethod
    def get_provider_name(self) -> str:
        """Provider name for logging (e.g. "AKAHU_PERSONAL")."""

    @abstractmethod
    async def test_connection(self, connection_id: str) -> ConnectionStatus:
        """Check the connection works. Should report failures, not raise."""

    @abstractmethod
    async def fetch_accounts(self, connection_id: str) -> List[ExternalAccount]:
        """Fetch all accounts visible through the connection."""

    @abstractmethod
    async def fetch_transactions(
        self,
        connection_id: str,
        external_account_id: str,
        options: Optional[FetchTransactionsOptions] = None
    ) -> PaginatedTransactions:
        """Fetch one page of transactions for an account."""

    async def aclose(self):
        """Release transport resources held by the provider."""

    async def fetch_all_transactions(
        self,
        connection_id: str,
        external_account_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None
    ) -> List[ExternalTransactionData]:
        """
        Fetch every page of transactions in the window.

        Follows the cursor sequentially and stops after max_pages pages so a
        looping cursor cannot hang the run.

        Args:
            connection_id: Database ID of the BankConnection
            external_account_id: Provider's account ID
            start_date: Inclusive window start
            end_date: Window end

        Returns:
            All transactions fetched, in provider order
        """
        transactions: List[ExternalTransactionData] = []
        cursor: Optional[str] = None
        page_count = 0

        while True:
            page = await self.fetch_transactions(
                connection_id,
                external_account_id,
                FetchTransactionsOptions(start_date=start_date, end_date=end_date, cursor=cursor)
            )
            page_count += 1
            transactions.extend(page.transactions)

            if not page.has_more or not page.cursor:
                break

            if page_count >= self.max_pages:
                logger.warning(
                    f"[{self.get_provider_name()}] Reached max page limit ({self.max_pages}) "
                    f"for account {external_account_id}",
                    extra={"connection_id": connection_id, "page_count": page_count}
                )
                break

            cursor = page.cursor

        return transactions
