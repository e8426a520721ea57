"""
Akahu Personal App Provider

Implements BankDataProvider for the Akahu personal-app tier: an app token
(X-Akahu-Id) plus a user token (bearer) per connection, no OAuth.
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from database.sync_models import BankConnectionDB, ProviderType
from sync.errors import ConnectionNotFoundError, ProviderError
from sync.providers.base import (
    AccountBalance,
    BankDataProvider,
    ConnectionStatus,
    ExternalAccount,
    ExternalTransactionData,
    FetchTransactionsOptions,
    PaginatedTransactions,
    ProviderCategory,
)

logger = logging.getLogger(__name__)

DEFAULT_AKAHU_URL = "https://api.akahu.io/v1"
DEFAULT_AKAHU_TIMEZONE = "Pacific/Auckland"


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


def _parse_date(value: str, tz: ZoneInfo) -> date:
    """
    Akahu dates are UTC instants of local midnight ("2024-01-09T11:00:00.000Z"
    is 10 Jan in Auckland); the calendar date is taken in the bank's zone.
    """
    instant = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if instant.tzinfo is None:
        return instant.date()
    return instant.astimezone(tz).date()


class AkahuPersonalProvider(BankDataProvider):
    """
    Akahu adapter over httpx.

    Args:
        db: Session used to read connection tokens
        base_url: Akahu API base URL
        timeout: Per-request timeout in seconds
        max_pages: Page ceiling for fetch_all_transactions
        timezone: IANA zone that posting dates are reported in
        http_client: Pre-built client (tests inject one with a MockTransport)
    """

    def __init__(
        self,
        db: AsyncSession,
        base_url: str = DEFAULT_AKAHU_URL,
        timeout: float = 30.0,
        max_pages: Optional[int] = None,
        timezone: str = DEFAULT_AKAHU_TIMEZONE,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.db = db
        if max_pages is not None:
            self.max_pages = max_pages
        self.tz = ZoneInfo(timezone)
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    def get_provider_name(self) -> str:
        return ProviderType.AKAHU_PERSONAL.value

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    # ==================== INTERFACE ====================

    async def test_connection(self, connection_id: str) -> ConnectionStatus:
        try:
            await self.fetch_accounts(connection_id)
            logger.info(f"[AkahuPersonalProvider] Connection test successful for {connection_id}")
            return ConnectionStatus(is_valid=True)
        except Exception as e:
            logger.error(f"[AkahuPersonalProvider] Connection test failed for {connection_id}: {e}")
            return ConnectionStatus(is_valid=False, error=str(e))

    async def fetch_accounts(self, connection_id: str) -> List[ExternalAccount]:
        data = await self._get(connection_id, "/accounts")
        accounts = [self._map_account(item) for item in data.get("items", [])]

        logger.info(f"[AkahuPersonalProvider] Fetched {len(accounts)} accounts", extra={"connection_id": connection_id})
        return accounts

    async def fetch_transactions(
        self,
        connection_id: str,
        external_account_id: str,
        options: Optional[FetchTransactionsOptions] = None
    ) -> PaginatedTransactions:
        options = options or FetchTransactionsOptions()
        params = {}
        if options.start_date:
            params["start"] = options.start_date.isoformat()
        if options.end_date:
            params["end"] = options.end_date.isoformat()
        if options.cursor:
            params["cursor"] = options.cursor

        data = await self._get(connection_id, f"/accounts/{external_account_id}/transactions", params)
        transactions = [self._map_transaction(item) for item in data.get("items", [])]
        next_cursor = (data.get("cursor") or {}).get("next")

        logger.debug(
            f"[AkahuPersonalProvider] Fetched page of {len(transactions)} transactions",
            extra={"connection_id": connection_id, "external_account_id": external_account_id}
        )

        return PaginatedTransactions(
            transactions=transactions,
            cursor=next_cursor,
            has_more=bool(next_cursor)
        )

    # ==================== HELPERS ====================

    async def _get_tokens(self, connection_id: str) -> Tuple[str, str]:
        connection = await self.db.get(BankConnectionDB, connection_id)
        if not connection:
            raise ConnectionNotFoundError(connection_id)
        if not connection.app_token:
            raise ProviderError("App token not configured for connection")
        if not connection.user_token:
            raise ProviderError("User token not configured for connection")
        return connection.app_token, connection.user_token

    async def _get(self, connection_id: str, path: str, params: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        app_token, user_token = await self._get_tokens(connection_id)
        headers = {
            "X-Akahu-Id": app_token,
            "Authorization": f"Bearer {user_token}",
        }

        try:
            response = await self._client.get(path, params=params, headers=headers)
        except httpx.HTTPError as e:
            raise ProviderError(f"Akahu request failed: {e}") from e

        if response.status_code >= 400:
            raise ProviderError(
                f"Akahu API error {response.status_code}: {response.text[:200]}",
                status_code=response.status_code
            )

        body = response.json()
        if body.get("success") is False:
            raise ProviderError(f"Akahu API error: {body.get('message', 'unknown error')}")
        return body

    @staticmethod
    def _map_account(item: Dict[str, Any]) -> ExternalAccount:
        balance = item.get("balance")
        return ExternalAccount(
            external_account_id=item["_id"],
            name=item.get("name", ""),
            type=item.get("type", "UNKNOWN"),
            institution=(item.get("connection") or {}).get("name", ""),
            account_number=item.get("formatted_account"),
            balance=AccountBalance(
                current=_to_decimal(balance.get("current")),
                available=_to_decimal(balance.get("available"))
            ) if balance and balance.get("current") is not None else None,
            status=item.get("status", "ACTIVE"),
            metadata=item.get("meta")
        )

    def _map_transaction(self, item: Dict[str, Any]) -> ExternalTransactionData:
        merchant = item.get("merchant") or {}
        return ExternalTransactionData(
            external_transaction_id=item["_id"],
            date=_parse_date(item["date"], self.tz),
            amount=_to_decimal(item["amount"]),
            description=item.get("description", ""),
            merchant=merchant.get("name"),
            category=ProviderCategory.from_raw(item.get("category") or merchant.get("category")),
            type=item.get("type", "UNKNOWN"),
            balance=_to_decimal(item.get("balance")),
            raw_data=item
        )
