"""
Balance Reconciler

After an account's transactions are synced, moves the local account's
baseline so that its computed balance equals what the bank reports:

    initial_balance + sum(ledger amounts) == provider current balance

Best-effort: failures are logged and never fail the sync.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession

from database.sync_models import AccountDB, LedgerTransactionDB
from sync.providers.base import BankDataProvider

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass
class ReconciliationOutcome:
    local_account_id: str
    reported_balance: Decimal
    transaction_total: Decimal
    previous_initial_balance: Decimal
    new_initial_balance: Decimal


def _to_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class BalanceReconciler:
    def __init__(self, db: AsyncSession, provider: BankDataProvider):
        self.db = db
        self.provider = provider

    async def reconcile_balance(
        self,
        connection_id: str,
        external_account_id: str,
        local_account_id: str
    ) -> Optional[ReconciliationOutcome]:
        """
        Align the local account's initial balance with the provider balance.

        Returns:
            ReconciliationOutcome, or None when skipped or failed
        """
        try:
            accounts = await self.provider.fetch_accounts(connection_id)
            external_account = next(
                (a for a in accounts if a.external_account_id == external_account_id),
                None
            )

            if external_account is None or external_account.balance is None:
                logger.warning(
                    f"[BalanceReconciler] No balance available for external account {external_account_id}",
                    extra={"connection_id": connection_id, "local_account_id": local_account_id}
                )
                return None

            account = await self.db.get(AccountDB, local_account_id)
            if account is None:
                logger.warning(f"[BalanceReconciler] Local account {local_account_id} not found")
                return None

            reported = _to_decimal(external_account.balance.current).quantize(CENT)

            result = await self.db.execute(
                select(func.coalesce(func.sum(LedgerTransactionDB.amount), 0))
                .where(LedgerTransactionDB.account_id == local_account_id)
            )
            total = _to_decimal(result.scalar()).quantize(CENT)

            previous = _to_decimal(account.initial_balance).quantize(CENT)
            required = reported - total

            await self.db.execute(
                update(AccountDB)
                .where(AccountDB.id == local_account_id)
                .values(initial_balance=required)
            )
            await self.db.commit()

            logger.info(
                f"[BalanceReconciler] Balance reconciled for account {local_account_id}: "
                f"initial {previous} -> {required}",
                extra={
                    "external_account_id": external_account_id,
                    "reported_balance": str(reported),
                    "transaction_total": str(total),
                }
            )

            return ReconciliationOutcome(
                local_account_id=local_account_id,
                reported_balance=reported,
                transaction_total=total,
                previous_initial_balance=previous,
                new_initial_balance=required,
            )

        except Exception as e:
            logger.error(
                f"[BalanceReconciler] Failed to reconcile balance for account {local_account_id}: {e}",
                extra={"external_account_id": external_account_id}
            )
            await self.db.rollback()
            return None
