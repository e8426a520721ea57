"""
Transaction Mapping Service

Maps provider transactions to the local ledger format:
- Type from the sign of the amount (>= 0 INCOME, < 0 EXPENSE)
- Whitespace-cleaned description and merchant
- Notes carrying bank metadata (provider category, running balance)
- Category via the Categorizer
- Status CLEARED, flagged as bank-sourced
"""

import logging
import re
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

from database.sync_models import (
    LedgerTransactionDB,
    TransactionStatus,
    TransactionType,
    generate_uuid,
)
from sync.providers.base import ExternalTransactionData
from sync.services.categorizer import CategorizationInput, Categorizer

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


@dataclass
class LocalTransactionPayload:
    """Everything needed to insert a bank-sourced ledger row."""
    account_id: str
    user_id: str
    type: TransactionType
    amount: Decimal
    date: date
    description: str
    merchant: Optional[str]
    notes: Optional[str]
    status: TransactionStatus
    category_id: Optional[str]
    is_from_bank: bool = True

    def to_model(self) -> LedgerTransactionDB:
        return LedgerTransactionDB(
            id=generate_uuid(),
            user_id=self.user_id,
            account_id=self.account_id,
            type=self.type,
            amount=self.amount,
            date=self.date,
            description=self.description,
            merchant=self.merchant,
            notes=self.notes,
            status=self.status,
            category_id=self.category_id,
            is_from_bank=self.is_from_bank,
        )


def clean_string(value: str) -> str:
    """Collapse whitespace runs to one space and trim."""
    return _WHITESPACE.sub(" ", value or "").strip()


def transaction_type_for(amount: Decimal) -> TransactionType:
    return TransactionType.INCOME if amount >= 0 else TransactionType.EXPENSE


def build_notes(category_name: Optional[str], balance: Optional[Decimal]) -> Optional[str]:
    notes = []
    if category_name:
        notes.append(f"Bank category: {category_name}")
    if balance is not None:
        notes.append(f"Balance after: ${balance:.2f}")
    return "\n".join(notes) if notes else None


class TransactionMapper:
    def __init__(self, categorizer: Optional[Categorizer] = None):
        self.categorizer = categorizer

    async def map_to_local_transaction(
        self,
        external: ExternalTransactionData,
        local_account_id: str,
        user_id: str
    ) -> LocalTransactionPayload:
        """
        Build the local ledger payload for a provider transaction.

        Args:
            external: Transaction from the provider
            local_account_id: Account the row is written to
            user_id: Owner of the account

        Returns:
            LocalTransactionPayload ready to insert
        """
        amount = Decimal(external.amount)
        tx_type = transaction_type_for(amount)
        description = clean_string(external.description)
        merchant = clean_string(external.merchant) or None
        provider_category = external.category

        category_id = None
        if self.categorizer is not None:
            result = await self.categorizer.categorize_transaction(
                CategorizationInput(
                    description=description,
                    merchant=merchant,
                    amount=amount,
                    type=tx_type.value,
                    is_from_bank=True,
                    provider_category=provider_category,
                ),
                user_id
            )
            category_id = result.category_id

        return LocalTransactionPayload(
            account_id=local_account_id,
            user_id=user_id,
            type=tx_type,
            amount=amount,
            date=external.date,
            description=description,
            merchant=merchant,
            notes=build_notes(provider_category.name if provider_category else None, external.balance),
            status=TransactionStatus.CLEARED,
            category_id=category_id,
        )
