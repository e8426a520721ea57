"""
Sync Review Service

Manual resolution of external transactions the sync flagged as possible
duplicates (needs_review), plus read access to sync run status/history.

Review actions:
- approve: not a duplicate, import it as a new ledger row
- reject: a duplicate, keep it out of the ledger
- link: a duplicate of a specific ledger row chosen by the user
"""

import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func, update
from sqlalchemy.ext.asyncio import AsyncSession

from database.sync_models import (
    AccountDB,
    BankConnectionDB,
    ExternalTransactionDB,
    LedgerTransactionDB,
    LinkedAccountDB,
    SyncRunDB,
)
from sync.errors import ReviewError
from sync.providers.base import ExternalTransactionData, ProviderCategory
from sync.services.categorizer import Categorizer
from sync.services.sync_orchestrator import log_sync_event
from sync.services.transaction_mapper import TransactionMapper

logger = logging.getLogger(__name__)


class ReviewAuditEvent:
    """Audit event types for review actions."""
    APPROVED = "bank_sync.review_approved"
    REJECTED = "bank_sync.review_rejected"
    LINKED = "bank_sync.review_linked"


def _money(value) -> Optional[float]:
    return float(value) if value is not None else None


def serialize_sync_run(run: SyncRunDB) -> Dict[str, Any]:
    return {
        "id": run.id,
        "connection_id": run.connection_id,
        "type": run.type.value if run.type else None,
        "status": run.status.value if run.status else None,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
        "accounts_synced": run.accounts_synced,
        "transactions_fetched": run.transactions_fetched,
        "transactions_imported": run.transactions_imported,
        "duplicates_detected": run.duplicates_detected,
        "needs_review": run.needs_review,
        "error_message": run.error_message,
        "error_details": run.error_details,
    }


class ReviewService:
    def __init__(self, db: AsyncSession, mapper: Optional[TransactionMapper] = None):
        self.db = db
        self.mapper = mapper or TransactionMapper(Categorizer(db))

    # ==================== RUN STATUS ====================

    async def get_sync_status(self, sync_run_id: str) -> Optional[Dict[str, Any]]:
        run = await self.db.get(SyncRunDB, sync_run_id, populate_existing=True)
        return serialize_sync_run(run) if run else None

    async def get_sync_history(
        self,
        connection_id: Optional[str] = None,
        limit: int = 20,
        offset: int = 0
    ) -> Dict[str, Any]:
        """Sync runs newest first, with the total count for paging."""
        query = select(SyncRunDB)
        count_query = select(func.count(SyncRunDB.id))
        if connection_id:
            query = query.where(SyncRunDB.connection_id == connection_id)
            count_query = count_query.where(SyncRunDB.connection_id == connection_id)

        result = await self.db.execute(
            query.order_by(SyncRunDB.started_at.desc()).offset(offset).limit(limit)
        )
        total = await self.db.scalar(count_query)

        return {
            "runs": [serialize_sync_run(run) for run in result.scalars().all()],
            "total": total or 0,
            "limit": limit,
            "offset": offset,
        }

    # ==================== REVIEW QUEUE ====================

    async def list_review_transactions(self, connection_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        External transactions awaiting review, newest first, each with the
        ledger row it most likely duplicates.
        """
        query = (
            select(ExternalTransactionDB, LinkedAccountDB)
            .join(LinkedAccountDB, ExternalTransactionDB.linked_account_id == LinkedAccountDB.id)
            .where(ExternalTransactionDB.needs_review.is_(True))
        )
        if connection_id:
            query = query.where(LinkedAccountDB.connection_id == connection_id)

        result = await self.db.execute(query.order_by(ExternalTransactionDB.date.desc()))

        items = []
        for ext_tx, linked in result.all():
            potential_duplicate = None
            if ext_tx.duplicate_confidence and linked.local_account_id:
                duplicate = await self._find_potential_duplicate(ext_tx, linked.local_account_id)
                if duplicate is not None:
                    potential_duplicate = {
                        "id": duplicate.id,
                        "date": duplicate.date.isoformat(),
                        "description": duplicate.description,
                        "confidence": ext_tx.duplicate_confidence,
                    }

            local_account = await self.db.get(AccountDB, linked.local_account_id) if linked.local_account_id else None

            items.append({
                "id": ext_tx.id,
                "external_transaction_id": ext_tx.external_transaction_id,
                "date": ext_tx.date.isoformat(),
                "amount": _money(ext_tx.amount),
                "description": ext_tx.description,
                "merchant": ext_tx.merchant,
                "category": ext_tx.category,
                "duplicate_confidence": ext_tx.duplicate_confidence,
                "potential_duplicate": potential_duplicate,
                "account": {
                    "external_name": linked.external_name,
                    "local_name": local_account.name if local_account else None,
                },
            })

        return items

    async def _find_potential_duplicate(
        self,
        ext_tx: ExternalTransactionDB,
        local_account_id: str
    ) -> Optional[LedgerTransactionDB]:
        result = await self.db.execute(
            select(LedgerTransactionDB)
            .where(
                LedgerTransactionDB.account_id == local_account_id,
                LedgerTransactionDB.date >= ext_tx.date - timedelta(days=2),
                LedgerTransactionDB.date <= ext_tx.date + timedelta(days=2),
                LedgerTransactionDB.amount == ext_tx.amount,
                LedgerTransactionDB.is_from_bank.is_(False)
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    # ==================== ACTIONS ====================

    async def approve(self, external_id: str) -> Dict[str, Any]:
        """
        Import a reviewed transaction as a new ledger row.

        Raises:
            ReviewError: unknown transaction, already resolved, or its
                provider account is not bound to a local account
        """
        ext_tx = await self._get_external(external_id)
        if ext_tx.local_transaction_id:
            raise ReviewError("External transaction is already linked to a local transaction")

        linked = await self.db.get(LinkedAccountDB, ext_tx.linked_account_id)
        if linked is None or not linked.local_account_id:
            raise ReviewError("Account not linked to local account")

        connection = await self.db.get(BankConnectionDB, linked.connection_id)
        if connection is None:
            raise ReviewError("Bank connection not found", not_found=True)

        payload = await self.mapper.map_to_local_transaction(
            ExternalTransactionData(
                external_transaction_id=ext_tx.external_transaction_id,
                date=ext_tx.date,
                amount=Decimal(str(ext_tx.amount)),
                description=ext_tx.description,
                type=ext_tx.type,
                merchant=ext_tx.merchant,
                category=ProviderCategory(name=ext_tx.category, group=ext_tx.category_group) if ext_tx.category else None,
                balance=Decimal(str(ext_tx.balance)) if ext_tx.balance is not None else None,
            ),
            linked.local_account_id,
            connection.user_id
        )
        local_tx = payload.to_model()
        self.db.add(local_tx)
        await self.db.flush()

        ext_tx.local_transaction_id = local_tx.id
        ext_tx.needs_review = False
        await self.db.commit()

        log_sync_event(
            ReviewAuditEvent.APPROVED,
            linked.connection_id,
            {"external_id": external_id, "local_transaction_id": local_tx.id},
            actor="user"
        )

        return {
            "success": True,
            "local_transaction": {
                "id": local_tx.id,
                "date": local_tx.date.isoformat(),
                "amount": _money(local_tx.amount),
                "description": local_tx.description,
            },
        }

    async def reject(self, external_id: str) -> Dict[str, Any]:
        """Confirm the transaction is a duplicate; it stays out of the ledger."""
        ext_tx = await self._get_external(external_id)
        ext_tx.needs_review = False
        ext_tx.is_duplicate = True
        await self.db.commit()

        logger.info(f"[ReviewService] Transaction {external_id} rejected as duplicate")
        log_sync_event(
            ReviewAuditEvent.REJECTED,
            await self._connection_id_for(ext_tx),
            {"external_id": external_id},
            actor="user"
        )
        return {"success": True}

    async def link(self, external_id: str, local_transaction_id: str) -> Dict[str, Any]:
        """Attach the transaction to an existing ledger row chosen by the user."""
        ext_tx = await self._get_external(external_id)

        local_tx = await self.db.get(LedgerTransactionDB, local_transaction_id)
        if local_tx is None:
            raise ReviewError(f"Local transaction {local_transaction_id} not found", not_found=True)

        already_linked = await self.db.scalar(
            select(ExternalTransactionDB.id).where(
                ExternalTransactionDB.local_transaction_id == local_transaction_id,
                ExternalTransactionDB.id != ext_tx.id
            )
        )
        if already_linked:
            raise ReviewError(f"Local transaction {local_transaction_id} is already linked to another bank transaction")

        ext_tx.local_transaction_id = local_transaction_id
        ext_tx.needs_review = False
        ext_tx.is_duplicate = True
        await self.db.execute(
            update(LedgerTransactionDB)
            .where(LedgerTransactionDB.id == local_transaction_id)
            .values(is_from_bank=True)
        )
        await self.db.commit()

        logger.info(f"[ReviewService] Transaction {external_id} linked to {local_transaction_id}")
        log_sync_event(
            ReviewAuditEvent.LINKED,
            await self._connection_id_for(ext_tx),
            {"external_id": external_id, "local_transaction_id": local_transaction_id},
            actor="user"
        )
        return {"success": True}

    async def _get_external(self, external_id: str) -> ExternalTransactionDB:
        ext_tx = await self.db.get(ExternalTransactionDB, external_id)
        if ext_tx is None:
            raise ReviewError("External transaction not found", not_found=True)
        return ext_tx

    async def _connection_id_for(self, ext_tx: ExternalTransactionDB) -> Optional[str]:
        linked = await self.db.get(LinkedAccountDB, ext_tx.linked_account_id)
        return linked.connection_id if linked else None
