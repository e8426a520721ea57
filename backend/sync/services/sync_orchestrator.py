"""
Sync Orchestrator

Drives one sync run for a bank connection. Provider-agnostic: works with any
BankDataProvider implementation.

Run steps:
1. Create the sync run row (IN_PROGRESS) before any provider call
2. Test the connection (invalid = fatal, run FAILED, no retry)
3. Upsert the provider's account list into linked_accounts
4. For each sync-enabled linked account bound to a local account:
   fetch the window, process each transaction, reconcile the balance
5. Finalize the run (COMPLETED) and stamp the connection

Failure containment:
- Run-fatal: anything outside the per-account guard -> FAILED, re-raised
- Per-account: "Account <name>: <message>" appended to errors, next account runs
- Per-transaction: "Transaction <id>: <message>", only that transaction rolls back
- Balance reconciliation: logged only
"""

import asyncio
import logging
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from database.sync_models import (
    AccountDB,
    BankConnectionDB,
    ExternalTransactionDB,
    LedgerTransactionDB,
    LinkedAccountDB,
    SyncRunDB,
    SyncStatus,
    SyncType,
    generate_uuid,
    utc_now,
)
from sentry_integration import capture_exception
from sync.errors import ConnectionNotFoundError, ConnectionValidationError
from sync.matching_rules.duplicate_rules import (
    DuplicateCandidate,
    DuplicateDetector,
    MatchDecision,
    triage,
)
from sync.providers.base import BankDataProvider, ExternalTransactionData
from sync.services.balance_reconciler import BalanceReconciler
from sync.services.categorizer import Categorizer
from sync.services.transaction_mapper import TransactionMapper

logger = logging.getLogger(__name__)


# ==================== DATA CLASSES ====================

@dataclass
class SyncOptions:
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    force_full: bool = False


@dataclass
class SyncResult:
    """Summary of a sync run."""
    sync_run_id: str
    accounts_synced: int = 0
    transactions_fetched: int = 0
    transactions_imported: int = 0
    duplicates_detected: int = 0
    needs_review: int = 0
    errors: List[str] = field(default_factory=list)

    def counters(self) -> Dict[str, int]:
        return {
            "accounts_synced": self.accounts_synced,
            "transactions_fetched": self.transactions_fetched,
            "transactions_imported": self.transactions_imported,
            "duplicates_detected": self.duplicates_detected,
            "needs_review": self.needs_review,
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LinkedAccountRef:
    """Plain snapshot of a linked account, detached from the session."""
    id: str
    connection_id: str
    external_account_id: str
    external_name: str
    local_account_id: str
    last_sync: Optional[datetime]


class SyncAuditEvent:
    """Audit event types for bank sync operations."""
    RUN_STARTED = "bank_sync.run_started"
    CONNECTION_VALIDATED = "bank_sync.connection_validated"
    ACCOUNTS_SYNCED = "bank_sync.accounts_synced"
    ACCOUNT_SYNCED = "bank_sync.account_synced"
    ACCOUNT_FAILED = "bank_sync.account_failed"
    TRANSACTION_AUTO_LINKED = "bank_sync.transaction_auto_linked"
    TRANSACTION_FLAGGED = "bank_sync.transaction_flagged"
    RUN_COMPLETED = "bank_sync.run_completed"
    RUN_FAILED = "bank_sync.run_failed"


def log_sync_event(
    event_type: str,
    connection_id: str,
    details: Dict[str, Any],
    sync_run_id: Optional[str] = None,
    actor: str = "system"
):
    """Log bank sync event for audit trail."""
    log_entry = {
        "event": event_type,
        "connection_id": connection_id,
        "sync_run_id": sync_run_id,
        "details": details,
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.info(f"Bank sync event: {event_type}", extra=log_entry)


def compute_fetch_window(
    last_sync: Optional[datetime],
    options: SyncOptions,
    settings: Settings,
    now: Optional[datetime] = None
) -> Tuple[datetime, datetime]:
    """
    Window for an account's transaction fetch.

    Start: explicit start_date, else last sync minus the overlap, else the
    default lookback. End: explicit end_date, else now.
    """
    now = now or datetime.now(timezone.utc)

    if options.start_date is not None:
        start = options.start_date
    elif last_sync is not None:
        start = last_sync - timedelta(days=settings.SYNC_OVERLAP_DAYS)
    else:
        start = now - timedelta(days=settings.SYNC_DEFAULT_LOOKBACK_DAYS)

    end = options.end_date or now
    return start, end


async def create_sync_run(db: AsyncSession, connection_id: str, options: SyncOptions) -> str:
    """Create the IN_PROGRESS sync run row and return its id."""
    run = SyncRunDB(
        id=generate_uuid(),
        connection_id=connection_id,
        type=SyncType.FULL if options.force_full else SyncType.INCREMENTAL,
        status=SyncStatus.IN_PROGRESS,
        started_at=utc_now(),
    )
    db.add(run)
    await db.commit()
    return run.id


# ==================== ORCHESTRATOR ====================

class SyncOrchestrator:
    """
    Runs the sync pipeline for one connection using a single session.

    Collaborators default to the standard implementations bound to the same
    session; tests inject their own.
    """

    def __init__(
        self,
        db: AsyncSession,
        provider: BankDataProvider,
        detector: Optional[DuplicateDetector] = None,
        mapper: Optional[TransactionMapper] = None,
        reconciler: Optional[BalanceReconciler] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.db = db
        self.provider = provider
        self.detector = detector or DuplicateDetector(db)
        self.mapper = mapper or TransactionMapper(Categorizer(db))
        self.reconciler = reconciler or BalanceReconciler(db, provider)
        self.settings = settings or get_settings()
        self.sleep = sleep

    async def sync_connection(
        self,
        connection_id: str,
        options: Optional[SyncOptions] = None
    ) -> SyncResult:
        """
        Run a full sync for a bank connection.

        Args:
            connection_id: Database ID of the BankConnection
            options: Window override and full/incremental flag

        Returns:
            SyncResult with counters and collected per-account and
            per-transaction errors

        Raises:
            Run-fatal errors, after the run has been marked FAILED
        """
        options = options or SyncOptions()
        sync_run_id = await create_sync_run(self.db, connection_id, options)
        return await self.execute_run(sync_run_id, connection_id, options)

    async def execute_run(
        self,
        sync_run_id: str,
        connection_id: str,
        options: Optional[SyncOptions] = None
    ) -> SyncResult:
        """Run the pipeline against an existing IN_PROGRESS run row."""
        options = options or SyncOptions()
        result = SyncResult(sync_run_id=sync_run_id)

        try:
            log_sync_event(
                SyncAuditEvent.RUN_STARTED,
                connection_id,
                {
                    "provider": self.provider.get_provider_name(),
                    "force_full": options.force_full,
                    "start_date": options.start_date.isoformat() if options.start_date else None,
                    "end_date": options.end_date.isoformat() if options.end_date else None,
                },
                sync_run_id=sync_run_id
            )

            # Step 1: Test connection
            status = await self.provider.test_connection(connection_id)
            if not status.is_valid:
                raise ConnectionValidationError(connection_id, status.error)

            log_sync_event(SyncAuditEvent.CONNECTION_VALIDATED, connection_id, {}, sync_run_id=sync_run_id)

            user_id = await self._get_connection_user(connection_id)

            # Step 2: Account list
            await self._sync_accounts(connection_id, result)

            # Step 3: Transactions per linked account
            linked_accounts = await self._load_linked_accounts(connection_id)
            logger.info(f"[SyncOrchestrator] {len(linked_accounts)} linked accounts to sync for connection {connection_id}")

            for index, linked_account in enumerate(linked_accounts):
                try:
                    await self._sync_account_transactions(linked_account, user_id, options, result)
                except Exception as e:
                    await self.db.rollback()
                    error_msg = f"Account {linked_account.external_name or 'Unknown Account'}: {e}"
                    logger.error(
                        f"[SyncOrchestrator] Failed to sync account {linked_account.id}: {e}",
                        extra={"connection_id": connection_id, "sync_run_id": sync_run_id}
                    )
                    log_sync_event(
                        SyncAuditEvent.ACCOUNT_FAILED,
                        connection_id,
                        {"linked_account_id": linked_account.id, "error": str(e)},
                        sync_run_id=sync_run_id
                    )
                    result.errors.append(error_msg)

                await self._checkpoint(result)

                if index < len(linked_accounts) - 1:
                    await self.sleep(self.settings.SYNC_ACCOUNT_DELAY_SECONDS)

            # Step 4: Finalize
            await self._finalize(result, connection_id)

            log_sync_event(
                SyncAuditEvent.RUN_COMPLETED,
                connection_id,
                {**result.counters(), "error_count": len(result.errors)},
                sync_run_id=sync_run_id
            )
            return result

        except Exception as e:
            logger.error(
                f"[SyncOrchestrator] Sync failed for connection {connection_id}: {e}",
                extra={"sync_run_id": sync_run_id}
            )
            capture_exception(e, connection_id=connection_id, sync_run_id=sync_run_id)
            await self._mark_failed(result, connection_id, e)
            log_sync_event(
                SyncAuditEvent.RUN_FAILED,
                connection_id,
                {"error": str(e), "error_type": type(e).__name__},
                sync_run_id=sync_run_id
            )
            raise

    # ==================== ACCOUNTS ====================

    async def _get_connection_user(self, connection_id: str) -> str:
        connection = await self.db.get(BankConnectionDB, connection_id)
        if connection is None:
            raise ConnectionNotFoundError(connection_id)
        return connection.user_id

    async def _sync_accounts(self, connection_id: str, result: SyncResult):
        external_accounts = await self.provider.fetch_accounts(connection_id)

        for ext_account in external_accounts:
            existing = await self.db.execute(
                select(LinkedAccountDB).where(
                    LinkedAccountDB.connection_id == connection_id,
                    LinkedAccountDB.external_account_id == ext_account.external_account_id
                )
            )
            linked = existing.scalar_one_or_none()

            if linked is None:
                linked = LinkedAccountDB(
                    id=generate_uuid(),
                    connection_id=connection_id,
                    external_account_id=ext_account.external_account_id,
                    sync_enabled=True,
                )
                self.db.add(linked)

            linked.external_name = ext_account.name
            linked.external_type = ext_account.type
            linked.institution = ext_account.institution
            linked.account_number = ext_account.account_number
            linked.status = ext_account.status

            result.accounts_synced += 1

        await self.db.commit()

        log_sync_event(
            SyncAuditEvent.ACCOUNTS_SYNCED,
            connection_id,
            {"accounts_synced": result.accounts_synced},
            sync_run_id=result.sync_run_id
        )

    async def _load_linked_accounts(self, connection_id: str) -> List[LinkedAccountRef]:
        rows = await self.db.execute(
            select(LinkedAccountDB)
            .where(
                LinkedAccountDB.connection_id == connection_id,
                LinkedAccountDB.sync_enabled.is_(True),
                LinkedAccountDB.local_account_id.isnot(None)
            )
            .order_by(LinkedAccountDB.created_at, LinkedAccountDB.id)
        )
        return [
            LinkedAccountRef(
                id=row.id,
                connection_id=row.connection_id,
                external_account_id=row.external_account_id,
                external_name=row.external_name,
                local_account_id=row.local_account_id,
                last_sync=row.last_sync,
            )
            for row in rows.scalars().all()
        ]

    async def _sync_account_transactions(
        self,
        linked_account: LinkedAccountRef,
        user_id: str,
        options: SyncOptions,
        result: SyncResult
    ):
        start_date, end_date = compute_fetch_window(linked_account.last_sync, options, self.settings)

        logger.info(
            f"[SyncOrchestrator] Fetching transactions for {linked_account.external_account_id} "
            f"({start_date.isoformat()} -> {end_date.isoformat()})",
            extra={"linked_account_id": linked_account.id, "first_sync": linked_account.last_sync is None}
        )

        transactions = await self.provider.fetch_all_transactions(
            linked_account.connection_id,
            linked_account.external_account_id,
            start_date=start_date,
            end_date=end_date
        )
        result.transactions_fetched += len(transactions)

        for ext_tx in transactions:
            try:
                decision = await self._process_transaction(linked_account, user_id, ext_tx)
                await self.db.commit()
            except IntegrityError as e:
                await self.db.rollback()
                if await self._already_stored(ext_tx.external_transaction_id):
                    # Another run stored this transaction first
                    logger.debug(f"[SyncOrchestrator] Transaction {ext_tx.external_transaction_id} already stored, skipping")
                    continue
                self._record_transaction_error(linked_account, ext_tx, e, result)
                continue
            except Exception as e:
                await self.db.rollback()
                self._record_transaction_error(linked_account, ext_tx, e, result)
                continue

            self._count(decision, result)

        now = utc_now()
        await self.db.execute(
            update(LinkedAccountDB)
            .where(LinkedAccountDB.id == linked_account.id)
            .values(last_sync=now)
        )
        await self.db.execute(
            update(AccountDB)
            .where(AccountDB.id == linked_account.local_account_id)
            .values(last_bank_sync=now, is_linked_to_bank=True)
        )
        await self.db.commit()

        log_sync_event(
            SyncAuditEvent.ACCOUNT_SYNCED,
            linked_account.connection_id,
            {"linked_account_id": linked_account.id, "fetched": len(transactions)},
            sync_run_id=result.sync_run_id
        )

        await self.reconciler.reconcile_balance(
            linked_account.connection_id,
            linked_account.external_account_id,
            linked_account.local_account_id
        )

    # ==================== TRANSACTIONS ====================

    async def _process_transaction(
        self,
        linked_account: LinkedAccountRef,
        user_id: str,
        ext_tx: ExternalTransactionData
    ) -> Optional[MatchDecision]:
        """
        Store and triage one provider transaction. Leaves the writes
        uncommitted; returns None when it was already imported.
        """
        if await self._already_stored(ext_tx.external_transaction_id):
            logger.debug(f"[SyncOrchestrator] Transaction {ext_tx.external_transaction_id} already imported, skipping")
            return None

        stored = ExternalTransactionDB(
            id=generate_uuid(),
            linked_account_id=linked_account.id,
            external_transaction_id=ext_tx.external_transaction_id,
            date=ext_tx.date,
            amount=ext_tx.amount,
            description=ext_tx.description or "",
            merchant=ext_tx.merchant,
            category=ext_tx.category.name if ext_tx.category else None,
            category_group=ext_tx.category.group if ext_tx.category else None,
            type=ext_tx.type,
            balance=ext_tx.balance,
            raw_data=ext_tx.raw_data,
        )
        self.db.add(stored)
        await self.db.flush()

        matches = await self.detector.find_duplicates(
            DuplicateCandidate(date=ext_tx.date, amount=ext_tx.amount, description=ext_tx.description),
            linked_account.local_account_id
        )
        best_match = matches[0] if matches else None
        decision = triage(best_match.confidence) if best_match else MatchDecision.IMPORT_NEW

        if decision == MatchDecision.AUTO_LINK:
            stored.local_transaction_id = best_match.transaction_id
            stored.is_duplicate = True
            stored.duplicate_confidence = best_match.confidence
            await self.db.execute(
                update(LedgerTransactionDB)
                .where(LedgerTransactionDB.id == best_match.transaction_id)
                .values(is_from_bank=True)
            )
            log_sync_event(
                SyncAuditEvent.TRANSACTION_AUTO_LINKED,
                linked_account.connection_id,
                {
                    "external_transaction_id": ext_tx.external_transaction_id,
                    "local_transaction_id": best_match.transaction_id,
                    "confidence": best_match.confidence,
                }
            )

        elif decision == MatchDecision.NEEDS_REVIEW:
            stored.is_duplicate = True
            stored.duplicate_confidence = best_match.confidence
            stored.needs_review = True
            log_sync_event(
                SyncAuditEvent.TRANSACTION_FLAGGED,
                linked_account.connection_id,
                {
                    "external_transaction_id": ext_tx.external_transaction_id,
                    "candidate_transaction_id": best_match.transaction_id,
                    "confidence": best_match.confidence,
                    "reason": best_match.reason,
                }
            )

        else:
            payload = await self.mapper.map_to_local_transaction(ext_tx, linked_account.local_account_id, user_id)
            local_tx = payload.to_model()
            self.db.add(local_tx)
            await self.db.flush()
            stored.local_transaction_id = local_tx.id
            if best_match is not None:
                stored.duplicate_confidence = best_match.confidence

        await self.db.flush()
        return decision

    async def _already_stored(self, external_transaction_id: str) -> bool:
        existing = await self.db.execute(
            select(ExternalTransactionDB.id)
            .where(ExternalTransactionDB.external_transaction_id == external_transaction_id)
        )
        return existing.scalar_one_or_none() is not None

    @staticmethod
    def _record_transaction_error(
        linked_account: LinkedAccountRef,
        ext_tx: ExternalTransactionData,
        error: Exception,
        result: SyncResult
    ):
        logger.error(
            f"[SyncOrchestrator] Failed to process transaction {ext_tx.external_transaction_id}: {error}",
            extra={"linked_account_id": linked_account.id}
        )
        result.errors.append(f"Transaction {ext_tx.external_transaction_id}: {error}")

    @staticmethod
    def _count(decision: Optional[MatchDecision], result: SyncResult):
        if decision == MatchDecision.AUTO_LINK:
            result.duplicates_detected += 1
        elif decision == MatchDecision.NEEDS_REVIEW:
            result.duplicates_detected += 1
            result.needs_review += 1
        elif decision == MatchDecision.IMPORT_NEW:
            result.transactions_imported += 1

    # ==================== RUN STATE ====================

    async def _checkpoint(self, result: SyncResult):
        """Write progress counters while the run is still IN_PROGRESS."""
        await self.db.execute(
            update(SyncRunDB)
            .where(SyncRunDB.id == result.sync_run_id, SyncRunDB.status == SyncStatus.IN_PROGRESS)
            .values(**result.counters())
        )
        await self.db.commit()

    async def _finalize(self, result: SyncResult, connection_id: str):
        now = utc_now()
        await self.db.execute(
            update(SyncRunDB)
            .where(SyncRunDB.id == result.sync_run_id, SyncRunDB.status == SyncStatus.IN_PROGRESS)
            .values(status=SyncStatus.COMPLETED, completed_at=now, **result.counters())
        )
        await self.db.execute(
            update(BankConnectionDB)
            .where(BankConnectionDB.id == connection_id)
            .values(last_sync=now, last_error="; ".join(result.errors) if result.errors else None)
        )
        await self.db.commit()

    async def _mark_failed(self, result: SyncResult, connection_id: str, error: Exception):
        try:
            await self.db.rollback()
            await self.db.execute(
                update(SyncRunDB)
                .where(SyncRunDB.id == result.sync_run_id, SyncRunDB.status == SyncStatus.IN_PROGRESS)
                .values(
                    status=SyncStatus.FAILED,
                    completed_at=utc_now(),
                    error_message=str(error),
                    error_details={
                        "type": type(error).__name__,
                        "message": str(error),
                        "errors": list(result.errors),
                    },
                    **result.counters()
                )
            )
            await self.db.execute(
                update(BankConnectionDB)
                .where(BankConnectionDB.id == connection_id)
                .values(last_error=str(error))
            )
            await self.db.commit()
        except Exception as e:
            logger.error(f"[SyncOrchestrator] Could not record failure for run {result.sync_run_id}: {e}")
            await self.db.rollback()
