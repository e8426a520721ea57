from sync.services.sync_orchestrator import (
    SyncOrchestrator,
    SyncOptions,
    SyncResult,
    SyncAuditEvent,
    log_sync_event,
    compute_fetch_window,
    create_sync_run,
)
from sync.services.categorizer import Categorizer, CategorizationResult, normalize_category_name
from sync.services.transaction_mapper import TransactionMapper, LocalTransactionPayload
from sync.services.balance_reconciler import BalanceReconciler, ReconciliationOutcome
from sync.services.review_service import ReviewService

__all__ = [
    'SyncOrchestrator',
    'SyncOptions',
    'SyncResult',
    'SyncAuditEvent',
    'log_sync_event',
    'compute_fetch_window',
    'create_sync_run',
    'Categorizer',
    'CategorizationResult',
    'normalize_category_name',
    'TransactionMapper',
    'LocalTransactionPayload',
    'BalanceReconciler',
    'ReconciliationOutcome',
    'ReviewService',
]
