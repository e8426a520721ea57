"""
Bank Sync Core - Database Models

Tables backing the bank synchronization pipeline:
- bank_connections: A user's link to an external banking provider
- linked_accounts: Provider accounts, optionally bound to a local account
- external_transactions: One row per provider transaction (idempotency ledger)
- sync_runs: Audit row for every sync run
- accounts / categories / ledger_transactions: The local ledger the sync writes into
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, String, Text, Boolean, Date, DateTime, Integer,
    ForeignKey, Index, UniqueConstraint, Enum as SQLEnum, JSON, Numeric
)

from database.connection import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ==================== ENUMS ====================

class ProviderType(str, PyEnum):
    """Banking data provider a connection was set up with"""
    AKAHU_PERSONAL = "AKAHU_PERSONAL"
    AKAHU_OAUTH = "AKAHU_OAUTH"
    PLAID = "PLAID"
    TRUELAYER = "TRUELAYER"


class ConnectionState(str, PyEnum):
    ACTIVE = "ACTIVE"
    DISABLED = "DISABLED"
    ERROR = "ERROR"


class SyncType(str, PyEnum):
    FULL = "FULL"
    INCREMENTAL = "INCREMENTAL"


class SyncStatus(str, PyEnum):
    """Sync run lifecycle: IN_PROGRESS -> COMPLETED | FAILED (both terminal)"""
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class TransactionType(str, PyEnum):
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"


class TransactionStatus(str, PyEnum):
    PENDING = "PENDING"
    CLEARED = "CLEARED"
    RECONCILED = "RECONCILED"


def _enum(enum_cls, name: str) -> SQLEnum:
    return SQLEnum(enum_cls, name=name, native_enum=False, length=20)


# ==================== CONNECTIONS & RUNS ====================

class BankConnectionDB(Base):
    """
    A user's connection to a banking data provider.

    Tokens are stored as handed over by the credential store; encryption
    at rest is the storage layer's concern.
    """
    __tablename__ = "bank_connections"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    provider = Column(_enum(ProviderType, 'provider_type_enum'), nullable=False, default=ProviderType.AKAHU_PERSONAL, index=True)
    status = Column(_enum(ConnectionState, 'connection_state_enum'), nullable=False, default=ConnectionState.ACTIVE, index=True)

    last_sync = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)

    app_token = Column(Text, nullable=True)
    user_token = Column(Text, nullable=True)
    connection_metadata = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)


class SyncRunDB(Base):
    """
    One sync run for a connection.

    Created IN_PROGRESS before any provider call so that every run leaves an
    audit row, even when it fails immediately.
    """
    __tablename__ = "sync_runs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    connection_id = Column(String(36), ForeignKey("bank_connections.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(_enum(SyncType, 'sync_type_enum'), nullable=False)
    status = Column(_enum(SyncStatus, 'sync_status_enum'), nullable=False, default=SyncStatus.IN_PROGRESS, index=True)

    started_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Counters
    accounts_synced = Column(Integer, nullable=False, default=0)
    transactions_fetched = Column(Integer, nullable=False, default=0)
    transactions_imported = Column(Integer, nullable=False, default=0)
    duplicates_detected = Column(Integer, nullable=False, default=0)
    needs_review = Column(Integer, nullable=False, default=0)

    error_message = Column(Text, nullable=True)
    error_details = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)


# ==================== LOCAL LEDGER ====================

class AccountDB(Base):
    """
    Local account. Its balance is initial_balance + sum(ledger amounts);
    initial_balance is the baseline the balance reconciler adjusts.
    """
    __tablename__ = "accounts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    initial_balance = Column(Numeric(15, 2), nullable=False, default=0)

    is_linked_to_bank = Column(Boolean, nullable=False, default=False)
    last_bank_sync = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)


class CategoryDB(Base):
    """
    Two-level category tree. user_id is NULL for shared (system) categories.
    """
    __tablename__ = "categories"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False, index=True)
    color = Column(String(7), nullable=False, default="#757575")
    parent_id = Column(String(36), ForeignKey("categories.id"), nullable=True, index=True)
    user_id = Column(String(36), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)


class LedgerTransactionDB(Base):
    """
    Canonical ledger entry. Signed amount: positive = income, negative = expense.
    """
    __tablename__ = "ledger_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    account_id = Column(String(36), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True)

    type = Column(_enum(TransactionType, 'transaction_type_enum'), nullable=False)
    amount = Column(Numeric(15, 2), nullable=False)
    date = Column(Date, nullable=False, index=True)
    description = Column(Text, nullable=False, default="")
    merchant = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    status = Column(_enum(TransactionStatus, 'transaction_status_enum'), nullable=False, default=TransactionStatus.PENDING)

    category_id = Column(String(36), ForeignKey("categories.id", ondelete="SET NULL"), nullable=True, index=True)

    # Provenance: True once the row came from, or was matched to, a bank feed
    is_from_bank = Column(Boolean, nullable=False, default=False, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('idx_ledger_account_date_amount', 'account_id', 'date', 'amount'),
    )


# ==================== PROVIDER MIRROR ====================

class LinkedAccountDB(Base):
    """
    A provider account seen on a connection, optionally bound to a local account.
    Upserted on (connection_id, external_account_id) by every account sync.
    """
    __tablename__ = "linked_accounts"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    connection_id = Column(String(36), ForeignKey("bank_connections.id", ondelete="CASCADE"), nullable=False, index=True)
    external_account_id = Column(String(255), nullable=False, index=True)

    external_name = Column(String(255), nullable=False)
    external_type = Column(String(50), nullable=False)
    institution = Column(String(255), nullable=False)
    account_number = Column(String(100), nullable=True)
    status = Column(String(20), nullable=True)

    local_account_id = Column(String(36), ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True, unique=True)
    sync_enabled = Column(Boolean, nullable=False, default=True, index=True)
    last_sync = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint('connection_id', 'external_account_id', name='uq_linked_account_connection_external'),
    )


class ExternalTransactionDB(Base):
    """
    Mirror of one provider transaction.

    external_transaction_id is the provider's id and the idempotency key:
    a transaction is imported at most once across all runs.
    """
    __tablename__ = "external_transactions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    linked_account_id = Column(String(36), ForeignKey("linked_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    external_transaction_id = Column(String(255), nullable=False, unique=True)

    date = Column(Date, nullable=False, index=True)
    amount = Column(Numeric(15, 2), nullable=False)
    description = Column(Text, nullable=False, default="")
    merchant = Column(Text, nullable=True)
    category = Column(String(255), nullable=True)
    category_group = Column(String(255), nullable=True)
    type = Column(String(50), nullable=False)
    balance = Column(Numeric(15, 2), nullable=True)
    raw_data = Column(JSON, nullable=True)

    local_transaction_id = Column(String(36), ForeignKey("ledger_transactions.id", ondelete="SET NULL"), nullable=True, unique=True)

    # Duplicate triage
    is_duplicate = Column(Boolean, nullable=False, default=False, index=True)
    duplicate_confidence = Column(Integer, nullable=True)
    needs_review = Column(Boolean, nullable=False, default=False, index=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now)
