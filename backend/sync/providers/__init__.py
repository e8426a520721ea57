from sync.providers.base import (
    BankDataProvider,
    ConnectionStatus,
    AccountBalance,
    ExternalAccount,
    ExternalTransactionData,
    ProviderCategory,
    PaginatedTransactions,
    FetchTransactionsOptions,
)
from sync.providers.akahu import AkahuPersonalProvider
from sync.providers.factory import BankingProviderFactory, provider_factory

__all__ = [
    'BankDataProvider',
    'ConnectionStatus',
    'AccountBalance',
    'ExternalAccount',
    'ExternalTransactionData',
    'ProviderCategory',
    'PaginatedTransactions',
    'FetchTransactionsOptions',
    'AkahuPersonalProvider',
    'BankingProviderFactory',
    'provider_factory',
]
