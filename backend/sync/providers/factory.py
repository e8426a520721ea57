"""
Banking Provider Factory

Creates the provider implementation for a connection from the provider type
stored on the connection row. Implementations register a builder per
ProviderType; connections on an unregistered type are rejected.
"""

import logging
from typing import Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from database.sync_models import BankConnectionDB, ProviderType
from sync.errors import ConnectionNotFoundError, UnsupportedProviderError
from sync.providers.akahu import AkahuPersonalProvider
from sync.providers.base import BankDataProvider

logger = logging.getLogger(__name__)

ProviderBuilder = Callable[[AsyncSession, Settings], BankDataProvider]

# Known provider types without an implementation yet
_PENDING_PROVIDERS = {
    ProviderType.AKAHU_OAUTH: "Akahu OAuth provider not yet implemented",
    ProviderType.PLAID: "Plaid provider not yet implemented",
    ProviderType.TRUELAYER: "TrueLayer provider not yet implemented",
}


def _build_akahu_personal(db: AsyncSession, settings: Settings) -> BankDataProvider:
    return AkahuPersonalProvider(
        db,
        base_url=settings.AKAHU_API_URL,
        timeout=settings.AKAHU_TIMEOUT_SECONDS,
        max_pages=settings.SYNC_MAX_PAGES,
        timezone=settings.AKAHU_TIMEZONE,
    )


class BankingProviderFactory:
    """
    Registry of provider builders keyed by ProviderType.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._builders: Dict[ProviderType, ProviderBuilder] = {
            ProviderType.AKAHU_PERSONAL: _build_akahu_personal,
        }

    def register(self, provider_type: ProviderType, builder: ProviderBuilder):
        """Register (or replace) the builder for a provider type."""
        self._builders[provider_type] = builder

    def get_supported_providers(self) -> List[str]:
        return [p.value for p in self._builders]

    def is_provider_supported(self, provider_name: str) -> bool:
        return provider_name in self.get_supported_providers()

    def create_for_type(self, db: AsyncSession, provider_type: ProviderType) -> BankDataProvider:
        builder = self._builders.get(provider_type)
        if builder is None:
            raise UnsupportedProviderError(
                provider_type.value,
                _PENDING_PROVIDERS.get(provider_type)
            )
        return builder(db, self.settings)

    async def create_provider(self, db: AsyncSession, connection_id: str) -> BankDataProvider:
        """
        Create the provider for a bank connection.

        Args:
            db: Database session
            connection_id: Database ID of the BankConnection

        Returns:
            Provider implementation for the connection's stored type

        Raises:
            ConnectionNotFoundError: no such connection
            UnsupportedProviderError: no implementation for the stored type
        """
        connection = await db.get(BankConnectionDB, connection_id)
        if not connection:
            raise ConnectionNotFoundError(connection_id)

        provider_type = ProviderType(connection.provider)
        logger.info(f"[BankingProviderFactory] Creating {provider_type.value} provider for connection {connection_id}")

        return self.create_for_type(db, provider_type)


# Default factory instance
provider_factory = BankingProviderFactory()
