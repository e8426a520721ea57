"""
Categorization Service

Assigns a category to bank-sourced transactions from the provider's own
taxonomy. Categories are created on the fly as they are encountered:

    provider "supermarkets-and-grocery-stores" in group "food"
        -> Food (top level) -> Supermarkets And Grocery Stores (child)

Categories created here are shared (no owning user). Resolved ids are cached
for the lifetime of the service instance, i.e. one sync run.
"""

import logging
import random
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, Optional, Tuple, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.sync_models import CategoryDB, generate_uuid
from sync.providers.base import ProviderCategory

logger = logging.getLogger(__name__)


CATEGORY_COLORS = [
    "#F44336",  # Red
    "#E91E63",  # Pink
    "#9C27B0",  # Purple
    "#673AB7",  # Deep Purple
    "#3F51B5",  # Indigo
    "#2196F3",  # Blue
    "#03A9F4",  # Light Blue
    "#00BCD4",  # Cyan
    "#009688",  # Teal
    "#4CAF50",  # Green
    "#8BC34A",  # Light Green
    "#CDDC39",  # Lime
    "#FFEB3B",  # Yellow
    "#FFC107",  # Amber
    "#FF9800",  # Orange
    "#FF5722",  # Deep Orange
    "#795548",  # Brown
    "#607D8B",  # Blue Grey
]
DEFAULT_CATEGORY_COLOR = "#757575"

UNCATEGORIZED_NAME = "Uncategorized"
PROVIDER_CONFIDENCE = 90


# ==================== OWNERSHIP ====================

@dataclass(frozen=True)
class Shared:
    """Category visible to every user (stored with user_id NULL)."""


@dataclass(frozen=True)
class OwnedBy:
    user_id: str


CategoryOwner = Union[Shared, OwnedBy]

SHARED = Shared()


def owner_filter(owner: CategoryOwner):
    if isinstance(owner, OwnedBy):
        return CategoryDB.user_id == owner.user_id
    return CategoryDB.user_id.is_(None)


def owner_user_id(owner: CategoryOwner) -> Optional[str]:
    return owner.user_id if isinstance(owner, OwnedBy) else None


# ==================== DATA CLASSES ====================

class CategorizationSource(str, Enum):
    PROVIDER = "PROVIDER"
    MANUAL = "MANUAL"


# (parent key or None for top level, child key)
CategoryKey = Tuple[Optional[str], str]


@dataclass
class CategorizationInput:
    description: str
    amount: Decimal
    type: str
    is_from_bank: bool = True
    merchant: Optional[str] = None
    provider_category: Optional[ProviderCategory] = None


@dataclass
class CategorizationResult:
    category_id: Optional[str]
    confidence: int
    source: CategorizationSource


def normalize_category_name(name: str) -> str:
    """
    "groceries" -> "Groceries"
    "fast-food" -> "Fast Food"
    "supermarkets and grocery stores" -> "Supermarkets And Grocery Stores"
    """
    words = name.replace("-", " ").split()
    return " ".join(word[:1].upper() + word[1:].lower() for word in words)


def random_category_color() -> str:
    return random.choice(CATEGORY_COLORS) if CATEGORY_COLORS else DEFAULT_CATEGORY_COLOR


# ==================== SERVICE ====================

class Categorizer:
    """
    Resolves provider categories to local category ids, creating the
    two-level shared hierarchy as needed.
    """

    def __init__(
        self,
        db: AsyncSession,
        color_picker: Callable[[], str] = random_category_color
    ):
        self.db = db
        self.color_picker = color_picker
        self._cache: Dict[CategoryKey, str] = {}

    async def categorize_transaction(
        self,
        transaction: CategorizationInput,
        user_id: str
    ) -> CategorizationResult:
        """
        Categorize a transaction using the provider's category data.

        Args:
            transaction: Transaction fields plus provider category, if any
            user_id: Owner of the transaction (reserved for per-user rules)

        Returns:
            Provider category at confidence 90, otherwise the shared
            "Uncategorized" category at confidence 0
        """
        category = transaction.provider_category
        if transaction.is_from_bank and category is not None:
            try:
                category_id = await self._get_or_create_with_hierarchy(category.name, category.group)
                if category_id:
                    return CategorizationResult(
                        category_id=category_id,
                        confidence=PROVIDER_CONFIDENCE,
                        source=CategorizationSource.PROVIDER
                    )
            except Exception as e:
                logger.error(
                    f"[Categorizer] Error resolving category '{category.name}': {e}",
                    extra={"category_group": category.group, "user_id": user_id}
                )

        uncategorized = await self._get_uncategorized()
        return CategorizationResult(
            category_id=uncategorized.id if uncategorized else None,
            confidence=0,
            source=CategorizationSource.MANUAL
        )

    def clear_cache(self):
        self._cache.clear()

    async def _get_or_create_with_hierarchy(
        self,
        child_name: str,
        parent_name: Optional[str]
    ) -> Optional[str]:
        child = normalize_category_name(child_name)
        if not child:
            return None

        if not parent_name or not normalize_category_name(parent_name):
            return await self._resolve(child, parent_id=None, parent_key=None)

        parent = normalize_category_name(parent_name)
        parent_id = await self._resolve(parent, parent_id=None, parent_key=None)
        return await self._resolve(child, parent_id=parent_id, parent_key=parent.lower())

    async def _resolve(
        self,
        name: str,
        parent_id: Optional[str],
        parent_key: Optional[str],
        owner: CategoryOwner = SHARED
    ) -> str:
        key: CategoryKey = (parent_key, name.lower())

        cached_id = self._cache.get(key)
        if cached_id is not None:
            if await self.db.get(CategoryDB, cached_id) is not None:
                return cached_id
            logger.debug(f"[Categorizer] Evicting stale cache entry {key}")
            del self._cache[key]

        parent_clause = CategoryDB.parent_id == parent_id if parent_id else CategoryDB.parent_id.is_(None)
        result = await self.db.execute(
            select(CategoryDB)
            .where(CategoryDB.name == name, parent_clause, owner_filter(owner))
            .limit(1)
        )
        category = result.scalar_one_or_none()

        if category is None:
            logger.info(
                f"[Categorizer] Creating {'child' if parent_id else 'top-level'} category '{name}'",
                extra={"parent_id": parent_id}
            )
            category = CategoryDB(
                id=generate_uuid(),
                name=name,
                color=self.color_picker(),
                parent_id=parent_id,
                user_id=owner_user_id(owner),
            )
            self.db.add(category)
            await self.db.flush()

        self._cache[key] = category.id
        return category.id

    async def _get_uncategorized(self) -> Optional[CategoryDB]:
        result = await self.db.execute(
            select(CategoryDB)
            .where(CategoryDB.name == UNCATEGORIZED_NAME, owner_filter(SHARED))
            .limit(1)
        )
        return result.scalar_one_or_none()
