"""
Unit Tests for the Categorizer

Tests:
- Category name normalization
- Two-level hierarchy creation from provider categories
- Cache hits and stale-entry eviction
- Uncategorized fallback

Run with: pytest tests/test_categorizer.py -v
"""

import pytest
from decimal import Decimal

from sqlalchemy import select, func

from database.sync_models import CategoryDB
from sync.providers.base import ProviderCategory
from sync.services.categorizer import (
    CATEGORY_COLORS,
    CategorizationInput,
    CategorizationSource,
    Categorizer,
    OwnedBy,
    SHARED,
    normalize_category_name,
    owner_user_id,
)


def _input(category=None, is_from_bank=True):
    return CategorizationInput(
        description="PAK N SAVE",
        amount=Decimal("-45.00"),
        type="EXPENSE",
        is_from_bank=is_from_bank,
        provider_category=category,
    )


class TestNormalizeCategoryName:

    @pytest.mark.parametrize("raw,expected", [
        ("groceries", "Groceries"),
        ("fast-food", "Fast Food"),
        ("supermarkets and grocery stores", "Supermarkets And Grocery Stores"),
        ("  LOTTERY   tickets ", "Lottery Tickets"),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_category_name(raw) == expected


class TestCategoryOwner:

    def test_shared_has_no_user(self):
        assert owner_user_id(SHARED) is None

    def test_owned_by_user(self):
        assert owner_user_id(OwnedBy("user-1")) == "user-1"


class TestCategorizer:

    @pytest.mark.asyncio
    async def test_creates_parent_and_child(self, db):
        categorizer = Categorizer(db, color_picker=lambda: "#4CAF50")

        result = await categorizer.categorize_transaction(
            _input(ProviderCategory(name="supermarkets-and-grocery-stores", group="food")),
            "user-1"
        )
        await db.commit()

        assert result.confidence == 90
        assert result.source == CategorizationSource.PROVIDER

        child = await db.get(CategoryDB, result.category_id)
        assert child.name == "Supermarkets And Grocery Stores"
        assert child.user_id is None
        assert child.color == "#4CAF50"

        parent = await db.get(CategoryDB, child.parent_id)
        assert parent.name == "Food"
        assert parent.parent_id is None

    @pytest.mark.asyncio
    async def test_top_level_when_no_group(self, db):
        categorizer = Categorizer(db)

        result = await categorizer.categorize_transaction(_input(ProviderCategory(name="utilities")), "user-1")

        category = await db.get(CategoryDB, result.category_id)
        assert category.name == "Utilities"
        assert category.parent_id is None
        assert category.color in CATEGORY_COLORS

    @pytest.mark.asyncio
    async def test_reuses_existing_shared_category(self, db, seed):
        existing = await seed.category("Utilities")

        result = await Categorizer(db).categorize_transaction(_input(ProviderCategory(name="utilities")), "user-1")

        assert result.category_id == existing.id

    @pytest.mark.asyncio
    async def test_ignores_user_owned_category_with_same_name(self, db, seed):
        owned = await seed.category("Utilities", user_id="user-1")

        result = await Categorizer(db).categorize_transaction(_input(ProviderCategory(name="utilities")), "user-1")

        assert result.category_id != owned.id

    @pytest.mark.asyncio
    async def test_second_lookup_creates_nothing_new(self, db):
        categorizer = Categorizer(db)
        category = ProviderCategory(name="cafes", group="lifestyle")

        first = await categorizer.categorize_transaction(_input(category), "user-1")
        second = await categorizer.categorize_transaction(_input(category), "user-1")
        await db.commit()

        assert first.category_id == second.category_id
        count = await db.scalar(select(func.count(CategoryDB.id)))
        assert count == 2

    @pytest.mark.asyncio
    async def test_stale_cache_entry_is_evicted(self, db):
        categorizer = Categorizer(db)
        category = ProviderCategory(name="cafes")

        first = await categorizer.categorize_transaction(_input(category), "user-1")
        await db.commit()

        stale = await db.get(CategoryDB, first.category_id)
        await db.delete(stale)
        await db.commit()

        second = await categorizer.categorize_transaction(_input(category), "user-1")

        assert second.category_id is not None
        assert second.category_id != first.category_id

    @pytest.mark.asyncio
    async def test_clear_cache(self, db):
        categorizer = Categorizer(db)
        await categorizer.categorize_transaction(_input(ProviderCategory(name="cafes")), "user-1")
        assert categorizer._cache

        categorizer.clear_cache()

        assert categorizer._cache == {}

    @pytest.mark.asyncio
    async def test_falls_back_to_uncategorized(self, db, seed):
        uncategorized = await seed.category("Uncategorized")

        result = await Categorizer(db).categorize_transaction(_input(None), "user-1")

        assert result.category_id == uncategorized.id
        assert result.confidence == 0
        assert result.source == CategorizationSource.MANUAL

    @pytest.mark.asyncio
    async def test_uncategorized_missing_gives_none(self, db):
        result = await Categorizer(db).categorize_transaction(_input(None), "user-1")

        assert result.category_id is None
        assert result.source == CategorizationSource.MANUAL

    @pytest.mark.asyncio
    async def test_non_bank_transactions_are_not_categorized_from_provider(self, db):
        result = await Categorizer(db).categorize_transaction(
            _input(ProviderCategory(name="cafes"), is_from_bank=False),
            "user-1"
        )

        assert result.source == CategorizationSource.MANUAL
