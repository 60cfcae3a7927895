"""
Unit tests for catalog reconciliation.
"""
import json
from decimal import Decimal
from typing import Any, Dict, List

import httpx
import pytest
from sqlalchemy import func, select

from resellhub.core.catalog_sync import (
    DEFAULT_PLATFORM,
    UNLIMITED_STOCK,
    CatalogSyncEngine,
    CatalogSyncError,
    CatalogSyncResult,
    classify_platform,
    compute_selling_price,
    derive_sub_category,
    parse_services,
    slugify,
)
from resellhub.database.connection import Database
from resellhub.database.models import Category, Product, ProductVariant, VariantProvider
from resellhub.integrations.providers import ProviderRegistry


def _service(service_id: Any, category: str, name: str, price: Any = 10000) -> Dict[str, Any]:
    return {"id": service_id, "category": category, "name": name, "price": price}


@pytest.fixture
def engine(database: Database, test_settings) -> CatalogSyncEngine:
    """Engine driven through ``apply``; the registry is never reached."""
    return CatalogSyncEngine(database, registry=None, settings=test_settings)


async def _apply(engine: CatalogSyncEngine, entries: List[Dict[str, Any]], **kwargs: Any) -> CatalogSyncResult:
    services, skipped = parse_services(entries)
    kwargs.setdefault("fetch_complete", True)
    return await engine.apply(services, 10, skipped_services=skipped, **kwargs)


async def _product_names(database: Database) -> List[str]:
    async with database.session() as session:
        return sorted((await session.execute(select(Product.name))).scalars().all())


async def _variants(database: Database) -> List[ProductVariant]:
    async with database.session() as session:
        return list(
            (await session.execute(select(ProductVariant).order_by(ProductVariant.id))).scalars()
        )


class TestCatalogHelpers:
    """Pure helpers of the catalog sync."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "text,expected",
        [
            ("Instagram Followers!!", "instagram-followers"),
            ("  Website   Traffic ", "website-traffic"),
            ("TikTok -- Views", "tiktok-views"),
            ("Youtube", "youtube"),
        ],
    )
    def test_slugify(self, text: str, expected: str) -> None:
        assert slugify(text) == expected

    @pytest.mark.unit
    @pytest.mark.parametrize("text", ["Instagram Followers!!", "A  b--c", "Émoji ✨ Likes"])
    def test_slugify_idempotent(self, text: str) -> None:
        assert slugify(slugify(text)) == slugify(text)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "category,platform",
        [
            ("Instagram Followers", "Instagram"),
            ("Youtube Views [Instagram promo]", "Instagram"),
            ("TIKTOK Likes", "TikTok"),
            ("X Followers", "Twitter"),
            ("Website Traffic Indonesia", "Website Traffic"),
            ("Random Stuff", DEFAULT_PLATFORM),
        ],
    )
    def test_classify_platform_first_match_wins(self, category: str, platform: str) -> None:
        assert classify_platform(category) == platform

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "category,platform,expected",
        [
            ("Instagram Followers", "Instagram", "Followers"),
            ("instagram - Likes", "Instagram", "Likes"),
            ("Instagram", "Instagram", "General"),
        ],
    )
    def test_derive_sub_category(self, category: str, platform: str, expected: str) -> None:
        assert derive_sub_category(category, platform) == expected

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "price,margin,expected",
        [
            (Decimal("10000"), 10, Decimal("11.00")),
            (Decimal("12345"), 0, Decimal("12.35")),
            (Decimal("2500"), 15.5, Decimal("2.89")),
            (Decimal("0"), 50, Decimal("0.00")),
        ],
    )
    def test_compute_selling_price(self, price: Decimal, margin: float, expected: Decimal) -> None:
        """Test prices are per 1000 units, marked up and rounded half up."""
        assert compute_selling_price(price, margin) == expected

    @pytest.mark.unit
    def test_parse_services_skips_malformed(self) -> None:
        entries = [
            _service(1, "Instagram Followers", "Fast IG Followers"),
            _service("2", "TikTok Likes", "Likes", price="4500.5"),
            {"id": 3, "category": "Instagram Likes"},
            _service(4, "Instagram Views", "Views", price=-1),
            _service(5, "", "No category"),
            "not a dict",
        ]

        services, skipped = parse_services(entries)

        assert [s.id for s in services] == ["1", "2"]
        assert services[1].price == Decimal("4500.5")
        assert skipped == 4

    @pytest.mark.unit
    def test_result_message(self) -> None:
        result = CatalogSyncResult(
            platforms=["Instagram", "TikTok"],
            products_created=1,
            variants_created=3,
            variants_updated=2,
            products_deleted=1,
        )

        assert result.message == (
            "Sync complete. Grouped into 2 platforms. Created/Updated 1 products, "
            "3 new variants, 2 updated variants. Cleaned 1 old products."
        )
        assert result.to_dict()["success"] is True


class TestCatalogSyncEngine:
    """Test suite for CatalogSyncEngine.apply."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_creates_product_variant_and_binding(
        self, database: Database, engine: CatalogSyncEngine
    ) -> None:
        """Test one remote service becomes one product, variant and binding."""
        result = await _apply(
            engine, [_service(1, "Instagram Followers", "Fast IG Followers", 10000)]
        )

        assert result.platforms == ["Instagram"]
        assert result.products_created == 1
        assert result.variants_created == 1
        assert result.variants_updated == 0

        async with database.session() as session:
            product = (await session.execute(select(Product))).scalar_one()
            variant = (await session.execute(select(ProductVariant))).scalar_one()
            binding = (await session.execute(select(VariantProvider))).scalar_one()
            root = await session.get(Category, product.category_id)

        assert product.name == "Instagram"
        assert product.slug == "instagram"
        assert root.name == "SMM"
        assert root.type == "SOSMED"
        assert variant.name == "[Followers] Fast IG Followers"
        assert variant.price == Decimal("11.00")
        assert variant.stock == UNLIMITED_STOCK
        assert variant.best_provider == "MEDANPEDIA"
        assert binding.provider_code == "MEDANPEDIA"
        assert binding.provider_sku == "1"
        assert binding.provider_price == Decimal("10000")
        assert binding.variant_id == variant.id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rerun_updates_instead_of_duplicating(
        self, database: Database, engine: CatalogSyncEngine
    ) -> None:
        """Test a second run with a new price updates the same variant."""
        await _apply(engine, [_service(1, "Instagram Followers", "Fast IG Followers", 10000)])

        result = await _apply(
            engine, [_service(1, "Instagram Followers", "Fast IG Followers v2", 20000)]
        )

        assert result.products_created == 0
        assert result.variants_created == 0
        assert result.variants_updated == 1
        (variant,) = await _variants(database)
        assert variant.name == "[Followers] Fast IG Followers v2"
        assert variant.price == Decimal("22.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_existing_fallback_category_is_root(
        self, database: Database, engine: CatalogSyncEngine
    ) -> None:
        async with database.unit_of_work() as uow:
            uow.session.add(Category(name="Social Media", slug="social-media", type="SOSMED"))

        await _apply(engine, [_service(1, "TikTok Likes", "Likes")])

        async with database.session() as session:
            count = (await session.execute(select(func.count(Category.id)))).scalar_one()
            product = (await session.execute(select(Product))).scalar_one()
            root = await session.get(Category, product.category_id)
        assert count == 1
        assert root.slug == "social-media"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cleanup_deletes_vanished_platform(
        self, database: Database, engine: CatalogSyncEngine
    ) -> None:
        """Test a platform missing from a complete fetch is removed with its variants."""
        await _apply(
            engine,
            [
                _service(1, "Instagram Followers", "Followers"),
                _service(2, "TikTok Likes", "Likes"),
            ],
        )

        result = await _apply(engine, [_service(1, "Instagram Followers", "Followers")])

        assert result.products_deleted == 1
        assert result.stale_products == ["TikTok"]
        assert result.cleanup_skipped_reason is None
        assert await _product_names(database) == ["Instagram"]
        assert len(await _variants(database)) == 1
        async with database.session() as session:
            bindings = (await session.execute(select(func.count(VariantProvider.id)))).scalar_one()
        assert bindings == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cleanup_skipped_on_incomplete_fetch(
        self, database: Database, engine: CatalogSyncEngine
    ) -> None:
        await _apply(
            engine,
            [_service(1, "Instagram Followers", "F"), _service(2, "TikTok Likes", "L")],
        )

        result = await _apply(
            engine, [_service(1, "Instagram Followers", "F")], fetch_complete=False
        )

        assert result.cleanup_skipped_reason == "incomplete_fetch"
        assert result.products_deleted == 0
        assert await _product_names(database) == ["Instagram", "TikTok"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cleanup_skipped_without_platforms(
        self, database: Database, engine: CatalogSyncEngine
    ) -> None:
        """Test an empty service list never wipes the catalog."""
        await _apply(engine, [_service(1, "Instagram Followers", "F")])

        result = await _apply(engine, [])

        assert result.cleanup_skipped_reason == "no_platforms"
        assert await _product_names(database) == ["Instagram"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cleanup_ratio_guard_and_force(
        self, database: Database, engine: CatalogSyncEngine
    ) -> None:
        """Test deleting most of the catalog needs ``force_cleanup``."""
        await _apply(
            engine,
            [
                _service(1, "Instagram Followers", "F"),
                _service(2, "TikTok Likes", "L"),
                _service(3, "Youtube Views", "V"),
            ],
        )

        guarded = await _apply(engine, [_service(1, "Instagram Followers", "F")])

        assert guarded.cleanup_skipped_reason == "delete_ratio_exceeded"
        assert sorted(guarded.stale_products) == ["TikTok", "Youtube"]
        assert guarded.products_deleted == 0
        assert "Cleanup skipped: delete_ratio_exceeded" in guarded.message
        assert await _product_names(database) == ["Instagram", "TikTok", "Youtube"]

        forced = await _apply(
            engine, [_service(1, "Instagram Followers", "F")], force_cleanup=True
        )

        assert forced.products_deleted == 2
        assert await _product_names(database) == ["Instagram"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dry_run_reports_without_deleting(
        self, database: Database, engine: CatalogSyncEngine
    ) -> None:
        await _apply(
            engine,
            [_service(1, "Instagram Followers", "F"), _service(2, "TikTok Likes", "L")],
        )

        result = await _apply(engine, [_service(1, "Instagram Followers", "F")], dry_run=True)

        assert result.dry_run
        assert result.stale_products == ["TikTok"]
        assert result.products_deleted == 0
        assert "Would clean 1 old products." in result.message
        assert await _product_names(database) == ["Instagram", "TikTok"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_products_outside_root_category_untouched(
        self, database: Database, engine: CatalogSyncEngine
    ) -> None:
        """Test cleanup only considers the root category."""
        async with database.unit_of_work() as uow:
            games = Category(name="Games", slug="games", type="GAME")
            uow.session.add(Product(category=games, name="Mobile Legends", slug="mobile-legends"))

        await _apply(engine, [_service(1, "Instagram Followers", "F")])

        assert await _product_names(database) == ["Instagram", "Mobile Legends"]


class TestCatalogSync:
    """Test suite for the full fetch-and-apply run."""

    @staticmethod
    def _registry(database: Database, test_settings, body: Any) -> ProviderRegistry:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=json.dumps(body))

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return ProviderRegistry(database, http_client, test_settings)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sync_uses_provider_margin(
        self, database: Database, test_settings, seed
    ) -> None:
        await seed.provider_config("MEDANPEDIA", margin_percent=20)
        body = {
            "status": True,
            "data": [
                _service(1, "Instagram Followers", "F", 10000),
                {"id": 2, "category": "Instagram Likes"},
            ],
        }
        engine = CatalogSyncEngine(
            database, self._registry(database, test_settings, body), test_settings
        )

        result = await engine.sync()

        assert result.variants_created == 1
        assert result.skipped_services == 1
        (variant,) = await _variants(database)
        assert variant.price == Decimal("12.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_margin_argument_overrides_config(
        self, database: Database, test_settings, seed
    ) -> None:
        await seed.provider_config("MEDANPEDIA", margin_percent=20)
        body = {"status": True, "data": [_service(1, "Instagram Followers", "F", 10000)]}
        engine = CatalogSyncEngine(
            database, self._registry(database, test_settings, body), test_settings
        )

        await engine.sync(margin_percent=5)

        (variant,) = await _variants(database)
        assert variant.price == Decimal("10.50")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sync_without_config(self, database: Database, test_settings) -> None:
        engine = CatalogSyncEngine(
            database, self._registry(database, test_settings, {}), test_settings
        )

        with pytest.raises(CatalogSyncError, match="Failed to fetch services"):
            await engine.sync()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sync_rejected_list(self, database: Database, test_settings, seed) -> None:
        """Test a refused fetch touches nothing."""
        await seed.provider_config("MEDANPEDIA")
        engine = CatalogSyncEngine(
            database,
            self._registry(database, test_settings, {"status": False, "msg": "Invalid key"}),
            test_settings,
        )

        with pytest.raises(CatalogSyncError, match="Invalid key"):
            await engine.sync()

        assert await _product_names(database) == []
