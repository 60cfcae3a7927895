"""
Catalog reconciliation against the provider's live service list.

Steps of one run:
1. Fetch the full remote service list and parse it, skipping malformed entries
2. Classify each service into a platform bucket (first keyword match wins)
3. Ensure the root category exists
4. Per platform, in its own unit of work: upsert one product, then one
   variant and binding per remote service, keyed by
   ``(provider_code, provider_sku)`` within the product
5. Guarded cleanup of root-category products no platform produced

Steps 3-4 are idempotent, so a run interrupted halfway is simply re-run.
The cleanup is destructive and only runs when the fetch was complete, every
bucket committed, at least one platform was produced and the deletion stays
under ``catalog_cleanup_max_delete_ratio``.
"""
import re
import time
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from resellhub.config import Settings
from resellhub.core.errors import ConfigurationError
from resellhub.database.connection import Database
from resellhub.database.models import Category, Product, ProductVariant, VariantProvider
from resellhub.integrations.providers.base import ProviderError
from resellhub.integrations.providers.registry import ProviderRegistry
from resellhub.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")
UNLIMITED_STOCK = 999999
DEFAULT_PLATFORM = "Other"
DEFAULT_SUB_CATEGORY = "General"

# Ordered: first match wins.
PLATFORM_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("Instagram", ("instagram",)),
    ("Youtube", ("youtube",)),
    ("TikTok", ("tiktok",)),
    ("Facebook", ("facebook",)),
    ("Twitter", ("twitter", "x ")),
    ("Threads", ("threads",)),
    ("Telegram", ("telegram",)),
    ("Spotify", ("spotify",)),
    ("Google", ("google",)),
    ("Shopee", ("shopee",)),
    ("Tokopedia", ("tokopedia",)),
    ("Discord", ("discord",)),
    ("Netflix", ("netflix",)),
    ("Vidio", ("vidio",)),
    ("Twitch", ("twitch",)),
    ("LinkedIn", ("linkedin",)),
    ("Soundcloud", ("soundcloud",)),
    ("Pinterest", ("pinterest",)),
    ("Clubhouse", ("clubhouse",)),
    ("Website Traffic", ("website", "traffic")),
)


class CatalogSyncError(Exception):
    """Raised when a sync cannot start or the remote list cannot be fetched."""

    pass


def slugify(text: str) -> str:
    """
    Lowercase, hyphenate whitespace, drop non-word characters and collapse
    hyphens. Idempotent.
    """
    slug = str(text).lower()
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"[^\w\-]+", "", slug, flags=re.ASCII)
    slug = re.sub(r"-{2,}", "-", slug)
    return slug.strip("-")


def classify_platform(category: str) -> str:
    lower = category.lower()
    for platform, keywords in PLATFORM_KEYWORDS:
        if any(keyword in lower for keyword in keywords):
            return platform
    return DEFAULT_PLATFORM


def derive_sub_category(category: str, platform: str) -> str:
    """``"Instagram Followers"`` under ``"Instagram"`` becomes ``"Followers"``."""
    sub = re.sub(re.escape(platform), "", category, flags=re.IGNORECASE).strip()
    sub = re.sub(r"^[-:|]+", "", sub).strip()
    return sub or DEFAULT_SUB_CATEGORY


def compute_selling_price(remote_price: Decimal, margin_percent: float) -> Decimal:
    """
    Local price of a remote service.

    Remote prices are quoted per 1000 units of the local currency.
    """
    base = Decimal(str(remote_price)) / Decimal(1000)
    margin = Decimal(1) + Decimal(str(margin_percent)) / Decimal(100)
    return (base * margin).quantize(CENT, rounding=ROUND_HALF_UP)


class RemoteService(BaseModel):
    """One entry of the provider's service list."""

    id: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    price: Decimal = Field(..., ge=0)

    @field_validator("id", "category", "name", mode="before")
    @classmethod
    def coerce_to_str(cls, v: Any) -> Any:
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        if isinstance(v, str):
            return v.strip()
        return v


def parse_services(entries: Iterable[Any]) -> Tuple[List[RemoteService], int]:
    """Parse raw entries, returning the valid services and the skipped count."""
    services: List[RemoteService] = []
    skipped = 0
    for entry in entries:
        try:
            services.append(RemoteService.model_validate(entry))
        except ValidationError as e:
            skipped += 1
            logger.warning(
                "catalog_service_skipped",
                service_id=entry.get("id") if isinstance(entry, dict) else None,
                errors=e.error_count(),
            )
    return services, skipped


def group_by_platform(services: Iterable[RemoteService]) -> Dict[str, List[RemoteService]]:
    buckets: Dict[str, List[RemoteService]] = {}
    for service in services:
        buckets.setdefault(classify_platform(service.category), []).append(service)
    return buckets


@dataclass
class CatalogSyncResult:
    """Counts and decisions of one sync run."""

    platforms: List[str] = field(default_factory=list)
    products_created: int = 0
    variants_created: int = 0
    variants_updated: int = 0
    products_deleted: int = 0
    skipped_services: int = 0
    failed_platforms: List[str] = field(default_factory=list)
    stale_products: List[str] = field(default_factory=list)
    cleanup_skipped_reason: Optional[str] = None
    dry_run: bool = False

    @property
    def message(self) -> str:
        cleaned = (
            f"Would clean {len(self.stale_products)} old products."
            if self.dry_run
            else f"Cleaned {self.products_deleted} old products."
        )
        text = (
            f"Sync complete. Grouped into {len(self.platforms)} platforms. "
            f"Created/Updated {self.products_created} products, "
            f"{self.variants_created} new variants, "
            f"{self.variants_updated} updated variants. {cleaned}"
        )
        if self.cleanup_skipped_reason:
            text += f" Cleanup skipped: {self.cleanup_skipped_reason}."
        return text

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "message": self.message,
            "platforms": self.platforms,
            "products_created": self.products_created,
            "variants_created": self.variants_created,
            "variants_updated": self.variants_updated,
            "products_deleted": self.products_deleted,
            "skipped_services": self.skipped_services,
            "failed_platforms": self.failed_platforms,
            "stale_products": self.stale_products,
            "cleanup_skipped_reason": self.cleanup_skipped_reason,
            "dry_run": self.dry_run,
        }


@dataclass
class _PlatformCounts:
    product_created: bool = False
    variants_created: int = 0
    variants_updated: int = 0


class CatalogSyncEngine:
    """
    Reconciles the local catalog with one provider's service list.

    Not safe to run concurrently with itself; callers guarantee single-flight.
    """

    def __init__(self, database: Database, registry: ProviderRegistry, settings: Settings):
        self.database = database
        self.registry = registry
        self.settings = settings
        self.provider_code = settings.catalog_provider_code
        self.category_type = settings.catalog_category_type

    async def sync(
        self,
        margin_percent: Optional[float] = None,
        dry_run: bool = False,
        force_cleanup: bool = False,
    ) -> CatalogSyncResult:
        """
        Fetch the remote list and apply it.

        Args:
            margin_percent: Overrides the provider's configured margin
            dry_run: Report stale products instead of deleting them
            force_cleanup: Bypass the delete-ratio guard

        Returns:
            CatalogSyncResult: Counts of the run

        Raises:
            CatalogSyncError: If the provider is not configured or the
                service list could not be fetched
        """
        try:
            client = await self.registry.medanpedia()
            catalog = await client.get_services()
        except (ConfigurationError, ProviderError) as e:
            logger.error("catalog_fetch_failed", provider=self.provider_code, error=str(e))
            raise CatalogSyncError(f"Failed to fetch services: {e}") from e

        if margin_percent is None:
            margin_percent = client.margin_percent
        if margin_percent is None:
            margin_percent = self.settings.catalog_default_margin_percent

        services, skipped = parse_services(catalog.services)
        return await self.apply(
            services,
            margin_percent,
            fetch_complete=catalog.complete,
            skipped_services=skipped,
            dry_run=dry_run,
            force_cleanup=force_cleanup,
        )

    async def apply(
        self,
        services: List[RemoteService],
        margin_percent: float,
        fetch_complete: bool,
        skipped_services: int = 0,
        dry_run: bool = False,
        force_cleanup: bool = False,
    ) -> CatalogSyncResult:
        """Bring the local catalog in line with ``services``."""
        start_time = time.time()
        buckets = group_by_platform(services)
        result = CatalogSyncResult(
            platforms=list(buckets),
            skipped_services=skipped_services,
            dry_run=dry_run,
        )
        logger.info(
            "catalog_sync_started",
            provider=self.provider_code,
            services=len(services),
            platforms=len(buckets),
            margin_percent=margin_percent,
        )

        root_id = await self._ensure_root_category()

        for platform, bucket in buckets.items():
            try:
                async with self.database.unit_of_work() as uow:
                    counts = await self._sync_platform(
                        uow.session, root_id, platform, bucket, margin_percent
                    )
            except SQLAlchemyError as e:
                logger.error("catalog_platform_sync_failed", platform=platform, error=str(e))
                result.failed_platforms.append(platform)
                continue
            result.products_created += int(counts.product_created)
            result.variants_created += counts.variants_created
            result.variants_updated += counts.variants_updated

        await self._cleanup(root_id, result, fetch_complete, force_cleanup)

        metrics.record_catalog_sync(
            result.products_created,
            result.variants_created,
            result.variants_updated,
            result.products_deleted,
            time.time() - start_time,
        )
        logger.info(
            "catalog_sync_completed",
            provider=self.provider_code,
            products_created=result.products_created,
            variants_created=result.variants_created,
            variants_updated=result.variants_updated,
            products_deleted=result.products_deleted,
            cleanup_skipped_reason=result.cleanup_skipped_reason,
        )
        return result

    async def _ensure_root_category(self) -> int:
        """
        Return the root category id, creating it if absent.

        An existing category under the fallback name is accepted as root.
        """
        async with self.database.unit_of_work() as uow:
            session = uow.session
            for name in (
                self.settings.catalog_root_category_name,
                self.settings.catalog_fallback_category_name,
            ):
                category = (
                    await session.execute(
                        select(Category)
                        .where(Category.type == self.category_type, Category.name == name)
                        .order_by(Category.id)
                        .limit(1)
                    )
                ).scalar_one_or_none()
                if category is not None:
                    return category.id

            category = Category(
                name=self.settings.catalog_root_category_name,
                slug=self.settings.catalog_root_category_slug,
                type=self.category_type,
                icon_key="users",
            )
            session.add(category)
            await session.flush()
            logger.info("catalog_root_category_created", category_id=category.id)
            return category.id

    async def _find_product(
        self, session: AsyncSession, slug: str, name: str
    ) -> Optional[Product]:
        for condition in (Product.slug == slug, Product.name == name):
            product = (
                await session.execute(
                    select(Product)
                    .join(Category, Product.category_id == Category.id)
                    .where(condition, Category.type == self.category_type)
                    .order_by(Product.id)
                    .limit(1)
                )
            ).scalar_one_or_none()
            if product is not None:
                return product
        return None

    async def _bindings_for(
        self, session: AsyncSession, product_id: int
    ) -> Dict[str, VariantProvider]:
        rows = (
            await session.execute(
                select(VariantProvider)
                .join(ProductVariant, VariantProvider.variant_id == ProductVariant.id)
                .where(
                    ProductVariant.product_id == product_id,
                    VariantProvider.provider_code == self.provider_code,
                )
                .options(selectinload(VariantProvider.variant))
            )
        ).scalars().all()
        return {binding.provider_sku: binding for binding in rows}

    async def _sync_platform(
        self,
        session: AsyncSession,
        root_id: int,
        platform: str,
        services: List[RemoteService],
        margin_percent: float,
    ) -> _PlatformCounts:
        counts = _PlatformCounts()
        slug = slugify(platform)

        product = await self._find_product(session, slug, platform)
        if product is None:
            product = Product(
                name=platform,
                slug=slug,
                description=f"Layanan SMM untuk {platform}. Pilih layanan yang Anda butuhkan.",
                category_id=root_id,
                is_active=True,
                rating_value=5.0,
                sold_count=0,
            )
            session.add(product)
            await session.flush()
            counts.product_created = True
            logger.info("catalog_product_created", platform=platform, product_id=product.id)
        elif product.category_id != root_id:
            logger.info(
                "catalog_product_recategorized",
                product_id=product.id,
                from_category=product.category_id,
                to_category=root_id,
            )
            product.category_id = root_id

        bindings = await self._bindings_for(session, product.id)

        for service in services:
            name = f"[{derive_sub_category(service.category, platform)}] {service.name}"
            price = compute_selling_price(service.price, margin_percent)
            binding = bindings.get(service.id)

            if binding is not None:
                variant = binding.variant
                variant.name = name
                variant.price = price
                variant.stock = UNLIMITED_STOCK
                variant.is_active = True
                binding.provider_price = service.price
                binding.provider_status = True
                counts.variants_updated += 1
                continue

            binding = VariantProvider(
                provider_code=self.provider_code,
                provider_sku=service.id,
                provider_price=service.price,
                provider_status=True,
            )
            variant = ProductVariant(
                product_id=product.id,
                name=name,
                price=price,
                stock=UNLIMITED_STOCK,
                duration_days=0,
                warranty_days=0,
                delivery_type="instant",
                best_provider=self.provider_code,
                is_active=True,
                providers=[binding],
            )
            session.add(variant)
            bindings[service.id] = binding
            counts.variants_created += 1

        await session.flush()
        return counts

    def _skip_cleanup(self, result: CatalogSyncResult, reason: str) -> None:
        result.cleanup_skipped_reason = reason
        metrics.record_cleanup_skipped(reason)
        logger.warning("catalog_cleanup_skipped", reason=reason)

    async def _cleanup(
        self,
        root_id: int,
        result: CatalogSyncResult,
        fetch_complete: bool,
        force_cleanup: bool,
    ) -> None:
        """Delete root-category products that no platform produced this run."""
        if not fetch_complete:
            self._skip_cleanup(result, "incomplete_fetch")
            return
        if result.failed_platforms:
            self._skip_cleanup(result, "platform_sync_failed")
            return
        if not result.platforms:
            self._skip_cleanup(result, "no_platforms")
            return

        async with self.database.unit_of_work() as uow:
            products = (
                await uow.session.execute(select(Product).where(Product.category_id == root_id))
            ).scalars().all()
            stale = [product for product in products if product.name not in result.platforms]
            if not stale:
                return

            result.stale_products = [product.name for product in stale]
            ratio = len(stale) / len(products)
            if ratio > self.settings.catalog_cleanup_max_delete_ratio and not force_cleanup:
                logger.warning(
                    "catalog_cleanup_ratio_exceeded",
                    stale=len(stale),
                    total=len(products),
                    max_ratio=self.settings.catalog_cleanup_max_delete_ratio,
                )
                self._skip_cleanup(result, "delete_ratio_exceeded")
                return

            if result.dry_run:
                logger.info("catalog_cleanup_dry_run", stale_products=result.stale_products)
                return

            for product in stale:
                await uow.session.delete(product)
            result.products_deleted = len(stale)
            logger.info("catalog_products_deleted", products=result.stale_products)
