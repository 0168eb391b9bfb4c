"""
Entitlement Aggregator - Effective tier, credits and features for a user.

Entitlements are additive across licenses: a user who owns the front end
and an add-on holds both credit grants and both feature sets. Nothing here
is persisted; every query folds over the current active licenses.
"""

from collections.abc import Iterable
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import License
from app.models.api import Tier
from app.models.domain import UNLIMITED_CREDITS, Entitlement
from app.observability.logging import get_logger
from app.services.license_store import LicenseStore
from app.services.product_catalog import FREE_TIER_CREDITS, ProductCatalog, default_catalog

logger = get_logger(__name__)

FREE_ENTITLEMENT = Entitlement(
    credit_limit=FREE_TIER_CREDITS,
    is_unlimited=False,
    features=frozenset(),
    tier=Tier.FREE.value,
)


def aggregate_entitlements(
    licenses: Iterable[License], catalog: ProductCatalog = default_catalog
) -> Entitlement:
    """
    Fold licenses into one entitlement.

    - credits: sum of credits_allocated; any -1 makes the result unlimited
    - features: union of each license's product features
    - tier: highest rank wins, ties keep the first seen
    """
    total_credits = 0
    unlimited = False
    features: set[str] = set()
    tier: str | None = None

    for license in licenses:
        if license.credits_allocated == UNLIMITED_CREDITS:
            unlimited = True
        elif not unlimited:
            total_credits += license.credits_allocated

        descriptor = catalog.describe(license.external_product_code)
        features |= descriptor.features

        if tier is None or catalog.tier_rank(license.tier) > catalog.tier_rank(tier):
            tier = license.tier

    if tier is None:
        return FREE_ENTITLEMENT

    return Entitlement(
        credit_limit=UNLIMITED_CREDITS if unlimited else total_credits,
        is_unlimited=unlimited,
        features=frozenset(features),
        tier=tier,
    )


class EntitlementAggregator:
    """Computes entitlements from the license store."""

    def __init__(
        self,
        session: AsyncSession,
        license_store: LicenseStore,
        catalog: ProductCatalog = default_catalog,
    ) -> None:
        self.session = session
        self.license_store = license_store
        self.catalog = catalog

    async def active_licenses(self, user_id: UUID) -> list[License]:
        """Active licenses that have not expired, in purchase order."""
        now = datetime.now(UTC)
        return [
            license
            for license in await self.license_store.list_active_for_user(user_id)
            if license.expiry_date is None or license.expiry_date >= now
        ]

    async def entitlements_for(self, user_id: UUID) -> Entitlement:
        """Entitlement over the user's active, unexpired licenses."""
        licenses = await self.active_licenses(user_id)
        entitlement = aggregate_entitlements(licenses, self.catalog)
        logger.debug(
            "entitlements_computed",
            user_id=str(user_id),
            license_count=len(licenses),
            tier=entitlement.tier,
            is_unlimited=entitlement.is_unlimited,
        )
        return entitlement

    async def has_feature(self, user_id: UUID, feature: str) -> bool:
        entitlement = await self.entitlements_for(user_id)
        return feature in entitlement.features
