"""
JVZoo product catalog configuration.

Maps JVZoo product codes (cproditem) to entitlement descriptors.
The catalog is a leaf: it imports nothing from the license or credit services.
"""

from app.models.api import Tier
from app.models.domain import UNLIMITED_CREDITS, ProductDescriptor

FREE_TIER_CREDITS = 50

# Feature flags checked by the generation and agency surfaces
BASIC_TEMPLATES = "basic_templates"
PREMIUM_TEMPLATES = "premium_templates"
UNLIMITED_CREDITS_FEATURE = "unlimited_credits"
BULK_GENERATION = "bulk_generation"
CUSTOM_BRANDING = "custom_branding"
COMMERCIAL_USE = "commercial_use"
AGENCY_FEATURES = "agency_features"
CLIENT_ACCOUNTS = "client_accounts"
WHITE_LABEL = "white_label"
RESELLER_RIGHTS = "reseller_rights"
RESELLER_DASHBOARD = "reseller_dashboard"
CUSTOM_PRICING = "custom_pricing"

_FRONTEND_FEATURES = frozenset({BASIC_TEMPLATES})
_PRO_FEATURES = frozenset(
    {BASIC_TEMPLATES, UNLIMITED_CREDITS_FEATURE, BULK_GENERATION, CUSTOM_BRANDING}
)
_TEMPLATE_FEATURES = frozenset({PREMIUM_TEMPLATES})
_AGENCY_FEATURES = frozenset({COMMERCIAL_USE, AGENCY_FEATURES, CLIENT_ACCOUNTS, WHITE_LABEL})
_RESELLER_FEATURES = frozenset({RESELLER_RIGHTS, RESELLER_DASHBOARD, CUSTOM_PRICING})
ALL_FEATURES = (
    _FRONTEND_FEATURES | _PRO_FEATURES | _TEMPLATE_FEATURES | _AGENCY_FEATURES | _RESELLER_FEATURES
)

# Higher rank wins when aggregating tiers. Add-on tiers rank with free so they
# never mask the base product. Every tier in the catalog must appear here.
TIER_RANK: dict[str, int] = {
    Tier.FREE.value: 0,
    Tier.TEMPLATES.value: 0,
    Tier.AGENCY.value: 0,
    Tier.RESELLER.value: 0,
    Tier.FRONTEND.value: 1,
    Tier.PRO.value: 2,
    Tier.ELITE.value: 3,
}

MAX_ACTIVATIONS: dict[str, int] = {
    Tier.FRONTEND.value: 1,
    Tier.PRO.value: 3,
    Tier.TEMPLATES.value: 1,
    Tier.AGENCY.value: 10,
    Tier.RESELLER.value: 50,
    Tier.ELITE.value: 10,
}
DEFAULT_MAX_ACTIVATIONS = 1

FREE_DESCRIPTOR = ProductDescriptor(
    internal_id="free",
    display_name="AdGenius AI Free",
    tier=Tier.FREE.value,
    credit_grant=FREE_TIER_CREDITS,
    features=frozenset(),
)

# Product catalog (must match the JVZoo vendor dashboard)
JVZOO_PRODUCTS: dict[str, ProductDescriptor] = {
    # Front end
    "427079": ProductDescriptor(
        internal_id="frontend",
        display_name="AdGenius AI Starter",
        tier=Tier.FRONTEND.value,
        credit_grant=500,
        features=_FRONTEND_FEATURES,
        creates_account=True,
    ),
    # OTO 1 and downsell
    "427343": ProductDescriptor(
        internal_id="pro_unlimited",
        display_name="AdGenius AI Pro Unlimited",
        tier=Tier.PRO.value,
        credit_grant=UNLIMITED_CREDITS,
        features=_PRO_FEATURES,
    ),
    "427345": ProductDescriptor(
        internal_id="pro_lite",
        display_name="AdGenius AI Pro Lite",
        tier=Tier.PRO.value,
        credit_grant=UNLIMITED_CREDITS,
        features=_PRO_FEATURES,
    ),
    # OTO 2 and downsell
    "427347": ProductDescriptor(
        internal_id="template_library",
        display_name="Complete Template Library",
        tier=Tier.TEMPLATES.value,
        credit_grant=0,
        features=_TEMPLATE_FEATURES,
    ),
    "427349": ProductDescriptor(
        internal_id="template_pack",
        display_name="Top 10 Industries Template Pack",
        tier=Tier.TEMPLATES.value,
        credit_grant=0,
        features=_TEMPLATE_FEATURES,
    ),
    # OTO 3 and downsell
    "427351": ProductDescriptor(
        internal_id="agency_license",
        display_name="Agency License",
        tier=Tier.AGENCY.value,
        credit_grant=0,
        features=_AGENCY_FEATURES,
    ),
    "427353": ProductDescriptor(
        internal_id="agency_license_basic",
        display_name="Basic Agency License",
        tier=Tier.AGENCY.value,
        credit_grant=0,
        features=_AGENCY_FEATURES,
    ),
    # OTO 4 and downsell
    "427355": ProductDescriptor(
        internal_id="reseller_rights",
        display_name="Reseller Rights",
        tier=Tier.RESELLER.value,
        credit_grant=0,
        features=_RESELLER_FEATURES,
    ),
    "427359": ProductDescriptor(
        internal_id="affiliate_pack",
        display_name="Affiliate Pack",
        tier=Tier.RESELLER.value,
        credit_grant=0,
        features=_RESELLER_FEATURES,
    ),
    # All-in-one bundle
    "427357": ProductDescriptor(
        internal_id="elite_bundle",
        display_name="AdGenius AI Elite Bundle",
        tier=Tier.ELITE.value,
        credit_grant=UNLIMITED_CREDITS,
        features=ALL_FEATURES,
        creates_account=True,
    ),
}


class ProductCatalog:
    """Read-only view over a product table. Never fails on unknown codes."""

    def __init__(
        self,
        products: dict[str, ProductDescriptor] | None = None,
        fallback: ProductDescriptor = FREE_DESCRIPTOR,
    ) -> None:
        self._products = dict(JVZOO_PRODUCTS if products is None else products)
        self.fallback = fallback
        unranked = {p.tier for p in self._products.values()} - TIER_RANK.keys()
        if fallback.tier not in TIER_RANK:
            unranked.add(fallback.tier)
        if unranked:
            raise ValueError(f"Tiers without a rank: {sorted(unranked)}")

    def describe(self, product_code: str) -> ProductDescriptor:
        return self._products.get(product_code.strip(), self.fallback)

    def internal_id(self, product_code: str) -> str:
        return self.describe(product_code).internal_id

    def is_known(self, product_code: str) -> bool:
        return product_code.strip() in self._products

    @staticmethod
    def tier_rank(tier: str) -> int:
        return TIER_RANK.get(tier, 0)

    @staticmethod
    def max_activations(tier: str) -> int:
        return MAX_ACTIVATIONS.get(tier, DEFAULT_MAX_ACTIVATIONS)


# Module default; services receive a catalog through their constructor
default_catalog = ProductCatalog()
