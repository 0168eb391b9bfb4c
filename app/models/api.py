"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class LicenseStatus(str, Enum):
    """License lifecycle status. Only ACTIVE is non-terminal."""

    ACTIVE = "active"
    REFUNDED = "refunded"
    CHARGEBACK = "chargeback"
    CANCELLED = "cancelled"


class IPNTransactionType(str, Enum):
    """JVZoo ctransaction values."""

    SALE = "SALE"
    REFUND = "RFND"
    CHARGEBACK = "CGBK"
    INSTALLMENT = "INSTAL"
    CANCEL_REBILL = "CANCEL-REBILL"


class Tier(str, Enum):
    """Entitlement tier of a product."""

    FREE = "free"
    FRONTEND = "frontend"
    PRO = "pro"
    TEMPLATES = "templates"
    AGENCY = "agency"
    RESELLER = "reseller"
    ELITE = "elite"


class IPNOutcome(str, Enum):
    """Result of processing one IPN notification."""

    PROCESSED = "processed"
    ALREADY_PROCESSED = "already_processed"
    VERIFICATION_FAILED = "verification_failed"
    IGNORED = "ignored"
    FAILED = "failed"


class CreditErrorCode(str, Enum):
    INSUFFICIENT_CREDITS = "insufficient_credits"


# ============================================================================
# License Models
# ============================================================================


class LicenseValidateRequest(BaseModel):
    """POST /api/license/validate request body."""

    license_key: str = Field(..., min_length=1, max_length=64)
    email: str = Field(..., min_length=3, max_length=255)


class LicenseValidateResponse(BaseModel):
    valid: bool
    reason: str | None = None


class LicenseActivateRequest(BaseModel):
    """POST /api/license/activate request body."""

    license_key: str = Field(..., min_length=1, max_length=64)
    email: str = Field(..., min_length=3, max_length=255)
    device_id: str | None = Field(None, max_length=255)


class LicenseActivateResponse(BaseModel):
    success: bool
    activations: int = 0
    max_activations: int = 0
    remaining_activations: int = 0
    error: str | None = None


class LicenseCheckRequest(BaseModel):
    """POST /api/license/check request body."""

    license_key: str = Field(..., min_length=1, max_length=64)


class LicenseCheckResponse(BaseModel):
    found: bool
    status: LicenseStatus | None = None
    tier: str | None = None
    product_id: str | None = None
    is_recurring: bool = False
    expiry_date: datetime | None = None
    activations: int = 0
    max_activations: int = 0


class LicenseSummary(BaseModel):
    """One license as listed to its owner."""

    license_key: str
    product_id: str
    tier: str
    status: LicenseStatus
    is_recurring: bool
    purchase_date: datetime
    expiry_date: datetime | None = None
    activations: int
    max_activations: int


class MyLicensesResponse(BaseModel):
    """GET /api/license/me response: active licenses plus what they add up to."""

    tier: str
    features: list[str] = Field(default_factory=list)
    licenses: list[LicenseSummary] = Field(default_factory=list)


class UserLicensesResponse(BaseModel):
    """GET /api/license/user/{email} response, every status included."""

    email: str
    licenses: list[LicenseSummary] = Field(default_factory=list)


# ============================================================================
# Entitlement / Credit Models
# ============================================================================


class EntitlementResponse(BaseModel):
    """GET /api/license/entitlements response."""

    tier: str
    is_unlimited: bool
    credit_limit: int | None = Field(
        None, description="Monthly credit allowance, null when unlimited"
    )
    features: list[str] = Field(default_factory=list)


class FeatureCheckRequest(BaseModel):
    feature: str = Field(..., min_length=1, max_length=100)


class FeatureCheckResponse(BaseModel):
    feature: str
    has_access: bool


class CreditStatusResponse(BaseModel):
    """GET /api/license/credits response."""

    unlimited: bool
    limit: int | None = None
    used: int
    remaining: int | None = None
    next_reset: datetime | None = None


class ActionUsageResponse(BaseModel):
    action_type: str | None = None
    events: int
    credits: int


class LicenseStatsResponse(BaseModel):
    """GET /api/license/stats response."""

    tier: str
    features: list[str] = Field(default_factory=list)
    active_licenses: int
    credits: CreditStatusResponse
    period_start: datetime
    usage_events: int
    credits_consumed: int
    usage_by_action: list[ActionUsageResponse] = Field(default_factory=list)


class ConsumeCreditsRequest(BaseModel):
    """
    POST /api/license/consume-credits request body.

    When amount is omitted the cost is derived from action_type.
    """

    amount: int | None = Field(None, ge=1, le=10_000)
    action_type: str | None = Field(None, max_length=50)
    has_reference_image: bool = False

    @field_validator("action_type")
    @classmethod
    def normalize_action_type(cls, v: str | None) -> str | None:
        return v.strip().lower() if v else v


class ConsumeCreditsResponse(BaseModel):
    success: bool
    remaining: int
    unlimited: bool
    consumed: int = 0
    error: CreditErrorCode | None = None


# ============================================================================
# JVZoo Models
# ============================================================================


class JVZooConfigStatusResponse(BaseModel):
    """GET /api/jvzoo/test response."""

    configured: bool
    secret_key_set: bool
    license_secret_set: bool
    environment: str
    ipn_url: str


class SimulatedTransactionRequest(BaseModel):
    """POST /api/jvzoo/test-transaction request body (non-production only)."""

    transaction_type: IPNTransactionType = IPNTransactionType.SALE
    product_code: str = Field("427079", min_length=1, max_length=50)
    email: str = Field(..., min_length=3, max_length=255)
    name: str = Field("Test Customer", max_length=255)
    amount: Decimal = Field(Decimal("1.00"), ge=0)
    receipt: str | None = Field(None, max_length=100)
    recurring: bool = False


class SimulatedTransactionResponse(BaseModel):
    outcome: IPNOutcome
    idempotency_key: str
    license_key: str | None = None
    error: str | None = None


# ============================================================================
# Health Models
# ============================================================================


class HealthResponse(BaseModel):
    status: str
    database: str
    timestamp: datetime
