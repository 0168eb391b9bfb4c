"""
License and credit API routes.

Key-based endpoints (validate, activate, check) are called by the desktop and
web clients with a license key. License listings, entitlement, credit and
usage endpoints require a user bearer token. Expected failures (invalid key,
activation limit, insufficient credits) are 200 responses with success/valid
set to false.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from app.api.dependencies import (
    UserIdentity,
    get_credit_ledger,
    get_current_user,
    get_entitlement_aggregator,
    get_license_store,
    get_user_directory,
)
from app.db.models import License
from app.exceptions import UserNotFoundError
from app.models.api import (
    ActionUsageResponse,
    ConsumeCreditsRequest,
    ConsumeCreditsResponse,
    CreditStatusResponse,
    EntitlementResponse,
    FeatureCheckRequest,
    FeatureCheckResponse,
    LicenseActivateRequest,
    LicenseActivateResponse,
    LicenseCheckRequest,
    LicenseCheckResponse,
    LicenseStatsResponse,
    LicenseSummary,
    LicenseValidateRequest,
    LicenseValidateResponse,
    MyLicensesResponse,
    UserLicensesResponse,
)
from app.models.domain import CreditStatus
from app.observability.logging import get_logger
from app.services.credit_ledger import CreditLedger, credit_cost
from app.services.entitlements import EntitlementAggregator, aggregate_entitlements
from app.services.license_store import LicenseStore
from app.services.user_directory import UserDirectory

logger = get_logger(__name__)
router = APIRouter(prefix="/api/license", tags=["license"])


# ============================================================================
# License key endpoints
# ============================================================================


@router.post("/validate", response_model=LicenseValidateResponse)
async def validate_license(
    body: LicenseValidateRequest,
    store: LicenseStore = Depends(get_license_store),
) -> LicenseValidateResponse:
    result = await store.validate(body.license_key, body.email)
    return LicenseValidateResponse(valid=result.valid, reason=result.reason)


@router.post("/activate", response_model=LicenseActivateResponse)
async def activate_license(
    body: LicenseActivateRequest,
    store: LicenseStore = Depends(get_license_store),
) -> LicenseActivateResponse:
    result = await store.activate(body.license_key, body.email, body.device_id)
    return LicenseActivateResponse(
        success=result.success,
        activations=result.activations,
        max_activations=result.max_activations,
        remaining_activations=result.remaining_activations,
        error=result.error,
    )


@router.post("/check", response_model=LicenseCheckResponse)
async def check_license(
    body: LicenseCheckRequest,
    store: LicenseStore = Depends(get_license_store),
) -> LicenseCheckResponse:
    """Status summary for a key, without the email check and without side effects."""
    license = await store.find_by_key(body.license_key)
    if license is None:
        return LicenseCheckResponse(found=False)
    return LicenseCheckResponse(
        found=True,
        status=license.status,
        tier=license.tier,
        product_id=license.product_id,
        is_recurring=license.is_recurring,
        expiry_date=license.expiry_date,
        activations=license.activations,
        max_activations=license.max_activations,
    )


def _summary(license: License) -> LicenseSummary:
    return LicenseSummary(
        license_key=license.license_key,
        product_id=license.product_id,
        tier=license.tier,
        status=license.status,
        is_recurring=license.is_recurring,
        purchase_date=license.purchase_date,
        expiry_date=license.expiry_date,
        activations=license.activations,
        max_activations=license.max_activations,
    )


# ============================================================================
# Owner endpoints
# ============================================================================


@router.get("/me", response_model=MyLicensesResponse)
async def get_my_licenses(
    user: UserIdentity = Depends(get_current_user),
    aggregator: EntitlementAggregator = Depends(get_entitlement_aggregator),
) -> MyLicensesResponse:
    """The caller's active licenses; a user without any gets the free tier."""
    licenses = await aggregator.active_licenses(user.user_id)
    entitlement = aggregate_entitlements(licenses, aggregator.catalog)
    return MyLicensesResponse(
        tier=entitlement.tier,
        features=sorted(entitlement.features),
        licenses=[_summary(license) for license in licenses],
    )


@router.get("/user/{email}", response_model=UserLicensesResponse)
async def get_user_licenses(
    email: str,
    user: UserIdentity = Depends(get_current_user),
    users: UserDirectory = Depends(get_user_directory),
    store: LicenseStore = Depends(get_license_store),
) -> UserLicensesResponse:
    """Full license history for an email; only its owner may read it."""
    try:
        owner = await users.get(user.user_id)
    except UserNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    if owner.email.lower() != email.strip().lower():
        logger.warning("license_listing_forbidden", user_id=str(user.user_id))
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unauthorized")

    licenses = await store.list_for_user(owner.id)
    return UserLicensesResponse(
        email=owner.email, licenses=[_summary(license) for license in licenses]
    )


# ============================================================================
# Entitlement and credit endpoints
# ============================================================================


@router.get("/entitlements", response_model=EntitlementResponse)
async def get_entitlements(
    user: UserIdentity = Depends(get_current_user),
    aggregator: EntitlementAggregator = Depends(get_entitlement_aggregator),
) -> EntitlementResponse:
    entitlement = await aggregator.entitlements_for(user.user_id)
    return EntitlementResponse(
        tier=entitlement.tier,
        is_unlimited=entitlement.is_unlimited,
        credit_limit=None if entitlement.is_unlimited else entitlement.credit_limit,
        features=sorted(entitlement.features),
    )


@router.post("/check-feature", response_model=FeatureCheckResponse)
async def check_feature(
    body: FeatureCheckRequest,
    user: UserIdentity = Depends(get_current_user),
    aggregator: EntitlementAggregator = Depends(get_entitlement_aggregator),
) -> FeatureCheckResponse:
    has_access = await aggregator.has_feature(user.user_id, body.feature)
    return FeatureCheckResponse(feature=body.feature, has_access=has_access)


@router.get("/credits", response_model=CreditStatusResponse)
async def get_credits(
    user: UserIdentity = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_credit_ledger),
) -> CreditStatusResponse:
    try:
        credit_status = await ledger.status(user.user_id)
    except UserNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return _credit_status_response(credit_status)


def _credit_status_response(credit_status: CreditStatus) -> CreditStatusResponse:
    return CreditStatusResponse(
        unlimited=credit_status.unlimited,
        limit=None if credit_status.unlimited else credit_status.limit,
        used=credit_status.used,
        remaining=None if credit_status.unlimited else credit_status.remaining,
        next_reset=credit_status.next_reset,
    )


@router.get("/stats", response_model=LicenseStatsResponse)
async def get_license_stats(
    user: UserIdentity = Depends(get_current_user),
    aggregator: EntitlementAggregator = Depends(get_entitlement_aggregator),
    ledger: CreditLedger = Depends(get_credit_ledger),
) -> LicenseStatsResponse:
    """Entitlement, credit period and this period's usage log in one view."""
    try:
        credit_status = await ledger.status(user.user_id)
    except UserNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    licenses = await aggregator.active_licenses(user.user_id)
    entitlement = aggregate_entitlements(licenses, aggregator.catalog)
    usage = await ledger.usage_summary(user.user_id)
    return LicenseStatsResponse(
        tier=entitlement.tier,
        features=sorted(entitlement.features),
        active_licenses=len(licenses),
        credits=_credit_status_response(credit_status),
        period_start=usage.period_start,
        usage_events=usage.events,
        credits_consumed=usage.credits,
        usage_by_action=[
            ActionUsageResponse(
                action_type=action.action_type, events=action.events, credits=action.credits
            )
            for action in usage.by_action
        ],
    )



@router.post("/consume-credits", response_model=ConsumeCreditsResponse)
async def consume_credits(
    body: ConsumeCreditsRequest,
    user: UserIdentity = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_credit_ledger),
) -> ConsumeCreditsResponse:
    amount = (
        body.amount
        if body.amount is not None
        else credit_cost(body.action_type, body.has_reference_image)
    )
    try:
        result = await ledger.consume(user.user_id, amount, body.action_type)
    except UserNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return ConsumeCreditsResponse(
        success=result.success,
        remaining=result.remaining,
        unlimited=result.unlimited,
        consumed=result.consumed,
        error=result.error,
    )
