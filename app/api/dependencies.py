"""
FastAPI Dependencies - Authentication and service wiring.

NO DICTIONARIES - All dependencies return typed objects.
Services are built per request around the request's session; the process-wide
collaborators (database, notifier) live on app.state and are owned by the lifespan.
"""

from dataclasses import dataclass
from uuid import UUID

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db.session import get_db
from app.exceptions import AuthenticationError
from app.observability.logging import get_logger
from app.services.credit_ledger import CreditLedger
from app.services.entitlements import EntitlementAggregator
from app.services.license_store import LicenseStore
from app.services.notifications import PurchaseNotifier
from app.services.product_catalog import default_catalog
from app.services.transaction_processor import TransactionProcessor
from app.services.user_directory import UserDirectory

logger = get_logger(__name__)

# ============================================================================
# User JWT Authentication
# ============================================================================


@dataclass(frozen=True)
class UserIdentity:
    """Authenticated user from a bearer token issued by the auth service."""

    user_id: UUID
    email: str | None = None


bearer_scheme = HTTPBearer(auto_error=False)


def decode_user_token(token: str) -> UserIdentity:
    """
    Verify a user JWT and extract the user id.

    The id is read from the userId claim, falling back to sub.

    Raises:
        AuthenticationError: Invalid, expired or malformed token
    """
    if not settings.jwt_secret:
        raise AuthenticationError("JWT secret not configured")
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError as e:
        raise AuthenticationError(str(e))

    raw_id = claims.get("userId") or claims.get("sub")
    if not raw_id:
        raise AuthenticationError("Token has no user id")
    try:
        user_id = UUID(str(raw_id))
    except ValueError:
        raise AuthenticationError("Token user id is not a UUID")
    return UserIdentity(user_id=user_id, email=claims.get("email"))


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> UserIdentity:
    """
    Require a valid bearer token.

    Usage:
        @router.get("/entitlements")
        async def entitlements(user: UserIdentity = Depends(get_current_user)):
            ...
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        return decode_user_token(credentials.credentials)
    except AuthenticationError as e:
        logger.warning("user_token_rejected", reason=e.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"},
        )


# ============================================================================
# Service Wiring
# ============================================================================


def get_license_store(db: AsyncSession = Depends(get_db)) -> LicenseStore:
    return LicenseStore(db, settings.license_secret, default_catalog)


def get_user_directory(db: AsyncSession = Depends(get_db)) -> UserDirectory:
    return UserDirectory(db)


def get_entitlement_aggregator(
    db: AsyncSession = Depends(get_db),
    license_store: LicenseStore = Depends(get_license_store),
) -> EntitlementAggregator:
    return EntitlementAggregator(db, license_store, default_catalog)


def get_credit_ledger(
    db: AsyncSession = Depends(get_db),
    aggregator: EntitlementAggregator = Depends(get_entitlement_aggregator),
) -> CreditLedger:
    return CreditLedger(db, aggregator)


def get_transaction_processor(
    db: AsyncSession = Depends(get_db),
    license_store: LicenseStore = Depends(get_license_store),
) -> TransactionProcessor:
    return TransactionProcessor(
        db,
        settings.jvzoo_secret_key,
        license_store,
        UserDirectory(db),
        default_catalog,
    )


def get_notifier(request: Request) -> PurchaseNotifier:
    return request.app.state.notifier  # type: ignore[no-any-return]
