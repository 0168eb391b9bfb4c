"""
License Store - License records keyed by external transaction id.

Lifecycle mutations (create, refund, chargeback, cancel, recurring payment)
flush inside the caller's transaction so the IPN processor can commit the
license, the user and the audit record together. validate() and activate()
are stand-alone API operations and commit their own changes.

NO DICTIONARIES - All operations use strongly typed domain models.
"""

import calendar
import hashlib
import hmac
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import License, User
from app.exceptions import DuplicateTransactionError, WriteVerificationError
from app.models.api import LicenseStatus
from app.models.domain import ActivationResult, LicenseCreateParams, ValidationResult
from app.observability.logging import get_logger
from app.observability.metrics import metrics
from app.services.product_catalog import ProductCatalog, default_catalog

logger = get_logger(__name__)

RECURRING_GRACE_PERIOD = timedelta(days=7)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic; the day is clamped to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def recurring_expiry(now: datetime) -> datetime:
    """Recurring licenses run one billing month plus a grace period."""
    return add_months(now, 1) + RECURRING_GRACE_PERIOD


def generate_license_key(
    email: str,
    external_transaction_id: str,
    product_code: str,
    timestamp: int,
    secret: str,
) -> str:
    """
    Derive a license key: HMAC-SHA256 over email|txn|product|timestamp.

    Returns 16 upper-case hex characters as XXXX-XXXX-XXXX-XXXX.
    """
    message = f"{email}|{external_transaction_id}|{product_code}|{timestamp}"
    digest = hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256)
    raw = digest.hexdigest().upper()[:16]
    return "-".join(raw[i : i + 4] for i in range(0, 16, 4))


class LicenseStore:
    """Persistent repository of license records."""

    def __init__(
        self,
        session: AsyncSession,
        license_secret: str,
        catalog: ProductCatalog = default_catalog,
    ) -> None:
        self.session = session
        self.license_secret = license_secret
        self.catalog = catalog

    # ========================================================================
    # Creation and lookup
    # ========================================================================

    async def create(self, params: LicenseCreateParams) -> License:
        """
        Create an active license for a verified sale.

        Credits, max activations and tier come from the product catalog.
        Flushes inside a savepoint; the caller commits.

        Raises:
            DuplicateTransactionError: A license already exists for the transaction id
            WriteVerificationError: Row missing after insert
        """
        existing = await self.find_by_external_transaction(params.external_transaction_id)
        if existing is not None:
            raise DuplicateTransactionError(params.external_transaction_id, existing.id)

        descriptor = self.catalog.describe(params.external_product_code)
        now = _utc_now()
        license_key = generate_license_key(
            params.email,
            params.external_transaction_id,
            params.external_product_code,
            int(now.timestamp() * 1000),
            self.license_secret,
        )

        license = License(
            license_key=license_key,
            user_id=params.user_id,
            product_id=descriptor.internal_id,
            tier=descriptor.tier,
            status=LicenseStatus.ACTIVE,
            external_transaction_id=params.external_transaction_id,
            external_receipt_id=params.external_receipt_id,
            external_product_code=params.external_product_code,
            transaction_type=params.transaction_type,
            purchase_date=now,
            purchase_amount=params.purchase_amount,
            is_recurring=params.is_recurring,
            expiry_date=recurring_expiry(now) if params.is_recurring else None,
            activations=0,
            max_activations=self.catalog.max_activations(descriptor.tier),
            credits_allocated=descriptor.credit_grant,
            next_billing_date=add_months(now, 1) if params.is_recurring else None,
            last_payment_date=now,
            payment_count=1,
        )

        try:
            async with self.session.begin_nested():
                self.session.add(license)
                await self.session.flush()
        except IntegrityError:
            # Concurrent delivery of the same sale won the unique index
            logger.warning(
                "license_create_race_lost",
                external_transaction_id=params.external_transaction_id,
            )
            raise DuplicateTransactionError(params.external_transaction_id)

        verified = await self.session.get(License, license.id)
        if verified is None:
            raise WriteVerificationError(f"License {license.id} not found after insert")

        metrics.record_license_created(descriptor.tier)
        logger.info(
            "license_created",
            license_id=str(verified.id),
            license_key=verified.license_key,
            user_id=str(params.user_id),
            product_id=descriptor.internal_id,
            tier=descriptor.tier,
            credits_allocated=descriptor.credit_grant,
            is_recurring=params.is_recurring,
        )
        return verified

    async def find_by_external_transaction(self, external_transaction_id: str) -> License | None:
        stmt = select(License).where(License.external_transaction_id == external_transaction_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_key(self, license_key: str) -> License | None:
        stmt = select(License).where(License.license_key == license_key.strip().upper())
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_active_for_user(self, user_id: UUID) -> list[License]:
        """Active licenses in purchase order (aggregation tie-breaks depend on it)."""
        stmt = (
            select(License)
            .where(License.user_id == user_id, License.status == LicenseStatus.ACTIVE)
            .order_by(License.purchase_date, License.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_for_user(self, user_id: UUID) -> list[License]:
        """Every license the user has held, newest purchase first."""
        stmt = (
            select(License)
            .where(License.user_id == user_id)
            .order_by(License.purchase_date.desc(), License.id)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # ========================================================================
    # Lifecycle transitions (webhook driven)
    # ========================================================================

    async def mark_refunded(self, external_transaction_id: str) -> License | None:
        return await self._transition(external_transaction_id, LicenseStatus.REFUNDED)

    async def mark_chargeback(self, external_transaction_id: str) -> License | None:
        return await self._transition(external_transaction_id, LicenseStatus.CHARGEBACK)

    async def mark_cancelled(self, external_transaction_id: str) -> License | None:
        return await self._transition(external_transaction_id, LicenseStatus.CANCELLED)

    async def record_recurring_payment(
        self, external_transaction_id: str, next_billing_date: datetime
    ) -> License | None:
        """
        Record a successful installment.

        Active and cancelled licenses become active again with the expiry pushed
        to next_billing_date plus the grace period. Refunded and charged-back
        licenses stay terminal; the payment is logged but not applied.
        """
        license = await self._lock_by_external_transaction(external_transaction_id)
        if license is None:
            logger.warning(
                "license_not_found",
                operation="recurring_payment",
                external_transaction_id=external_transaction_id,
            )
            return None

        if license.status in (LicenseStatus.REFUNDED, LicenseStatus.CHARGEBACK):
            logger.warning(
                "recurring_payment_on_terminal_license",
                license_id=str(license.id),
                status=license.status.value,
                external_transaction_id=external_transaction_id,
            )
            return license

        now = _utc_now()
        reactivated = license.status == LicenseStatus.CANCELLED
        license.status = LicenseStatus.ACTIVE
        license.cancelled_at = None
        license.is_recurring = True
        license.last_payment_date = now
        license.payment_count = license.payment_count + 1
        license.next_billing_date = next_billing_date
        license.expiry_date = next_billing_date + RECURRING_GRACE_PERIOD
        await self.session.flush()

        if reactivated:
            metrics.record_license_transition(LicenseStatus.ACTIVE.value)
        logger.info(
            "recurring_payment_recorded",
            license_id=str(license.id),
            payment_count=license.payment_count,
            next_billing_date=next_billing_date.isoformat(),
            reactivated=reactivated,
        )
        return license

    async def _transition(
        self, external_transaction_id: str, target: LicenseStatus
    ) -> License | None:
        """Move an active license to a terminal status. Unknown ids are a no-op."""
        license = await self._lock_by_external_transaction(external_transaction_id)
        if license is None:
            logger.warning(
                "license_not_found",
                operation=target.value,
                external_transaction_id=external_transaction_id,
            )
            return None

        if license.status != LicenseStatus.ACTIVE:
            logger.info(
                "license_transition_skipped",
                license_id=str(license.id),
                current_status=license.status.value,
                requested_status=target.value,
            )
            return license

        now = _utc_now()
        license.status = target
        if target == LicenseStatus.REFUNDED:
            license.refunded_at = now
        elif target == LicenseStatus.CHARGEBACK:
            license.chargeback_at = now
        elif target == LicenseStatus.CANCELLED:
            license.cancelled_at = now
        await self.session.flush()

        metrics.record_license_transition(target.value)
        logger.info(
            "license_status_changed",
            license_id=str(license.id),
            status=target.value,
            external_transaction_id=external_transaction_id,
        )
        return license

    async def _lock_by_external_transaction(self, external_transaction_id: str) -> License | None:
        """Lock the license row for the remainder of the transaction."""
        stmt = (
            select(License)
            .where(License.external_transaction_id == external_transaction_id)
            .with_for_update()
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    # ========================================================================
    # Validation and activation (API driven)
    # ========================================================================

    async def validate(self, license_key: str, email: str) -> ValidationResult:
        """
        Check a license key against the owner's email.

        Updates last_validated and commits when the license is valid.
        """
        result, license = await self._check(license_key, email)
        if license is not None and result.valid:
            license.last_validated = _utc_now()
            await self.session.commit()
        metrics.record_validation(result.valid)
        return result

    async def activate(
        self, license_key: str, email: str, device_id: str | None = None
    ) -> ActivationResult:
        """
        Consume one activation slot.

        The increment is a conditional UPDATE, so concurrent activations can
        never exceed max_activations.
        """
        check, license = await self._check(license_key, email)
        if license is None or not check.valid:
            metrics.record_activation(False, "invalid")
            return ActivationResult(
                success=False,
                activations=license.activations if license else 0,
                max_activations=license.max_activations if license else 0,
                error=check.reason,
            )

        # rollback() expires the instance; keep what the limit result needs
        license_id = license.id
        limit = license.max_activations

        stmt = (
            update(License)
            .where(License.id == license_id, License.activations < License.max_activations)
            .values(activations=License.activations + 1, last_validated=_utc_now())
            .returning(License.activations, License.max_activations)
        )
        row = (await self.session.execute(stmt)).one_or_none()
        if row is None:
            await self.session.rollback()
            metrics.record_activation(False, "limit")
            logger.info(
                "license_activation_limit",
                license_id=str(license_id),
                max_activations=limit,
                device_id=device_id,
            )
            return ActivationResult(
                success=False,
                activations=limit,
                max_activations=limit,
                error=f"Maximum activations ({limit}) reached",
            )

        await self.session.commit()
        activations, max_activations = row
        metrics.record_activation(True)
        logger.info(
            "license_activated",
            license_id=str(license_id),
            activations=activations,
            max_activations=max_activations,
            device_id=device_id,
        )
        return ActivationResult(
            success=True, activations=activations, max_activations=max_activations
        )

    async def _check(
        self, license_key: str, email: str
    ) -> tuple[ValidationResult, License | None]:
        stmt = (
            select(License, User.email)
            .join(User, User.id == License.user_id)
            .where(License.license_key == license_key.strip().upper())
        )
        row = (await self.session.execute(stmt)).one_or_none()
        if row is None:
            return ValidationResult(valid=False, reason="License key not found"), None

        license, owner_email = row
        if owner_email.lower() != email.strip().lower():
            return (
                ValidationResult(valid=False, reason="License key does not match email"),
                license,
            )
        if license.status != LicenseStatus.ACTIVE:
            return (
                ValidationResult(
                    valid=False,
                    reason=f"License is {license.status.value}",
                    license_id=license.id,
                    status=license.status,
                ),
                license,
            )
        if license.expiry_date is not None and _utc_now() > license.expiry_date:
            return (
                ValidationResult(
                    valid=False,
                    reason="License has expired",
                    license_id=license.id,
                    status=license.status,
                ),
                license,
            )
        return (
            ValidationResult(valid=True, license_id=license.id, status=license.status),
            license,
        )
