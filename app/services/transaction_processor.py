"""
Transaction Processor - JVZoo IPN orchestration.

Pipeline per notification:
1. Idempotency: an audit record with the same key short-circuits.
2. Signature: forged notifications are logged and discarded, nothing is written.
3. Dispatch by ctransaction (SALE, RFND, CGBK, INSTAL, CANCEL-REBILL).
4. Audit: the record is committed with the license changes, or written on
   its own as a failed record after a rollback.

process() never raises. The IPN endpoint must answer 200 whatever happens
here, so failures end up in jvzoo_transactions for reconciliation.
"""

import time
from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import JVZooTransaction, License, User
from app.exceptions import AuditRecordNotFoundError, DuplicateTransactionError
from app.models.api import IPNOutcome, IPNTransactionType
from app.models.domain import (
    IPNNotification,
    LicenseCreateParams,
    NotificationKind,
    ProcessingResult,
    PurchaseNotification,
    parse_amount,
)
from app.observability.logging import get_logger, log_context
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.license_store import LicenseStore, add_months
from app.services.product_catalog import ProductCatalog, default_catalog
from app.services.signature import verify_ipn_signature
from app.services.user_directory import UserDirectory

logger = get_logger(__name__)

MAX_ERROR_LENGTH = 2000

KNOWN_TRANSACTION_TYPES = frozenset(t.value for t in IPNTransactionType)


def transaction_type_label(transaction_type: str) -> str:
    """Metric label for ctransaction; unrecognised values share one series."""
    return transaction_type if transaction_type in KNOWN_TRANSACTION_TYPES else "unknown"


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


@dataclass(frozen=True)
class _Dispatched:
    """What a handler changed; turned into the audit row and the result."""

    outcome: IPNOutcome
    user: User | None = None
    license: License | None = None
    notification: PurchaseNotification | None = None


class TransactionProcessor:
    """Verifies, deduplicates and applies JVZoo notifications."""

    def __init__(
        self,
        session: AsyncSession,
        secret_key: str,
        license_store: LicenseStore,
        users: UserDirectory,
        catalog: ProductCatalog = default_catalog,
    ) -> None:
        self.session = session
        self.secret_key = secret_key
        self.license_store = license_store
        self.users = users
        self.catalog = catalog

    async def process(self, notification: IPNNotification) -> ProcessingResult:
        """Process one notification. Never raises."""
        key = notification.idempotency_key
        start = time.perf_counter()

        with log_context(ipn_key=key), trace_operation(
            "ipn_process",
            transaction_type=notification.transaction_type,
            product_code=notification.product_code,
        ) as span:
            logger.info(
                "ipn_received",
                transaction_type=notification.transaction_type,
                product_code=notification.product_code,
                receipt=notification.receipt,
            )
            result = await self._process(notification)
            span.set_attribute("outcome", result.outcome.value)

        metrics.record_ipn(
            transaction_type_label(notification.transaction_type),
            result.outcome.value,
            time.perf_counter() - start,
        )
        return result

    async def _process(self, notification: IPNNotification) -> ProcessingResult:
        key = notification.idempotency_key
        verified = False
        try:
            existing = await self._find_audit(key)
            if existing is not None:
                logger.info("ipn_already_processed", audit_id=str(existing.id))
                return self._result(notification, IPNOutcome.ALREADY_PROCESSED, audit=existing)

            verified = verify_ipn_signature(notification.fields, self.secret_key)
            if not verified:
                logger.warning(
                    "ipn_verification_failed",
                    transaction_type=notification.transaction_type,
                    customer_email=notification.customer_email,
                )
                return self._result(notification, IPNOutcome.VERIFICATION_FAILED)

            dispatched = await self._dispatch(notification)

            audit = self._build_audit(
                notification,
                verified=True,
                processed=True,
                user_id=self._owner_id(dispatched),
            )
            self.session.add(audit)
            try:
                await self.session.commit()
            except IntegrityError:
                # A concurrent delivery committed the same key first
                await self.session.rollback()
                logger.info("ipn_duplicate_delivery_race")
                return self._result(notification, IPNOutcome.ALREADY_PROCESSED)

            logger.info(
                "ipn_processed",
                outcome=dispatched.outcome.value,
                license_id=str(dispatched.license.id) if dispatched.license else None,
            )
            return self._result(
                notification, dispatched.outcome, audit=audit, dispatched=dispatched
            )

        except Exception as e:
            logger.error("ipn_processing_failed", error=str(e), exc_info=True)
            metrics.record_error(type(e).__name__, "ipn_process")
            audit = await self._record_failure(notification, e, verified)
            return self._result(notification, IPNOutcome.FAILED, audit=audit, error=str(e))

    async def replay_failed(self, idempotency_key: str) -> ProcessingResult:
        """
        Re-run a failed audit record from its stored payload.

        The same row is marked processed on success, so the audit log keeps
        one record per notification.

        Raises:
            AuditRecordNotFoundError: No audit record with that key
        """
        stmt = (
            select(JVZooTransaction)
            .where(JVZooTransaction.idempotency_key == idempotency_key)
            .with_for_update()
        )
        audit = (await self.session.execute(stmt)).scalar_one_or_none()
        if audit is None:
            raise AuditRecordNotFoundError(idempotency_key)

        audit_id = audit.id
        notification = IPNNotification.from_fields(audit.raw_payload)
        if audit.processed:
            return self._result(notification, IPNOutcome.ALREADY_PROCESSED, audit=audit)

        if not verify_ipn_signature(notification.fields, self.secret_key):
            logger.warning("ipn_replay_verification_failed", idempotency_key=idempotency_key)
            return self._result(notification, IPNOutcome.VERIFICATION_FAILED, audit=audit)

        with log_context(ipn_key=idempotency_key):
            try:
                dispatched = await self._dispatch(notification)
                audit.verified = True
                audit.processed = True
                audit.processed_at = _utc_now()
                audit.processing_error = None
                audit.user_id = self._owner_id(dispatched)
                await self.session.commit()
            except Exception as e:
                # The rollback expires audit; only audit_id is safe to use below
                await self.session.rollback()
                logger.error("ipn_replay_failed", error=str(e), exc_info=True)
                await self._record_replay_failure(audit_id, e)
                return self._result(
                    notification, IPNOutcome.FAILED, audit_id=audit_id, error=str(e)
                )

        logger.info("ipn_replayed", outcome=dispatched.outcome.value)
        return self._result(notification, dispatched.outcome, audit=audit, dispatched=dispatched)

    # ========================================================================
    # Dispatch
    # ========================================================================

    async def _dispatch(self, notification: IPNNotification) -> _Dispatched:
        try:
            transaction_type = IPNTransactionType(notification.transaction_type)
        except ValueError:
            logger.warning(
                "ipn_unknown_transaction_type",
                transaction_type=notification.transaction_type,
            )
            return _Dispatched(outcome=IPNOutcome.IGNORED)

        txn_id = notification.external_transaction_id
        if transaction_type == IPNTransactionType.SALE:
            return await self._handle_sale(notification)
        if transaction_type == IPNTransactionType.REFUND:
            license = await self.license_store.mark_refunded(txn_id)
        elif transaction_type == IPNTransactionType.CHARGEBACK:
            license = await self.license_store.mark_chargeback(txn_id)
        elif transaction_type == IPNTransactionType.INSTALLMENT:
            license = await self.license_store.record_recurring_payment(
                txn_id, add_months(_utc_now(), 1)
            )
        else:
            license = await self.license_store.mark_cancelled(txn_id)
        return _Dispatched(outcome=IPNOutcome.PROCESSED, license=license)

    async def _handle_sale(self, notification: IPNNotification) -> _Dispatched:
        """
        Provision the buyer and create the license.

        A welcome email with fresh credentials goes out when the product
        creates accounts or the buyer has never set a password. Upsells to an
        existing account get an upgrade email and keep their password.
        """
        user, created = await self.users.find_or_create_from_purchase(
            notification.customer_email,
            name=notification.customer_name or None,
            customer_id=notification.customer_email,
        )

        params = LicenseCreateParams(
            user_id=user.id,
            email=user.email,
            external_transaction_id=notification.external_transaction_id,
            external_receipt_id=notification.receipt or None,
            external_product_code=notification.product_code,
            transaction_type=notification.transaction_type,
            purchase_amount=notification.amount,
            is_recurring=notification.is_recurring,
        )
        try:
            license = await self.license_store.create(params)
        except DuplicateTransactionError:
            existing = await self.license_store.find_by_external_transaction(
                notification.external_transaction_id
            )
            logger.info(
                "sale_license_exists",
                external_transaction_id=notification.external_transaction_id,
            )
            return _Dispatched(outcome=IPNOutcome.PROCESSED, user=user, license=existing)

        descriptor = self.catalog.describe(notification.product_code)
        if not self.catalog.is_known(notification.product_code):
            logger.warning("sale_unknown_product", product_code=notification.product_code)

        if descriptor.creates_account or user.password_hash is None:
            password = await self.users.issue_temporary_password(user)
            kind = NotificationKind.WELCOME
        else:
            password = None
            kind = NotificationKind.UPGRADE

        logger.info(
            "sale_processed",
            user_id=str(user.id),
            user_created=created,
            tier=descriptor.tier,
            notification=kind.value,
        )
        return _Dispatched(
            outcome=IPNOutcome.PROCESSED,
            user=user,
            license=license,
            notification=PurchaseNotification(
                kind=kind,
                email=user.email,
                name=user.name,
                license_key=license.license_key,
                product_name=descriptor.display_name,
                tier=descriptor.tier,
                temporary_password=password,
            ),
        )

    # ========================================================================
    # Audit records
    # ========================================================================

    async def _find_audit(self, idempotency_key: str) -> JVZooTransaction | None:
        stmt = select(JVZooTransaction).where(JVZooTransaction.idempotency_key == idempotency_key)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    def _build_audit(
        self,
        notification: IPNNotification,
        verified: bool,
        processed: bool,
        user_id: UUID | None = None,
        error: str | None = None,
    ) -> JVZooTransaction:
        return JVZooTransaction(
            idempotency_key=notification.idempotency_key,
            external_transaction_id=notification.external_transaction_id,
            external_receipt_id=notification.receipt or None,
            transaction_type=notification.transaction_type,
            external_product_code=notification.product_code,
            customer_email=notification.customer_email,
            customer_name=notification.customer_name or None,
            customer_country=notification.customer_country or None,
            customer_state=notification.customer_state or None,
            amount=notification.amount,
            affiliate_commission=parse_amount(notification.affiliate),
            vendor_earnings=parse_amount(notification.vendor_through),
            verification_hash=notification.signature,
            verified=verified,
            processed=processed,
            processed_at=_utc_now() if processed else None,
            processing_error=error[:MAX_ERROR_LENGTH] if error else None,
            raw_payload=dict(notification.fields),
            user_id=user_id,
        )

    async def _record_failure(
        self, notification: IPNNotification, error: Exception, verified: bool
    ) -> JVZooTransaction | None:
        """Best-effort failed audit row. Logs and returns None instead of raising."""
        try:
            await self.session.rollback()
            audit = self._build_audit(
                notification, verified=verified, processed=False, error=str(error)
            )
            self.session.add(audit)
            await self.session.commit()
            return audit
        except Exception as audit_error:
            logger.error(
                "ipn_failure_audit_write_failed",
                error=str(audit_error),
                original_error=str(error),
            )
            try:
                await self.session.rollback()
            except Exception as rollback_error:
                logger.error("ipn_failure_rollback_failed", error=str(rollback_error))
            return None

    async def _record_replay_failure(self, audit_id: UUID, error: Exception) -> None:
        """Best-effort update of the failed row's error after a replay attempt."""
        try:
            audit = await self.session.get(JVZooTransaction, audit_id)
            if audit is None:
                return
            audit.processing_error = str(error)[:MAX_ERROR_LENGTH]
            await self.session.commit()
        except Exception as audit_error:
            logger.error(
                "ipn_replay_failure_audit_write_failed",
                error=str(audit_error),
                original_error=str(error),
            )
            try:
                await self.session.rollback()
            except Exception as rollback_error:
                logger.error("ipn_failure_rollback_failed", error=str(rollback_error))

    @staticmethod
    def _owner_id(dispatched: _Dispatched) -> UUID | None:
        if dispatched.user is not None:
            return dispatched.user.id
        if dispatched.license is not None:
            return dispatched.license.user_id
        return None

    @staticmethod
    def _result(
        notification: IPNNotification,
        outcome: IPNOutcome,
        audit: JVZooTransaction | None = None,
        dispatched: _Dispatched | None = None,
        error: str | None = None,
        audit_id: UUID | None = None,
    ) -> ProcessingResult:
        license = dispatched.license if dispatched else None
        user = dispatched.user if dispatched else None
        return ProcessingResult(
            outcome=outcome,
            idempotency_key=notification.idempotency_key,
            transaction_type=notification.transaction_type,
            audit_id=audit.id if audit is not None else audit_id,
            user_id=user.id if user is not None else (license.user_id if license else None),
            license_id=license.id if license is not None else None,
            license_key=license.license_key if license is not None else None,
            license_status=license.status if license is not None else None,
            notification=dispatched.notification if dispatched else None,
            error=error,
        )
