"""
Tests for LicenseStore.

Covers key derivation, creation from a sale, webhook-driven transitions,
recurring payments, and the validate/activate API operations.
"""

import re
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError

from app.db.models import License
from app.exceptions import DuplicateTransactionError, WriteVerificationError
from app.models.api import LicenseStatus
from app.models.domain import LicenseCreateParams
from app.services.license_store import (
    RECURRING_GRACE_PERIOD,
    LicenseStore,
    add_months,
    generate_license_key,
    recurring_expiry,
)

KEY_PATTERN = re.compile(r"^[0-9A-F]{4}-[0-9A-F]{4}-[0-9A-F]{4}-[0-9A-F]{4}$")


@pytest.fixture
def store(db_session: AsyncMock) -> LicenseStore:
    return LicenseStore(db_session, "test-license-secret")


def sale_params(**overrides) -> LicenseCreateParams:
    values = {
        "user_id": uuid4(),
        "email": "buyer@example.com",
        "external_transaction_id": "RECEIPT123",
        "external_product_code": "427079",
        "transaction_type": "SALE",
        "external_receipt_id": "RECEIPT123",
        "purchase_amount": Decimal("1.00"),
    }
    values.update(overrides)
    return LicenseCreateParams(**values)


def return_added(db_session: AsyncMock) -> None:
    """Make session.get hand back whatever was last added."""
    db_session.get = AsyncMock(side_effect=lambda model, ident: db_session.add.call_args.args[0])


class TestLicenseKey:
    """Tests for generate_license_key."""

    def test_format(self):
        key = generate_license_key("a@b.com", "TXN", "427079", 1763301430000, "secret")
        assert KEY_PATTERN.match(key)

    def test_deterministic(self):
        args = ("a@b.com", "TXN", "427079", 1763301430000, "secret")
        assert generate_license_key(*args) == generate_license_key(*args)

    def test_inputs_change_key(self):
        base = generate_license_key("a@b.com", "TXN", "427079", 1, "secret")
        assert generate_license_key("a@b.com", "TXN", "427079", 2, "secret") != base
        assert generate_license_key("a@b.com", "TXN", "427079", 1, "other") != base
        assert generate_license_key("c@b.com", "TXN", "427079", 1, "secret") != base


class TestCalendarArithmetic:
    """Tests for add_months and recurring_expiry."""

    def test_simple_month(self):
        assert add_months(datetime(2026, 3, 15, tzinfo=UTC), 1) == datetime(2026, 4, 15, tzinfo=UTC)

    def test_day_clamped(self):
        """Jan 31 plus one month lands on the last day of February."""
        assert add_months(datetime(2026, 1, 31, tzinfo=UTC), 1) == datetime(2026, 2, 28, tzinfo=UTC)
        assert add_months(datetime(2028, 1, 31, tzinfo=UTC), 1) == datetime(2028, 2, 29, tzinfo=UTC)

    def test_year_wrap(self):
        assert add_months(datetime(2026, 12, 5, tzinfo=UTC), 1) == datetime(2027, 1, 5, tzinfo=UTC)

    def test_recurring_expiry_includes_grace(self):
        now = datetime(2026, 3, 1, tzinfo=UTC)
        assert recurring_expiry(now) == datetime(2026, 4, 8, tzinfo=UTC)


class TestCreate:
    """Tests for LicenseStore.create."""

    async def test_creates_active_license_from_catalog(self, store, db_session):
        """Tier, credits and activation limit come from the product."""
        return_added(db_session)
        params = sale_params(external_product_code="427343")

        license = await store.create(params)

        db_session.begin_nested.assert_called_once()
        db_session.flush.assert_awaited()
        assert isinstance(license, License)
        assert license.status == LicenseStatus.ACTIVE
        assert license.product_id == "pro_unlimited"
        assert license.tier == "pro"
        assert license.credits_allocated == -1
        assert license.max_activations == 3
        assert license.activations == 0
        assert license.payment_count == 1
        assert license.expiry_date is None
        assert license.next_billing_date is None
        assert KEY_PATTERN.match(license.license_key)

    async def test_recurring_license_gets_expiry(self, store, db_session):
        """Recurring sales expire one month plus grace after purchase."""
        return_added(db_session)

        license = await store.create(sale_params(is_recurring=True))

        assert license.is_recurring is True
        assert license.next_billing_date == add_months(license.purchase_date, 1)
        assert license.expiry_date == license.next_billing_date + RECURRING_GRACE_PERIOD

    async def test_unknown_product_gets_free_grant(self, store, db_session):
        return_added(db_session)

        license = await store.create(sale_params(external_product_code="999999"))

        assert license.product_id == "free"
        assert license.credits_allocated == 50

    async def test_existing_transaction_raises_duplicate(
        self, store, db_session, active_license, result_factory
    ):
        """A second license for the same transaction id is refused."""
        db_session.execute = AsyncMock(return_value=result_factory(scalar=active_license))

        with pytest.raises(DuplicateTransactionError) as exc_info:
            await store.create(sale_params(external_transaction_id="9U7RZQUFAKHBEVWJU"))

        assert exc_info.value.existing_license_id == active_license.id
        db_session.add.assert_not_called()

    async def test_unique_violation_raises_duplicate(self, store, db_session):
        """A concurrent insert that wins the unique index surfaces as a duplicate."""
        db_session.flush = AsyncMock(side_effect=IntegrityError("INSERT", {}, Exception("dup")))

        with pytest.raises(DuplicateTransactionError):
            await store.create(sale_params())

    async def test_missing_row_after_insert(self, store, db_session):
        db_session.get = AsyncMock(return_value=None)

        with pytest.raises(WriteVerificationError):
            await store.create(sale_params())

    async def test_create_does_not_commit(self, store, db_session):
        """The IPN processor owns the commit."""
        return_added(db_session)

        await store.create(sale_params())

        db_session.commit.assert_not_awaited()


class TestTransitions:
    """Tests for refund, chargeback and cancel."""

    async def test_refund_active_license(self, store, db_session, active_license, result_factory):
        db_session.execute = AsyncMock(return_value=result_factory(scalar=active_license))

        license = await store.mark_refunded(active_license.external_transaction_id)

        assert license is active_license
        assert license.status == LicenseStatus.REFUNDED
        assert license.refunded_at is not None
        db_session.flush.assert_awaited_once()

    async def test_chargeback_active_license(
        self, store, db_session, active_license, result_factory
    ):
        db_session.execute = AsyncMock(return_value=result_factory(scalar=active_license))

        license = await store.mark_chargeback(active_license.external_transaction_id)

        assert license.status == LicenseStatus.CHARGEBACK
        assert license.chargeback_at is not None

    async def test_cancel_active_license(self, store, db_session, active_license, result_factory):
        db_session.execute = AsyncMock(return_value=result_factory(scalar=active_license))

        license = await store.mark_cancelled(active_license.external_transaction_id)

        assert license.status == LicenseStatus.CANCELLED
        assert license.cancelled_at is not None

    async def test_terminal_license_not_changed(
        self, store, db_session, license_factory, result_factory
    ):
        """A refunded license does not become charged back."""
        refunded = license_factory(status=LicenseStatus.REFUNDED)
        db_session.execute = AsyncMock(return_value=result_factory(scalar=refunded))

        license = await store.mark_chargeback(refunded.external_transaction_id)

        assert license.status == LicenseStatus.REFUNDED
        assert license.chargeback_at is None
        db_session.flush.assert_not_awaited()

    async def test_unknown_transaction_is_noop(self, store, db_session):
        assert await store.mark_refunded("UNKNOWN") is None
        db_session.flush.assert_not_awaited()


class TestRecurringPayment:
    """Tests for record_recurring_payment."""

    async def test_extends_active_license(self, store, db_session, license_factory, result_factory):
        license = license_factory(is_recurring=True, payment_count=1)
        db_session.execute = AsyncMock(return_value=result_factory(scalar=license))
        next_billing = datetime(2026, 12, 1, tzinfo=UTC)

        txn_id = license.external_transaction_id
        updated = await store.record_recurring_payment(txn_id, next_billing)

        assert updated.status == LicenseStatus.ACTIVE
        assert updated.payment_count == 2
        assert updated.next_billing_date == next_billing
        assert updated.expiry_date == next_billing + timedelta(days=7)
        assert updated.last_payment_date is not None

    async def test_reactivates_cancelled_license(
        self, store, db_session, license_factory, result_factory
    ):
        license = license_factory(status=LicenseStatus.CANCELLED, is_recurring=True)
        license.cancelled_at = datetime(2026, 9, 1, tzinfo=UTC)
        db_session.execute = AsyncMock(return_value=result_factory(scalar=license))

        updated = await store.record_recurring_payment(
            license.external_transaction_id, datetime(2026, 12, 1, tzinfo=UTC)
        )

        assert updated.status == LicenseStatus.ACTIVE
        assert updated.cancelled_at is None

    async def test_refunded_license_stays_refunded(
        self, store, db_session, license_factory, result_factory
    ):
        license = license_factory(status=LicenseStatus.REFUNDED, payment_count=1)
        db_session.execute = AsyncMock(return_value=result_factory(scalar=license))

        updated = await store.record_recurring_payment(
            license.external_transaction_id, datetime(2026, 12, 1, tzinfo=UTC)
        )

        assert updated.status == LicenseStatus.REFUNDED
        assert updated.payment_count == 1
        db_session.flush.assert_not_awaited()

    async def test_unknown_transaction(self, store):
        assert await store.record_recurring_payment("UNKNOWN", datetime.now(UTC)) is None


class TestListing:
    async def test_list_for_user_includes_inactive(self, store, db_session, result_factory):
        owner = uuid4()
        licenses = [
            License(user_id=owner, status=LicenseStatus.REFUNDED),
            License(user_id=owner, status=LicenseStatus.ACTIVE),
        ]
        db_session.execute = AsyncMock(return_value=result_factory(scalars=licenses))

        assert await store.list_for_user(owner) == licenses

        stmt = db_session.execute.await_args.args[0]
        compiled = str(stmt)
        assert "licenses.user_id" in compiled
        assert "licenses.status" not in compiled.split("WHERE", 1)[1]
        assert "ORDER BY licenses.purchase_date DESC" in compiled


class TestValidate:
    """Tests for LicenseStore.validate."""

    async def test_valid_license(self, store, db_session, active_license, result_factory):
        db_session.execute = AsyncMock(
            return_value=result_factory(row=(active_license, "Buyer@Example.com"))
        )

        result = await store.validate(" abcd-1234-ef56-7890 ", "buyer@example.com")

        assert result.valid is True
        assert result.reason is None
        assert result.license_id == active_license.id
        assert active_license.last_validated is not None
        db_session.commit.assert_awaited_once()

    async def test_unknown_key(self, store, db_session):
        result = await store.validate("AAAA-BBBB-CCCC-DDDD", "buyer@example.com")

        assert result.valid is False
        assert result.reason == "License key not found"
        db_session.commit.assert_not_awaited()

    async def test_email_mismatch(self, store, db_session, active_license, result_factory):
        db_session.execute = AsyncMock(
            return_value=result_factory(row=(active_license, "owner@example.com"))
        )

        result = await store.validate(active_license.license_key, "someone@example.com")

        assert result.valid is False
        assert result.reason == "License key does not match email"

    async def test_refunded_license(self, store, db_session, license_factory, result_factory):
        license = license_factory(status=LicenseStatus.REFUNDED)
        db_session.execute = AsyncMock(
            return_value=result_factory(row=(license, "buyer@example.com"))
        )

        result = await store.validate(license.license_key, "buyer@example.com")

        assert result.valid is False
        assert result.reason == "License is refunded"
        assert result.status == LicenseStatus.REFUNDED

    async def test_expired_license(self, store, db_session, license_factory, result_factory):
        license = license_factory(expiry_date=datetime.now(UTC) - timedelta(days=1))
        db_session.execute = AsyncMock(
            return_value=result_factory(row=(license, "buyer@example.com"))
        )

        result = await store.validate(license.license_key, "buyer@example.com")

        assert result.valid is False
        assert result.reason == "License has expired"


class TestActivate:
    """Tests for LicenseStore.activate."""

    async def test_activation_succeeds(self, store, db_session, license_factory, result_factory):
        license = license_factory(activations=0, max_activations=3)
        db_session.execute = AsyncMock(
            side_effect=[
                result_factory(row=(license, "buyer@example.com")),
                result_factory(row=(1, 3)),
            ]
        )

        result = await store.activate(license.license_key, "buyer@example.com", "device-1")

        assert result.success is True
        assert result.activations == 1
        assert result.max_activations == 3
        assert result.remaining_activations == 2
        db_session.commit.assert_awaited_once()

    async def test_activation_limit_reached(
        self, store, db_session, license_factory, result_factory
    ):
        """The conditional update matches no row once every slot is used."""
        license = license_factory(activations=1, max_activations=1)
        db_session.execute = AsyncMock(
            side_effect=[
                result_factory(row=(license, "buyer@example.com")),
                result_factory(row=None),
            ]
        )

        result = await store.activate(license.license_key, "buyer@example.com")

        assert result.success is False
        assert result.error == "Maximum activations (1) reached"
        assert result.remaining_activations == 0
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()

    async def test_invalid_license_not_activated(self, store, db_session):
        result = await store.activate("AAAA-BBBB-CCCC-DDDD", "buyer@example.com")

        assert result.success is False
        assert result.error == "License key not found"
        assert db_session.execute.await_count == 1
