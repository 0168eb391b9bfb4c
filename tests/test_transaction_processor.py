"""
Tests for TransactionProcessor.

Covers idempotency, signature rejection, dispatch per transaction type,
purchase notifications, failure auditing and replay.
"""

from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from prometheus_client import REGISTRY
from sqlalchemy.exc import IntegrityError

from app.db.models import JVZooTransaction
from app.exceptions import AuditRecordNotFoundError, DuplicateTransactionError
from app.models.api import IPNOutcome, LicenseStatus
from app.models.domain import IPNNotification, NotificationKind
from app.services.transaction_processor import TransactionProcessor, transaction_type_label

SECRET = "test-jvzoo-secret"


@pytest.fixture
def license_store() -> MagicMock:
    store = MagicMock()
    store.create = AsyncMock()
    store.find_by_external_transaction = AsyncMock(return_value=None)
    store.mark_refunded = AsyncMock()
    store.mark_chargeback = AsyncMock()
    store.mark_cancelled = AsyncMock()
    store.record_recurring_payment = AsyncMock()
    return store


@pytest.fixture
def users(mock_user: MagicMock) -> MagicMock:
    directory = MagicMock()
    directory.find_or_create_from_purchase = AsyncMock(return_value=(mock_user, True))
    directory.issue_temporary_password = AsyncMock(return_value="TempPass1234")
    return directory


@pytest.fixture
def processor(db_session, license_store, users) -> TransactionProcessor:
    return TransactionProcessor(db_session, SECRET, license_store, users)


def last_audit(db_session: AsyncMock) -> JVZooTransaction:
    audit = db_session.add.call_args.args[0]
    assert isinstance(audit, JVZooTransaction)
    return audit


class TestIdempotency:
    """Duplicate deliveries and races."""

    async def test_existing_audit_short_circuits(
        self, processor, db_session, license_store, ipn_fields, result_factory
    ):
        """A second delivery of the same notification changes nothing."""
        existing = MagicMock(spec=JVZooTransaction)
        db_session.execute = AsyncMock(return_value=result_factory(scalar=existing))

        result = await processor.process(IPNNotification.from_fields(ipn_fields()))

        assert result.outcome == IPNOutcome.ALREADY_PROCESSED
        assert result.already_processed is True
        assert result.audit_id == existing.id
        license_store.create.assert_not_awaited()
        db_session.add.assert_not_called()
        db_session.commit.assert_not_awaited()

    async def test_commit_race_reported_as_already_processed(
        self, processor, db_session, license_store, ipn_fields, license_factory
    ):
        """Losing the unique audit key to a concurrent delivery rolls back."""
        license_store.create.return_value = license_factory()
        db_session.commit = AsyncMock(side_effect=IntegrityError("INSERT", {}, Exception("dup")))

        result = await processor.process(IPNNotification.from_fields(ipn_fields()))

        assert result.outcome == IPNOutcome.ALREADY_PROCESSED
        assert result.notification is None
        db_session.rollback.assert_awaited_once()


class TestVerification:
    """Signature handling."""

    async def test_forged_notification_discarded(
        self, processor, db_session, license_store, users, ipn_fields
    ):
        """No license, no user, and no audit row for a bad signature."""
        fields = ipn_fields(secret="not-the-secret")

        result = await processor.process(IPNNotification.from_fields(fields))

        assert result.outcome == IPNOutcome.VERIFICATION_FAILED
        users.find_or_create_from_purchase.assert_not_awaited()
        license_store.create.assert_not_awaited()
        db_session.add.assert_not_called()
        db_session.commit.assert_not_awaited()

    async def test_tampered_field_discarded(self, processor, license_store, ipn_fields):
        fields = {**ipn_fields(), "ctransamount": "0.01"}

        result = await processor.process(IPNNotification.from_fields(fields))

        assert result.outcome == IPNOutcome.VERIFICATION_FAILED
        license_store.create.assert_not_awaited()


class TestSale:
    """SALE handling."""

    async def test_new_buyer_gets_welcome(
        self, processor, db_session, license_store, users, mock_user, ipn_fields, license_factory
    ):
        license = license_factory(user_id=mock_user.id)
        license_store.create.return_value = license

        result = await processor.process(IPNNotification.from_fields(ipn_fields()))

        assert result.outcome == IPNOutcome.PROCESSED
        assert result.idempotency_key == "SALE:9U7RZQUFAKHBEVWJU"
        assert result.license_key == license.license_key
        assert result.user_id == mock_user.id

        users.find_or_create_from_purchase.assert_awaited_once_with(
            "buyer@example.com", name="Test Buyer", customer_id="buyer@example.com"
        )
        params = license_store.create.call_args.args[0]
        assert params.external_transaction_id == "9U7RZQUFAKHBEVWJU"
        assert params.external_product_code == "427079"
        assert params.is_recurring is False

        notification = result.notification
        assert notification.kind == NotificationKind.WELCOME
        assert notification.temporary_password == "TempPass1234"
        assert notification.product_name == "AdGenius AI Starter"

        audit = last_audit(db_session)
        assert audit.idempotency_key == "SALE:9U7RZQUFAKHBEVWJU"
        assert audit.verified is True
        assert audit.processed is True
        assert audit.processed_at is not None
        assert audit.user_id == mock_user.id
        assert audit.raw_payload["cverify"] == ipn_fields()["cverify"]
        db_session.commit.assert_awaited_once()

    async def test_upsell_to_existing_account_gets_upgrade(
        self, processor, license_store, users, user_factory, ipn_fields, license_factory
    ):
        """A buyer with a password buying an add-on keeps their credentials."""
        buyer = user_factory(password_hash="$argon2id$existing")
        users.find_or_create_from_purchase.return_value = (buyer, False)
        license_store.create.return_value = license_factory(
            user_id=buyer.id, product_code="427343", tier="pro"
        )

        result = await processor.process(
            IPNNotification.from_fields(ipn_fields(product_code="427343", receipt="OTO1RECEIPT"))
        )

        assert result.outcome == IPNOutcome.PROCESSED
        assert result.notification.kind == NotificationKind.UPGRADE
        assert result.notification.temporary_password is None
        assert result.notification.tier == "pro"
        users.issue_temporary_password.assert_not_awaited()

    async def test_existing_passwordless_user_gets_welcome(
        self, processor, license_store, users, user_factory, ipn_fields, license_factory
    ):
        """Upsell buyers who never received credentials get them now."""
        buyer = user_factory(password_hash=None)
        users.find_or_create_from_purchase.return_value = (buyer, False)
        license_store.create.return_value = license_factory(user_id=buyer.id)

        result = await processor.process(
            IPNNotification.from_fields(ipn_fields(product_code="427347"))
        )

        assert result.notification.kind == NotificationKind.WELCOME
        users.issue_temporary_password.assert_awaited_once_with(buyer)

    async def test_recurring_sale_flagged(
        self, processor, license_store, ipn_fields, license_factory
    ):
        license_store.create.return_value = license_factory(is_recurring=True)

        await processor.process(
            IPNNotification.from_fields(ipn_fields(product_type="RECURRING"))
        )

        assert license_store.create.call_args.args[0].is_recurring is True

    async def test_duplicate_license_is_processed_without_email(
        self, processor, license_store, ipn_fields, license_factory
    ):
        """A sale whose license already exists is acknowledged quietly."""
        existing = license_factory()
        license_store.create.side_effect = DuplicateTransactionError("9U7RZQUFAKHBEVWJU")
        license_store.find_by_external_transaction.return_value = existing

        result = await processor.process(IPNNotification.from_fields(ipn_fields()))

        assert result.outcome == IPNOutcome.PROCESSED
        assert result.license_id == existing.id
        assert result.notification is None

    async def test_missing_receipt_uses_signature(
        self, processor, license_store, ipn_fields, license_factory
    ):
        """Without a receipt the signature identifies the transaction."""
        license_store.create.return_value = license_factory()
        fields = ipn_fields(receipt="")

        result = await processor.process(IPNNotification.from_fields(fields))

        assert result.idempotency_key == f"SALE:{fields['cverify']}"
        assert license_store.create.call_args.args[0].external_transaction_id == fields["cverify"]


class TestLifecycleNotifications:
    """Refund, chargeback, cancel and installment dispatch."""

    async def test_refund(self, processor, db_session, license_store, ipn_fields, license_factory):
        refunded = license_factory(status=LicenseStatus.REFUNDED)
        license_store.mark_refunded.return_value = refunded

        result = await processor.process(
            IPNNotification.from_fields(ipn_fields(transaction_type="RFND"))
        )

        assert result.outcome == IPNOutcome.PROCESSED
        assert result.idempotency_key == "RFND:9U7RZQUFAKHBEVWJU"
        assert result.license_status == LicenseStatus.REFUNDED
        assert result.notification is None
        license_store.mark_refunded.assert_awaited_once_with("9U7RZQUFAKHBEVWJU")
        assert last_audit(db_session).user_id == refunded.user_id

    async def test_chargeback(self, processor, license_store, ipn_fields):
        license_store.mark_chargeback.return_value = None

        result = await processor.process(
            IPNNotification.from_fields(ipn_fields(transaction_type="CGBK"))
        )

        assert result.outcome == IPNOutcome.PROCESSED
        license_store.mark_chargeback.assert_awaited_once_with("9U7RZQUFAKHBEVWJU")

    async def test_cancel_rebill(self, processor, license_store, ipn_fields):
        result = await processor.process(
            IPNNotification.from_fields(ipn_fields(transaction_type="CANCEL-REBILL"))
        )

        assert result.outcome == IPNOutcome.PROCESSED
        license_store.mark_cancelled.assert_awaited_once_with("9U7RZQUFAKHBEVWJU")

    async def test_installment(self, processor, license_store, ipn_fields, license_factory):
        """Each installment is keyed by its transaction time."""
        license_store.record_recurring_payment.return_value = license_factory(is_recurring=True)

        result = await processor.process(
            IPNNotification.from_fields(
                ipn_fields(transaction_type="INSTAL", transaction_time="1766000000")
            )
        )

        assert result.outcome == IPNOutcome.PROCESSED
        assert result.idempotency_key == "INSTAL:9U7RZQUFAKHBEVWJU:1766000000"
        txn_id, next_billing = license_store.record_recurring_payment.call_args.args
        assert txn_id == "9U7RZQUFAKHBEVWJU"
        assert isinstance(next_billing, datetime)

    async def test_unknown_type_ignored_but_audited(
        self, processor, db_session, license_store, users, ipn_fields
    ):
        result = await processor.process(
            IPNNotification.from_fields(ipn_fields(transaction_type="BILL"))
        )

        assert result.outcome == IPNOutcome.IGNORED
        users.find_or_create_from_purchase.assert_not_awaited()
        license_store.mark_refunded.assert_not_awaited()
        audit = last_audit(db_session)
        assert audit.processed is True
        assert audit.user_id is None


class TestFailures:
    """Processing errors never escape process()."""

    async def test_handler_error_writes_failed_audit(
        self, processor, db_session, license_store, ipn_fields
    ):
        license_store.create.side_effect = RuntimeError("database went away")

        result = await processor.process(IPNNotification.from_fields(ipn_fields()))

        assert result.outcome == IPNOutcome.FAILED
        assert result.error == "database went away"
        db_session.rollback.assert_awaited_once()
        audit = last_audit(db_session)
        assert audit.processed is False
        assert audit.verified is True
        assert audit.processing_error == "database went away"
        db_session.commit.assert_awaited_once()

    async def test_failure_audit_error_is_swallowed(
        self, processor, db_session, license_store, ipn_fields
    ):
        """If even the failure record cannot be written, the result still comes back."""
        license_store.create.side_effect = RuntimeError("boom")
        db_session.commit = AsyncMock(side_effect=RuntimeError("still down"))

        result = await processor.process(IPNNotification.from_fields(ipn_fields()))

        assert result.outcome == IPNOutcome.FAILED
        assert result.audit_id is None

    async def test_long_error_truncated(self, processor, db_session, license_store, ipn_fields):
        license_store.create.side_effect = RuntimeError("x" * 5000)

        await processor.process(IPNNotification.from_fields(ipn_fields()))

        assert len(last_audit(db_session).processing_error) == 2000


class TestReplay:
    """Tests for replay_failed."""

    def failed_audit(self, fields: dict[str, str]) -> MagicMock:
        audit = MagicMock(spec=JVZooTransaction)
        audit.raw_payload = fields
        audit.processed = False
        audit.verified = True
        audit.processing_error = "database went away"
        return audit

    async def test_unknown_key(self, processor):
        with pytest.raises(AuditRecordNotFoundError):
            await processor.replay_failed("SALE:NOPE")

    async def test_replay_marks_same_row_processed(
        self, processor, db_session, license_store, ipn_fields, license_factory, result_factory
    ):
        audit = self.failed_audit(ipn_fields())
        db_session.execute = AsyncMock(return_value=result_factory(scalar=audit))
        license_store.create.return_value = license_factory()

        result = await processor.replay_failed("SALE:9U7RZQUFAKHBEVWJU")

        assert result.outcome == IPNOutcome.PROCESSED
        assert result.notification.kind == NotificationKind.WELCOME
        assert audit.processed is True
        assert audit.processing_error is None
        assert audit.processed_at is not None
        db_session.add.assert_not_called()
        db_session.commit.assert_awaited_once()

    async def test_replay_of_processed_row(self, processor, db_session, ipn_fields, result_factory):
        audit = self.failed_audit(ipn_fields())
        audit.processed = True
        db_session.execute = AsyncMock(return_value=result_factory(scalar=audit))

        result = await processor.replay_failed("SALE:9U7RZQUFAKHBEVWJU")

        assert result.outcome == IPNOutcome.ALREADY_PROCESSED

    async def test_replay_failure_rolls_back(
        self, processor, db_session, license_store, ipn_fields, result_factory
    ):
        audit = self.failed_audit(ipn_fields())
        db_session.execute = AsyncMock(return_value=result_factory(scalar=audit))
        license_store.create.side_effect = RuntimeError("still broken")

        result = await processor.replay_failed("SALE:9U7RZQUFAKHBEVWJU")

        assert result.outcome == IPNOutcome.FAILED
        assert result.error == "still broken"
        assert result.audit_id == audit.id
        db_session.rollback.assert_awaited_once()

    async def test_replay_failure_records_new_error(
        self, processor, db_session, license_store, ipn_fields, result_factory
    ):
        """The row is re-read after the rollback and keeps the latest error."""
        audit = self.failed_audit(ipn_fields())
        reloaded = self.failed_audit(ipn_fields())
        db_session.execute = AsyncMock(return_value=result_factory(scalar=audit))
        db_session.get = AsyncMock(return_value=reloaded)
        license_store.create.side_effect = RuntimeError("still broken")

        result = await processor.replay_failed("SALE:9U7RZQUFAKHBEVWJU")

        assert result.outcome == IPNOutcome.FAILED
        db_session.get.assert_awaited_once_with(JVZooTransaction, audit.id)
        assert reloaded.processing_error == "still broken"
        assert reloaded.processed is False
        db_session.commit.assert_awaited_once()

    async def test_replay_failure_error_write_failing(
        self, processor, db_session, license_store, ipn_fields, result_factory
    ):
        audit = self.failed_audit(ipn_fields())
        db_session.execute = AsyncMock(return_value=result_factory(scalar=audit))
        db_session.get = AsyncMock(side_effect=ConnectionError("database went away"))
        license_store.create.side_effect = RuntimeError("still broken")

        result = await processor.replay_failed("SALE:9U7RZQUFAKHBEVWJU")

        assert result.outcome == IPNOutcome.FAILED
        assert result.error == "still broken"
        assert db_session.rollback.await_count == 2


def ipn_type_series() -> set[str]:
    return {
        sample.labels["transaction_type"]
        for metric in REGISTRY.collect()
        if metric.name == "licensing_ipn_notifications"
        for sample in metric.samples
        if "transaction_type" in sample.labels
    }


class TestMetricLabels:
    """ctransaction is caller-controlled; metric labels must stay bounded."""

    @pytest.mark.parametrize(
        "transaction_type", ["SALE", "RFND", "CGBK", "INSTAL", "CANCEL-REBILL"]
    )
    def test_known_types_kept(self, transaction_type):
        assert transaction_type_label(transaction_type) == transaction_type

    @pytest.mark.parametrize("transaction_type", ["JUNK", "", "sale ", "TEST"])
    def test_other_values_collapse(self, transaction_type):
        assert transaction_type_label(transaction_type) == "unknown"

    async def test_forged_junk_types_share_one_series(self, processor, ipn_fields):
        before = REGISTRY.get_sample_value(
            "licensing_ipn_notifications_total",
            {"transaction_type": "unknown", "outcome": "verification_failed"},
        ) or 0.0

        for i in range(25):
            fields = ipn_fields(transaction_type=f"JUNK{i}", secret="not-the-secret")
            await processor.process(IPNNotification.from_fields(fields))

        after = REGISTRY.get_sample_value(
            "licensing_ipn_notifications_total",
            {"transaction_type": "unknown", "outcome": "verification_failed"},
        )
        assert after - before == 25
        assert not any(label.startswith("JUNK") for label in ipn_type_series())
