"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
The only JSON column (JSONB on PostgreSQL) is the raw IPN payload kept for
audit and replay.
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from app.models.api import LicenseStatus


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class User(Base):
    """
    ORM model for users table.

    The licensing service owns only the credit period fields and the
    JVZoo provisioning fields; everything else belongs to the account service.
    """

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Identity (email is stored lower-cased)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_via: Mapped[str] = mapped_column(String(50), nullable=False, default="signup")
    jvzoo_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Monthly credit period
    credits_used_period: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_credit_reset: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Default preferences for accounts provisioned from a purchase
    preferred_image_model: Mapped[str] = mapped_column(
        String(50), nullable=False, default="gemini"
    )
    image_quality: Mapped[str] = mapped_column(String(20), nullable=False, default="standard")
    default_tone: Mapped[str] = mapped_column(
        String(100), nullable=False, default="professional yet approachable"
    )
    default_aspect_ratio: Mapped[str] = mapped_column(
        String(20), nullable=False, default="square"
    )
    theme: Mapped[str] = mapped_column(String(50), nullable=False, default="clean-slate")
    theme_mode: Mapped[str] = mapped_column(String(10), nullable=False, default="light")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("credits_used_period >= 0", name="ck_users_credits_used_non_negative"),
        Index("idx_users_next_credit_reset", "next_credit_reset"),
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email}, used={self.credits_used_period})>"


class License(Base):
    """
    ORM model for licenses table.

    One row per purchased entitlement unit. external_transaction_id is unique
    and is the idempotency key for license creation.
    """

    __tablename__ = "licenses"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    license_key: Mapped[str] = mapped_column(String(19), nullable=False, unique=True)

    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True
    )

    # Product
    product_id: Mapped[str] = mapped_column(String(100), nullable=False)
    tier: Mapped[str] = mapped_column(String(50), nullable=False)

    status: Mapped[LicenseStatus] = mapped_column(
        SQLEnum(
            LicenseStatus,
            name="license_status",
            native_enum=False,
            length=20,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=LicenseStatus.ACTIVE,
    )

    # JVZoo references
    external_transaction_id: Mapped[str] = mapped_column(
        String(255), nullable=False, unique=True
    )
    external_receipt_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_product_code: Mapped[str] = mapped_column(String(50), nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False)

    # Purchase
    purchase_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    purchase_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    expiry_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Activation
    activations: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_activations: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    last_validated: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Monthly credits granted by this license (-1 = unlimited)
    credits_allocated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Lifecycle timestamps
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    chargeback_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Recurring billing
    next_billing_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_payment_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    payment_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("activations >= 0", name="ck_licenses_activations_non_negative"),
        CheckConstraint(
            "activations <= max_activations", name="ck_licenses_activations_within_max"
        ),
        CheckConstraint("credits_allocated >= -1", name="ck_licenses_credits_allocated_valid"),
        Index("idx_licenses_user_status", "user_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<License(id={self.id}, key={self.license_key}, tier={self.tier}, "
            f"status={self.status})>"
        )


class JVZooTransaction(Base):
    """
    ORM model for jvzoo_transactions table.

    Append-only audit log: one row per distinct IPN notification, written
    whether or not processing succeeded. Only the processed/processing_error
    columns change after insert (replay of failed rows).
    """

    __tablename__ = "jvzoo_transactions"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    idempotency_key: Mapped[str] = mapped_column(String(300), nullable=False, unique=True)
    external_transaction_id: Mapped[str] = mapped_column(String(255), nullable=False)
    external_receipt_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    external_product_code: Mapped[str] = mapped_column(String(50), nullable=False)

    # Buyer contact
    customer_email: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_country: Mapped[str | None] = mapped_column(String(10), nullable=True)
    customer_state: Mapped[str | None] = mapped_column(String(100), nullable=True)

    # Money
    amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    affiliate_commission: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    vendor_earnings: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)

    # Verification and processing
    verification_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    raw_payload: Mapped[dict[str, str]] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"), nullable=False
    )

    user_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        Index("idx_jvzoo_transactions_external_id", "external_transaction_id"),
        Index(
            "idx_jvzoo_transactions_failed",
            "created_at",
            postgresql_where=(processed.is_(False)),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<JVZooTransaction(id={self.id}, key={self.idempotency_key}, "
            f"processed={self.processed})>"
        )


class CreditUsageLog(Base):
    """
    ORM model for credit_usage_logs table.

    Append-only record of successful credit consumption.
    """

    __tablename__ = "credit_usage_logs"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("users.id"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    action_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    unlimited: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    used_before: Mapped[int] = mapped_column(Integer, nullable=False)
    used_after: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_credit_usage_amount_positive"),
        Index("idx_credit_usage_user_created", "user_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<CreditUsageLog(user_id={self.user_id}, amount={self.amount})>"
