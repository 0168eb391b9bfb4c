"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
The one exception is IPNNotification.fields: the JVZoo signature covers every
posted field, including ones this service does not otherwise read.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from uuid import UUID

from app.models.api import CreditErrorCode, IPNOutcome, LicenseStatus

# Credit grant / allocation sentinel meaning "no monthly limit"
UNLIMITED_CREDITS = -1

IPN_REQUIRED_FIELDS = ("ctransaction", "cproditem", "ccustemail", "cverify")


def parse_amount(value: str | None) -> Decimal | None:
    """Parse a JVZoo money field; blank or non-numeric values become None."""
    if value is None or not value.strip():
        return None
    try:
        amount = Decimal(value.strip())
    except InvalidOperation:
        return None
    return amount if amount.is_finite() else None


@dataclass(frozen=True)
class ProductDescriptor:
    """Entitlement descriptor for one external product code."""

    internal_id: str
    display_name: str
    tier: str
    credit_grant: int
    features: frozenset[str]
    creates_account: bool = False

    def __post_init__(self) -> None:
        if not self.internal_id:
            raise ValueError("internal_id cannot be empty")
        if self.credit_grant < UNLIMITED_CREDITS:
            raise ValueError(f"Invalid credit grant: {self.credit_grant}")

    @property
    def is_unlimited(self) -> bool:
        return self.credit_grant == UNLIMITED_CREDITS


@dataclass(frozen=True)
class Entitlement:
    """Aggregate of a user's active licenses, computed per query."""

    credit_limit: int
    is_unlimited: bool
    features: frozenset[str]
    tier: str

    def __post_init__(self) -> None:
        if self.is_unlimited and self.credit_limit != UNLIMITED_CREDITS:
            raise ValueError("Unlimited entitlement must carry the unlimited sentinel")
        if not self.is_unlimited and self.credit_limit < 0:
            raise ValueError(f"Credit limit cannot be negative: {self.credit_limit}")


@dataclass(frozen=True)
class CreditConsumption:
    """Result of a consume call. Insufficient credits is a result, not an error."""

    success: bool
    remaining: int
    unlimited: bool
    consumed: int = 0
    error: CreditErrorCode | None = None


@dataclass(frozen=True)
class CreditStatus:
    limit: int
    used: int
    remaining: int
    unlimited: bool
    next_reset: datetime | None


@dataclass(frozen=True)
class ActionUsage:
    action_type: str | None
    events: int
    credits: int


@dataclass(frozen=True)
class UsageSummary:
    """Credit usage log totals since period_start, one entry per action type."""

    period_start: datetime
    events: int
    credits: int
    by_action: tuple[ActionUsage, ...] = ()


@dataclass(frozen=True)
class LicenseCreateParams:
    """Everything the store needs to create a license from a sale."""

    user_id: UUID
    email: str
    external_transaction_id: str
    external_product_code: str
    transaction_type: str
    external_receipt_id: str | None = None
    purchase_amount: Decimal | None = None
    is_recurring: bool = False

    def __post_init__(self) -> None:
        if not self.external_transaction_id:
            raise ValueError("external_transaction_id cannot be empty")
        if not self.external_product_code:
            raise ValueError("external_product_code cannot be empty")
        if "@" not in self.email:
            raise ValueError(f"Invalid email: {self.email}")


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: str | None = None
    license_id: UUID | None = None
    status: LicenseStatus | None = None


@dataclass(frozen=True)
class ActivationResult:
    success: bool
    activations: int = 0
    max_activations: int = 0
    error: str | None = None

    @property
    def remaining_activations(self) -> int:
        return max(0, self.max_activations - self.activations)


@dataclass(frozen=True)
class IPNNotification:
    """One inbound JVZoo IPN, with the raw field map used for signing."""

    transaction_type: str
    product_code: str
    customer_email: str
    signature: str
    receipt: str = ""
    customer_name: str = ""
    customer_country: str = ""
    customer_state: str = ""
    product_type: str = ""
    transaction_time: str = ""
    amount: Decimal | None = None
    affiliate: str = ""
    affiliate_tracking_id: str = ""
    vendor_through: str = ""
    fields: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        required = zip(
            IPN_REQUIRED_FIELDS,
            (self.transaction_type, self.product_code, self.customer_email, self.signature),
        )
        missing = [name for name, value in required if not value]
        if missing:
            raise ValueError(f"Missing required IPN fields: {', '.join(missing)}")

    @classmethod
    def from_fields(cls, fields: Mapping[str, str]) -> "IPNNotification":
        """Build a notification from posted form/JSON fields (all values as strings)."""
        raw = {key: "" if value is None else str(value) for key, value in fields.items()}
        return cls(
            transaction_type=raw.get("ctransaction", "").strip().upper(),
            product_code=raw.get("cproditem", "").strip(),
            customer_email=raw.get("ccustemail", "").strip().lower(),
            signature=raw.get("cverify", "").strip(),
            receipt=raw.get("ctransreceipt", "").strip(),
            customer_name=raw.get("ccustname", "").strip(),
            customer_country=raw.get("ccustcc", "").strip(),
            customer_state=raw.get("ccuststate", "").strip(),
            product_type=raw.get("cprodtype", "").strip().upper(),
            transaction_time=raw.get("ctranstime", "").strip(),
            amount=parse_amount(raw.get("ctransamount")),
            affiliate=raw.get("ctransaffiliate", "").strip(),
            affiliate_tracking_id=raw.get("caffitid", "").strip(),
            vendor_through=raw.get("cvendthru", "").strip(),
            fields=raw,
        )

    @property
    def external_transaction_id(self) -> str:
        """Receipt identifying the purchase; the signature stands in when absent."""
        return self.receipt or self.signature.upper()

    @property
    def is_recurring(self) -> bool:
        return self.product_type == "RECURRING"

    @property
    def idempotency_key(self) -> str:
        """
        Audit-log dedup key.

        Follow-up notifications (refund, rebill) reuse the sale's receipt, so
        the type is part of the key; every installment also reuses it, so
        INSTAL adds the transaction time, or the signature when the time is
        missing.
        """
        key = f"{self.transaction_type}:{self.external_transaction_id}"
        if self.transaction_type == "INSTAL":
            key = f"{key}:{self.transaction_time or self.signature.upper()}"
        return key


class NotificationKind(str, Enum):
    """Which purchase email the route should send after a sale."""

    WELCOME = "welcome"
    UPGRADE = "upgrade"


@dataclass(frozen=True)
class PurchaseNotification:
    """Data handed to the notifier after a processed sale."""

    kind: NotificationKind
    email: str
    name: str | None
    license_key: str
    product_name: str
    tier: str
    temporary_password: str | None = None

    def __post_init__(self) -> None:
        if self.kind == NotificationKind.WELCOME and not self.temporary_password:
            raise ValueError("Welcome notification requires a temporary password")
        if self.kind == NotificationKind.UPGRADE and self.temporary_password:
            raise ValueError("Upgrade notification must not carry credentials")


@dataclass(frozen=True)
class ProcessingResult:
    """What TransactionProcessor.process hands back to the route."""

    outcome: IPNOutcome
    idempotency_key: str
    transaction_type: str
    audit_id: UUID | None = None
    user_id: UUID | None = None
    license_id: UUID | None = None
    license_key: str | None = None
    license_status: LicenseStatus | None = None
    notification: PurchaseNotification | None = None
    error: str | None = None

    @property
    def already_processed(self) -> bool:
        return self.outcome == IPNOutcome.ALREADY_PROCESSED
