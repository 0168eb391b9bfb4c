"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.

Only infrastructure faults and store-level constraint violations are raised.
Expected outcomes (duplicate notification, insufficient credits, activation
limit, unknown license on refund) are returned as result objects.
"""

from uuid import UUID


class LicensingError(Exception):
    """Base exception for all licensing errors."""

    pass


class DuplicateTransactionError(LicensingError):
    """Raised when a license already exists for an external transaction id."""

    def __init__(
        self, external_transaction_id: str, existing_license_id: UUID | None = None
    ) -> None:
        self.external_transaction_id = external_transaction_id
        self.existing_license_id = existing_license_id
        super().__init__(f"License already exists for transaction {external_transaction_id}")


class UserNotFoundError(LicensingError):
    """Raised when a user referenced by id doesn't exist."""

    def __init__(self, user_id: UUID) -> None:
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class AuditRecordNotFoundError(LicensingError):
    """Raised when a transaction audit record can't be found for replay."""

    def __init__(self, idempotency_key: str) -> None:
        self.idempotency_key = idempotency_key
        super().__init__(f"Transaction audit record not found: {idempotency_key}")


class WriteVerificationError(LicensingError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class AuthenticationError(LicensingError):
    """Raised when a bearer token is missing, invalid or expired."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")
