"""
Purchase Notifier - Interface to the email collaborator.

The transaction processor only decides which notification a sale needs;
the IPN route hands it to a notifier after processing.
"""

from typing import Protocol

from app.models.domain import NotificationKind, PurchaseNotification
from app.observability.logging import get_logger

logger = get_logger(__name__)


class PurchaseNotifier(Protocol):
    """Delivers purchase emails. Implementations may raise; callers log and continue."""

    async def send_welcome(self, notification: PurchaseNotification) -> None:
        """New account: license key plus temporary credentials."""
        ...

    async def send_upgrade(self, notification: PurchaseNotification) -> None:
        """Existing account: new product unlocked, credentials untouched."""
        ...


class LoggingPurchaseNotifier:
    """Notifier that records the email it would send. Used until an SMTP provider is wired in."""

    async def send_welcome(self, notification: PurchaseNotification) -> None:
        logger.info(
            "welcome_email_queued",
            email=notification.email,
            license_key=notification.license_key,
            product=notification.product_name,
        )

    async def send_upgrade(self, notification: PurchaseNotification) -> None:
        logger.info(
            "upgrade_email_queued",
            email=notification.email,
            license_key=notification.license_key,
            product=notification.product_name,
            tier=notification.tier,
        )


async def deliver(notifier: PurchaseNotifier, notification: PurchaseNotification) -> bool:
    """Send a notification; failures are logged and reported as False."""
    try:
        if notification.kind == NotificationKind.WELCOME:
            await notifier.send_welcome(notification)
        else:
            await notifier.send_upgrade(notification)
    except Exception as e:
        logger.error(
            "purchase_email_failed",
            kind=notification.kind.value,
            email=notification.email,
            error=str(e),
            exc_info=True,
        )
        return False
    return True
