"""
Credit Ledger - Monthly credit consumption against the aggregated allowance.

Period state lives on the user row (credits_used_period, next_credit_reset).
Both the monthly reset and the debit are conditional UPDATEs, so concurrent
requests for one user can neither double-reset nor overspend.
"""

from datetime import UTC, datetime
from typing import NamedTuple
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import CreditUsageLog, User
from app.exceptions import UserNotFoundError
from app.models.api import CreditErrorCode
from app.models.domain import ActionUsage, CreditConsumption, CreditStatus, UsageSummary
from app.observability.logging import get_logger
from app.observability.metrics import metrics
from app.services.entitlements import EntitlementAggregator

logger = get_logger(__name__)

# Reported as "remaining" for unlimited users
UNLIMITED_REMAINING = 999_999_999

CREDIT_COSTS: dict[str, int] = {
    "generate_ad": 1,
    "generate_prompt": 1,
    "generate_angle": 1,
    "bulk_generate": 5,
    "export_ad": 0,
}
DEFAULT_CREDIT_COST = 1
REFERENCE_IMAGE_SURCHARGE = 2


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def next_period_start(now: datetime) -> datetime:
    """First instant (00:00 UTC on the 1st) of the month after now."""
    now = now.astimezone(UTC)
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=UTC)
    return datetime(now.year, now.month + 1, 1, tzinfo=UTC)


def period_start(now: datetime) -> datetime:
    """00:00 UTC on the 1st of the month containing now."""
    now = now.astimezone(UTC)
    return datetime(now.year, now.month, 1, tzinfo=UTC)


def credit_cost(action_type: str | None, has_reference_image: bool = False) -> int:
    """Credits charged for a generation action."""
    cost = CREDIT_COSTS.get(action_type or "", DEFAULT_CREDIT_COST)
    if has_reference_image:
        cost += REFERENCE_IMAGE_SURCHARGE
    return cost


class _Period(NamedTuple):
    used: int
    next_reset: datetime | None


class CreditLedger:
    """Per-user monthly credit accounting."""

    def __init__(self, session: AsyncSession, aggregator: EntitlementAggregator) -> None:
        self.session = session
        self.aggregator = aggregator

    async def consume(
        self, user_id: UUID, amount: int, action_type: str | None = None
    ) -> CreditConsumption:
        """
        Debit amount credits for the current period.

        Order: reset the period if due (committed first), read the entitlement,
        then debit with a conditional UPDATE. Insufficient credits leaves the
        counter untouched and is reported in the result.

        Raises:
            UserNotFoundError: No such user
            ValueError: Negative amount
        """
        if amount < 0:
            raise ValueError(f"Credit amount cannot be negative: {amount}")

        period = await self._current_period(user_id)
        entitlement = await self.aggregator.entitlements_for(user_id)

        if entitlement.is_unlimited:
            if amount > 0:
                self._log_usage(
                    user_id,
                    amount,
                    action_type,
                    unlimited=True,
                    used_before=period.used,
                    used_after=period.used,
                )
                await self.session.commit()
            metrics.record_credit_consumption("unlimited")
            return CreditConsumption(
                success=True, remaining=UNLIMITED_REMAINING, unlimited=True, consumed=amount
            )

        limit = entitlement.credit_limit
        if amount == 0:
            return CreditConsumption(
                success=True, remaining=max(0, limit - period.used), unlimited=False
            )

        stmt = (
            update(User)
            .where(User.id == user_id, User.credits_used_period + amount <= limit)
            .values(credits_used_period=User.credits_used_period + amount)
            .returning(User.credits_used_period)
        )
        new_used = (await self.session.execute(stmt)).scalar_one_or_none()

        if new_used is None:
            await self.session.rollback()
            current = await self._load_period(user_id)
            remaining = max(0, limit - current.used)
            metrics.record_credit_consumption("insufficient")
            logger.info(
                "credits_insufficient",
                user_id=str(user_id),
                requested=amount,
                used=current.used,
                limit=limit,
            )
            return CreditConsumption(
                success=False,
                remaining=remaining,
                unlimited=False,
                error=CreditErrorCode.INSUFFICIENT_CREDITS,
            )

        self._log_usage(
            user_id,
            amount,
            action_type,
            unlimited=False,
            used_before=new_used - amount,
            used_after=new_used,
        )
        await self.session.commit()

        metrics.record_credit_consumption("success", amount)
        logger.info(
            "credits_consumed",
            user_id=str(user_id),
            amount=amount,
            action_type=action_type,
            used=new_used,
            limit=limit,
        )
        return CreditConsumption(
            success=True, remaining=limit - new_used, unlimited=False, consumed=amount
        )

    async def status(self, user_id: UUID) -> CreditStatus:
        """Current period usage (applies a due reset, otherwise read-only)."""
        period = await self._current_period(user_id)
        entitlement = await self.aggregator.entitlements_for(user_id)
        if entitlement.is_unlimited:
            return CreditStatus(
                limit=entitlement.credit_limit,
                used=period.used,
                remaining=UNLIMITED_REMAINING,
                unlimited=True,
                next_reset=period.next_reset,
            )
        return CreditStatus(
            limit=entitlement.credit_limit,
            used=period.used,
            remaining=max(0, entitlement.credit_limit - period.used),
            unlimited=False,
            next_reset=period.next_reset,
        )

    async def usage_summary(self, user_id: UUID, since: datetime | None = None) -> UsageSummary:
        """
        Usage log totals grouped by action type.

        Defaults to the current calendar month, which is the credit period.
        Unlimited consumption is included; it is logged like any other.
        """
        start = since or period_start(_utc_now())
        stmt = (
            select(
                CreditUsageLog.action_type,
                func.count(CreditUsageLog.id),
                func.sum(CreditUsageLog.amount),
            )
            .where(CreditUsageLog.user_id == user_id, CreditUsageLog.created_at >= start)
            .group_by(CreditUsageLog.action_type)
            .order_by(CreditUsageLog.action_type)
        )
        rows = (await self.session.execute(stmt)).all()
        by_action = tuple(
            ActionUsage(action_type=action_type, events=events, credits=int(credits or 0))
            for action_type, events, credits in rows
        )
        return UsageSummary(
            period_start=start,
            events=sum(usage.events for usage in by_action),
            credits=sum(usage.credits for usage in by_action),
            by_action=by_action,
        )

    async def _current_period(self, user_id: UUID) -> _Period:
        period = await self._load_period(user_id)
        now = _utc_now()
        if period.next_reset is None or now >= period.next_reset:
            if await self._apply_reset(user_id, now):
                period = await self._load_period(user_id)
        return period

    async def _apply_reset(self, user_id: UUID, now: datetime) -> bool:
        """
        Start a new period and commit immediately.

        The WHERE clause repeats the due check, so only one of several
        concurrent requests performs the reset.
        """
        next_reset = next_period_start(now)
        stmt = (
            update(User)
            .where(
                User.id == user_id,
                or_(User.next_credit_reset.is_(None), User.next_credit_reset <= now),
            )
            .values(credits_used_period=0, next_credit_reset=next_reset)
            .returning(User.id)
        )
        reset_id = (await self.session.execute(stmt)).scalar_one_or_none()
        if reset_id is None:
            return False

        await self.session.commit()
        metrics.credit_resets_total.inc()
        logger.info(
            "credit_period_reset",
            user_id=str(user_id),
            next_credit_reset=next_reset.isoformat(),
        )
        return True

    async def _load_period(self, user_id: UUID) -> _Period:
        stmt = select(User.credits_used_period, User.next_credit_reset).where(User.id == user_id)
        row = (await self.session.execute(stmt)).one_or_none()
        if row is None:
            raise UserNotFoundError(user_id)
        used, next_reset = row
        return _Period(used=used, next_reset=next_reset)

    def _log_usage(
        self,
        user_id: UUID,
        amount: int,
        action_type: str | None,
        unlimited: bool,
        used_before: int,
        used_after: int,
    ) -> None:
        self.session.add(
            CreditUsageLog(
                user_id=user_id,
                amount=amount,
                action_type=action_type,
                unlimited=unlimited,
                used_before=used_before,
                used_after=used_after,
            )
        )
