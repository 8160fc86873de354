"""
Donor-initiated change requests for recurring donation plans.

Requests are recorded as ``pending`` and applied to the plan through
``SubscriptionManager`` once approved. Large amount changes are flagged as
requiring approval.
"""

from decimal import Decimal, InvalidOperation
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from charity.platform.donations.config import RecurringDonationConfig, get_donation_config
from charity.platform.donations.exceptions import (
    ChangeRequestNotFoundError,
    DonationError,
    InvalidStateError,
    PersistenceError,
    ValidationError,
)
from charity.platform.donations.recurring.models import (
    ChangeRequest,
    ChangeRequestStatus,
    ChangeType,
    Frequency,
    PaymentMethod,
    RecurringDonation,
    generate_change_request_id,
)
from charity.platform.donations.recurring.notifications import NotificationService
from charity.platform.donations.recurring.scheduling import Clock, utc_now
from charity.platform.donations.recurring.service import SubscriptionManager
from charity.platform.logging import log_audit_event

logger = structlog.get_logger(__name__)


def _parse_amount(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid amount: {value!r}", field="new_value") from e
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Amount must be greater than zero", field="new_value")
    return amount


def _parse_enum(enum_cls: type[Frequency] | type[PaymentMethod], value: Any) -> Any:
    try:
        return enum_cls(value)
    except ValueError as e:
        raise ValidationError(
            f"Invalid {enum_cls.__name__} value: {value!r}", field="new_value"
        ) from e


class ChangeRequestManager:
    """Records, approves and rejects change requests."""

    def __init__(
        self,
        db: AsyncSession,
        notifier: NotificationService,
        config: RecurringDonationConfig | None = None,
        manager: SubscriptionManager | None = None,
        clock: Clock | None = None,
    ):
        self.db = db
        self.notifier = notifier
        self.config = config or get_donation_config()
        self._clock = clock or utc_now
        self.manager = manager or SubscriptionManager(db, config=self.config, clock=self._clock)

    async def create_change_request(
        self,
        subscription_id: str,
        change_type: ChangeType,
        new_value: Any = None,
        reason: str | None = None,
        created_by: str | None = None,
    ) -> ChangeRequest:
        """
        Record a pending change request.

        The plan's current value is captured as ``old_value``. An amount change
        above the configured approval threshold is flagged ``requires_approval``.
        """
        subscription = await self.manager.get(subscription_id)
        try:
            change_type = ChangeType(change_type)
        except ValueError as e:
            raise ValidationError(
                f"Invalid change type: {change_type!r}", field="change_type"
            ) from e
        old_value, normalized = self._values_for(subscription, change_type, new_value)

        requires_approval = (
            change_type == ChangeType.AMOUNT
            and Decimal(normalized) > self.config.change_approval_threshold
        )
        now = self._clock()
        request = ChangeRequest(
            id=generate_change_request_id(),
            subscription_id=subscription_id,
            change_type=change_type,
            old_value=old_value,
            new_value=normalized,
            reason=reason,
            requested_date=now,
            effective_date=now,
            requires_approval=requires_approval,
            status=ChangeRequestStatus.PENDING,
            donor_notified=False,
            created_by=created_by,
        )
        try:
            self.db.add(request)
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(
                "Could not record change request",
                operation="create_change_request",
                context={"subscription_id": subscription_id},
            ) from e

        logger.info(
            "recurring.change_request.created",
            request_id=request.id,
            subscription_id=subscription_id,
            change_type=change_type.value,
            requires_approval=requires_approval,
        )
        return request

    async def get(self, request_id: str) -> ChangeRequest:
        request = await self.db.get(ChangeRequest, request_id, populate_existing=True)
        if request is None:
            raise ChangeRequestNotFoundError(
                f"Change request {request_id} not found", request_id=request_id
            )
        return request

    async def list_for_subscription(self, subscription_id: str) -> list[ChangeRequest]:
        await self.manager.get(subscription_id)
        result = await self.db.execute(
            select(ChangeRequest)
            .where(ChangeRequest.subscription_id == subscription_id)
            .order_by(ChangeRequest.requested_date.desc())
        )
        return list(result.scalars().all())

    async def approve(self, request_id: str, approved_by: str) -> ChangeRequest:
        """
        Apply a pending request to its plan and mark it ``applied``.

        The request is first claimed as ``approved`` with a conditional update,
        so concurrent approvers cannot both apply it. If the plan change fails
        the claim is released back to ``pending``.
        """
        await self._claim(
            request_id,
            ChangeRequestStatus.APPROVED,
            requested_state=ChangeRequestStatus.APPLIED,
            approved_by=approved_by,
            approved_at=self._clock(),
        )
        request = await self.get(request_id)
        try:
            await self._apply(request, approved_by)
        except DonationError:
            await self._release(request_id)
            raise

        request = await self.get(request_id)
        request.status = ChangeRequestStatus.APPLIED
        await self._commit("approve", request_id)

        logger.info(
            "recurring.change_request.applied",
            request_id=request_id,
            subscription_id=request.subscription_id,
            change_type=request.change_type.value,
            approved_by=approved_by,
        )
        log_audit_event(
            "recurring_change_request.approved",
            resource_type="recurring_change_request",
            resource_id=request_id,
            user_id=approved_by,
        )
        await self._notify(request)
        return request

    async def reject(
        self, request_id: str, reason: str | None = None, rejected_by: str | None = None
    ) -> ChangeRequest:
        """Reject a pending request. The plan is left untouched."""
        await self._claim(
            request_id,
            ChangeRequestStatus.REJECTED,
            rejection_reason=reason,
            approved_by=rejected_by,
            approved_at=self._clock(),
        )
        request = await self.get(request_id)

        logger.info(
            "recurring.change_request.rejected",
            request_id=request_id,
            subscription_id=request.subscription_id,
            reason=reason,
        )
        log_audit_event(
            "recurring_change_request.rejected",
            resource_type="recurring_change_request",
            resource_id=request_id,
            user_id=rejected_by,
            reason=reason,
        )
        await self._notify(request)
        return request

    # ==================== Helpers ====================

    def _values_for(
        self, subscription: RecurringDonation, change_type: ChangeType, new_value: Any
    ) -> tuple[Any, Any]:
        """Return (old_value, normalized new_value) as JSON-safe values."""
        if change_type == ChangeType.AMOUNT:
            return str(subscription.amount), str(_parse_amount(new_value))
        if change_type == ChangeType.FREQUENCY:
            return subscription.frequency.value, _parse_enum(Frequency, new_value).value
        if change_type == ChangeType.PAYMENT_METHOD:
            return subscription.payment_method.value, _parse_enum(PaymentMethod, new_value).value
        # Pause and cancel carry no new value
        return subscription.status.value, None

    async def _apply(self, request: ChangeRequest, decided_by: str) -> None:
        subscription_id = request.subscription_id
        if request.change_type == ChangeType.AMOUNT:
            await self.manager.update(
                subscription_id, {"amount": Decimal(request.new_value)}, updated_by=decided_by
            )
        elif request.change_type == ChangeType.FREQUENCY:
            await self.manager.update(
                subscription_id,
                {"frequency": Frequency(request.new_value)},
                updated_by=decided_by,
            )
        elif request.change_type == ChangeType.PAYMENT_METHOD:
            await self.manager.update(
                subscription_id,
                {"payment_method": PaymentMethod(request.new_value)},
                updated_by=decided_by,
            )
        elif request.change_type == ChangeType.PAUSE:
            await self.manager.pause(subscription_id, reason=request.reason, paused_by=decided_by)
        elif request.change_type == ChangeType.CANCEL:
            await self.manager.cancel(
                subscription_id, reason=request.reason, cancelled_by=decided_by
            )

    async def _claim(
        self,
        request_id: str,
        status: ChangeRequestStatus,
        requested_state: ChangeRequestStatus | None = None,
        **values: Any,
    ) -> None:
        """Move a ``pending`` request to ``status``, or raise if it was decided already."""
        try:
            result = await self.db.execute(
                update(ChangeRequest)
                .where(
                    ChangeRequest.id == request_id,
                    ChangeRequest.status == ChangeRequestStatus.PENDING,
                )
                .values(status=status, **values)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(
                "Could not claim change request",
                operation="claim",
                context={"request_id": request_id},
            ) from e

        if result.rowcount == 0:
            request = await self.get(request_id)
            raise InvalidStateError(
                f"Change request {request_id} is {request.status.value}",
                current_state=request.status.value,
                requested_state=(requested_state or status).value,
                context={"request_id": request_id},
            )
        await self._commit("claim", request_id)

    async def _release(self, request_id: str) -> None:
        await self.db.execute(
            update(ChangeRequest)
            .where(
                ChangeRequest.id == request_id,
                ChangeRequest.status == ChangeRequestStatus.APPROVED,
            )
            .values(status=ChangeRequestStatus.PENDING, approved_by=None, approved_at=None)
            .execution_options(synchronize_session=False)
        )
        await self._commit("release", request_id)
        logger.warning("recurring.change_request.released", request_id=request_id)

    async def _notify(self, request: ChangeRequest) -> None:
        self.notifier.send_change_request_update(request.id)
        request.donor_notified = True
        request.notification_sent_at = self._clock()
        await self._commit("notify", request.id)

    async def _commit(self, operation: str, request_id: str) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise PersistenceError(
                f"Could not {operation} change request",
                operation=operation,
                context={"request_id": request_id},
            ) from e
