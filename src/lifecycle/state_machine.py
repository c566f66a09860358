"""SubscriptionLifecycle — переходы статуса резервации по событиям.

Состояния:
- pending_payment → active (шлюз подтвердил оплату)
- pending_payment → released (оплата не прошла / hold истёк / отказ)
- active → cancel_at_period_end → expired (отмена в конце периода)
- active → canceled (немедленная отмена)
- active → active (продление, period_end сдвигается)
- active → expired (продление не оплачено или не пришло за grace период)

Pure: машина только решает переход, запись в БД делает LifecycleService.
Недопустимые события не являются ошибкой — transition_occurred=False,
поэтому повторная доставка webhook безопасна.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from src.core.domain.sponsorship import TERMINAL_STATUSES, SponsorshipStatus


class LifecycleEvent(str, Enum):
    """Входящие события жизненного цикла."""

    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"
    HOLD_EXPIRED = "hold_expired"
    CANCEL_REQUESTED = "cancel_requested"
    RESUME_REQUESTED = "resume_requested"
    RENEWAL_SUCCEEDED = "renewal_succeeded"
    RENEWAL_FAILED = "renewal_failed"
    PERIOD_ENDED = "period_ended"


class CancelPolicy(str, Enum):
    """Политика отмены: сразу освободить геометрию или держать до period_end."""

    IMMEDIATE = "immediate"
    PERIOD_END = "period_end"


@dataclass(frozen=True)
class LifecycleTransitionResult:
    """Результат перехода статуса."""

    new_status: SponsorshipStatus
    previous_status: SponsorshipStatus

    # Диагностика
    transition_occurred: bool
    transition_reason: str

    # Эффекты для персистентного слоя
    releases_geometry: bool  # геометрия возвращается в пул
    extends_period: bool  # начать/продлить billing period

    details: str


class SubscriptionLifecycle:
    """State machine статуса резервации.

    Attributes:
        cancel_policy: политика для CANCEL_REQUESTED по умолчанию
        renewal_grace: сколько после period_end ждать события продления
    """

    def __init__(
        self,
        cancel_policy: CancelPolicy = CancelPolicy.PERIOD_END,
        renewal_grace: timedelta = timedelta(hours=72),
    ):
        self.cancel_policy = cancel_policy
        self.renewal_grace = renewal_grace

    def evaluate(
        self,
        current_status: SponsorshipStatus,
        event: LifecycleEvent,
        now: datetime,
        period_end: Optional[datetime] = None,
        cancel_policy: Optional[CancelPolicy] = None,
    ) -> LifecycleTransitionResult:
        """Решить переход для события.

        Args:
            current_status: текущий статус резервации
            event: входящее событие
            now: момент события (UTC)
            period_end: конец текущего billing period (для RESUME / PERIOD_ENDED)
            cancel_policy: переопределение политики отмены для запроса

        Returns:
            LifecycleTransitionResult; transition_occurred=False если событие
            неприменимо в текущем статусе
        """
        if current_status in TERMINAL_STATUSES:
            return self._no_transition(
                current_status, "terminal_state", f"{current_status.value} is terminal"
            )

        if current_status == SponsorshipStatus.PENDING_PAYMENT:
            return self._from_pending(current_status, event)

        if current_status == SponsorshipStatus.ACTIVE:
            return self._from_active(
                current_status, event, now, period_end, cancel_policy or self.cancel_policy
            )

        if current_status == SponsorshipStatus.CANCEL_AT_PERIOD_END:
            return self._from_cancelling(current_status, event, now, period_end)

        raise ValueError(f"Unknown sponsorship status: {current_status}")

    # =========================================================================
    # PER-STATE TRANSITIONS
    # =========================================================================

    def _from_pending(
        self, status: SponsorshipStatus, event: LifecycleEvent
    ) -> LifecycleTransitionResult:
        if event == LifecycleEvent.PAYMENT_CONFIRMED:
            return self._create_result(
                new_status=SponsorshipStatus.ACTIVE,
                previous_status=status,
                transition_reason="payment_confirmed",
                extends_period=True,
                details="Provisional reservation confirmed by gateway",
            )
        if event in (
            LifecycleEvent.PAYMENT_FAILED,
            LifecycleEvent.HOLD_EXPIRED,
            LifecycleEvent.CANCEL_REQUESTED,
        ):
            return self._create_result(
                new_status=SponsorshipStatus.RELEASED,
                previous_status=status,
                transition_reason=event.value,
                releases_geometry=True,
                details="Provisional reservation released",
            )
        return self._no_transition(status, "event_not_applicable", event.value)

    def _from_active(
        self,
        status: SponsorshipStatus,
        event: LifecycleEvent,
        now: datetime,
        period_end: Optional[datetime],
        cancel_policy: CancelPolicy,
    ) -> LifecycleTransitionResult:
        if event == LifecycleEvent.CANCEL_REQUESTED:
            if cancel_policy == CancelPolicy.IMMEDIATE:
                return self._create_result(
                    new_status=SponsorshipStatus.CANCELED,
                    previous_status=status,
                    transition_reason="canceled_immediately",
                    releases_geometry=True,
                    details="Geometry released back to the pool",
                )
            return self._create_result(
                new_status=SponsorshipStatus.CANCEL_AT_PERIOD_END,
                previous_status=status,
                transition_reason="cancel_scheduled",
                details="Geometry stays reserved until period end",
            )

        if event == LifecycleEvent.RENEWAL_SUCCEEDED:
            return self._create_result(
                new_status=SponsorshipStatus.ACTIVE,
                previous_status=status,
                transition_reason="renewed",
                extends_period=True,
                details="Billing period extended",
            )

        if event == LifecycleEvent.RENEWAL_FAILED:
            return self._create_result(
                new_status=SponsorshipStatus.EXPIRED,
                previous_status=status,
                transition_reason="renewal_failed",
                releases_geometry=True,
                details="Renewal payment failed",
            )

        if event == LifecycleEvent.PERIOD_ENDED:
            if period_end is not None and now >= period_end + self.renewal_grace:
                return self._create_result(
                    new_status=SponsorshipStatus.EXPIRED,
                    previous_status=status,
                    transition_reason="renewal_lapsed",
                    releases_geometry=True,
                    details="No renewal within the grace period",
                )
            return self._no_transition(status, "awaiting_renewal", "Renewal event not received yet")

        return self._no_transition(status, "event_not_applicable", event.value)

    def _from_cancelling(
        self,
        status: SponsorshipStatus,
        event: LifecycleEvent,
        now: datetime,
        period_end: Optional[datetime],
    ) -> LifecycleTransitionResult:
        period_over = period_end is not None and now >= period_end

        if event == LifecycleEvent.RESUME_REQUESTED:
            if period_over:
                return self._no_transition(status, "period_already_ended", "Too late to resume")
            return self._create_result(
                new_status=SponsorshipStatus.ACTIVE,
                previous_status=status,
                transition_reason="resumed",
                details="Period-end cancellation cleared",
            )

        # Rollover с флагом отмены всегда завершает резервацию
        if event in (
            LifecycleEvent.PERIOD_ENDED,
            LifecycleEvent.RENEWAL_SUCCEEDED,
            LifecycleEvent.RENEWAL_FAILED,
        ):
            return self._create_result(
                new_status=SponsorshipStatus.EXPIRED,
                previous_status=status,
                transition_reason="expired_after_cancel",
                releases_geometry=True,
                details=f"Period ended with cancel flag ({event.value})",
            )

        return self._no_transition(status, "event_not_applicable", event.value)

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _create_result(
        self,
        new_status: SponsorshipStatus,
        previous_status: SponsorshipStatus,
        transition_reason: str,
        releases_geometry: bool = False,
        extends_period: bool = False,
        details: str = "",
    ) -> LifecycleTransitionResult:
        return LifecycleTransitionResult(
            new_status=new_status,
            previous_status=previous_status,
            transition_occurred=True,
            transition_reason=transition_reason,
            releases_geometry=releases_geometry,
            extends_period=extends_period,
            details=details,
        )

    def _no_transition(
        self, status: SponsorshipStatus, reason: str, details: str
    ) -> LifecycleTransitionResult:
        return LifecycleTransitionResult(
            new_status=status,
            previous_status=status,
            transition_occurred=False,
            transition_reason=reason,
            releases_geometry=False,
            extends_period=False,
            details=details,
        )
