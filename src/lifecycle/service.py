"""
LifecycleService — применение SubscriptionLifecycle к персистентным резервациям

- handle_payment_event: webhook шлюза (идемпотентно по event_id)
- cancel / resume: запросы арендатора
- sweep: освобождение истёкших provisional holds, завершение
  cancel_at_period_end резерваций после period_end и активных резерваций,
  не продлённых за renewal_grace
- renewals_due: лента напоминаний о продлении

Подтверждение оплаты, пришедшее после истечения hold, перепроверяет
отсутствие пересечений под slot guard: за время истечения остаток мог
купить другой арендатор.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

import structlog
from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from src.config import Settings
from src.core.contracts import PaymentEventValidator
from src.core.domain.sponsorship import Sponsorship, SponsorshipStatus
from src.core.errors import NotFoundError, PaymentError, PolicyError, ValidationError
from src.core.geometry import GeometryEngine
from src.lifecycle.state_machine import (
    CancelPolicy,
    LifecycleEvent,
    LifecycleTransitionResult,
    SubscriptionLifecycle,
)
from src.storage.client import read_scope, session_scope
from src.storage.models import SponsorshipRecord
from src.storage.repositories import (
    PaymentEventRepository,
    SponsorshipRepository,
    to_domain_list,
)

logger = structlog.get_logger()

# Тип события шлюза → событие жизненного цикла
_GATEWAY_EVENTS: dict[str, LifecycleEvent] = {
    "payment_succeeded": LifecycleEvent.PAYMENT_CONFIRMED,
    "payment_failed": LifecycleEvent.PAYMENT_FAILED,
    "renewal_succeeded": LifecycleEvent.RENEWAL_SUCCEEDED,
    "renewal_failed": LifecycleEvent.RENEWAL_FAILED,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LifecycleConfig:
    billing_interval_months: int = 1
    cancel_policy: CancelPolicy = CancelPolicy.PERIOD_END
    renewal_reminder_lead: timedelta = timedelta(hours=72)
    renewal_reminder_window: timedelta = timedelta(minutes=30)
    renewal_grace: timedelta = timedelta(hours=72)

    @classmethod
    def from_settings(cls, settings: Settings) -> "LifecycleConfig":
        return cls(
            billing_interval_months=settings.billing_interval_months,
            cancel_policy=CancelPolicy(settings.cancel_policy),
            renewal_reminder_lead=timedelta(hours=settings.renewal_reminder_lead_hours),
            renewal_reminder_window=timedelta(minutes=settings.renewal_reminder_window_minutes),
            renewal_grace=timedelta(hours=settings.renewal_grace_hours),
        )


@dataclass(frozen=True)
class SweepReport:
    """Что освободил sweep."""

    released_holds: list[str] = field(default_factory=list)
    expired: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.released_holds) + len(self.expired)


class LifecycleService:
    """Переходы статусов резерваций поверх хранилища."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        geometry_engine: GeometryEngine | None = None,
        config: LifecycleConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.geometry = geometry_engine or GeometryEngine()
        self.config = config or LifecycleConfig()
        self.machine = SubscriptionLifecycle(
            self.config.cancel_policy, renewal_grace=self.config.renewal_grace
        )
        self.clock = clock
        self._event_validator = PaymentEventValidator()

    # =========================================================================
    # PAYMENT EVENTS
    # =========================================================================

    def handle_payment_event(self, event: Mapping[str, Any]) -> Sponsorship:
        """
        Применить событие шлюза к резервации.

        Повторная доставка того же event_id ничего не меняет и возвращает
        текущий снапшот.

        Raises:
            ValidationError: событие не соответствует контракту
            NotFoundError: резервация не найдена
            PaymentError: подтверждение пришло для уже освобождённой
                резервации или остаток был утерян после истечения hold
                (резервация освобождается, событие записывается)
        """
        messages = self._event_validator.error_messages(dict(event))
        if messages:
            raise ValidationError(
                "Payment event does not match the contract",
                code="payment.event_invalid",
                meta={"errors": messages},
            )

        event_id = event["event_id"]
        kind = event["kind"]
        lifecycle_event = _GATEWAY_EVENTS[kind]
        log = logger.bind(event_id=event_id, kind=kind, sponsorship_id=event["sponsorship_id"])

        failure: PaymentError | None = None
        try:
            with session_scope(self.session_factory) as session:
                events = PaymentEventRepository(session)
                sponsorships = SponsorshipRepository(session, self.geometry)

                if events.get(event_id) is not None:
                    record = sponsorships.get(event["sponsorship_id"])
                    log.info("Payment event already processed")
                    return SponsorshipRepository.to_domain(record)

                record = sponsorships.get(event["sponsorship_id"], for_update=True)
                now = self.clock()

                if lifecycle_event == LifecycleEvent.PAYMENT_CONFIRMED:
                    failure = self._confirmation_failure(sponsorships, record, now)

                if failure is None:
                    transition = self.machine.evaluate(
                        SponsorshipStatus(record.status),
                        lifecycle_event,
                        now,
                        period_end=record.period_end,
                    )
                    self._apply(record, transition, now)
                    outcome = transition.transition_reason
                else:
                    outcome = failure.code

                events.record(event_id, kind, record.id, outcome)
                session.flush()
                snapshot = SponsorshipRepository.to_domain(record)
        except IntegrityError:
            # Параллельная доставка того же event_id закоммитилась первой
            snapshot = self._processed_snapshot(event_id, event["sponsorship_id"])
            if snapshot is None:
                raise
            log.info("Payment event already processed concurrently")
            return snapshot

        if failure is not None:
            log.warning("Payment confirmation rejected", **failure.to_public_dict())
            raise failure

        if lifecycle_event == LifecycleEvent.PAYMENT_FAILED:
            log.warning(
                "Payment failed, provisional reservation released",
                code=PaymentError.default_code,
                status=snapshot.status.value,
            )
        else:
            log.info("Payment event applied", outcome=outcome, status=snapshot.status.value)
        return snapshot

    def _processed_snapshot(self, event_id: str, sponsorship_id: str) -> Sponsorship | None:
        with read_scope(self.session_factory) as session:
            if PaymentEventRepository(session).get(event_id) is None:
                return None
            record = SponsorshipRepository(session, self.geometry).get(sponsorship_id)
            return SponsorshipRepository.to_domain(record)

    def _confirmation_failure(
        self, sponsorships: SponsorshipRepository, record: SponsorshipRecord, now: datetime
    ) -> PaymentError | None:
        """
        Проверки подтверждения оплаты. Освобождает резервацию, если
        подтверждать уже нечего.
        """
        status = SponsorshipStatus(record.status)
        if status == SponsorshipStatus.RELEASED:
            return PaymentError(
                "Payment confirmed for a reservation that was already released",
                code="payment.reservation_released",
                meta={"sponsorship_id": record.id},
            )
        if status != SponsorshipStatus.PENDING_PAYMENT:
            return None
        if record.hold_expires_at is None or record.hold_expires_at > now:
            return None

        # Hold истёк: остаток мог уйти другому арендатору или новой
        # резервации того же арендатора
        sponsorships.lock_slot(record.slot)
        mine = self.geometry.from_geojson(record.geometry)
        competing = sponsorships.competing_geometries(
            slot=record.slot,
            bbox=mine.bounds,
            now=now,
            exclude_sponsorship_id=record.id,
        )
        lost = sum(self.geometry.intersection_area(mine, other) for other in competing)
        if lost <= self.geometry.area_eps_km2:
            return None

        record.status = SponsorshipStatus.RELEASED.value
        record.hold_expires_at = None
        return PaymentError(
            "Reserved area was taken after the provisional hold expired",
            code="payment.hold_expired_area_lost",
            meta={"sponsorship_id": record.id, "lost_area_km2": lost},
        )

    # =========================================================================
    # TENANT REQUESTS
    # =========================================================================

    def cancel(
        self,
        sponsorship_id: str,
        tenant_id: str,
        policy: CancelPolicy | None = None,
    ) -> Sponsorship:
        """
        Отмена резервации.

        Raises:
            NotFoundError: резервация не найдена / чужая
        """
        with session_scope(self.session_factory) as session:
            record = self._owned(session, sponsorship_id, tenant_id)
            now = self.clock()
            transition = self.machine.evaluate(
                SponsorshipStatus(record.status),
                LifecycleEvent.CANCEL_REQUESTED,
                now,
                period_end=record.period_end,
                cancel_policy=policy,
            )
            self._apply(record, transition, now)
            session.flush()
            snapshot = SponsorshipRepository.to_domain(record)

        logger.info(
            "Cancel requested",
            sponsorship_id=sponsorship_id,
            tenant_id=tenant_id,
            outcome=transition.transition_reason,
            status=snapshot.status.value,
        )
        return snapshot

    def resume(self, sponsorship_id: str, tenant_id: str) -> Sponsorship:
        """
        Снять отмену в конце периода.

        Raises:
            NotFoundError: резервация не найдена / чужая
            PolicyError: период уже закончился или резервация не отменяется
        """
        with session_scope(self.session_factory) as session:
            record = self._owned(session, sponsorship_id, tenant_id)
            now = self.clock()
            transition = self.machine.evaluate(
                SponsorshipStatus(record.status),
                LifecycleEvent.RESUME_REQUESTED,
                now,
                period_end=record.period_end,
            )
            if not transition.transition_occurred:
                raise PolicyError(
                    "Reservation cannot be resumed",
                    code="sponsorship.not_resumable",
                    meta={
                        "sponsorship_id": sponsorship_id,
                        "status": record.status,
                        "reason": transition.transition_reason,
                    },
                )
            self._apply(record, transition, now)
            session.flush()
            snapshot = SponsorshipRepository.to_domain(record)

        logger.info("Cancellation cleared", sponsorship_id=sponsorship_id, tenant_id=tenant_id)
        return snapshot

    # =========================================================================
    # SCHEDULED
    # =========================================================================

    def sweep(self, now: datetime | None = None) -> SweepReport:
        """Освободить истёкшие holds, завершить отменённые и не продлённые резервации."""
        now = now or self.clock()
        released: list[str] = []
        expired: list[str] = []

        with session_scope(self.session_factory) as session:
            sponsorships = SponsorshipRepository(session, self.geometry)

            for record in sponsorships.expired_holds(now):
                transition = self.machine.evaluate(
                    SponsorshipStatus(record.status), LifecycleEvent.HOLD_EXPIRED, now
                )
                if transition.transition_occurred:
                    self._apply(record, transition, now)
                    released.append(record.id)

            for record in sponsorships.ended_periods(now, self.config.renewal_grace):
                transition = self.machine.evaluate(
                    SponsorshipStatus(record.status),
                    LifecycleEvent.PERIOD_ENDED,
                    now,
                    period_end=record.period_end,
                )
                if transition.transition_occurred:
                    self._apply(record, transition, now)
                    expired.append(record.id)

        report = SweepReport(released_holds=released, expired=expired)
        if report.total:
            logger.info("Sweep released reservations", released_holds=released, expired=expired)
        return report

    def renewals_due(self, now: datetime | None = None) -> list[Sponsorship]:
        """Активные резервации, продлевающиеся через lead ± window."""
        now = now or self.clock()
        target = now + self.config.renewal_reminder_lead
        window = self.config.renewal_reminder_window
        with read_scope(self.session_factory) as session:
            records = SponsorshipRepository(session).renewing_between(
                target - window, target + window
            )
            return to_domain_list(records)

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _owned(self, session: Session, sponsorship_id: str, tenant_id: str) -> SponsorshipRecord:
        record = SponsorshipRepository(session).get(sponsorship_id, for_update=True)
        if record.tenant_id != tenant_id:
            raise NotFoundError(
                f"Sponsorship {sponsorship_id} not found",
                code="sponsorship.not_found",
                meta={"sponsorship_id": sponsorship_id},
            )
        return record

    def _apply(
        self, record: SponsorshipRecord, transition: LifecycleTransitionResult, now: datetime
    ) -> None:
        if not transition.transition_occurred:
            return

        new_status = transition.new_status
        record.status = new_status.value
        record.cancel_at_period_end = new_status == SponsorshipStatus.CANCEL_AT_PERIOD_END

        if transition.extends_period:
            interval = relativedelta(months=self.config.billing_interval_months)
            if transition.previous_status == SponsorshipStatus.PENDING_PAYMENT:
                record.period_start = now
            else:
                record.period_start = record.period_end or now
            record.period_end = record.period_start + interval

        if new_status != SponsorshipStatus.PENDING_PAYMENT:
            record.hold_expires_at = None
