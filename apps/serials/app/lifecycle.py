"""
Booking status machine.

    pending --accept--> accepted --complete--> completed
       |                   |
       +--reject/cancel----+--cancel/no_show--> (terminal)

Legality depends on who asks: a (from, to, actor) triple outside
``TRANSITIONS`` is refused and the row is left untouched. The write is a
guarded update so two racing transitions cannot both apply. Notifications
and earnings run only after the status change has committed.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import earnings, events
from .booking import get_booking
from .errors import InvalidTransition, ReasonRequired
from .models import (
    STATUS_ACCEPTED,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_NO_SHOW,
    STATUS_PENDING,
    STATUS_REJECTED,
    Booking,
    format_hhmm,
)
from .store import run_with_retry

log = logging.getLogger("serials.lifecycle")

ACTOR_PATIENT = "patient"
ACTOR_PROVIDER = "provider"
ACTOR_SYSTEM = "system"
ACTORS = (ACTOR_PATIENT, ACTOR_PROVIDER, ACTOR_SYSTEM)

TRANSITIONS: Dict[tuple, frozenset] = {
    (STATUS_PENDING, STATUS_ACCEPTED): frozenset({ACTOR_PROVIDER}),
    (STATUS_PENDING, STATUS_REJECTED): frozenset({ACTOR_PROVIDER}),
    (STATUS_PENDING, STATUS_CANCELLED): frozenset({ACTOR_PATIENT}),
    (STATUS_PENDING, STATUS_NO_SHOW): frozenset({ACTOR_PROVIDER}),
    (STATUS_ACCEPTED, STATUS_COMPLETED): frozenset({ACTOR_PROVIDER}),
    (STATUS_ACCEPTED, STATUS_CANCELLED): frozenset({ACTOR_PATIENT, ACTOR_PROVIDER}),
    (STATUS_ACCEPTED, STATUS_NO_SHOW): frozenset({ACTOR_PROVIDER}),
}

EVENT_CREATED = "appointment_created"
EVENT_BY_STATUS = {
    STATUS_ACCEPTED: "appointment_accepted",
    STATUS_REJECTED: "appointment_rejected",
    STATUS_COMPLETED: "appointment_completed",
    STATUS_CANCELLED: "appointment_cancelled",
    STATUS_NO_SHOW: "appointment_no_show",
}


def is_allowed(from_status: str, to_status: str, actor: str) -> bool:
    return actor in TRANSITIONS.get((from_status, to_status), frozenset())


def booking_payload(b: Booking) -> Dict[str, Any]:
    return {
        "booking_id": b.id,
        "appointment_number": b.appointment_number,
        "provider_ref": b.provider_ref,
        "date": b.booking_date.isoformat(),
        "serial_number": b.serial_number,
        "status": b.status,
        "slot": {"start": format_hhmm(b.slot_start_minute), "end": format_hhmm(b.slot_end_minute)},
        "fee_cents": b.fee_cents,
    }


def _notify(notifier, user_id: str, event_type: str, payload: Dict[str, Any]) -> None:
    try:
        notifier.send(user_id, event_type, payload)
    except Exception:
        log.warning("notification %s to %s failed", event_type, user_id, exc_info=True)


def announce_created(b: Booking, notifier=None) -> None:
    """Tell both sides about a freshly committed booking."""
    notifier = notifier or events.gateway
    payload = booking_payload(b)
    _notify(notifier, b.patient_id, EVENT_CREATED, payload)
    _notify(notifier, b.provider_ref, EVENT_CREATED, payload)


def transition(
    s: Session,
    booking_id: str,
    to_status: str,
    actor: str,
    reason: Optional[str] = None,
    notifier=None,
    recorder=None,
) -> Booking:
    reason = (reason or "").strip() or None
    if reason and len(reason) > 500:
        reason = reason[:500]

    def _apply() -> tuple[Booking, str]:
        b = get_booking(s, booking_id)
        from_status = b.status
        if not is_allowed(from_status, to_status, actor):
            raise InvalidTransition(
                f"cannot move booking from {from_status} to {to_status} as {actor}",
                from_status=from_status,
                to_status=to_status,
                actor=actor,
            )
        if to_status == STATUS_REJECTED and not reason:
            raise ReasonRequired("a reason is required to reject a booking")

        now = datetime.now(timezone.utc)
        values: Dict[str, Any] = {"status": to_status, "updated_at": now}
        if to_status in (STATUS_REJECTED, STATUS_CANCELLED):
            values.update(cancelled_by=actor, cancelled_at=now, cancellation_reason=reason)
        res = s.execute(
            update(Booking)
            .where(Booking.id == booking_id, Booking.status == from_status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            s.rollback()
            current = get_booking(s, booking_id).status
            raise InvalidTransition(
                f"booking changed to {current} concurrently",
                from_status=current,
                to_status=to_status,
                actor=actor,
            )
        s.commit()
        s.refresh(b)
        return b, from_status

    b, from_status = run_with_retry(s, _apply, "transition")
    log.info(
        "booking %s -> %s by %s",
        from_status,
        to_status,
        actor,
        extra={"booking_id": b.id, "provider_ref": b.provider_ref, "serial_number": b.serial_number, "status": to_status},
    )
    _after_commit(s, b, from_status, actor, notifier or events.gateway, recorder or earnings.recorder)
    return b


def _after_commit(s: Session, b: Booking, from_status: str, actor: str, notifier, recorder) -> None:
    event_type = EVENT_BY_STATUS.get(b.status)
    payload = booking_payload(b)
    if b.cancellation_reason:
        payload["reason"] = b.cancellation_reason

    if b.status == STATUS_COMPLETED:
        try:
            recorder.record(s, b.provider_ref, b.id, b.fee_cents)
        except Exception:
            s.rollback()
            log.warning("earning for booking %s not recorded", b.id, exc_info=True)

    if b.status in (STATUS_ACCEPTED, STATUS_REJECTED, STATUS_COMPLETED):
        _notify(notifier, b.patient_id, event_type, payload)
    elif b.status == STATUS_CANCELLED:
        if from_status == STATUS_ACCEPTED:
            _notify(notifier, b.patient_id, event_type, payload)
        if actor == ACTOR_PATIENT:
            _notify(notifier, b.provider_ref, event_type, payload)
