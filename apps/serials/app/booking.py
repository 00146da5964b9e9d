"""
Authoritative serial booking.

The allocator's checks are repeated inside the transaction for a friendly
error, but the partial unique index on active bookings decides the winner:
of any number of concurrent requests for one serial, exactly one insert
commits and the rest see ``SerialAlreadyBooked``.
"""
from __future__ import annotations

import hashlib
import json
import logging
import uuid
from datetime import date
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import allocator
from .errors import BookingNotFound, IdempotencyKeyReused, SerialAlreadyBooked, SlotWindowChanged, TransientError
from .models import (
    SOURCE_SELF_SERVICE,
    SOURCE_STAFF,
    STATUS_PENDING,
    Booking,
    Idempotency,
    ProviderKey,
    TimeWindow,
)
from .settings import EffectiveSettings, canonical_day
from .store import run_with_retry

log = logging.getLogger("serials.booking")

# Fresh draws after an appointment-number collision.
NUMBER_ATTEMPTS = 3


def appointment_number(day: date, booking_id: str) -> str:
    return f"SR-{day:%Y%m%d}-{uuid.UUID(booking_id).hex[:8].upper()}"


def _number_taken(e: IntegrityError) -> bool:
    # Both SQLite and Postgres name the column or its constraint in the message.
    return "appointment_number" in str(e.orig)


def _params_hash(key: ProviderKey, day: date, serial: int, patient_id: str, source: str) -> str:
    normalized = json.dumps(
        {"provider": key.ref, "date": day.isoformat(), "serial": serial, "patient": patient_id, "source": source},
        sort_keys=True,
    )
    return hashlib.sha256(normalized.encode()).hexdigest()


def _replay(s: Session, idempotency_key: str, params_hash: str) -> Optional[Booking]:
    existed = s.get(Idempotency, idempotency_key)
    if not existed:
        return None
    if existed.params_hash != params_hash:
        raise IdempotencyKeyReused(idempotency_key=idempotency_key)
    if existed.booking_id:
        return s.get(Booking, existed.booking_id)
    return None


def _book(
    s: Session,
    key: ProviderKey,
    on_date,
    serial: int,
    patient_id: str,
    source: str,
    validate: Callable[..., EffectiveSettings],
    requested_window: Optional[TimeWindow] = None,
    reason: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> Booking:
    day = canonical_day(on_date)
    patient_id = (patient_id or "").strip()
    if not patient_id:
        raise ValueError("patient_id required")
    idem_hash: Optional[str] = None
    if idempotency_key:
        idem_hash = _params_hash(key, day, serial, patient_id, source)
        replayed = _replay(s, idempotency_key, idem_hash)
        if replayed is not None:
            log.info("idempotent replay", extra={"booking_id": replayed.id, "provider_ref": key.ref})
            return replayed

    def _insert() -> Booking:
        eff = validate(s, key, day, serial)
        window = allocator.slot_window(eff, serial)
        if requested_window is not None and requested_window != window:
            raise SlotWindowChanged(
                requested=requested_window.as_dict(), current=window.as_dict(), serial_number=serial
            )
        # Close the read transaction so the insert opens the write one.
        s.commit()

        for _ in range(NUMBER_ATTEMPTS):
            booking_id = str(uuid.uuid4())
            number = appointment_number(day, booking_id)
            b = Booking(
                id=booking_id,
                provider_ref=key.ref,
                provider_kind=key.kind,
                provider_id=key.id,
                parent_org_id=key.parent_org_id,
                booking_date=day,
                serial_number=serial,
                patient_id=patient_id,
                status=STATUS_PENDING,
                source=source,
                slot_start_minute=window.start_minute,
                slot_end_minute=window.end_minute,
                fee_cents=eff.price_cents,
                appointment_number=number,
                reason=((reason or "").strip()[:200] or None),
                admin_note=eff.admin_note,
            )
            s.add(b)
            if idempotency_key:
                s.add(Idempotency(key=idempotency_key, params_hash=idem_hash, booking_id=booking_id))
            try:
                s.commit()
            except IntegrityError as e:
                s.rollback()
                if _number_taken(e):
                    log.warning("appointment number %s taken, drawing another", number)
                    continue
                if idempotency_key:
                    replayed = _replay(s, idempotency_key, idem_hash)
                    if replayed is not None:
                        return replayed
                log.info(
                    "serial already booked",
                    extra={"provider_ref": key.ref, "serial_number": serial},
                )
                raise SerialAlreadyBooked(serial_number=serial, date=day.isoformat())
            s.refresh(b)
            return b
        raise TransientError("could not allocate an appointment number; retry", attempts=NUMBER_ATTEMPTS)

    b = run_with_retry(s, _insert, "create_booking")
    log.info(
        "booking created",
        extra={"booking_id": b.id, "provider_ref": key.ref, "serial_number": b.serial_number, "status": b.status},
    )
    return b


def create_booking(
    s: Session,
    key: ProviderKey,
    on_date,
    serial: int,
    patient_id: str,
    requested_window: Optional[TimeWindow] = None,
    reason: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> Booking:
    """
    Book an even serial for a self-service patient. Raises a
    :class:`~.errors.SerialError` subclass when the request cannot be
    honoured; a ``TransientError`` only after the retry budget is spent.
    """
    return _book(
        s,
        key,
        on_date,
        serial,
        patient_id,
        SOURCE_SELF_SERVICE,
        allocator.validate_requested_serial,
        requested_window=requested_window,
        reason=reason,
        idempotency_key=idempotency_key,
    )


def create_staff_booking(
    s: Session,
    key: ProviderKey,
    on_date,
    serial: int,
    patient_id: str,
    reason: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> Booking:
    """Book an odd serial on behalf of a walk-in or phone patient."""
    return _book(
        s,
        key,
        on_date,
        serial,
        patient_id,
        SOURCE_STAFF,
        allocator.validate_staff_serial,
        reason=reason,
        idempotency_key=idempotency_key,
    )


def get_booking(s: Session, booking_id: str) -> Booking:
    b = s.get(Booking, booking_id)
    if not b:
        raise BookingNotFound(booking_id=booking_id)
    return b


def list_patient_bookings(s: Session, patient_id: str, limit: int = 50) -> List[Booking]:
    stmt = (
        select(Booking)
        .where(Booking.patient_id == patient_id)
        .order_by(Booking.booking_date.desc(), Booking.serial_number.asc())
        .limit(max(1, min(limit, 200)))
    )
    return list(s.execute(stmt).scalars().all())
