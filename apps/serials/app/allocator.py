"""
Read-only serial arithmetic.

Self-service patients book even serials; odd serials are held back for the
provider's staff. Everything here is advisory: the unique index on active
bookings is what actually prevents two patients from holding one serial.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import BookingClosed, SerialAlreadyBooked, SerialMustBeEven, SerialMustBeOdd, SerialOutOfRange
from .models import (
    ACTIVE_STATUSES,
    OCCUPYING_STATUSES,
    SOURCE_STAFF,
    STATUS_ACCEPTED,
    STATUS_PENDING,
    Booking,
    ProviderKey,
    TimeWindow,
    format_hhmm,
)
from .settings import EffectiveSettings, canonical_day, resolve, resolve_or_closed, today_utc

CLOSED_PAST = "date is in the past"


@dataclass(frozen=True)
class SerialSlot:
    serial_number: int
    window: TimeWindow

    def as_dict(self) -> dict:
        return {
            "serial_number": self.serial_number,
            "start": format_hhmm(self.window.start_minute),
            "end": format_hhmm(self.window.end_minute),
        }


@dataclass(frozen=True)
class Availability:
    settings: EffectiveSettings
    serials: List[SerialSlot] = field(default_factory=list)
    closure_reason: Optional[str] = None

    @property
    def is_bookable(self) -> bool:
        return self.closure_reason is None

    @property
    def serial_numbers(self) -> List[int]:
        return [x.serial_number for x in self.serials]

    def as_dict(self) -> dict:
        eff = self.settings
        return {
            "provider_ref": eff.provider_ref,
            "date": eff.day.isoformat(),
            "is_bookable": self.is_bookable,
            "closure_reason": self.closure_reason,
            "total_slots": eff.total_slots,
            "time_window": eff.time_window.as_dict(),
            "price_cents": eff.price_cents,
            "admin_note": eff.admin_note,
            "serials": [x.as_dict() for x in self.serials],
        }


def even_ceiling(total_slots: int) -> int:
    return max(total_slots, 0) // 2


def slot_window(eff: EffectiveSettings, serial: int) -> TimeWindow:
    """Time slot of ``serial`` when the day's window is split evenly."""
    duration = eff.time_window.minutes // eff.total_slots
    start = eff.time_window.start_minute + (serial - 1) * duration
    return TimeWindow(start, start + duration)


def active_serials(s: Session, key: ProviderKey, day: date) -> set[int]:
    stmt = select(Booking.serial_number).where(
        Booking.provider_ref == key.ref,
        Booking.booking_date == day,
        Booking.status.in_(OCCUPYING_STATUSES),
    )
    return set(s.execute(stmt).scalars().all())


def _closure(eff: EffectiveSettings) -> Optional[str]:
    if not eff.is_bookable:
        return eff.closure_reason
    if eff.day < today_utc():
        return CLOSED_PAST
    return None


def _free(s: Session, key: ProviderKey, eff: EffectiveSettings, candidates) -> List[SerialSlot]:
    taken = active_serials(s, key, eff.day)
    return [SerialSlot(n, slot_window(eff, n)) for n in candidates if n not in taken]


def compute_available_serials(s: Session, key: ProviderKey, on_date) -> Availability:
    eff = resolve_or_closed(s, key, on_date)
    reason = _closure(eff)
    if reason:
        return Availability(settings=eff, closure_reason=reason)
    candidates = range(2, 2 * even_ceiling(eff.total_slots) + 1, 2)
    return Availability(settings=eff, serials=_free(s, key, eff, candidates))


def compute_staff_serials(s: Session, key: ProviderKey, on_date) -> Availability:
    eff = resolve_or_closed(s, key, on_date)
    reason = _closure(eff)
    if reason:
        return Availability(settings=eff, closure_reason=reason)
    candidates = range(1, eff.total_slots + 1, 2)
    return Availability(settings=eff, serials=_free(s, key, eff, candidates))


def _open_settings(s: Session, key: ProviderKey, on_date) -> EffectiveSettings:
    eff = resolve(s, key, on_date)
    if eff.day < today_utc():
        raise BookingClosed(CLOSED_PAST, provider_ref=key.ref, date=eff.day.isoformat())
    return eff


def _check_free(s: Session, key: ProviderKey, eff: EffectiveSettings, serial: int) -> None:
    if serial in active_serials(s, key, eff.day):
        raise SerialAlreadyBooked(serial_number=serial, date=eff.day.isoformat())


def validate_requested_serial(s: Session, key: ProviderKey, on_date, serial: int) -> EffectiveSettings:
    """
    Check a self-service request against the effective settings and the
    currently active bookings. Returns the settings the check ran against.
    """
    eff = _open_settings(s, key, on_date)
    if serial < 1 or serial > eff.total_slots:
        raise SerialOutOfRange(
            f"serial must be between 1 and {eff.total_slots}", serial_number=serial, total_slots=eff.total_slots
        )
    if serial % 2 != 0:
        raise SerialMustBeEven(serial_number=serial)
    ceiling = 2 * even_ceiling(eff.total_slots)
    if serial > ceiling:
        raise SerialOutOfRange(f"serial must be between 2 and {ceiling}", serial_number=serial)
    _check_free(s, key, eff, serial)
    return eff


def validate_staff_serial(s: Session, key: ProviderKey, on_date, serial: int) -> EffectiveSettings:
    eff = _open_settings(s, key, on_date)
    if serial < 1 or serial > eff.total_slots:
        raise SerialOutOfRange(
            f"serial must be between 1 and {eff.total_slots}", serial_number=serial, total_slots=eff.total_slots
        )
    if serial % 2 == 0:
        raise SerialMustBeOdd(serial_number=serial)
    _check_free(s, key, eff, serial)
    return eff


def serial_roster(s: Session, key: ProviderKey, on_date) -> List[Booking]:
    """Active bookings for the day in serial order."""
    day = canonical_day(on_date)
    stmt = (
        select(Booking)
        .where(
            Booking.provider_ref == key.ref,
            Booking.booking_date == day,
            Booking.status.in_(ACTIVE_STATUSES),
        )
        .order_by(Booking.serial_number.asc())
    )
    return list(s.execute(stmt).scalars().all())


def serial_stats(s: Session, key: ProviderKey, on_date=None) -> dict:
    day = canonical_day(on_date) if on_date else today_utc()
    eff = resolve_or_closed(s, key, day)
    roster = serial_roster(s, key, day)
    booked_even = sum(1 for b in roster if b.serial_number % 2 == 0)
    booked_staff = sum(1 for b in roster if b.source == SOURCE_STAFF)
    even_total = even_ceiling(eff.total_slots)
    return {
        "settings": eff.as_dict(),
        "statistics": {
            "total_booked": len(roster),
            "even_capacity": even_total,
            "booked_even": booked_even,
            "booked_odd": len(roster) - booked_even,
            "booked_by_staff": booked_staff,
            "available_even": max(even_total - booked_even, 0) if eff.is_bookable else 0,
            "pending": sum(1 for b in roster if b.status == STATUS_PENDING),
            "accepted": sum(1 for b in roster if b.status == STATUS_ACCEPTED),
        },
    }
