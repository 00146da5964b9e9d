"""
Effective serial settings for a provider on a given day.

A provider has one active base configuration (capacity, time window, price,
weekdays). Administrators may attach a per-date override that either closes
the date or replaces some of the base fields. Resolution merges the two.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import config
from .errors import BookingClosed, InvalidConfiguration, NotConfigured
from .models import DateOverride, ProviderKey, ProviderSerialConfig, TimeWindow, format_weekdays

log = logging.getLogger("serials.settings")

CLOSED_BY_ADMIN = "serial booking is not available for this date"
CLOSED_WEEKDAY = "not an available day"
CLOSED_NOT_ENABLED = "this date is not enabled for serial booking; select an enabled date"

DEFAULT_TOTAL_SLOTS = 20
DEFAULT_WINDOW = TimeWindow(9 * 60, 17 * 60)


def canonical_day(value) -> date:
    """
    Reduce a date, datetime or ``YYYY-MM-DD`` string to the canonical UTC
    calendar day. Aware datetimes are converted to UTC first.
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and len(value.strip()) == 10:
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            pass
    raise ValueError(f"invalid date '{value}', expected YYYY-MM-DD")


def today_utc() -> date:
    return datetime.now(timezone.utc).date()


@dataclass(frozen=True)
class EffectiveSettings:
    provider_ref: str
    day: date
    total_slots: int
    time_window: TimeWindow
    price_cents: int
    admin_note: Optional[str] = None
    is_bookable: bool = True
    closure_reason: Optional[str] = None
    config_id: Optional[int] = None
    override_id: Optional[int] = None
    overridden: tuple = field(default_factory=tuple)

    def as_dict(self) -> dict:
        return {
            "provider_ref": self.provider_ref,
            "date": self.day.isoformat(),
            "total_slots": self.total_slots,
            "time_window": self.time_window.as_dict(),
            "price_cents": self.price_cents,
            "admin_note": self.admin_note,
            "is_bookable": self.is_bookable,
            "closure_reason": self.closure_reason,
            "overridden": list(self.overridden),
        }


def check_capacity(total_slots: int, window: TimeWindow) -> None:
    """Every serial needs at least one minute of the window."""
    if window.minutes < total_slots:
        raise InvalidConfiguration(
            f"a {window.minutes}-minute window cannot hold {total_slots} serials",
            total_slots=total_slots,
            window_minutes=window.minutes,
        )


def get_active_config(s: Session, key: ProviderKey) -> ProviderSerialConfig:
    cfg = (
        s.execute(
            select(ProviderSerialConfig).where(
                ProviderSerialConfig.provider_ref == key.ref,
                ProviderSerialConfig.is_active.is_(True),
            )
        )
        .scalars()
        .first()
    )
    if cfg is None:
        raise NotConfigured(f"serial settings not found for provider {key.ref}", provider_ref=key.ref)
    return cfg


def get_override(s: Session, config_id: int, day: date) -> Optional[DateOverride]:
    return (
        s.execute(
            select(DateOverride).where(DateOverride.config_id == config_id, DateOverride.override_date == day)
        )
        .scalars()
        .first()
    )


def resolve_or_closed(s: Session, key: ProviderKey, on_date) -> EffectiveSettings:
    """
    Like :func:`resolve` but reports a closed date as ``is_bookable=False``
    with the closure reason instead of raising.
    """
    day = canonical_day(on_date)
    cfg = get_active_config(s, key)
    base_window = cfg.time_window.validate()
    base = EffectiveSettings(
        provider_ref=key.ref,
        day=day,
        total_slots=cfg.total_slots_per_day,
        time_window=base_window,
        price_cents=cfg.price_cents or 0,
        config_id=cfg.id,
    )

    ov = get_override(s, cfg.id, day)
    if ov is None:
        if config.REQUIRE_DATE_OVERRIDE:
            return _closed(base, CLOSED_NOT_ENABLED)
        weekdays = cfg.weekdays
        if weekdays and day.weekday() not in weekdays:
            return _closed(base, CLOSED_WEEKDAY)
        check_capacity(base.total_slots, base_window)
        return base

    if not ov.is_enabled:
        return _closed(base, ov.admin_note or CLOSED_BY_ADMIN, admin_note=ov.admin_note, override_id=ov.id)

    overridden = []
    total = base.total_slots
    if ov.total_slots_per_day is not None:
        total = ov.total_slots_per_day
        overridden.append("total_slots")
    window = base.time_window
    if ov.time_window is not None:
        window = ov.time_window.validate()
        overridden.append("time_window")
    # A later base change can leave an older override too tight.
    check_capacity(total, window)
    price = base.price_cents
    if ov.price_cents is not None:
        price = ov.price_cents
        overridden.append("price_cents")
    return EffectiveSettings(
        provider_ref=key.ref,
        day=day,
        total_slots=total,
        time_window=window,
        price_cents=price,
        admin_note=ov.admin_note,
        config_id=cfg.id,
        override_id=ov.id,
        overridden=tuple(overridden),
    )


def _closed(base: EffectiveSettings, reason: str, admin_note: Optional[str] = None, override_id: Optional[int] = None) -> EffectiveSettings:
    return EffectiveSettings(
        provider_ref=base.provider_ref,
        day=base.day,
        total_slots=base.total_slots,
        time_window=base.time_window,
        price_cents=base.price_cents,
        admin_note=admin_note,
        is_bookable=False,
        closure_reason=reason,
        config_id=base.config_id,
        override_id=override_id,
    )


def resolve(s: Session, key: ProviderKey, on_date) -> EffectiveSettings:
    eff = resolve_or_closed(s, key, on_date)
    if not eff.is_bookable:
        raise BookingClosed(eff.closure_reason, provider_ref=key.ref, date=eff.day.isoformat())
    return eff


# ---- Administration ----
def upsert_config(
    s: Session,
    key: ProviderKey,
    total_slots_per_day: Optional[int] = None,
    window: Optional[TimeWindow] = None,
    price_cents: Optional[int] = None,
    available_days: Optional[Iterable[int]] = None,
    is_active: Optional[bool] = None,
) -> ProviderSerialConfig:
    """
    Create the provider's base configuration or update the fields given.
    Configurations are never deleted; pass ``is_active=False`` to retire one.
    Saving without ``is_active`` reactivates a retired configuration.
    """
    if total_slots_per_day is not None and total_slots_per_day < 1:
        raise InvalidConfiguration("total_slots_per_day must be positive")
    if window is not None:
        window.validate()
    if price_cents is not None and price_cents < 0:
        raise InvalidConfiguration("price must not be negative")

    attempt = 0
    while True:
        attempt += 1
        cfg = (
            s.execute(
                select(ProviderSerialConfig)
                .where(ProviderSerialConfig.provider_ref == key.ref)
                .order_by(ProviderSerialConfig.is_active.desc(), ProviderSerialConfig.id.desc())
            )
            .scalars()
            .first()
        )
        check_capacity(
            total_slots_per_day or (cfg.total_slots_per_day if cfg else DEFAULT_TOTAL_SLOTS),
            window or (cfg.time_window if cfg else DEFAULT_WINDOW),
        )
        if cfg is None:
            w = window or DEFAULT_WINDOW
            cfg = ProviderSerialConfig(
                provider_ref=key.ref,
                provider_kind=key.kind,
                provider_id=key.id,
                parent_org_id=key.parent_org_id,
                total_slots_per_day=total_slots_per_day or DEFAULT_TOTAL_SLOTS,
                start_minute=w.start_minute,
                end_minute=w.end_minute,
                price_cents=price_cents or 0,
                available_days=format_weekdays(available_days),
                is_active=True if is_active is None else is_active,
            )
        else:
            if total_slots_per_day is not None:
                cfg.total_slots_per_day = total_slots_per_day
            if window is not None:
                cfg.start_minute = window.start_minute
                cfg.end_minute = window.end_minute
            if price_cents is not None:
                cfg.price_cents = price_cents
            if available_days is not None:
                cfg.available_days = format_weekdays(available_days)
            if is_active is None:
                cfg.is_active = True
            else:
                cfg.is_active = is_active
        s.add(cfg)
        try:
            s.commit()
        except IntegrityError:
            # A concurrent admin created the active row first; apply as an update.
            s.rollback()
            if attempt > 1:
                raise
            continue
        s.refresh(cfg)
        log.info("serial config saved", extra={"provider_ref": key.ref})
        return cfg


def deactivate_config(s: Session, key: ProviderKey) -> ProviderSerialConfig:
    cfg = get_active_config(s, key)
    cfg.is_active = False
    s.add(cfg)
    s.commit()
    s.refresh(cfg)
    return cfg


def upsert_override(
    s: Session,
    key: ProviderKey,
    on_date,
    total_slots_per_day: Optional[int] = None,
    window: Optional[TimeWindow] = None,
    price_cents: Optional[int] = None,
    admin_note: Optional[str] = None,
    is_enabled: bool = True,
) -> DateOverride:
    """
    Create or replace the override for one date. Fields left as ``None``
    inherit from the base configuration at resolve time.
    """
    day = canonical_day(on_date)
    if total_slots_per_day is not None and total_slots_per_day < 1:
        raise InvalidConfiguration("total_slots_per_day must be positive")
    if window is not None:
        window.validate()
    if price_cents is not None and price_cents < 0:
        raise InvalidConfiguration("price must not be negative")
    note = (admin_note or "").strip() or None
    if note and len(note) > 500:
        note = note[:500]

    attempt = 0
    while True:
        attempt += 1
        cfg = get_active_config(s, key)
        if is_enabled:
            check_capacity(total_slots_per_day or cfg.total_slots_per_day, window or cfg.time_window)
        ov = get_override(s, cfg.id, day)
        if ov is None:
            ov = DateOverride(config_id=cfg.id, override_date=day)
        ov.total_slots_per_day = total_slots_per_day
        ov.start_minute = window.start_minute if window else None
        ov.end_minute = window.end_minute if window else None
        ov.price_cents = price_cents
        ov.admin_note = note
        ov.is_enabled = bool(is_enabled)
        s.add(ov)
        try:
            s.commit()
        except IntegrityError:
            s.rollback()
            if attempt > 1:
                raise
            continue
        s.refresh(ov)
        log.info(
            "date override saved for %s (enabled=%s)",
            day.isoformat(),
            ov.is_enabled,
            extra={"provider_ref": key.ref},
        )
        return ov


def list_overrides(s: Session, key: ProviderKey, start=None, end=None) -> List[DateOverride]:
    cfg = get_active_config(s, key)
    start_day = canonical_day(start) if start else today_utc()
    end_day = canonical_day(end) if end else start_day + timedelta(days=60)
    if end_day < start_day:
        raise ValueError("end date must not be before start date")
    stmt = (
        select(DateOverride)
        .where(
            DateOverride.config_id == cfg.id,
            DateOverride.override_date >= start_day,
            DateOverride.override_date <= end_day,
        )
        .order_by(DateOverride.override_date.asc())
    )
    return list(s.execute(stmt).scalars().all())
