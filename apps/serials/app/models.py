from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    func,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from . import config
from .errors import InvalidProviderKey, InvalidTimeWindow


# ---- Provider identity ----
KIND_INDIVIDUAL_DOCTOR = "individual-doctor"
KIND_HOSPITAL_DOCTOR = "hospital-doctor"
KIND_DIAGNOSTIC_TEST = "diagnostic-test"
PROVIDER_KINDS = (KIND_INDIVIDUAL_DOCTOR, KIND_HOSPITAL_DOCTOR, KIND_DIAGNOSTIC_TEST)
_ORG_KINDS = (KIND_HOSPITAL_DOCTOR, KIND_DIAGNOSTIC_TEST)

_ID_RE = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")


@dataclass(frozen=True)
class ProviderKey:
    """
    One bookable provider: an individual doctor, a doctor attached to a
    hospital, or a test offered by a diagnostic center. Hospital doctors and
    diagnostic tests are scoped by their parent organisation.
    """

    kind: str
    id: str
    parent_org_id: Optional[str] = None

    def __post_init__(self):
        if self.kind not in PROVIDER_KINDS:
            raise InvalidProviderKey(f"unknown provider kind '{self.kind}'")
        if not _ID_RE.match(self.id or ""):
            raise InvalidProviderKey("provider id must be 1-64 chars of [A-Za-z0-9_.-]")
        if self.kind in _ORG_KINDS:
            if not self.parent_org_id or not _ID_RE.match(self.parent_org_id):
                raise InvalidProviderKey(f"{self.kind} requires a parent_org_id")
        elif self.parent_org_id:
            raise InvalidProviderKey(f"{self.kind} must not carry a parent_org_id")

    @property
    def ref(self) -> str:
        base = f"{self.kind}:{self.id}"
        return f"{base}@{self.parent_org_id}" if self.parent_org_id else base

    @classmethod
    def parse(cls, ref: str) -> "ProviderKey":
        kind, sep, rest = (ref or "").partition(":")
        if not sep:
            raise InvalidProviderKey(f"malformed provider ref '{ref}'")
        pid, _, parent = rest.partition("@")
        return cls(kind=kind, id=pid, parent_org_id=parent or None)

    def __str__(self) -> str:
        return self.ref


# ---- Booking status ----
STATUS_PENDING = "pending"
STATUS_ACCEPTED = "accepted"
STATUS_REJECTED = "rejected"
STATUS_COMPLETED = "completed"
STATUS_CANCELLED = "cancelled"
STATUS_NO_SHOW = "no_show"
ACTIVE_STATUSES = (STATUS_PENDING, STATUS_ACCEPTED)
TERMINAL_STATUSES = (STATUS_REJECTED, STATUS_COMPLETED, STATUS_CANCELLED, STATUS_NO_SHOW)
ALL_STATUSES = ACTIVE_STATUSES + TERMINAL_STATUSES
# Availability is stricter than the unique index, which covers only
# ACTIVE_STATUSES: a no-show keeps its serial and the slot is not offered
# again that day, although nothing in the store stops a later insert on it.
OCCUPYING_STATUSES = ACTIVE_STATUSES + (STATUS_NO_SHOW,)

SOURCE_SELF_SERVICE = "self_service"
SOURCE_STAFF = "staff"


# ---- Time helpers ----
_HHMM_RE = re.compile(r"^([01][0-9]|2[0-3]):([0-5][0-9])$")


def parse_hhmm(val: str) -> int:
    m = _HHMM_RE.match((val or "").strip())
    if not m:
        raise InvalidTimeWindow("time must be HH:MM 24h")
    return int(m.group(1)) * 60 + int(m.group(2))


def format_hhmm(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


@dataclass(frozen=True)
class TimeWindow:
    start_minute: int
    end_minute: int

    @classmethod
    def from_hhmm(cls, start: str, end: str) -> "TimeWindow":
        w = cls(parse_hhmm(start), parse_hhmm(end))
        w.validate()
        return w

    def validate(self) -> "TimeWindow":
        if self.end_minute <= self.start_minute:
            raise InvalidTimeWindow(
                f"end time {format_hhmm(self.end_minute)} must be after start time {format_hhmm(self.start_minute)}"
            )
        return self

    @property
    def minutes(self) -> int:
        return self.end_minute - self.start_minute

    def as_dict(self) -> dict:
        return {"start": format_hhmm(self.start_minute), "end": format_hhmm(self.end_minute)}


def parse_weekdays(raw: Optional[str]) -> set[int]:
    out: set[int] = set()
    for part in (raw or "").split(","):
        part = part.strip()
        if part.isdigit() and 0 <= int(part) <= 6:
            out.add(int(part))
    return out


def format_weekdays(days) -> str:
    return ",".join(str(d) for d in sorted(set(days or [])))


# ---- Tables ----
def _schema_args(*args):
    return tuple(args) + (({"schema": config.DB_SCHEMA} if config.DB_SCHEMA else {}),)


def _fk(target: str) -> str:
    return f"{config.DB_SCHEMA}.{target}" if config.DB_SCHEMA else target


class Base(DeclarativeBase):
    pass


class ProviderSerialConfig(Base):
    __tablename__ = "serial_configs"
    __table_args__ = _schema_args(
        # At most one active configuration per provider.
        Index(
            "uq_serial_configs_active_provider",
            "provider_ref",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider_ref: Mapped[str] = mapped_column(String(160), index=True)
    provider_kind: Mapped[str] = mapped_column(String(32))
    provider_id: Mapped[str] = mapped_column(String(64))
    parent_org_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    total_slots_per_day: Mapped[int] = mapped_column(Integer, default=20)
    start_minute: Mapped[int] = mapped_column(Integer)  # minutes from midnight
    end_minute: Mapped[int] = mapped_column(Integer)
    price_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    available_days: Mapped[str] = mapped_column(String(32), default="")  # "0,1,2" 0=Monday, empty=every day
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @property
    def provider_key(self) -> ProviderKey:
        return ProviderKey(self.provider_kind, self.provider_id, self.parent_org_id)

    @property
    def time_window(self) -> TimeWindow:
        return TimeWindow(self.start_minute, self.end_minute)

    @property
    def weekdays(self) -> set[int]:
        return parse_weekdays(self.available_days)


class DateOverride(Base):
    __tablename__ = "serial_date_overrides"
    __table_args__ = _schema_args(
        UniqueConstraint("config_id", "override_date", name="uq_serial_date_overrides_config_date"),
    )
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    config_id: Mapped[int] = mapped_column(Integer, ForeignKey(_fk("serial_configs.id")), index=True)
    override_date: Mapped[date] = mapped_column(Date, index=True)  # canonical UTC calendar day
    total_slots_per_day: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    start_minute: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    end_minute: Mapped[Optional[int]] = mapped_column(Integer, default=None)
    price_cents: Mapped[Optional[int]] = mapped_column(BigInteger, default=None)
    admin_note: Mapped[Optional[str]] = mapped_column(String(500), default=None)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @property
    def time_window(self) -> Optional[TimeWindow]:
        if self.start_minute is None or self.end_minute is None:
            return None
        return TimeWindow(self.start_minute, self.end_minute)


class Booking(Base):
    __tablename__ = "serial_bookings"
    __table_args__ = _schema_args(
        # The collision guard: one active booking per serial per provider day.
        Index(
            "uq_serial_bookings_active_serial",
            "provider_ref",
            "booking_date",
            "serial_number",
            unique=True,
            sqlite_where=text("status IN ('pending', 'accepted')"),
            postgresql_where=text("status IN ('pending', 'accepted')"),
        ),
        Index("ix_serial_bookings_provider_date", "provider_ref", "booking_date"),
    )
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    provider_ref: Mapped[str] = mapped_column(String(160))
    provider_kind: Mapped[str] = mapped_column(String(32))
    provider_id: Mapped[str] = mapped_column(String(64))
    parent_org_id: Mapped[Optional[str]] = mapped_column(String(64), default=None)
    booking_date: Mapped[date] = mapped_column(Date)
    serial_number: Mapped[int] = mapped_column(Integer)
    patient_id: Mapped[str] = mapped_column(String(64), index=True)
    status: Mapped[str] = mapped_column(String(16), default=STATUS_PENDING)  # pending|accepted|rejected|completed|cancelled|no_show
    source: Mapped[str] = mapped_column(String(16), default=SOURCE_SELF_SERVICE)  # self_service|staff
    slot_start_minute: Mapped[int] = mapped_column(Integer)
    slot_end_minute: Mapped[int] = mapped_column(Integer)
    fee_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    appointment_number: Mapped[str] = mapped_column(String(32), unique=True)
    reason: Mapped[Optional[str]] = mapped_column(String(200), default=None)
    admin_note: Mapped[Optional[str]] = mapped_column(String(500), default=None)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(16), default=None)  # patient|provider|system
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=None)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(String(500), default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @property
    def provider_key(self) -> ProviderKey:
        return ProviderKey(self.provider_kind, self.provider_id, self.parent_org_id)

    @property
    def time_slot(self) -> TimeWindow:
        return TimeWindow(self.slot_start_minute, self.slot_end_minute)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class Earning(Base):
    __tablename__ = "serial_earnings"
    __table_args__ = _schema_args(
        Index("ix_serial_earnings_provider_period", "provider_ref", "year", "month"),
    )
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    provider_ref: Mapped[str] = mapped_column(String(160))
    booking_id: Mapped[str] = mapped_column(String(36), unique=True)  # one earning per booking
    month: Mapped[int] = mapped_column(Integer)
    year: Mapped[int] = mapped_column(Integer)
    fee_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    platform_fee_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    net_cents: Mapped[int] = mapped_column(BigInteger, default=0)
    status: Mapped[str] = mapped_column(String(16), default="pending")  # pending|paid|cancelled
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Idempotency(Base):
    __tablename__ = "serial_idempotency"
    __table_args__ = _schema_args()
    key: Mapped[str] = mapped_column(String(120), primary_key=True)
    params_hash: Mapped[str] = mapped_column(String(64))
    booking_id: Mapped[Optional[str]] = mapped_column(String(36), default=None)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), server_default=func.now())


# ---- Engine / sessions ----
def build_engine(url: Optional[str] = None, timeout: Optional[int] = None, **kwargs) -> Engine:
    url = url or config.DB_URL
    timeout = timeout or config.STORE_TIMEOUT_SECONDS
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": timeout}
        return create_engine(url, pool_pre_ping=True, connect_args=connect_args, **kwargs)
    # statement_timeout bounds every query; pool_timeout bounds checkout.
    connect_args = {"options": f"-c statement_timeout={timeout * 1000}"}
    return create_engine(url, pool_pre_ping=True, pool_timeout=timeout, connect_args=connect_args, **kwargs)


engine = build_engine()


def get_session():
    with Session(engine) as s:
        yield s
