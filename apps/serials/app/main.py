from fastapi import FastAPI, HTTPException, Depends, Header, APIRouter, Request, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from typing import Optional, List
import os
import hmac
import logging
from serials_shared import RequestIDMiddleware, configure_cors, add_standard_health, setup_json_logging, register_startup, register_shutdown
from starlette.middleware.trustedhost import TrustedHostMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session

from . import allocator, booking, config, earnings, lifecycle, models, settings
from .errors import SerialError
from .models import Booking, DateOverride, Idempotency, ProviderKey, ProviderSerialConfig, TimeWindow, format_hhmm, get_session


_log = logging.getLogger("serials.api")

app = FastAPI(
    title="Serials API",
    version="0.1.0",
    docs_url="/docs" if config.ENABLE_DOCS else None,
    redoc_url="/redoc" if config.ENABLE_DOCS else None,
    openapi_url="/openapi.json" if config.ENABLE_DOCS else None,
)
setup_json_logging()
app.add_middleware(RequestIDMiddleware)
configure_cors(app, os.getenv("ALLOWED_ORIGINS", ""))


def _ping_store() -> None:
    with models.engine.connect() as conn:
        conn.execute(text("SELECT 1"))


add_standard_health(app, checks={"store": _ping_store})

# Trusted hosts: mitigate Host header attacks and misrouting.
_allowed_hosts_raw = (os.getenv("ALLOWED_HOSTS") or "").strip()
if _allowed_hosts_raw:
    _allowed_hosts = [h.strip() for h in _allowed_hosts_raw.split(",") if h.strip()]
    # Keep local health checks working even if ALLOWED_HOSTS is minimal.
    for _extra in ("localhost", "127.0.0.1", "testserver"):
        if _extra not in _allowed_hosts:
            _allowed_hosts.append(_extra)
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=_allowed_hosts)


@app.exception_handler(SerialError)
async def _serial_error_handler(request: Request, exc: SerialError):
    headers = {"Retry-After": "1"} if exc.retryable else None
    if exc.status_code >= 500:
        _log.warning("request failed: %s", exc.detail)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)


# ---- Internal-only guard ----
# Serials sits behind the public gateway; in prod/staging every non-health
# call must carry the shared internal secret.
def _require_internal_secret(request: Request) -> None:
    if not config.REQUIRE_INTERNAL_SECRET:
        return
    provided = (request.headers.get("X-Internal-Secret") or "").strip()
    if not config.INTERNAL_SECRET:
        # Misconfiguration: fail closed so the service is not accidentally exposed.
        raise HTTPException(status_code=503, detail="internal auth not configured")
    if not provided or not hmac.compare_digest(provided, config.INTERNAL_SECRET):
        raise HTTPException(status_code=401, detail="internal auth required")


router = APIRouter(dependencies=[Depends(_require_internal_secret)])


@register_startup(app)
def on_startup():
    models.Base.metadata.create_all(models.engine)


@register_shutdown(app)
def on_shutdown():
    models.engine.dispose()


# ---- Schemas ----
class ConfigIn(BaseModel):
    total_slots_per_day: Optional[int] = Field(default=None, ge=1, le=500)
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    price_cents: Optional[int] = Field(default=None, ge=0)
    available_days: Optional[List[int]] = None
    is_active: Optional[bool] = None


class ConfigOut(BaseModel):
    id: int
    provider_ref: str
    total_slots_per_day: int
    start_time: str
    end_time: str
    price_cents: int
    available_days: List[int]
    is_active: bool


class OverrideIn(BaseModel):
    total_slots_per_day: Optional[int] = Field(default=None, ge=1, le=500)
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    price_cents: Optional[int] = Field(default=None, ge=0)
    admin_note: Optional[str] = Field(default=None, max_length=500)
    is_enabled: bool = True


class OverrideOut(BaseModel):
    id: int
    config_id: int
    date: str
    total_slots_per_day: Optional[int] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    price_cents: Optional[int] = None
    admin_note: Optional[str] = None
    is_enabled: bool


class WindowOut(BaseModel):
    start: str
    end: str


class SettingsOut(BaseModel):
    provider_ref: str
    date: str
    total_slots: int
    time_window: WindowOut
    price_cents: int
    admin_note: Optional[str] = None
    is_bookable: bool
    closure_reason: Optional[str] = None
    overridden: List[str] = []


class SerialOut(BaseModel):
    serial_number: int
    start: str
    end: str


class AvailabilityOut(BaseModel):
    provider_ref: str
    date: str
    is_bookable: bool
    closure_reason: Optional[str] = None
    total_slots: int
    time_window: WindowOut
    price_cents: int
    admin_note: Optional[str] = None
    serials: List[SerialOut] = []


class BookingIn(BaseModel):
    provider_kind: str
    provider_id: str
    parent_org_id: Optional[str] = None
    date: str
    serial_number: int
    patient_id: str = Field(min_length=1, max_length=64)
    # The slot the caller was shown; a mismatch means capacity changed.
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    reason: Optional[str] = Field(default=None, max_length=200)


class StaffBookingIn(BaseModel):
    provider_kind: str
    provider_id: str
    parent_org_id: Optional[str] = None
    date: str
    serial_number: int
    patient_id: str = Field(min_length=1, max_length=64)
    reason: Optional[str] = Field(default=None, max_length=200)


class BookingOut(BaseModel):
    id: str
    appointment_number: str
    provider_ref: str
    date: str
    serial_number: int
    patient_id: str
    status: str
    source: str
    start_time: str
    end_time: str
    fee_cents: int
    reason: Optional[str] = None
    admin_note: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at_iso: Optional[str] = None


class StatusIn(BaseModel):
    status: str
    actor: str
    reason: Optional[str] = Field(default=None, max_length=500)


class EarningsOut(BaseModel):
    provider_ref: str
    year: int
    month: Optional[int] = None
    count: int
    fee_cents: int
    platform_fee_cents: int
    net_cents: int


# ---- Helpers ----
def _provider_key(kind: str, provider_id: str, parent_org_id: Optional[str] = Query(default=None)) -> ProviderKey:
    return ProviderKey(kind=kind, id=provider_id, parent_org_id=(parent_org_id or "").strip() or None)


def _day(raw: Optional[str]):
    try:
        return settings.canonical_day(raw)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _replaying(s: Session, idempotency_key: Optional[str]) -> bool:
    return bool(idempotency_key) and s.get(Idempotency, idempotency_key) is not None


def _window(start: Optional[str], end: Optional[str]) -> Optional[TimeWindow]:
    if start is None and end is None:
        return None
    if not start or not end:
        raise HTTPException(status_code=400, detail="start_time and end_time must be given together")
    return TimeWindow.from_hhmm(start, end)


def _config_out(cfg: ProviderSerialConfig) -> ConfigOut:
    return ConfigOut(
        id=cfg.id,
        provider_ref=cfg.provider_ref,
        total_slots_per_day=cfg.total_slots_per_day,
        start_time=format_hhmm(cfg.start_minute),
        end_time=format_hhmm(cfg.end_minute),
        price_cents=cfg.price_cents or 0,
        available_days=sorted(cfg.weekdays),
        is_active=bool(cfg.is_active),
    )


def _override_out(ov: DateOverride) -> OverrideOut:
    return OverrideOut(
        id=ov.id,
        config_id=ov.config_id,
        date=ov.override_date.isoformat(),
        total_slots_per_day=ov.total_slots_per_day,
        start_time=format_hhmm(ov.start_minute) if ov.start_minute is not None else None,
        end_time=format_hhmm(ov.end_minute) if ov.end_minute is not None else None,
        price_cents=ov.price_cents,
        admin_note=ov.admin_note,
        is_enabled=bool(ov.is_enabled),
    )


def _booking_out(b: Booking) -> BookingOut:
    return BookingOut(
        id=b.id,
        appointment_number=b.appointment_number,
        provider_ref=b.provider_ref,
        date=b.booking_date.isoformat(),
        serial_number=b.serial_number,
        patient_id=b.patient_id,
        status=b.status,
        source=b.source,
        start_time=format_hhmm(b.slot_start_minute),
        end_time=format_hhmm(b.slot_end_minute),
        fee_cents=b.fee_cents or 0,
        reason=b.reason,
        admin_note=b.admin_note,
        cancelled_by=b.cancelled_by,
        cancellation_reason=b.cancellation_reason,
        created_at_iso=b.created_at.isoformat() if b.created_at else None,
    )


# ---- Provider administration ----
@router.put("/providers/{kind}/{provider_id}/config", response_model=ConfigOut)
def put_config(req: ConfigIn, key: ProviderKey = Depends(_provider_key), s: Session = Depends(get_session)):
    cfg = settings.upsert_config(
        s,
        key,
        total_slots_per_day=req.total_slots_per_day,
        window=_window(req.start_time, req.end_time),
        price_cents=req.price_cents,
        available_days=req.available_days,
        is_active=req.is_active,
    )
    return _config_out(cfg)


@router.post("/providers/{kind}/{provider_id}/config/deactivate", response_model=ConfigOut)
def deactivate_config(key: ProviderKey = Depends(_provider_key), s: Session = Depends(get_session)):
    return _config_out(settings.deactivate_config(s, key))


@router.get("/providers/{kind}/{provider_id}/settings", response_model=SettingsOut)
def get_settings(date: str, key: ProviderKey = Depends(_provider_key), s: Session = Depends(get_session)):
    return settings.resolve_or_closed(s, key, _day(date)).as_dict()


@router.put("/providers/{kind}/{provider_id}/overrides/{on_date}", response_model=OverrideOut)
def put_override(on_date: str, req: OverrideIn, key: ProviderKey = Depends(_provider_key), s: Session = Depends(get_session)):
    ov = settings.upsert_override(
        s,
        key,
        _day(on_date),
        total_slots_per_day=req.total_slots_per_day,
        window=_window(req.start_time, req.end_time),
        price_cents=req.price_cents,
        admin_note=req.admin_note,
        is_enabled=req.is_enabled,
    )
    return _override_out(ov)


@router.get("/providers/{kind}/{provider_id}/overrides", response_model=List[OverrideOut])
def list_overrides(
    start: Optional[str] = Query(default=None, alias="from"),
    end: Optional[str] = Query(default=None, alias="to"),
    key: ProviderKey = Depends(_provider_key),
    s: Session = Depends(get_session),
):
    start_day = _day(start) if start else None
    end_day = _day(end) if end else None
    try:
        rows = settings.list_overrides(s, key, start_day, end_day)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return [_override_out(ov) for ov in rows]


# ---- Availability ----
@router.get("/providers/{kind}/{provider_id}/serials", response_model=AvailabilityOut)
def get_serials(date: str, key: ProviderKey = Depends(_provider_key), s: Session = Depends(get_session)):
    return allocator.compute_available_serials(s, key, _day(date)).as_dict()


@router.get("/providers/{kind}/{provider_id}/staff-serials", response_model=AvailabilityOut)
def get_staff_serials(date: str, key: ProviderKey = Depends(_provider_key), s: Session = Depends(get_session)):
    return allocator.compute_staff_serials(s, key, _day(date)).as_dict()


@router.get("/providers/{kind}/{provider_id}/stats")
def get_stats(date: Optional[str] = None, key: ProviderKey = Depends(_provider_key), s: Session = Depends(get_session)):
    return allocator.serial_stats(s, key, _day(date) if date else None)


@router.get("/providers/{kind}/{provider_id}/roster", response_model=List[BookingOut])
def get_roster(date: str, key: ProviderKey = Depends(_provider_key), s: Session = Depends(get_session)):
    return [_booking_out(b) for b in allocator.serial_roster(s, key, _day(date))]


@router.get("/providers/{kind}/{provider_id}/earnings", response_model=EarningsOut)
def get_earnings(
    year: int = Query(ge=2000, le=2100),
    month: Optional[int] = Query(default=None, ge=1, le=12),
    key: ProviderKey = Depends(_provider_key),
    s: Session = Depends(get_session),
):
    return earnings.recorder.summary(s, key.ref, year, month)


# ---- Bookings ----
@router.post("/bookings", response_model=BookingOut)
def create_booking(
    req: BookingIn,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    s: Session = Depends(get_session),
):
    key = ProviderKey(kind=req.provider_kind, id=req.provider_id, parent_org_id=req.parent_org_id or None)
    replay = _replaying(s, idempotency_key)
    try:
        b = booking.create_booking(
            s,
            key,
            _day(req.date),
            req.serial_number,
            req.patient_id,
            requested_window=_window(req.start_time, req.end_time),
            reason=req.reason,
            idempotency_key=idempotency_key,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not replay:
        lifecycle.announce_created(b)
    return _booking_out(b)


@router.post("/staff/bookings", response_model=BookingOut)
def create_staff_booking(
    req: StaffBookingIn,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    s: Session = Depends(get_session),
):
    key = ProviderKey(kind=req.provider_kind, id=req.provider_id, parent_org_id=req.parent_org_id or None)
    replay = _replaying(s, idempotency_key)
    try:
        b = booking.create_staff_booking(
            s,
            key,
            _day(req.date),
            req.serial_number,
            req.patient_id,
            reason=req.reason,
            idempotency_key=idempotency_key,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not replay:
        lifecycle.announce_created(b)
    return _booking_out(b)


@router.get("/bookings/{booking_id}", response_model=BookingOut)
def get_booking(booking_id: str, s: Session = Depends(get_session)):
    return _booking_out(booking.get_booking(s, booking_id))


@router.get("/patients/{patient_id}/bookings", response_model=List[BookingOut])
def list_patient_bookings(patient_id: str, limit: int = Query(default=50, ge=1, le=200), s: Session = Depends(get_session)):
    return [_booking_out(b) for b in booking.list_patient_bookings(s, patient_id, limit)]


@router.post("/bookings/{booking_id}/status", response_model=BookingOut)
def update_status(booking_id: str, req: StatusIn, s: Session = Depends(get_session)):
    b = lifecycle.transition(s, booking_id, req.status.strip().lower(), req.actor.strip().lower(), reason=req.reason)
    return _booking_out(b)


app.include_router(router)
