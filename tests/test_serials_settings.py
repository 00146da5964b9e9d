from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from apps.serials.app import config as serials_config
from apps.serials.app import settings
from apps.serials.app.errors import (
    BookingClosed,
    InvalidConfiguration,
    InvalidProviderKey,
    InvalidTimeWindow,
    NotConfigured,
)
from apps.serials.app.models import DateOverride, ProviderKey, TimeWindow


def test_provider_key_ref_roundtrip_and_validation():
    k = ProviderKey(kind="hospital-doctor", id="d7", parent_org_id="h1")
    assert k.ref == "hospital-doctor:d7@h1"
    assert ProviderKey.parse(k.ref) == k
    assert ProviderKey.parse("individual-doctor:d1").parent_org_id is None

    with pytest.raises(InvalidProviderKey):
        ProviderKey(kind="hospital-doctor", id="d7")
    with pytest.raises(InvalidProviderKey):
        ProviderKey(kind="individual-doctor", id="d1", parent_org_id="h1")
    with pytest.raises(InvalidProviderKey):
        ProviderKey(kind="clinic", id="x")
    with pytest.raises(InvalidProviderKey):
        ProviderKey.parse("no-separator")


def test_canonical_day_accepts_dates_strings_and_aware_datetimes():
    assert settings.canonical_day("2030-01-05") == date(2030, 1, 5)
    assert settings.canonical_day(date(2030, 1, 5)) == date(2030, 1, 5)
    late_evening_minus_5 = datetime(2030, 1, 5, 22, 0, tzinfo=timezone(timedelta(hours=-5)))
    assert settings.canonical_day(late_evening_minus_5) == date(2030, 1, 6)
    with pytest.raises(ValueError):
        settings.canonical_day("05/01/2030")
    with pytest.raises(ValueError):
        settings.canonical_day(None)


def test_resolve_returns_base_settings_without_override(session, doctor, configured, day):
    eff = settings.resolve(session, doctor, day)
    assert eff.is_bookable
    assert eff.total_slots == 20
    assert eff.time_window == TimeWindow(9 * 60, 17 * 60)
    assert eff.price_cents == 50_000
    assert eff.override_id is None
    assert eff.overridden == ()


def test_resolve_without_config_raises_not_configured(session, day):
    other = ProviderKey(kind="diagnostic-test", id="xray", parent_org_id="center-9")
    with pytest.raises(NotConfigured):
        settings.resolve(session, other, day)


def test_disabled_override_closes_date_with_admin_note(session, doctor, configured, day):
    settings.upsert_override(session, doctor, day, total_slots_per_day=40, admin_note="Doctor on leave", is_enabled=False)

    with pytest.raises(BookingClosed) as ei:
        settings.resolve(session, doctor, day)
    assert ei.value.detail == "Doctor on leave"

    eff = settings.resolve_or_closed(session, doctor, day)
    assert not eff.is_bookable
    assert eff.closure_reason == "Doctor on leave"
    # Neighbouring days are unaffected.
    assert settings.resolve(session, doctor, day + timedelta(days=1)).is_bookable


def test_disabled_override_without_note_uses_generic_reason(session, doctor, configured, day):
    settings.upsert_override(session, doctor, day, is_enabled=False)
    eff = settings.resolve_or_closed(session, doctor, day)
    assert eff.closure_reason == settings.CLOSED_BY_ADMIN


def test_enabled_override_replaces_only_fields_it_sets(session, doctor, configured, day):
    settings.upsert_override(session, doctor, day, total_slots_per_day=10, admin_note="Short day")
    eff = settings.resolve(session, doctor, day)
    assert eff.total_slots == 10
    assert eff.time_window == TimeWindow(9 * 60, 17 * 60)
    assert eff.price_cents == 50_000
    assert eff.admin_note == "Short day"
    assert eff.overridden == ("total_slots",)

    # A second save replaces the whole override.
    settings.upsert_override(session, doctor, day, window=TimeWindow.from_hhmm("14:00", "16:00"), price_cents=0)
    eff = settings.resolve(session, doctor, day)
    assert eff.total_slots == 20
    assert eff.time_window.as_dict() == {"start": "14:00", "end": "16:00"}
    assert eff.price_cents == 0
    assert set(eff.overridden) == {"time_window", "price_cents"}
    assert session.query(DateOverride).count() == 1


def test_invalid_windows_are_rejected(session, doctor, configured, day):
    with pytest.raises(InvalidTimeWindow):
        TimeWindow.from_hhmm("17:00", "09:00")
    with pytest.raises(InvalidTimeWindow):
        TimeWindow.from_hhmm("9am", "10:00")
    with pytest.raises(InvalidTimeWindow):
        settings.upsert_override(session, doctor, day, window=TimeWindow(600, 600))

    # A corrupted stored window still fails closed at resolve time.
    configured.end_minute = configured.start_minute
    session.add(configured)
    session.commit()
    with pytest.raises(InvalidTimeWindow):
        settings.resolve(session, doctor, day)


def test_upsert_config_validates_capacity_and_price(session, doctor):
    with pytest.raises(InvalidConfiguration):
        settings.upsert_config(session, doctor, total_slots_per_day=0)
    with pytest.raises(InvalidConfiguration):
        settings.upsert_config(session, doctor, price_cents=-1)


def test_upsert_config_updates_in_place(session, doctor, configured):
    cfg = settings.upsert_config(session, doctor, total_slots_per_day=30)
    assert cfg.id == configured.id
    assert cfg.total_slots_per_day == 30
    assert cfg.price_cents == 50_000


def test_deactivated_config_is_not_configured(session, doctor, configured, day):
    settings.deactivate_config(session, doctor)
    with pytest.raises(NotConfigured):
        settings.resolve(session, doctor, day)
    cfg = settings.upsert_config(session, doctor, is_active=True)
    assert cfg.id == configured.id
    assert settings.resolve(session, doctor, day).is_bookable


def test_weekday_restriction_closes_other_days_unless_overridden(session, doctor, day):
    settings.upsert_config(session, doctor, available_days=[day.weekday()])
    assert settings.resolve(session, doctor, day).is_bookable

    other = day + timedelta(days=1)
    eff = settings.resolve_or_closed(session, doctor, other)
    assert eff.closure_reason == settings.CLOSED_WEEKDAY

    settings.upsert_override(session, doctor, other, admin_note="Extra clinic")
    assert settings.resolve(session, doctor, other).is_bookable


def test_require_date_override_only_opens_enabled_dates(monkeypatch, session, doctor, configured, day):
    monkeypatch.setattr(serials_config, "REQUIRE_DATE_OVERRIDE", True)
    with pytest.raises(BookingClosed):
        settings.resolve(session, doctor, day)
    settings.upsert_override(session, doctor, day)
    assert settings.resolve(session, doctor, day).is_bookable


def test_list_overrides_defaults_to_upcoming_window(session, doctor, configured):
    today = settings.today_utc()
    settings.upsert_override(session, doctor, today + timedelta(days=2), is_enabled=False)
    settings.upsert_override(session, doctor, today + timedelta(days=90), is_enabled=False)

    rows = settings.list_overrides(session, doctor)
    assert [r.override_date for r in rows] == [today + timedelta(days=2)]

    rows = settings.list_overrides(session, doctor, today, today + timedelta(days=120))
    assert len(rows) == 2

    with pytest.raises(ValueError):
        settings.list_overrides(session, doctor, today, today - timedelta(days=1))


def test_override_note_is_trimmed_to_column_size(session, doctor, configured, day):
    ov = settings.upsert_override(session, doctor, day, admin_note="x" * 800)
    assert len(ov.admin_note) == 500


def test_capacity_must_fit_the_window(session, doctor, configured, day):
    # 20 serials cannot share a 10-minute window.
    with pytest.raises(InvalidConfiguration):
        settings.upsert_config(session, doctor, window=TimeWindow.from_hhmm("09:00", "09:10"))
    with pytest.raises(InvalidConfiguration):
        settings.upsert_config(session, doctor, total_slots_per_day=481)
    with pytest.raises(InvalidConfiguration):
        settings.upsert_override(session, doctor, day, window=TimeWindow.from_hhmm("09:00", "09:10"))

    session.refresh(configured)
    assert configured.time_window == TimeWindow(9 * 60, 17 * 60)
    assert configured.total_slots_per_day == 20
    assert session.query(DateOverride).count() == 0

    # One minute per serial is the tightest fit; a closing override needs no fit.
    settings.upsert_override(session, doctor, day, total_slots_per_day=10, window=TimeWindow.from_hhmm("09:00", "09:10"))
    assert settings.resolve(session, doctor, day).total_slots == 10
    settings.upsert_override(session, doctor, day + timedelta(days=1), window=TimeWindow.from_hhmm("09:00", "09:10"), is_enabled=False)


def test_override_left_too_tight_by_a_base_change_fails_at_resolve(session, doctor, configured, day):
    settings.upsert_config(session, doctor, total_slots_per_day=10)
    settings.upsert_override(session, doctor, day, window=TimeWindow.from_hhmm("09:00", "09:10"))
    settings.upsert_config(session, doctor, total_slots_per_day=20)

    with pytest.raises(InvalidConfiguration):
        settings.resolve_or_closed(session, doctor, day)
    assert settings.resolve(session, doctor, day + timedelta(days=1)).total_slots == 20


def test_saving_a_retired_config_reactivates_it(session, doctor, configured, day):
    settings.deactivate_config(session, doctor)
    cfg = settings.upsert_config(session, doctor, total_slots_per_day=10)
    assert cfg.id == configured.id
    assert cfg.is_active is True
    assert settings.resolve(session, doctor, day).total_slots == 10

    retired = settings.upsert_config(session, doctor, is_active=False)
    assert retired.is_active is False
    with pytest.raises(NotConfigured):
        settings.resolve(session, doctor, day)
