from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

import apps.serials.app.main as serials  # type: ignore[import]
from apps.serials.app import config as serials_config
from apps.serials.app import events, models
from apps.serials.app.settings import today_utc


@pytest.fixture()
def client(monkeypatch, serials_engine, notifier):
    monkeypatch.setattr(models, "engine", serials_engine)
    monkeypatch.setattr(events, "gateway", notifier)
    return TestClient(serials.app)


DOC = "/providers/individual-doctor/doc-1"


def _configure(client, **overrides):
    body = {"total_slots_per_day": 20, "start_time": "09:00", "end_time": "17:00", "price_cents": 50_000}
    body.update(overrides)
    r = client.put(f"{DOC}/config", json=body)
    assert r.status_code == 200, r.text
    return r.json()


def _book(client, day, serial, patient="patient-1", **extra):
    body = {
        "provider_kind": "individual-doctor",
        "provider_id": "doc-1",
        "date": day.isoformat(),
        "serial_number": serial,
        "patient_id": patient,
    }
    body.update(extra)
    return client.post("/bookings", json=body)


def test_internal_secret_guard_enforces_auth(monkeypatch, client):
    monkeypatch.setattr(serials_config, "REQUIRE_INTERNAL_SECRET", True)
    monkeypatch.setattr(serials_config, "INTERNAL_SECRET", "test-serials-secret")

    assert client.get("/health").status_code == 200
    assert client.get(f"{DOC}/overrides").status_code == 401

    ok = client.get(f"{DOC}/overrides", headers={"X-Internal-Secret": "test-serials-secret"})
    # Auth passed; the provider simply has no configuration yet.
    assert ok.status_code == 404
    assert ok.json()["kind"] == "NotConfigured"


def test_internal_secret_guard_fails_closed_without_secret(monkeypatch, client):
    monkeypatch.setattr(serials_config, "REQUIRE_INTERNAL_SECRET", True)
    monkeypatch.setattr(serials_config, "INTERNAL_SECRET", "")
    assert client.get(f"{DOC}/overrides").status_code == 503


def test_health_pings_store(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["checks"] == {"store": "ok"}


def test_booking_flow_over_http(client, notifier, day):
    cfg = _configure(client)
    assert cfg["provider_ref"] == "individual-doctor:doc-1"
    assert cfg["start_time"] == "09:00"

    av = client.get(f"{DOC}/serials", params={"date": day.isoformat()}).json()
    assert [x["serial_number"] for x in av["serials"]] == list(range(2, 21, 2))
    first = av["serials"][0]

    r = _book(client, day, first["serial_number"], start_time=first["start"], end_time=first["end"], reason="checkup")
    assert r.status_code == 200, r.text
    b = r.json()
    assert b["status"] == "pending"
    assert b["start_time"] == first["start"]
    assert [e for (_, e, _) in notifier.sent] == ["appointment_created", "appointment_created"]

    dup = _book(client, day, first["serial_number"], patient="patient-2")
    assert dup.status_code == 409
    assert dup.json()["kind"] == "SerialAlreadyBooked"

    av = client.get(f"{DOC}/serials", params={"date": day.isoformat()}).json()
    assert first["serial_number"] not in [x["serial_number"] for x in av["serials"]]

    r = client.post(f"/bookings/{b['id']}/status", json={"status": "accepted", "actor": "provider"})
    assert r.status_code == 200
    assert r.json()["status"] == "accepted"

    r = client.post(f"/bookings/{b['id']}/status", json={"status": "cancelled", "actor": "patient"})
    assert r.json()["status"] == "cancelled"
    assert r.json()["cancelled_by"] == "patient"

    again = _book(client, day, first["serial_number"], patient="patient-2")
    assert again.status_code == 200

    history = client.get("/patients/patient-1/bookings").json()
    assert [h["id"] for h in history] == [b["id"]]
    assert client.get(f"/bookings/{b['id']}").json()["status"] == "cancelled"


def test_serial_rules_surface_as_typed_errors(client, day):
    _configure(client)
    r = _book(client, day, 21)
    assert r.status_code == 400
    assert r.json()["kind"] == "SerialOutOfRange"
    r = _book(client, day, 3)
    assert r.status_code == 400
    assert r.json()["kind"] == "SerialMustBeEven"

    r = client.post(
        "/staff/bookings",
        json={"provider_kind": "individual-doctor", "provider_id": "doc-1", "date": day.isoformat(), "serial_number": 2, "patient_id": "w1"},
    )
    assert r.json()["kind"] == "SerialMustBeOdd"


def test_override_closes_date_over_http(client, day):
    _configure(client)
    r = client.put(f"{DOC}/overrides/{day.isoformat()}", json={"is_enabled": False, "admin_note": "Holiday"})
    assert r.status_code == 200, r.text
    assert r.json()["is_enabled"] is False

    s = client.get(f"{DOC}/settings", params={"date": day.isoformat()}).json()
    assert s["is_bookable"] is False
    assert s["closure_reason"] == "Holiday"

    r = _book(client, day, 2)
    assert r.status_code == 409
    assert r.json() == {"kind": "BookingClosed", "detail": "Holiday", "context": {"provider_ref": "individual-doctor:doc-1", "date": day.isoformat()}}

    listed = client.get(f"{DOC}/overrides").json()
    assert [o["date"] for o in listed] == [day.isoformat()]


def test_idempotent_booking_over_http(client, notifier, day):
    _configure(client)
    r1 = client.post(
        "/bookings",
        json={"provider_kind": "individual-doctor", "provider_id": "doc-1", "date": day.isoformat(), "serial_number": 4, "patient_id": "p"},
        headers={"Idempotency-Key": "k-1"},
    )
    r2 = client.post(
        "/bookings",
        json={"provider_kind": "individual-doctor", "provider_id": "doc-1", "date": day.isoformat(), "serial_number": 4, "patient_id": "p"},
        headers={"Idempotency-Key": "k-1"},
    )
    assert r1.status_code == r2.status_code == 200
    assert r1.json()["id"] == r2.json()["id"]
    # The replay does not announce the booking a second time.
    assert [e for (_, e, _) in notifier.sent] == ["appointment_created", "appointment_created"]


def test_invalid_inputs_are_rejected(client, day):
    assert client.get("/providers/clinic/x/serials", params={"date": day.isoformat()}).json()["kind"] == "InvalidProviderKey"
    assert client.get(f"{DOC}/serials", params={"date": "tomorrow"}).status_code == 400
    r = client.put(f"{DOC}/config", json={"start_time": "17:00", "end_time": "09:00"})
    assert r.status_code == 400
    assert r.json()["kind"] == "InvalidTimeWindow"
    r = client.put(f"{DOC}/config", json={"total_slots_per_day": 20, "start_time": "09:00", "end_time": "09:10"})
    assert r.status_code == 400
    assert r.json()["kind"] == "InvalidConfiguration"
    r = client.post("/bookings/nope/status", json={"status": "accepted", "actor": "provider"})
    assert r.status_code == 404


def test_hospital_doctor_is_scoped_by_parent_org(client, day):
    base = "/providers/hospital-doctor/d1"
    assert client.put(f"{base}/config", json={"total_slots_per_day": 4}).status_code == 400
    r = client.put(f"{base}/config", params={"parent_org_id": "h1"}, json={"total_slots_per_day": 4})
    assert r.status_code == 200
    assert r.json()["provider_ref"] == "hospital-doctor:d1@h1"
    av = client.get(f"{base}/serials", params={"date": day.isoformat(), "parent_org_id": "h1"}).json()
    assert [x["serial_number"] for x in av["serials"]] == [2, 4]


def test_stats_roster_and_earnings_endpoints(client, day):
    _configure(client)
    b = _book(client, day, 2).json()
    client.post(f"/bookings/{b['id']}/status", json={"status": "accepted", "actor": "provider"})

    roster = client.get(f"{DOC}/roster", params={"date": day.isoformat()}).json()
    assert [r["serial_number"] for r in roster] == [2]
    stats = client.get(f"{DOC}/stats", params={"date": day.isoformat()}).json()
    assert stats["statistics"]["accepted"] == 1

    done = client.post(f"/bookings/{b['id']}/status", json={"status": "completed", "actor": "provider"}).json()
    assert done["status"] == "completed"
    # Earnings are booked in the month of completion, which is today.
    today = today_utc()
    summary = client.get(f"{DOC}/earnings", params={"year": today.year, "month": today.month}).json()
    assert summary["count"] == 1
    assert summary["fee_cents"] == 50_000
