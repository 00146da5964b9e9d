import os
from datetime import timedelta
from typing import Any, Dict, List, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import NullPool, StaticPool

os.environ.setdefault("ENV", "test")
os.environ.setdefault("EVENTS_ENABLED", "false")

from apps.serials.app import config as serials_config  # noqa: E402
from apps.serials.app import models, settings  # noqa: E402
from apps.serials.app.models import ProviderKey, TimeWindow  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_serials_config(monkeypatch):
    """
    Every test starts from the defaults regardless of the developer's env.
    """
    monkeypatch.setattr(serials_config, "REQUIRE_DATE_OVERRIDE", False)
    monkeypatch.setattr(serials_config, "PLATFORM_FEE_PCT", 0.0)
    monkeypatch.setattr(serials_config, "BOOKING_BACKOFF_MS", 0)
    monkeypatch.setattr(serials_config, "REQUIRE_INTERNAL_SECRET", False)


@pytest.fixture()
def serials_engine():
    """
    Isolated in-memory SQLite engine; one shared connection so every
    session (and the TestClient worker threads) sees the same tables.
    """
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    models.Base.metadata.create_all(engine)
    return engine


@pytest.fixture()
def file_engine(tmp_path):
    """
    File-backed engine where each session gets its own connection, for
    tests that need real concurrent transactions.
    """
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'serials.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=NullPool,
    )
    models.Base.metadata.create_all(engine)
    return engine


@pytest.fixture()
def session(serials_engine):
    with Session(serials_engine) as s:
        yield s


@pytest.fixture()
def doctor() -> ProviderKey:
    return ProviderKey(kind="individual-doctor", id="doc-1")


@pytest.fixture()
def day():
    return settings.today_utc() + timedelta(days=5)


@pytest.fixture()
def configured(session, doctor):
    return settings.upsert_config(
        session,
        doctor,
        total_slots_per_day=20,
        window=TimeWindow.from_hhmm("09:00", "17:00"),
        price_cents=50_000,
    )


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []

    def send(self, user_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        self.sent.append((user_id, event_type, payload))

    def events_for(self, user_id: str) -> List[str]:
        return [e for (u, e, _) in self.sent if u == user_id]


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()
