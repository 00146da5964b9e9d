from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import config
from .models import Earning

log = logging.getLogger("serials.earnings")


class EarningsRecorder:
    """Books one earning row per completed appointment."""

    def __init__(self, platform_fee_pct: Optional[float] = None) -> None:
        self._pct = platform_fee_pct

    @property
    def platform_fee_pct(self) -> float:
        return config.PLATFORM_FEE_PCT if self._pct is None else self._pct

    def record(self, s: Session, provider_ref: str, booking_id: str, fee_cents: int, when: Optional[datetime] = None) -> Earning:
        existing = s.execute(select(Earning).where(Earning.booking_id == booking_id)).scalars().first()
        if existing:
            return existing
        when = when or datetime.now(timezone.utc)
        fee = max(int(fee_cents or 0), 0)
        platform_fee = int(round(fee * self.platform_fee_pct))
        e = Earning(
            id=str(uuid.uuid4()),
            provider_ref=provider_ref,
            booking_id=booking_id,
            month=when.month,
            year=when.year,
            fee_cents=fee,
            platform_fee_cents=platform_fee,
            net_cents=fee - platform_fee,
            status="pending",
        )
        s.add(e)
        try:
            s.commit()
        except IntegrityError:
            # Recorded concurrently for the same booking.
            s.rollback()
            return s.execute(select(Earning).where(Earning.booking_id == booking_id)).scalars().one()
        s.refresh(e)
        log.info("earning recorded", extra={"booking_id": booking_id, "provider_ref": provider_ref})
        return e

    def summary(self, s: Session, provider_ref: str, year: int, month: Optional[int] = None) -> dict:
        stmt = select(
            func.count(Earning.id),
            func.coalesce(func.sum(Earning.fee_cents), 0),
            func.coalesce(func.sum(Earning.platform_fee_cents), 0),
            func.coalesce(func.sum(Earning.net_cents), 0),
        ).where(Earning.provider_ref == provider_ref, Earning.year == year)
        if month is not None:
            stmt = stmt.where(Earning.month == month)
        count, fee, platform_fee, net = s.execute(stmt).one()
        return {
            "provider_ref": provider_ref,
            "year": year,
            "month": month,
            "count": int(count),
            "fee_cents": int(fee),
            "platform_fee_cents": int(platform_fee),
            "net_cents": int(net),
        }


recorder = EarningsRecorder()
