"""Driver-facing account views: profile and earnings summary."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from src.domain.errors import NotFoundError
from src.infrastructure.repositories import DriverRepository, EarningRepository
from src.infrastructure.ride_store import RideStore

PERIODS = {"today": 0, "week": 7, "month": 30}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DriverAccountService:
    def __init__(self, store: RideStore, clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self._now = clock

    async def profile(self, driver_id: str) -> dict[str, Any]:
        profile = await self.store.run(lambda s: DriverRepository(s).get_by_id(driver_id))
        if profile is None:
            raise NotFoundError(f"Driver {driver_id} not found")
        return {
            **profile.public_view(),
            "status": profile.status.value,
            "service_types": [s.value for s in profile.service_types],
            "is_online": profile.is_online,
            "total_rides": profile.total_rides,
            "total_earnings": round(profile.total_earnings, 2),
        }

    async def earnings(self, driver_id: str, period: str = "week") -> dict[str, Any]:
        now = self._now()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        since = start_of_day - timedelta(days=PERIODS[period])

        async def _load(session: AsyncSession):
            repo = EarningRepository(session)
            totals = await repo.totals_for_driver(driver_id, since)
            recent = await repo.list_for_driver(driver_id, since)
            return totals, recent

        (net, tips, count), recent = await self.store.run(_load)
        return {
            "period": period,
            "since": since.isoformat(),
            "rides": count,
            "net": round(net, 2),
            "tips": round(tips, 2),
            "total": round(net + tips, 2),
            "earnings": [
                {
                    "ride_id": e.ride_id,
                    "gross_amount": e.gross_amount,
                    "platform_fee": e.platform_fee,
                    "net_amount": e.net_amount,
                    "tip": e.tip,
                    "status": e.status.value,
                    "created_at": e.created_at.isoformat() if e.created_at else None,
                }
                for e in recent
            ],
        }
