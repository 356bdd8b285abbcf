"""
Ride State Store
================

Durable source of truth for rides.  The one primitive that matters is
``transition``: a compare-and-swap on ride status implemented as a single
conditional UPDATE::

    UPDATE rides SET status = :to, ...
     WHERE id = :id AND status IN (:from...)

Whichever caller's UPDATE the database applies first wins; every other
caller sees ``rowcount == 0`` and gets ``ConflictError`` carrying the
status it lost to.  Two drivers accepting the same ride, or two
"complete trip" events for the same trip, are serialised here and
nowhere else.

Every call opens its own short unit of work and is bounded by
``timeout_seconds``; driver-level failures surface as ``UnavailableError``.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .repositories import PromoRepository, RideRepository, ride_from_model
from .timeouts import bounded
from src.domain.entities import Ride
from src.domain.enums import RIDE_TRANSITIONS, RideStatus
from src.domain.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UnavailableError,
    ValidationError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

OnApplied = Callable[[AsyncSession, Ride], Awaitable[None]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RideStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        timeout_seconds: float = 2.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._timeout = timeout_seconds
        self._clock = clock

    async def run(
        self, work: Callable[[AsyncSession], Awaitable[T]], *, commit: bool = False
    ) -> T:
        """Run *work* in a fresh unit of work for ancillary reads/writes."""

        async def _run() -> T:
            async with self._session_factory() as session:
                result = await work(session)
                if commit:
                    await session.commit()
                return result

        return await self._bounded(_run())

    async def _bounded(self, coro: Awaitable[T]) -> T:
        try:
            return await bounded(coro, self._timeout, "Ride store")
        except (OperationalError, InterfaceError) as exc:
            logger.warning("Ride store unavailable: %s", exc)
            raise UnavailableError("Ride store unavailable") from exc

    # ── Create / read ─────────────────────────────────────────────

    async def create(self, ride: Ride) -> Ride:
        """Insert a REQUESTED ride, enforcing one active ride per rider.

        A resubmission carrying a known idempotency key returns the
        original ride instead of creating a second one.
        """
        if ride.status is not RideStatus.REQUESTED:
            raise ValidationError("New rides must start as REQUESTED")
        ride.id = ride.id or str(uuid.uuid4())
        ride.requested_at = ride.requested_at or self._clock()

        async def _insert() -> Ride:
            async with self._session_factory() as session:
                repo = RideRepository(session)
                if ride.idempotency_key:
                    existing = await repo.get_by_idempotency_key(ride.idempotency_key)
                    if existing:
                        return existing
                active = await repo.get_active_for_rider(ride.rider_id)
                if active:
                    if ride.idempotency_key and active.idempotency_key == ride.idempotency_key:
                        return active
                    raise ValidationError("You already have an active ride")
                try:
                    row = await repo.add(ride)
                    if ride.promo_code:
                        await PromoRepository(session).record_usage(
                            ride.promo_code, ride.rider_id, ride.id
                        )
                    await session.commit()
                except IntegrityError as exc:
                    await session.rollback()
                    # Lost a race on the idempotency key or the
                    # one-active-ride index; tell the two apart.
                    if ride.idempotency_key:
                        existing = await repo.get_by_idempotency_key(
                            ride.idempotency_key
                        )
                        if existing:
                            return existing
                    raise ValidationError("You already have an active ride") from exc
                return ride_from_model(row)

        created = await self._bounded(_insert())
        logger.info("Ride %s created for rider %s", created.id, created.rider_id)
        return created

    async def get(self, ride_id: str) -> Ride:
        async def _get() -> Optional[Ride]:
            async with self._session_factory() as session:
                return await RideRepository(session).get_by_id(ride_id)

        ride = await self._bounded(_get())
        if ride is None:
            raise NotFoundError(f"Ride {ride_id} not found")
        return ride

    # ── Compare-and-swap ──────────────────────────────────────────

    async def transition(
        self,
        ride_id: str,
        from_statuses: Iterable[RideStatus],
        to_status: RideStatus,
        values: Optional[dict] = None,
        *,
        driver_id: Optional[str] = None,
        on_applied: Optional[OnApplied] = None,
    ) -> Ride:
        """Apply *to_status* + *values* only if status is in *from_statuses*.

        ``driver_id`` narrows the precondition to rides assigned to that
        driver.  ``on_applied`` runs inside the same transaction after the
        swap succeeds, so side records (earnings, counters) commit or roll
        back together with the status change.  Assigning a driver who
        already holds an ACCEPTED/ARRIVED/IN_PROGRESS ride is refused by
        the database and surfaces as ``ValidationError``.
        """
        expected = frozenset(from_statuses)
        for status in expected:
            if to_status not in RIDE_TRANSITIONS[status]:
                raise ValueError(
                    f"{status.value} -> {to_status.value} is not a ride transition"
                )
        changes = dict(values or {})
        changes.setdefault("updated_at", self._clock())

        async def _apply() -> Ride:
            try:
                return await _swap()
            except IntegrityError as exc:
                # uq_rides_driver_assigned: one assigned ride per driver
                if changes.get("driver_id"):
                    raise ValidationError(
                        "Driver already has an active ride"
                    ) from exc
                raise

        async def _swap() -> Ride:
            async with self._session_factory() as session, session.begin():
                repo = RideRepository(session)
                applied = await repo.conditional_update(
                    ride_id, expected, to_status, changes, driver_id
                )
                if not applied:
                    current = await repo.get_status(ride_id)
                    if current is None:
                        raise NotFoundError(f"Ride {ride_id} not found")
                    if current in expected:
                        raise ForbiddenError("Ride is assigned to another driver")
                    raise ConflictError(
                        f"Ride is {current.value}; expected "
                        + " or ".join(sorted(s.value for s in expected)),
                        current_status=current,
                        expected=expected,
                    )
                ride = ride_from_model(await repo.get_row(ride_id))
                if on_applied is not None:
                    await on_applied(session, ride)
                return ride

        ride = await self._bounded(_apply())
        logger.debug("Ride %s -> %s", ride_id, to_status.value)
        return ride

    async def mark_dispatched(self, ride_id: str) -> None:
        async def _mark() -> None:
            async with self._session_factory() as session, session.begin():
                await RideRepository(session).mark_dispatched(ride_id, self._clock())

        await self._bounded(_mark())
