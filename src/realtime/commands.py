"""
Inbound websocket commands.

Each message ``{"type": ..., "data": {...}}`` from a session is handled
on its own; the session gets exactly one reply, ``<type>_confirmed`` with
a result payload or ``<type>_failed`` with the failure reason verbatim.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field
from pydantic import ValidationError as PayloadError

from .channel import ride_topic
from .sessions import Session
from src.domain.enums import Role
from src.domain.errors import DispatchError, ForbiddenError
from src.services.container import Services

logger = logging.getLogger(__name__)


class LocationPayload(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    ride_id: Optional[str] = None


class RidePayload(BaseModel):
    ride_id: str = Field(..., min_length=1)


Handler = Callable[[Session, dict], Awaitable[Optional[dict[str, Any]]]]


class CommandHandler:
    def __init__(self, services: Services):
        self.services = services
        self._handlers: dict[str, tuple[Optional[Role], Handler]] = {
            "driver:online": (Role.DRIVER, self._online),
            "driver:offline": (Role.DRIVER, self._offline),
            "driver:location": (Role.DRIVER, self._location),
            "driver:accept_ride": (Role.DRIVER, self._accept),
            "driver:decline_ride": (Role.DRIVER, self._decline),
            "driver:arrived": (Role.DRIVER, self._arrived),
            "driver:start_trip": (Role.DRIVER, self._start),
            "driver:complete_trip": (Role.DRIVER, self._complete),
            "ride:subscribe": (None, self._subscribe),
        }

    async def handle(self, session: Session, message: Any) -> dict[str, Any]:
        if not isinstance(message, dict) or not isinstance(message.get("type"), str):
            return {"type": "error", "data": {"message": "Malformed message"}}
        command = message["type"]
        entry = self._handlers.get(command)
        if entry is None:
            return {"type": "error", "data": {"message": f"Unknown command {command}"}}

        role, handler = entry
        data = message.get("data") or {}
        try:
            if role is not None and session.identity.role is not role:
                raise ForbiddenError(f"{command} requires a {role.value} session")
            result = await handler(session, data)
        except PayloadError as exc:
            errors = exc.errors(
                include_url=False, include_context=False, include_input=False
            )
            return self._failed(command, "Invalid payload", errors=errors)
        except DispatchError as exc:
            logger.info("%s from %s failed: %s", command, session.identity.id, exc)
            return self._failed(command, str(exc), code=exc.code)
        return {"type": f"{command}_confirmed", "data": result or {}}

    @staticmethod
    def _failed(command: str, message: str, **extra: Any) -> dict[str, Any]:
        return {"type": f"{command}_failed", "data": {"message": message, **extra}}

    # ── Handlers ──────────────────────────────────────────────────────

    async def _online(self, session: Session, data: dict) -> dict:
        body = LocationPayload.model_validate(data)
        await self.services.presence.go_online(session.identity.id, body.lat, body.lng)
        return {"status": "online"}

    async def _offline(self, session: Session, data: dict) -> dict:
        await self.services.presence.go_offline(session.identity.id)
        return {"status": "offline"}

    async def _location(self, session: Session, data: dict) -> None:
        body = LocationPayload.model_validate(data)
        await self.services.presence.update_location(
            session.identity.id, body.lat, body.lng, body.ride_id
        )

    async def _accept(self, session: Session, data: dict) -> dict:
        body = RidePayload.model_validate(data)
        ride = await self.services.engine.accept(body.ride_id, session.identity.id)
        return {"ride": ride.summary()}

    async def _decline(self, session: Session, data: dict) -> dict:
        body = RidePayload.model_validate(data)
        await self.services.engine.decline(body.ride_id, session.identity.id)
        return {"ride_id": body.ride_id}

    async def _arrived(self, session: Session, data: dict) -> dict:
        body = RidePayload.model_validate(data)
        ride = await self.services.trips.arrive(session.identity.id, body.ride_id)
        return {"ride": ride.summary()}

    async def _start(self, session: Session, data: dict) -> dict:
        body = RidePayload.model_validate(data)
        ride = await self.services.trips.start(session.identity.id, body.ride_id)
        return {"ride": ride.summary()}

    async def _complete(self, session: Session, data: dict) -> dict:
        body = RidePayload.model_validate(data)
        ride = await self.services.trips.complete(session.identity.id, body.ride_id)
        return {"ride": ride.summary(), "fare": ride.fare.to_dict()}

    async def _subscribe(self, session: Session, data: dict) -> dict:
        body = RidePayload.model_validate(data)
        ride = await self.services.store.get(body.ride_id)
        if not ride.involves(session.identity):
            raise ForbiddenError("Not your ride")
        self.services.channel.subscribe(ride_topic(ride.id), session)
        return {"ride_id": ride.id, "status": ride.status.value}
