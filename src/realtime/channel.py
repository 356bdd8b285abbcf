"""
Realtime Channel
================

Delivers typed events ``{"type": event, "data": {...}}`` to recipients:

* a single identity, addressed by key (``driver:{id}``, ``rider:{id}``)
* a topic group (``ride:{id}``) that sessions subscribe to

Delivery is at-most-once and best-effort.  Each send is bounded by
``send_timeout``; a slow or closed session is logged and skipped, and
nothing is queued for sessions that are not connected.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable

from .sessions import Session, SessionRegistry

logger = logging.getLogger(__name__)


def ride_topic(ride_id: str) -> str:
    return f"ride:{ride_id}"


class RealtimeChannel:
    def __init__(self, registry: SessionRegistry, send_timeout: float = 2.0):
        self.registry = registry
        self.send_timeout = send_timeout
        self._topics: dict[str, set[Session]] = {}

    # ── Topics ────────────────────────────────────────────────────

    def subscribe(self, topic: str, session: Session) -> None:
        self._topics.setdefault(topic, set()).add(session)

    def subscribe_key(self, topic: str, key: str) -> bool:
        """Subscribe whichever session is registered under *key*."""
        session = self.registry.lookup(key)
        if session is None:
            return False
        self.subscribe(topic, session)
        return True

    def unsubscribe(self, topic: str, session: Session) -> None:
        members = self._topics.get(topic)
        if members is None:
            return
        members.discard(session)
        if not members:
            del self._topics[topic]

    def close_topic(self, topic: str) -> None:
        self._topics.pop(topic, None)

    def drop(self, session: Session) -> None:
        """Remove *session* from every topic (on disconnect)."""
        for topic in [t for t, members in self._topics.items() if session in members]:
            self.unsubscribe(topic, session)

    def subscribers(self, topic: str) -> set[Session]:
        return set(self._topics.get(topic, ()))

    # ── Delivery ──────────────────────────────────────────────────

    async def send(self, key: str, event: str, data: dict[str, Any]) -> bool:
        session = self.registry.lookup(key)
        if session is None:
            logger.debug("No session for %s; %s dropped", key, event)
            return False
        return await self._deliver(session, {"type": event, "data": data})

    async def publish(
        self,
        topic: str,
        event: str,
        data: dict[str, Any],
        also: Iterable[str] = (),
    ) -> int:
        """Deliver to every topic subscriber plus the sessions keyed by *also*.

        A session reachable both ways receives the event once.  Returns the
        number of sessions that accepted the message.
        """
        targets = self.subscribers(topic)
        for key in also:
            session = self.registry.lookup(key)
            if session is not None:
                targets.add(session)
        if not targets:
            return 0
        message = {"type": event, "data": data}
        results = await asyncio.gather(*(self._deliver(s, message) for s in targets))
        return sum(results)

    async def _deliver(self, session: Session, message: dict[str, Any]) -> bool:
        try:
            await asyncio.wait_for(session.send(message), timeout=self.send_timeout)
        except (asyncio.TimeoutError, ConnectionError) as exc:
            logger.warning(
                "Delivery of %s to session %s failed: %r",
                message["type"],
                session.id,
                exc,
            )
            return False
        return True
