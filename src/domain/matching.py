"""
Matching Round
==============

One bounded-time dispatch attempt for a single ride:

1. **Candidate selection** -- proximity hits (nearest first) are filtered
   by eligibility and capped at the fan-out.
2. **Broadcast**            -- every selected candidate gets the same offer.
3. **Resolution**           -- the first accept that wins the store's
   compare-and-swap resolves the round; every other candidate is revoked.
4. **Expiry**               -- the deadline passes with no winner, or every
   candidate declined.

State machine::

    DISPATCHING -> RESOLVED(driver) | EXHAUSTED | EXPIRED

The round object is bookkeeping only.  It never decides who wins: that is
the store's job, so a round held by one process cannot disagree with an
accept applied by another.

Complexity
----------
Let H = proximity hits returned by the Geo-Index and F = fan-out.

* Selection:  O(H)  -- one pass, stops after F eligible hits
* Decline:    O(1)
* Offer:      O(1) per candidate
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from .entities import Candidate, Ride
from .enums import RoundState


def select_candidates(
    hits: Iterable[Candidate],
    is_eligible: Callable[[str], bool],
    fanout: int,
    exclude: Iterable[str] = (),
) -> list[Candidate]:
    """Keep the nearest *fanout* eligible hits, preserving distance order."""
    skipped = set(exclude)
    chosen: list[Candidate] = []
    for hit in hits:
        if hit.driver_id in skipped or not is_eligible(hit.driver_id):
            continue
        chosen.append(hit)
        skipped.add(hit.driver_id)
        if len(chosen) >= fanout:
            break
    return chosen


def search_radius(base_miles: float, step_miles: float, attempt: int) -> float:
    """Radius for the *attempt*-th round (1-based); grows linearly."""
    return base_miles + step_miles * (attempt - 1)


@dataclass
class MatchingRound:
    ride_id: str
    candidates: list[Candidate]
    started_at: float
    deadline: float
    attempt: int = 1
    radius_miles: float = 0.0
    state: RoundState = RoundState.DISPATCHING
    winner: Optional[str] = None
    declined: set[str] = field(default_factory=set)
    # Everyone offered this ride across all attempts
    offered: set[str] = field(default_factory=set)

    def __post_init__(self) -> None:
        self.offered.update(c.driver_id for c in self.candidates)

    @property
    def is_open(self) -> bool:
        return self.state is RoundState.DISPATCHING

    @property
    def candidate_ids(self) -> list[str]:
        return [c.driver_id for c in self.candidates]

    def was_offered(self, driver_id: str) -> bool:
        return driver_id in self.offered

    def distance_of(self, driver_id: str) -> Optional[float]:
        for c in self.candidates:
            if c.driver_id == driver_id:
                return c.distance_miles
        return None

    def losers(self) -> list[str]:
        return [d for d in self.candidate_ids if d != self.winner]

    def resolve(self, driver_id: str) -> None:
        self.state = RoundState.RESOLVED
        self.winner = driver_id

    def expire(self) -> None:
        if self.is_open:
            self.state = RoundState.EXPIRED

    def decline(self, driver_id: str) -> bool:
        """Record a decline.  True once every current candidate declined."""
        if driver_id in self.candidate_ids:
            self.declined.add(driver_id)
        return self.is_open and set(self.candidate_ids) <= self.declined

    def next_attempt(
        self,
        candidates: list[Candidate],
        started_at: float,
        deadline: float,
        radius_miles: float,
    ) -> "MatchingRound":
        """Open the follow-up round, carrying the offered set forward."""
        return MatchingRound(
            ride_id=self.ride_id,
            candidates=candidates,
            started_at=started_at,
            deadline=deadline,
            attempt=self.attempt + 1,
            radius_miles=radius_miles,
            offered=set(self.offered),
        )


def build_offer(
    ride: Ride, candidate: Candidate, expires_in: float
) -> dict[str, Any]:
    """Payload broadcast to one candidate."""
    return {
        "ride_id": ride.id,
        "pickup": ride.pickup.to_dict(),
        "dropoff": ride.dropoff.to_dict(),
        "stops": len(ride.stops),
        "service_class": ride.service_class.value,
        "fare": ride.fare.driver_earnings,
        "distance_miles": round(ride.distance_miles, 2),
        "pickup_distance_miles": round(candidate.distance_miles, 2),
        "expires_in": expires_in,
    }
