"""Domain enumerations and state-transition rules."""

import enum


class RideStatus(str, enum.Enum):
    REQUESTED = "REQUESTED"
    ACCEPTED = "ACCEPTED"
    ARRIVED = "ARRIVED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_DRIVERS = "NO_DRIVERS"


# State machine: maps current status -> set of valid next statuses
RIDE_TRANSITIONS: dict[RideStatus, set[RideStatus]] = {
    RideStatus.REQUESTED: {
        RideStatus.ACCEPTED,
        RideStatus.CANCELLED,
        RideStatus.NO_DRIVERS,
    },
    RideStatus.ACCEPTED: {RideStatus.ARRIVED, RideStatus.CANCELLED},
    RideStatus.ARRIVED: {RideStatus.IN_PROGRESS, RideStatus.CANCELLED},
    RideStatus.IN_PROGRESS: {RideStatus.COMPLETED, RideStatus.CANCELLED},
    RideStatus.COMPLETED: set(),
    RideStatus.CANCELLED: set(),
    RideStatus.NO_DRIVERS: set(),
}

ACTIVE_STATUSES = frozenset(
    {
        RideStatus.REQUESTED,
        RideStatus.ACCEPTED,
        RideStatus.ARRIVED,
        RideStatus.IN_PROGRESS,
    }
)

# Statuses during which the rider follows the driver on a map
TRACKING_STATUSES = frozenset(
    {RideStatus.ACCEPTED, RideStatus.ARRIVED, RideStatus.IN_PROGRESS}
)

TERMINAL_STATUSES = frozenset(
    {RideStatus.COMPLETED, RideStatus.CANCELLED, RideStatus.NO_DRIVERS}
)


class ServiceClass(str, enum.Enum):
    STANDARD = "STANDARD"
    XL = "XL"
    BLACK = "BLACK"
    GREEN = "GREEN"


class DriverStatus(str, enum.Enum):
    """Verification state, sourced from the background-check provider."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    SUSPENDED = "SUSPENDED"


class Role(str, enum.Enum):
    RIDER = "rider"
    DRIVER = "driver"


class CancelledBy(str, enum.Enum):
    RIDER = "RIDER"
    DRIVER = "DRIVER"


class EarningStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"


class PromoType(str, enum.Enum):
    FIXED = "FIXED"
    PERCENT = "PERCENT"


class RoundState(str, enum.Enum):
    DISPATCHING = "DISPATCHING"
    RESOLVED = "RESOLVED"
    EXHAUSTED = "EXHAUSTED"
    EXPIRED = "EXPIRED"
