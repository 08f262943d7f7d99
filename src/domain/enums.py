"""Domain enumerations and state-transition rules."""

import enum


class RideStatus(str, enum.Enum):
    PENDING = "pending"
    SEARCHING = "searching"
    MATCHED = "matched"
    CAPTAIN_ARRIVING = "captain_arriving"
    WAITING_FOR_RIDER = "waiting_for_rider"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# State machine: maps current status -> set of valid next statuses
RIDE_TRANSITIONS: dict[RideStatus, set[RideStatus]] = {
    RideStatus.PENDING: {
        RideStatus.SEARCHING,
        RideStatus.MATCHED,
        RideStatus.CANCELLED,
    },
    RideStatus.SEARCHING: {
        RideStatus.SEARCHING,
        RideStatus.MATCHED,
        RideStatus.CANCELLED,
    },
    RideStatus.MATCHED: {
        RideStatus.CAPTAIN_ARRIVING,
        RideStatus.SEARCHING,
        RideStatus.CANCELLED,
    },
    RideStatus.CAPTAIN_ARRIVING: {
        RideStatus.WAITING_FOR_RIDER,
        RideStatus.SEARCHING,
        RideStatus.CANCELLED,
    },
    RideStatus.WAITING_FOR_RIDER: {
        RideStatus.IN_PROGRESS,
        RideStatus.SEARCHING,
        RideStatus.CANCELLED,
    },
    RideStatus.IN_PROGRESS: {RideStatus.COMPLETED},
    RideStatus.COMPLETED: set(),
    RideStatus.CANCELLED: set(),
}

MATCHABLE_STATUSES = frozenset({RideStatus.PENDING, RideStatus.SEARCHING})

CANCELLABLE_STATUSES = frozenset(
    {
        RideStatus.PENDING,
        RideStatus.SEARCHING,
        RideStatus.MATCHED,
        RideStatus.CAPTAIN_ARRIVING,
        RideStatus.WAITING_FOR_RIDER,
    }
)

REASSIGNABLE_STATUSES = frozenset(
    {
        RideStatus.MATCHED,
        RideStatus.CAPTAIN_ARRIVING,
        RideStatus.WAITING_FOR_RIDER,
    }
)


class CaptainStatus(str, enum.Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    ON_RIDE = "on_ride"


class OfferStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


class OfferResponse(str, enum.Enum):
    ACCEPT = "accept"
    DECLINE = "decline"


class VehicleType(str, enum.Enum):
    BIKE = "bike"
    AUTO = "auto"
    CAB = "cab"


class CancelledBy(str, enum.Enum):
    RIDER = "rider"
    CAPTAIN = "captain"
    SYSTEM = "system"


class PenaltyType(str, enum.Enum):
    FEE = "fee"
    COOLDOWN = "cooldown"
    WARNING = "warning"


class ReassignmentReason(str, enum.Enum):
    CAPTAIN_CANCELLED = "captain_cancelled"
    CAPTAIN_DELAY = "captain_delay"
    CAPTAIN_NO_RESPONSE = "captain_no_response"
    ALL_DECLINED = "all_declined"
