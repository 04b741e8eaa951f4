"""Enums for the freight mission core - these define the valid values for states and reasons."""
from enum import Enum


class LoadStatus(str, Enum):
    """Board status of a posted load."""
    AVAILABLE = "available"
    RESERVED = "reserved"
    ACCEPTED = "accepted"
    COMPLETED = "completed"
    EXPIRED = "expired"
    ORPHANED = "orphaned"


class MissionStatus(str, Enum):
    """Live states of an active mission. Terminal outcomes live on the BOL."""
    AT_ORIGIN = "at_origin"
    IN_TRANSIT = "in_transit"
    AT_STOP = "at_stop"
    AT_DESTINATION = "at_destination"


class BolStatus(str, Enum):
    """BOL status. ACTIVE moves to exactly one terminal value and never back."""
    ACTIVE = "active"
    DELIVERED = "delivered"
    REJECTED = "rejected"
    STOLEN = "stolen"
    ABANDONED = "abandoned"
    EXPIRED = "expired"
    PARTIAL = "partial"


TERMINAL_BOL_STATUSES = frozenset(s for s in BolStatus if s != BolStatus.ACTIVE)


class DepositStatus(str, Enum):
    HELD = "held"
    RETURNED = "returned"
    FORFEITED = "forfeited"


class SealStatus(str, Enum):
    NOT_APPLIED = "not_applied"
    SEALED = "sealed"
    BROKEN = "broken"


class TempCompliance(str, Enum):
    """Temperature excursion class for temperature-controlled cargo."""
    NOT_REQUIRED = "not_required"
    CLEAN = "clean"
    MINOR = "minor"
    SIGNIFICANT = "significant"


class OwnershipMode(str, Enum):
    OWNER_OPERATOR = "owner_operator"
    RENTAL = "rental"


class PayoutStatus(str, Enum):
    SUCCESS = "success"
    REJECTED = "rejected"


class ReputationTier(str, Enum):
    """Driver reputation tiers, lowest first."""
    SUSPENDED = "suspended"
    RESTRICTED = "restricted"
    PROBATIONARY = "probationary"
    DEVELOPING = "developing"
    ESTABLISHED = "established"
    PROFESSIONAL = "professional"
    ELITE = "elite"


class ShipperStanding(str, Enum):
    """A driver's standing with one shipper."""
    UNKNOWN = "unknown"
    FAMILIAR = "familiar"
    ESTABLISHED = "established"
    TRUSTED = "trusted"
    PREFERRED = "preferred"


class RefusalReason(str, Enum):
    """Closed set of reasons a command can be refused. Refusals never mutate state."""
    # Lookup
    LOAD_NOT_FOUND = "load_not_found"
    MISSION_NOT_FOUND = "mission_not_found"

    # Races and duplicates
    UNAVAILABLE = "unavailable"
    DUPLICATE_SIGNAL = "duplicate_signal"
    RATE_LIMITED = "rate_limited"

    # Reservation
    RESERVATION_COOLDOWN = "reservation_cooldown"
    NOT_RESERVATION_HOLDER = "not_reservation_holder"

    # Acceptance eligibility
    ALREADY_ON_MISSION = "already_on_mission"
    LICENSE_REQUIRED = "license_required"
    ENDORSEMENT_REQUIRED = "endorsement_required"
    CERTIFICATION_REQUIRED = "certification_required"
    INSURANCE_REQUIRED = "insurance_required"
    REPUTATION_TOO_LOW = "reputation_too_low"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    PERSISTENCE_FAILED = "persistence_failed"

    # Mission lifecycle
    NOT_MISSION_OWNER = "not_mission_owner"
    INVALID_TRANSITION = "invalid_transition"
    CARGO_NOT_SECURED = "cargo_not_secured"
    WRONG_STOP = "wrong_stop"
    STOPS_PENDING = "stops_pending"
    WRONG_LOCATION = "wrong_location"
    INVALID_SIGNAL = "invalid_signal"
