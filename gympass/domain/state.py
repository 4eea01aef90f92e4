from __future__ import annotations

from enum import Enum


class TenantStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    BLOCKED = "BLOCKED"
    DELETED = "DELETED"


class ReservationStatus(str, Enum):
    PENDING_PAYMENT = "PENDING_PAYMENT"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"


class PassStatus(str, Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    DEPLETED = "DEPLETED"
    REVOKED = "REVOKED"


class UsageAction(str, Enum):
    SCAN = "SCAN"
    CONSUME = "CONSUME"


class ValidationReason(str, Enum):
    # Validation outcomes are results, not exceptions.
    NOT_FOUND = "NOT_FOUND"
    EXPIRED = "EXPIRED"
    DEPLETED = "DEPLETED"
    REVOKED = "REVOKED"


class OfferingBehavior(str, Enum):
    DURATION = "DURATION"
    VISITS = "VISITS"


class StaffRole(str, Enum):
    STAFF = "STAFF"
    ADMIN = "ADMIN"
