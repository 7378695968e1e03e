"""
PAM constants — closed enums for elevation types, statuses and audit actions.

Statuses and types are stored by value, so the string values here are a
stable wire and storage contract.
"""
from __future__ import annotations

import enum
from datetime import datetime, timezone


class ElevationType(str, enum.Enum):
    RUN_AS_ADMIN = 'run_as_admin'
    RUN_AS_USER = 'run_as_user'
    RUN_AS_SERVICE = 'run_as_service'
    RUN_AS_SYSTEM = 'run_as_system'
    DOMAIN_ADMIN = 'domain_admin'
    LOCAL_ADMIN = 'local_admin'


class ElevationStatus(str, enum.Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    ACTIVE = 'active'
    DENIED = 'denied'
    EXPIRED = 'expired'
    COMPLETED = 'completed'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class AuditAction(str, enum.Enum):
    REQUESTED = 'requested'
    APPROVED = 'approved'
    DENIED = 'denied'
    ACTIVATED = 'activated'
    EXPIRED = 'expired'
    COMPLETED = 'completed'
    FAILED = 'failed'
    REVOKED = 'revoked'


class RiskLevel(str, enum.Enum):
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'
    CRITICAL = 'critical'


class CompletionOutcome(str, enum.Enum):
    SUCCESS = 'success'
    FAILURE = 'failure'


OPEN_STATUSES = frozenset({
    ElevationStatus.PENDING,
    ElevationStatus.APPROVED,
    ElevationStatus.ACTIVE,
})

TERMINAL_STATUSES = frozenset({
    ElevationStatus.DENIED,
    ElevationStatus.EXPIRED,
    ElevationStatus.COMPLETED,
    ElevationStatus.FAILED,
})

# Legal edges of the request state machine.
TRANSITIONS = {
    ElevationStatus.PENDING: frozenset({
        ElevationStatus.APPROVED,
        ElevationStatus.DENIED,
        ElevationStatus.EXPIRED,
        ElevationStatus.FAILED,
    }),
    ElevationStatus.APPROVED: frozenset({
        ElevationStatus.ACTIVE,
        ElevationStatus.EXPIRED,
        ElevationStatus.FAILED,
    }),
    ElevationStatus.ACTIVE: frozenset({
        ElevationStatus.COMPLETED,
        ElevationStatus.FAILED,
        ElevationStatus.EXPIRED,
    }),
    ElevationStatus.DENIED: frozenset(),
    ElevationStatus.EXPIRED: frozenset(),
    ElevationStatus.COMPLETED: frozenset(),
    ElevationStatus.FAILED: frozenset(),
}

# Approver recorded on auto-approved requests.
SYSTEM_ACTOR = 'system'

# Default hours an approved elevation stays usable.
DEFAULT_MAX_ELEVATION_HOURS = 2

# Default minutes a pending request waits for a human before expiring.
DEFAULT_REQUEST_TIMEOUT_MINUTES = 5

DEFAULT_AUDIT_RETENTION_DAYS = 90

# Seconds between expiration sweeps.
DEFAULT_EXPIRATION_INTERVAL_SECONDS = 15

# Maximum seconds a single sweep may spend before yielding.
MAX_SWEEP_SECONDS = 45

# Bound on store and ledger I/O.
DEFAULT_IO_TIMEOUT_SECONDS = 10

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500

# app_settings key holding the JSON policy document.
PAM_CONFIG_KEY = 'pam_config'


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def coerce_enum(enum_cls, value):
    """Return ``value`` as a member of ``enum_cls`` or raise ValueError."""
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        return enum_cls(value.strip().lower())
    raise ValueError(f'{value!r} is not a valid {enum_cls.__name__}')
