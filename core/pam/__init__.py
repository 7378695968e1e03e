"""
core.pam — Privileged Access Management elevation engine.

Temporary, audited elevation of a remote session's privileges. Requests are
risk-scored against a hot-reloadable policy, approved by a human (or
auto-approved when policy allows), activated and completed by the session
subsystem, and expired by a background sweep. Every state transition lands
in an append-only audit trail after the store commits it.

Public API:
    ElevationEngine, init_app, get_engine   — lifecycle operations
    ExpirationScheduler                     — periodic expiry sweep
    PamPolicyConfig, PolicyConfigStore      — policy snapshots
    evaluate, validate_draft, ElevationDraft — pure policy evaluation
    AuditLedger, AuditContext               — audit trail writer
    RequestFilter, Page                     — queries and pagination
    PamError and subclasses                 — structured errors
"""

from core.pam.audit_ledger import AuditContext, AuditLedger
from core.pam.config import PamPolicyConfig, PolicyConfigStore
from core.pam.constants import (
    AuditAction,
    CompletionOutcome,
    ElevationStatus,
    ElevationType,
    RiskLevel,
)
from core.pam.cursors import Page
from core.pam.engine import ElevationEngine, get_engine, init_app
from core.pam.errors import (
    PamConflict,
    PamError,
    PamExpired,
    PamInternal,
    PamInvalidArgument,
    PamInvalidState,
    PamNotFound,
    PamTimeout,
)
from core.pam.policy import ElevationDraft, PolicyDecision, evaluate, validate_draft
from core.pam.scheduler import ExpirationScheduler
from core.pam.store import RequestFilter

__all__ = [
    'AuditContext',
    'AuditLedger',
    'PamPolicyConfig',
    'PolicyConfigStore',
    'AuditAction',
    'CompletionOutcome',
    'ElevationStatus',
    'ElevationType',
    'RiskLevel',
    'Page',
    'ElevationEngine',
    'get_engine',
    'init_app',
    'PamConflict',
    'PamError',
    'PamExpired',
    'PamInternal',
    'PamInvalidArgument',
    'PamInvalidState',
    'PamNotFound',
    'PamTimeout',
    'ElevationDraft',
    'PolicyDecision',
    'evaluate',
    'validate_draft',
    'ExpirationScheduler',
    'RequestFilter',
]
