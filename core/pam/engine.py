"""
Elevation engine — the only path that changes an elevation request.

Every operation follows the same shape:
    1. Read one config snapshot and the current request.
    2. Check the precondition (status, deadline).
    3. Apply the status change through the store's compare-and-set.
    4. After the store commits, append the audit entry.

A compare-and-set that loses a race re-reads the request and reports what
won: ``PamExpired`` if it was expired, ``PamInvalidState`` otherwise. The
loser never retries on its own; callers re-query.
"""
from __future__ import annotations

import logging
import time
from datetime import timedelta

from sqlalchemy import exc as sa_exc

from core.pam import store
from core.pam.audit_ledger import (
    AuditContext,
    AuditLedger,
    archivable_entries,
    audit_trail,
    count_entries,
    iter_audit_trail,
)
from core.pam.config import PolicyConfigStore
from core.pam.constants import (
    MAX_SWEEP_SECONDS,
    OPEN_STATUSES,
    SYSTEM_ACTOR,
    AuditAction,
    CompletionOutcome,
    ElevationStatus,
    ElevationType,
    coerce_enum,
    utcnow,
)
from core.pam.errors import (
    PamError,
    PamExpired,
    PamInvalidArgument,
    PamInvalidState,
    PamNotFound,
)
from core.pam.notifications import Notifier
from core.pam.policy import ElevationDraft, elevated_account, evaluate, validate_draft

logger = logging.getLogger(__name__)

DEFAULT_DENY_REASON = 'No reason provided'
DEFAULT_REVOKE_REASON = 'Revoked by operator'


class ElevationEngine:
    """Orchestrates policy, store and ledger for elevation requests.

    Args:
        config_store: Source of policy snapshots.
        ledger: Audit writer; entries are appended after each commit.
        notifier: Webhook dispatcher for request and failure events.
        clock: Callable returning naive UTC now. Injected by tests.
    """

    def __init__(self, config_store=None, ledger=None, notifier=None, clock=utcnow):
        self.config_store = config_store or PolicyConfigStore()
        self.ledger = ledger or AuditLedger()
        self.notifier = notifier or Notifier()
        self._clock = clock

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    def request(self, session_id, user_id, requester, domain, elevation_type, reason,
                target_process=None, target_command=None, target_account=None,
                audit_context=None):
        """Create an elevation request, auto-approving it when policy allows.

        Returns:
            ElevationRequest in ``pending`` or ``approved``.

        Raises:
            PamInvalidArgument: Missing identity, bad type, empty reason under
                require_justification, or a restricted command.
            PamConflict: An open request already exists for this
                session and target process.
        """
        _require(session_id, 'session_id')
        _require(user_id, 'user_id')
        _require(requester, 'requester')
        try:
            etype = coerce_enum(ElevationType, elevation_type)
        except ValueError as e:
            raise PamInvalidArgument(f'Invalid elevation_type: {elevation_type!r}') from e

        config = self.config_store.snapshot()
        draft = ElevationDraft(
            session_id=session_id,
            user_id=user_id,
            requester=requester,
            elevation_type=etype,
            reason=_text(reason, 'reason'),
            domain=_clean(domain),
            target_process=_clean(target_process),
            target_command=_clean(target_command),
            target_account=_clean(target_account),
        )
        validate_draft(draft, config)
        decision = evaluate(draft, config)

        now = self._clock()
        fields = dict(
            session_id=draft.session_id,
            user_id=draft.user_id,
            requested_by=draft.requester,
            user_domain=draft.domain,
            elevation_type=etype,
            reason=draft.reason,
            target_process=draft.target_process,
            target_command=draft.target_command,
            target_account=draft.target_account,
            requested_at=now,
            risk_score=decision.risk_score,
            risk_level=decision.risk_level.value,
            compliance_flags=list(decision.compliance_flags),
        )
        if decision.auto_approve:
            # Written as one row: requested (seq 1) then approved (seq 2).
            fields.update(
                status=ElevationStatus.APPROVED,
                auto_approved=True,
                approved_by=SYSTEM_ACTOR,
                approved_at=now,
                expires_at=now + config.max_elevation_duration,
                transition_seq=2,
            )
        else:
            fields.update(status=ElevationStatus.PENDING, transition_seq=1)

        req = store.insert_request(**fields)
        logger.info('[pam] elevation requested id=%s type=%s session=%s risk=%s auto=%s',
                    req.id, etype.value, session_id, decision.risk_score,
                    decision.auto_approve)

        self._audit(req, AuditAction.REQUESTED, user_id, now, 1, audit_context, {
            'elevation_type': etype.value,
            'reason': draft.reason,
            'target_process': draft.target_process,
            'target_command': draft.target_command,
            'target_account': draft.target_account,
            'domain': draft.domain,
            'risk_level': decision.risk_level.value,
            'risk_factors': list(decision.factors),
            'config_version': config.version,
        })
        if decision.auto_approve:
            self._audit(req, AuditAction.APPROVED, SYSTEM_ACTOR, now, 2, audit_context, {
                'auto_approved': True,
                'expires_at': req.expires_at.isoformat(),
            })

        self.notifier.on_requested(req, config)
        return req

    def approve(self, request_id, approver, duration=None, audit_context=None):
        """Approve a pending request.

        Args:
            duration: Optional timedelta shorter than the policy maximum;
                longer values are clamped to it.

        Raises:
            PamNotFound, PamInvalidState, PamInvalidArgument.
            PamExpired: The request timeout elapsed before approval.
        """
        _require(approver, 'approver')
        config = self.config_store.snapshot()
        duration = _resolve_duration(duration, config.max_elevation_duration)

        req = self._load(request_id)
        now = self._clock()
        if (req.status is ElevationStatus.PENDING
                and now >= req.requested_at + config.request_timeout):
            if not self._expire(req, now, 'request_timeout'):
                self._raise_lost_race(req.id, 'approve')
            raise PamExpired(
                'Request already expired waiting for approval; submit a new request',
                request_id=req.id, current_status=ElevationStatus.EXPIRED.value,
            )
        self._require_status(req, (ElevationStatus.PENDING,), 'approve')

        expires_at = now + duration
        t = store.transition(req, ElevationStatus.APPROVED, now, {
            'approved_by': approver,
            'approved_at': now,
            'expires_at': expires_at,
        })
        if t is None:
            self._raise_lost_race(req.id, 'approve')

        logger.info('[pam] elevation approved id=%s by=%s until=%s',
                    req.id, approver, expires_at.isoformat())
        self._audit(t.request, AuditAction.APPROVED, approver, now, t.sequence, audit_context, {
            'approved_by': approver,
            'expires_at': expires_at.isoformat(),
            'duration_seconds': int(duration.total_seconds()),
        })
        return t.request

    def deny(self, request_id, approver, reason=None, audit_context=None):
        _require(approver, 'approver')
        reason = _text(reason, 'reason') or DEFAULT_DENY_REASON

        req = self._load(request_id)
        self._require_status(req, (ElevationStatus.PENDING,), 'deny')

        now = self._clock()
        t = store.transition(req, ElevationStatus.DENIED, now, {'denied_reason': reason})
        if t is None:
            self._raise_lost_race(req.id, 'deny')

        logger.info('[pam] elevation denied id=%s by=%s', req.id, approver)
        self._audit(t.request, AuditAction.DENIED, approver, now, t.sequence, audit_context, {
            'denied_by': approver,
            'reason': reason,
        })
        return t.request

    def activate(self, request_id, audit_context=None):
        """Mark an approved elevation as in use.

        Raises:
            PamInvalidState: Not approved.
            PamExpired: ``expires_at`` has passed.
        """
        req = self._load(request_id)
        now = self._clock()
        if req.status is ElevationStatus.APPROVED and now > req.expires_at:
            if not self._expire(req, now, 'expires_at'):
                self._raise_lost_race(req.id, 'activate')
            raise PamExpired(
                'Elevation expired before it was activated',
                request_id=req.id, current_status=ElevationStatus.EXPIRED.value,
            )
        self._require_status(req, (ElevationStatus.APPROVED,), 'activate')

        t = store.transition(req, ElevationStatus.ACTIVE, now)
        if t is None:
            self._raise_lost_race(req.id, 'activate')

        account = elevated_account(req.elevation_type, req.target_account)
        logger.info('[pam] elevation active id=%s as=%s', req.id, account)
        self._audit(t.request, AuditAction.ACTIVATED, req.user_id, now, t.sequence,
                    audit_context, {
                        'elevated_account': account,
                        'target_process': req.target_process,
                        'expires_at': req.expires_at.isoformat(),
                    })
        return t.request

    def complete(self, request_id, outcome, details=None, audit_context=None):
        try:
            outcome = coerce_enum(CompletionOutcome, outcome)
        except ValueError as e:
            raise PamInvalidArgument(f'Invalid outcome: {outcome!r}') from e

        req = self._load(request_id)
        self._require_status(req, (ElevationStatus.ACTIVE,), 'complete')

        if outcome is CompletionOutcome.SUCCESS:
            to_status, action = ElevationStatus.COMPLETED, AuditAction.COMPLETED
        else:
            to_status, action = ElevationStatus.FAILED, AuditAction.FAILED

        now = self._clock()
        t = store.transition(req, to_status, now)
        if t is None:
            self._raise_lost_race(req.id, 'complete')

        logger.info('[pam] elevation ended id=%s outcome=%s', req.id, outcome.value)
        self._audit(t.request, action, req.user_id, now, t.sequence, audit_context, {
            'outcome': outcome.value,
            'details': dict(details or {}),
        })
        if to_status is ElevationStatus.FAILED:
            self.notifier.on_failed(t.request, self.config_store.snapshot(),
                                    'elevated action reported failure')
        return t.request

    def revoke(self, request_id, actor, reason=None, audit_context=None):
        """Operator-forced termination of an approved or active elevation."""
        _require(actor, 'actor')
        reason = _text(reason, 'reason') or DEFAULT_REVOKE_REASON

        req = self._load(request_id)
        self._require_status(req, (ElevationStatus.APPROVED, ElevationStatus.ACTIVE), 'revoke')

        now = self._clock()
        t = store.transition(req, ElevationStatus.FAILED, now)
        if t is None:
            self._raise_lost_race(req.id, 'revoke')

        logger.warning('[pam] elevation revoked id=%s by=%s', req.id, actor)
        self._audit(t.request, AuditAction.REVOKED, actor, now, t.sequence, audit_context, {
            'revoked_by': actor,
            'reason': reason,
            'previous_status': t.from_status.value,
        })
        self.notifier.on_failed(t.request, self.config_store.snapshot(), f'revoked: {reason}')
        return t.request

    def fail(self, request_id, error, actor=SYSTEM_ACTOR, audit_context=None):
        """Terminate any open request after an irrecoverable error."""
        _require(error, 'error')
        req = self._load(request_id)
        self._require_status(req, tuple(OPEN_STATUSES), 'fail')

        now = self._clock()
        t = store.transition(req, ElevationStatus.FAILED, now)
        if t is None:
            self._raise_lost_race(req.id, 'fail')

        logger.error('[pam] elevation failed id=%s: %s', req.id, error)
        self._audit(t.request, AuditAction.FAILED, actor, now, t.sequence, audit_context, {
            'error': str(error),
            'previous_status': t.from_status.value,
        })
        self.notifier.on_failed(t.request, self.config_store.snapshot(), str(error))
        return t.request

    # ------------------------------------------------------------------
    # Expiration
    # ------------------------------------------------------------------

    def expire_due(self, max_seconds=MAX_SWEEP_SECONDS):
        """Expire every open request whose deadline has passed.

        Requests another actor already moved are skipped.

        Returns:
            dict with expired, skipped, elapsed_seconds, truncated.
        """
        start = time.monotonic()
        config = self.config_store.snapshot()
        now = self._clock()

        expired = skipped = 0
        truncated = False
        for req in store.find_due_requests(now, config.request_timeout):
            if time.monotonic() - start >= max_seconds:
                truncated = True
                break
            deadline = ('request_timeout' if req.status is ElevationStatus.PENDING
                        else 'expires_at')
            if self._expire(req, now, deadline):
                expired += 1
            else:
                skipped += 1

        if expired or skipped:
            logger.info('[pam] expiration sweep expired=%d skipped=%d', expired, skipped)
        return {
            'expired': expired,
            'skipped': skipped,
            'elapsed_seconds': round(time.monotonic() - start, 2),
            'truncated': truncated,
        }

    def _expire(self, req, now, deadline):
        """Move ``req`` to expired. Returns False if another actor got there first."""
        try:
            t = store.transition(req, ElevationStatus.EXPIRED, now)
        except PamInvalidState:
            return False
        if t is None:
            return False
        self._audit(t.request, AuditAction.EXPIRED, SYSTEM_ACTOR, now, t.sequence, None, {
            'deadline': deadline,
            'previous_status': t.from_status.value,
            'expires_at': req.expires_at.isoformat() if req.expires_at else None,
        })
        logger.info('[pam] elevation expired id=%s from=%s', req.id, t.from_status.value)
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, request_id):
        return self._load(request_id)

    def query(self, filters=None, cursor=None, limit=None):
        return store.query_requests(filters, cursor=cursor, limit=limit)

    def iter_requests(self, filters=None, page_size=None):
        return store.iter_requests(filters, page_size=page_size)

    def audit_trail(self, request_id=None, session_id=None, cursor=None, limit=None):
        if request_id is not None:
            self._load(request_id)
        return audit_trail(request_id=request_id, session_id=session_id,
                           cursor=cursor, limit=limit)

    def iter_audit_trail(self, request_id=None, session_id=None, page_size=None):
        return iter_audit_trail(request_id=request_id, session_id=session_id,
                                page_size=page_size)

    def archivable_audit_entries(self, cursor=None, limit=None):
        cutoff = self._clock() - self.config_store.snapshot().audit_retention
        return archivable_entries(cutoff, cursor=cursor, limit=limit)

    def stats(self):
        by_status = store.count_by_status()
        return {
            'total_requests': sum(by_status.values()),
            'active_elevations': by_status.get(ElevationStatus.ACTIVE.value, 0),
            'pending_requests': by_status.get(ElevationStatus.PENDING.value, 0),
            'total_audit_entries': count_entries(),
            'request_status_breakdown': by_status,
            'elevation_type_breakdown': store.count_by_type(),
            'pending_audit_retries': self.ledger.pending_retries,
            'config_version': self.config_store.snapshot().version,
        }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _load(self, request_id):
        if not request_id:
            raise PamInvalidArgument('request_id is required')
        req = store.get_request(request_id)
        if req is None:
            raise PamNotFound(f'Elevation request {request_id} not found', request_id=request_id)
        return req

    def _require_status(self, req, allowed, verb):
        if req.status in allowed:
            return
        error_cls = PamExpired if req.status is ElevationStatus.EXPIRED else PamInvalidState
        raise error_cls(
            f'Cannot {verb}: request is already {req.status.value}',
            request_id=req.id, current_status=req.status.value,
        )

    def _raise_lost_race(self, request_id, verb):
        current = self._load(request_id)
        error_cls = PamExpired if current.status is ElevationStatus.EXPIRED else PamInvalidState
        raise error_cls(
            f'Cannot {verb}: request changed to {current.status.value} concurrently',
            request_id=request_id, current_status=current.status.value,
        )

    def _audit(self, req, action, actor, at, sequence, context, details):
        self.ledger.record(
            action=action,
            user_id=actor,
            timestamp=at,
            elevation_request_id=req.id,
            session_id=req.session_id,
            sequence=sequence,
            risk_score=req.risk_score,
            compliance_flags=req.compliance_flags,
            details=details,
            context=context,
        )


# ---------------------------------------------------------------------------
# App wiring
# ---------------------------------------------------------------------------

def init_app(app, engine=None):
    """Attach an engine to ``app`` and start its background workers.

    Workers start unless ``PAM_BACKGROUND_WORKERS`` is false or the app is
    in testing mode.
    """
    from concurrent.futures import ThreadPoolExecutor

    from core.pam.scheduler import ExpirationScheduler

    if engine is None:
        executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix='pam-notify')
        engine = ElevationEngine(ledger=AuditLedger(app), notifier=Notifier(executor))
    engine.ledger.init_app(app)
    app.extensions['pam'] = engine

    with app.app_context():
        try:
            engine.config_store.ensure_loaded()
        except (PamError, sa_exc.SQLAlchemyError) as e:
            logger.warning('[pam] policy config not loaded at startup, using defaults: %s', e)

    if app.config.get('PAM_BACKGROUND_WORKERS', True) and not app.config.get('TESTING'):
        scheduler = ExpirationScheduler(
            app, engine,
            interval_seconds=app.config.get('PAM_EXPIRATION_INTERVAL_SECONDS'),
        )
        app.extensions['pam_scheduler'] = scheduler
        engine.ledger.start()
        scheduler.start()
    return engine


def get_engine():
    from flask import current_app

    return current_app.extensions['pam']


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _require(value, name):
    if value is None or (isinstance(value, str) and not value.strip()):
        raise PamInvalidArgument(f'{name} is required')


def _text(value, name):
    if value is None:
        return ''
    if not isinstance(value, str):
        raise PamInvalidArgument(f'{name} must be a string')
    return value.strip()


def _clean(value):
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _resolve_duration(duration, maximum):
    if duration is None:
        return maximum
    if not isinstance(duration, timedelta):
        raise PamInvalidArgument('duration must be a timedelta')
    if duration <= timedelta(0):
        raise PamInvalidArgument('duration must be positive')
    return min(duration, maximum)


__all__ = ['AuditContext', 'ElevationEngine', 'init_app', 'get_engine']
