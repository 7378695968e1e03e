"""
Multi-threaded race tests: concurrent requests for the same target,
concurrent approvals, and approval racing the expiry sweep.

Each worker runs in its own app context, so each has its own database
session, as concurrent HTTP requests would.
"""
import threading
from datetime import timedelta

import pytest

from core.pam.audit_ledger import AuditLedger
from core.pam.config import PamPolicyConfig, PolicyConfigStore
from core.pam.constants import ElevationStatus, ElevationType
from core.pam.engine import ElevationEngine
from core.pam.errors import PamConflict, PamExpired, PamInvalidState
from models import ElevationRequest

WORKERS = 6


def _run_concurrently(app, fn, count=WORKERS):
    """Start ``count`` threads on a barrier; return (results, errors)."""
    barrier = threading.Barrier(count)
    results, errors = [], []
    lock = threading.Lock()

    def worker(i):
        with app.app_context():
            barrier.wait()
            try:
                value = fn(i)
            except Exception as e:
                with lock:
                    errors.append(e)
            else:
                with lock:
                    results.append(value)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(30)
    return results, errors


def _request_kwargs(**overrides):
    kwargs = dict(
        session_id='sess-race',
        user_id='carol',
        requester='Carol',
        domain='corp.example.com',
        elevation_type=ElevationType.RUN_AS_ADMIN,
        reason='Update drivers',
        target_process='devmgmt.msc',
    )
    kwargs.update(overrides)
    return kwargs


@pytest.mark.pam
@pytest.mark.concurrency
class TestConcurrentRequests:

    def test_exactly_one_request_wins(self, app, engine):
        results, errors = _run_concurrently(
            app, lambda i: engine.request(**_request_kwargs()).id,
        )

        assert len(results) == 1
        assert len(errors) == WORKERS - 1
        assert all(isinstance(e, PamConflict) for e in errors)
        assert ElevationRequest.query.filter_by(session_id='sess-race').count() == 1

    def test_different_targets_all_succeed(self, app, engine):
        results, errors = _run_concurrently(
            app, lambda i: engine.request(**_request_kwargs(target_process=f'tool{i}.exe')).id,
        )
        assert errors == []
        assert len(set(results)) == WORKERS


@pytest.mark.pam
@pytest.mark.concurrency
class TestConcurrentTransitions:

    def test_exactly_one_approval_wins(self, app, engine):
        req_id = engine.request(**_request_kwargs()).id

        results, errors = _run_concurrently(
            app, lambda i: engine.approve(req_id, f'approver-{i}').approved_by,
        )

        assert len(results) == 1
        assert all(isinstance(e, PamInvalidState) for e in errors)
        assert len(errors) == WORKERS - 1

        actions = [e.action for e in engine.iter_audit_trail(request_id=req_id)]
        assert actions == ['requested', 'approved']
        assert engine.get(req_id).approved_by == results[0]

    def test_approve_races_expiry(self, app, engine, clock):
        req_id = engine.request(**_request_kwargs()).id

        # The sweeper sees the request as overdue; the approver still in time.
        sweep_clock = lambda: clock.now + timedelta(minutes=6)  # noqa: E731
        sweeper = ElevationEngine(
            config_store=PolicyConfigStore(PamPolicyConfig()),
            ledger=AuditLedger(app),
            notifier=engine.notifier,
            clock=sweep_clock,
        )
        clock.advance(minutes=4)

        def act(i):
            if i == 0:
                return ('sweep', sweeper.expire_due()['expired'])
            return ('approve', engine.approve(req_id, 'alice').status)

        results, errors = _run_concurrently(app, act, count=2)
        final = engine.get(req_id).status
        actions = [e.action for e in engine.iter_audit_trail(request_id=req_id)]

        assert final in (ElevationStatus.APPROVED, ElevationStatus.EXPIRED)
        assert actions == ['requested', final.value]
        if final is ElevationStatus.EXPIRED:
            assert len(errors) == 1
            assert isinstance(errors[0], (PamExpired, PamInvalidState))
        else:
            assert errors == []
            assert ('sweep', 0) in results
