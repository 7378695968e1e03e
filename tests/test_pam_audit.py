"""
Tests for the PAM audit ledger: ordering, immutability, write-ahead retry.
"""
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from core.pam import audit_ledger
from core.pam.audit_ledger import AuditContext, AuditLedger, build_entry
from core.pam.constants import AuditAction
from core.pam.errors import PamInvalidArgument, PamTimeout
from models import db, PamAuditEntry

T0 = datetime(2026, 1, 1, 12, 0, 0)


def _record(ledger, action=AuditAction.REQUESTED, sequence=1, at=T0, request_id=None,
            session_id='sess-1'):
    return ledger.record(
        action=action,
        user_id='carol',
        timestamp=at,
        elevation_request_id=request_id,
        session_id=session_id,
        sequence=sequence,
        risk_score=40,
        compliance_flags=('sox', 'hipaa', 'sox'),
        details={'note': 'x'},
        context=AuditContext(ip_address='10.0.0.5', user_agent='pytest'),
    )


@pytest.mark.pam
class TestAppend:

    def test_entry_fields(self, app):
        ledger = AuditLedger(app)
        entry = _record(ledger)

        row = db.session.get(PamAuditEntry, entry['id'])
        assert row.action == 'requested'
        assert row.compliance_flags == ['hipaa', 'sox']
        assert row.ip_address == '10.0.0.5'
        assert row.user_agent == 'pytest'
        assert row.risk_score == 40
        assert row.details == {'note': 'x'}

    def test_duplicate_append_is_a_noop(self, app):
        entry = build_entry(action='requested', user_id='carol', timestamp=T0, session_id='s')
        assert audit_ledger.append_entry(entry) is True
        assert audit_ledger.append_entry(dict(entry)) is False
        assert PamAuditEntry.query.count() == 1

    def test_entries_cannot_be_modified(self, app):
        entry = _record(AuditLedger(app))
        row = db.session.get(PamAuditEntry, entry['id'])
        row.user_id = 'mallory'
        with pytest.raises(ValueError, match='append-only'):
            db.session.commit()
        db.session.rollback()
        assert db.session.get(PamAuditEntry, entry['id']).user_id == 'carol'

    def test_entries_cannot_be_deleted(self, app):
        entry = _record(AuditLedger(app))
        db.session.delete(db.session.get(PamAuditEntry, entry['id']))
        with pytest.raises(ValueError, match='append-only'):
            db.session.commit()
        db.session.rollback()
        assert PamAuditEntry.query.count() == 1


@pytest.mark.pam
class TestRetry:

    def test_failed_append_is_queued_not_raised(self, app):
        ledger = AuditLedger(app)
        with patch.object(audit_ledger, 'append_entry', side_effect=PamTimeout('slow')):
            entry = _record(ledger)

        assert ledger.pending_retries == 1
        assert db.session.get(PamAuditEntry, entry['id']) is None

        assert ledger.flush_retries() == 1
        assert ledger.pending_retries == 0
        assert db.session.get(PamAuditEntry, entry['id']) is not None

    def test_retry_of_landed_entry_does_not_duplicate(self, app):
        ledger = AuditLedger(app)
        entry = _record(ledger)
        # Pretend the first write timed out after the commit landed.
        ledger._retries.put((entry, 1))

        ledger.flush_retries()
        assert PamAuditEntry.query.count() == 1

    def test_gives_up_after_max_attempts(self, app):
        ledger = AuditLedger(app, max_attempts=3)
        with patch.object(audit_ledger, 'append_entry', side_effect=PamTimeout('down')):
            entry = _record(ledger)
            for _ in range(3):
                ledger.flush_retries()

        assert ledger.pending_retries == 0
        assert [e['id'] for e in ledger.dropped_entries] == [entry['id']]

    def test_backoff_doubles_and_caps(self):
        ledger = AuditLedger()
        delays = [ledger.backoff_delay(n) for n in range(1, 9)]
        assert delays[:4] == [0.5, 1.0, 2.0, 4.0]
        assert delays[-1] == 30.0
        assert delays == sorted(delays)


@pytest.mark.pam
class TestTrail:

    def test_ordered_by_timestamp_then_sequence(self, app):
        ledger = AuditLedger(app)
        _record(ledger, AuditAction.APPROVED, sequence=2, at=T0)
        _record(ledger, AuditAction.REQUESTED, sequence=1, at=T0)
        _record(ledger, AuditAction.ACTIVATED, sequence=3, at=T0 + timedelta(seconds=5))

        page = audit_ledger.audit_trail(session_id='sess-1')
        assert [e.action for e in page.items] == ['requested', 'approved', 'activated']

    def test_trail_by_session_is_scoped(self, app):
        ledger = AuditLedger(app)
        _record(ledger, session_id='sess-1')
        _record(ledger, session_id='sess-2')
        assert audit_ledger.audit_trail(session_id='sess-2').items[0].session_id == 'sess-2'
        assert len(audit_ledger.audit_trail(session_id='sess-1').items) == 1

    def test_pagination(self, app):
        ledger = AuditLedger(app)
        for i in range(5):
            _record(ledger, sequence=None, at=T0 + timedelta(seconds=i))

        page1 = audit_ledger.audit_trail(session_id='sess-1', limit=2)
        page2 = audit_ledger.audit_trail(session_id='sess-1', cursor=page1.next_cursor, limit=2)
        rest = list(audit_ledger.iter_audit_trail(session_id='sess-1',
                                                  page_size=2))
        assert [e.timestamp for e in page1.items + page2.items] == [
            T0 + timedelta(seconds=i) for i in range(4)
        ]
        assert len(rest) == 5

    def test_requires_exactly_one_scope(self, app):
        with pytest.raises(PamInvalidArgument):
            audit_ledger.audit_trail()
        with pytest.raises(PamInvalidArgument):
            audit_ledger.audit_trail(request_id='r', session_id='s')

    def test_archivable_entries(self, app):
        ledger = AuditLedger(app)
        old = _record(ledger, at=T0 - timedelta(days=100))
        _record(ledger, at=T0)

        page = audit_ledger.archivable_entries(T0 - timedelta(days=90))
        assert [e.id for e in page.items] == [old['id']]
        # Listing never removes anything.
        assert audit_ledger.count_entries() == 2
