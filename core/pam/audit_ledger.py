"""
Audit ledger — append-only trail of every elevation state transition.

Entries are written only by the engine, after the store has committed the
transition they describe. The store is authoritative: if an append fails,
the transition stands and the entry is queued for background retry with
exponential backoff. Entry ids are assigned before the first attempt and
(elevation_request_id, sequence) is unique, so a retry of an entry that did
land is a no-op.

Reads are ordered by (timestamp, sequence, id), which is commit order for a
single request even when an entry was persisted late by the retry worker.
"""
from __future__ import annotations

import logging
import queue
import threading
import uuid
from collections import deque
from dataclasses import dataclass

from sqlalchemy import and_, or_
from sqlalchemy import exc as sa_exc

from core.pam.cursors import Page, clamp_limit, decode_cursor, encode_cursor
from core.pam.errors import PamInternal, PamInvalidArgument, PamTimeout
from core.pam.store import guarded_io

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 8
DEFAULT_BASE_DELAY_SECONDS = 0.5
DEFAULT_MAX_DELAY_SECONDS = 30.0

# Dropped entries kept in memory for inspection.
MAX_DROPPED_ENTRIES = 1000


@dataclass(frozen=True)
class AuditContext:
    """Client details attached to an audit entry, when known."""

    ip_address: str | None = None
    user_agent: str | None = None


def build_entry(*, action, user_id, timestamp, elevation_request_id=None,
                session_id=None, sequence=None, risk_score=0,
                compliance_flags=(), details=None, context=None):
    """Assemble the column values of one audit entry."""
    context = context or AuditContext()
    return {
        'id': str(uuid.uuid4()),
        'elevation_request_id': elevation_request_id,
        'session_id': session_id,
        'user_id': user_id,
        'action': getattr(action, 'value', action),
        'timestamp': timestamp,
        'sequence': sequence,
        'ip_address': context.ip_address,
        'user_agent': context.user_agent,
        'risk_score': int(risk_score or 0),
        'compliance_flags': sorted(set(compliance_flags or ())),
        'details': dict(details or {}),
    }


def append_entry(entry):
    """Persist one entry.

    Returns:
        True if written now, False if it was already present.

    Raises:
        PamTimeout, PamInternal: The write did not complete.
    """
    from models import db, PamAuditEntry

    with guarded_io('append audit entry'):
        if db.session.get(PamAuditEntry, entry['id']) is not None:
            return False
        db.session.add(PamAuditEntry(**entry))
        try:
            db.session.commit()
        except sa_exc.IntegrityError as e:
            db.session.rollback()
            if _already_recorded(entry):
                return False
            raise PamInternal('audit entry rejected by the database') from e
    return True


def _already_recorded(entry):
    from models import db, PamAuditEntry

    if db.session.get(PamAuditEntry, entry['id']) is not None:
        return True
    if entry.get('elevation_request_id') and entry.get('sequence') is not None:
        return PamAuditEntry.query.filter_by(
            elevation_request_id=entry['elevation_request_id'],
            sequence=entry['sequence'],
        ).first() is not None
    return False


class AuditLedger:
    """Records transitions and retries failed appends off the caller's thread."""

    def __init__(self, app=None, max_attempts=DEFAULT_MAX_ATTEMPTS,
                 base_delay=DEFAULT_BASE_DELAY_SECONDS,
                 max_delay=DEFAULT_MAX_DELAY_SECONDS):
        self._app = app
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._retries = queue.Queue()
        self._dropped = deque(maxlen=MAX_DROPPED_ENTRIES)
        self._stop = threading.Event()
        self._thread = None

    def init_app(self, app):
        self._app = app

    # --- writes ----------------------------------------------------------

    def record(self, **fields):
        """Append an entry now, or queue it for retry if the write fails.

        Never raises for storage failures: the transition it describes is
        already committed.

        Returns:
            dict of the entry's column values.
        """
        entry = build_entry(**fields)
        try:
            append_entry(entry)
        except (PamTimeout, PamInternal) as e:
            logger.warning('[pam] audit append failed action=%s request=%s: %s; queued for retry',
                           entry['action'], entry['elevation_request_id'], e)
            self._retries.put((entry, 1))
        return entry

    # --- retry worker ----------------------------------------------------

    @property
    def pending_retries(self):
        return self._retries.qsize()

    @property
    def dropped_entries(self):
        return list(self._dropped)

    def backoff_delay(self, attempt):
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def flush_retries(self):
        """Retry every queued entry once, in this thread.

        Must be called inside an app context.

        Returns:
            int: Count of entries persisted.
        """
        written = 0
        for _ in range(self._retries.qsize()):
            try:
                entry, attempt = self._retries.get_nowait()
            except queue.Empty:
                break
            if self._retry_one(entry, attempt):
                written += 1
        return written

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        if self._app is None:
            raise RuntimeError('AuditLedger.start() requires an app (call init_app first)')
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name='pam-audit-retry', daemon=True,
        )
        self._thread.start()

    def stop(self, timeout=5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self):
        while not self._stop.is_set():
            try:
                entry, attempt = self._retries.get(timeout=0.5)
            except queue.Empty:
                continue
            if self._stop.wait(self.backoff_delay(attempt)):
                self._retries.put((entry, attempt))
                break
            with self._app.app_context():
                self._retry_one(entry, attempt)

    def _retry_one(self, entry, attempt):
        try:
            append_entry(entry)
        except (PamTimeout, PamInternal) as e:
            if attempt >= self.max_attempts:
                self._dropped.append(entry)
                logger.error('[pam] audit entry %s dropped after %d attempts: %s',
                             entry['id'], attempt, e)
            else:
                self._retries.put((entry, attempt + 1))
            return False
        logger.info('[pam] audit entry %s persisted on attempt %d', entry['id'], attempt + 1)
        return True


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def audit_trail(request_id=None, session_id=None, cursor=None, limit=None):
    """One page of entries for a request or a session, oldest first.

    Exactly one of request_id / session_id must be given.
    """
    from models import db, PamAuditEntry

    if (request_id is None) == (session_id is None):
        raise PamInvalidArgument('Provide exactly one of request_id or session_id')

    q = PamAuditEntry.query
    if request_id is not None:
        q = q.filter(PamAuditEntry.elevation_request_id == request_id)
    else:
        q = q.filter(PamAuditEntry.session_id == session_id)

    seq = db.func.coalesce(PamAuditEntry.sequence, 0)
    if cursor:
        after_ts, after_seq, after_id = decode_cursor(cursor, 3)
        q = q.filter(or_(
            PamAuditEntry.timestamp > after_ts,
            and_(PamAuditEntry.timestamp == after_ts, seq > after_seq),
            and_(PamAuditEntry.timestamp == after_ts, seq == after_seq,
                 PamAuditEntry.id > after_id),
        ))

    return _page(q.order_by(PamAuditEntry.timestamp.asc(), seq.asc(), PamAuditEntry.id.asc()),
                 limit, lambda e: (e.timestamp, e.sequence or 0, e.id))


def iter_audit_trail(request_id=None, session_id=None, page_size=None, cursor=None):
    while True:
        page = audit_trail(request_id=request_id, session_id=session_id,
                           cursor=cursor, limit=page_size)
        yield from page.items
        if page.next_cursor is None:
            return
        cursor = page.next_cursor


def archivable_entries(cutoff, cursor=None, limit=None):
    """Entries older than ``cutoff``, oldest first. Read-only: external
    compliance tooling archives them; this service never deletes."""
    from models import PamAuditEntry

    q = PamAuditEntry.query.filter(PamAuditEntry.timestamp < cutoff)
    if cursor:
        after_ts, after_id = decode_cursor(cursor, 2)
        q = q.filter(or_(
            PamAuditEntry.timestamp > after_ts,
            and_(PamAuditEntry.timestamp == after_ts, PamAuditEntry.id > after_id),
        ))
    return _page(q.order_by(PamAuditEntry.timestamp.asc(), PamAuditEntry.id.asc()),
                 limit, lambda e: (e.timestamp, e.id))


def count_entries():
    from models import PamAuditEntry

    with guarded_io('count audit entries'):
        return PamAuditEntry.query.count()


def _page(query, limit, key):
    limit = clamp_limit(limit)
    with guarded_io('read audit trail'):
        rows = query.limit(limit + 1).all()
    has_more = len(rows) > limit
    rows = rows[:limit]
    next_cursor = encode_cursor(*key(rows[-1])) if has_more and rows else None
    return Page(items=rows, next_cursor=next_cursor)
