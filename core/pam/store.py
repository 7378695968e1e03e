"""
Elevation store — durable state for elevation requests.

Owns every write to ``pam_elevation_requests``. Enforces:
- At most one open (pending/approved/active) request per
  (session_id, target_process), via the unique ``open_slot`` column.
- Status changes only along TRANSITIONS, each as a single conditional
  UPDATE keyed on (id, status, transition_seq). A writer that lost a race
  gets ``None`` back and must re-read; nothing is half-applied.
- ``updated_at`` is set on every write.

Database failures are translated into PamTimeout / PamInternal; the session
is always rolled back before an error leaves this module.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import and_, or_, update
from sqlalchemy import exc as sa_exc

from core.pam.constants import (
    OPEN_STATUSES,
    TRANSITIONS,
    ElevationStatus,
    ElevationType,
)
from core.pam.cursors import Page, clamp_limit, decode_cursor, encode_cursor
from core.pam.errors import (
    PamConflict,
    PamError,
    PamInternal,
    PamInvalidState,
    PamTimeout,
)

logger = logging.getLogger(__name__)

# Substrings of driver messages that mean "gave up waiting".
_TIMEOUT_MARKERS = (
    'database is locked',
    'timeout',
    'timed out',
    'canceling statement due to statement timeout',
    'lock timeout',
)


@dataclass(frozen=True)
class RequestFilter:
    session_id: str | None = None
    user_id: str | None = None
    statuses: tuple = ()
    elevation_type: ElevationType | None = None
    requested_after: datetime | None = None
    requested_before: datetime | None = None


@dataclass(frozen=True)
class Transition:
    """A committed status change."""

    request: object
    from_status: ElevationStatus
    to_status: ElevationStatus
    sequence: int
    at: datetime


# ---------------------------------------------------------------------------
# I/O guard
# ---------------------------------------------------------------------------

@contextmanager
def guarded_io(operation):
    """Run a unit of store work; roll back and translate on any failure."""
    from models import db

    try:
        yield db.session
    except (PamError, sa_exc.IntegrityError):
        _rollback_quietly()
        raise
    except sa_exc.TimeoutError as e:
        _rollback_quietly()
        raise PamTimeout(f'{operation} timed out waiting for a database connection') from e
    except sa_exc.OperationalError as e:
        _rollback_quietly()
        if _is_timeout(e):
            raise PamTimeout(f'{operation} timed out') from e
        logger.error('[pam] %s failed: %s', operation, e)
        raise PamInternal(f'{operation} failed') from e
    except sa_exc.SQLAlchemyError as e:
        _rollback_quietly()
        logger.error('[pam] %s failed: %s', operation, e)
        raise PamInternal(f'{operation} failed') from e
    except BaseException:
        # Interrupted mid-operation: leave no partial transaction behind.
        _rollback_quietly()
        raise


def _rollback_quietly():
    from models import db

    try:
        db.session.rollback()
    except sa_exc.SQLAlchemyError as e:
        logger.warning('[pam] rollback failed: %s', e)


def _is_timeout(error):
    message = str(getattr(error, 'orig', error)).lower()
    return any(marker in message for marker in _TIMEOUT_MARKERS)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def open_slot_for(session_id, target_process):
    """Key that at most one open request may hold."""
    target = (target_process or '').strip().lower()
    return f'{session_id}:{target}'


def insert_request(**fields):
    """Create an elevation request in its initial (open) status.

    Returns:
        ElevationRequest, committed.

    Raises:
        PamConflict: Another open request holds the same session/target.
    """
    from models import db, ElevationRequest

    slot = open_slot_for(fields['session_id'], fields.get('target_process'))
    with guarded_io('insert elevation request'):
        holder = ElevationRequest.query.filter_by(open_slot=slot).first()
        if holder is not None:
            raise PamConflict(
                f'Elevation request {holder.id} is already {holder.status.value} '
                f'for this session and target',
                request_id=holder.id,
            )

        req = ElevationRequest(
            open_slot=slot,
            updated_at=fields['requested_at'],
            **fields,
        )
        db.session.add(req)
        try:
            db.session.commit()
        except sa_exc.IntegrityError as e:
            _rollback_quietly()
            raise PamConflict(
                'An elevation request is already open for this session and target'
            ) from e
    return req


def transition(req, to_status, now, changes=None):
    """Move ``req`` to ``to_status`` if nobody else moved it first.

    Args:
        req: The request as last read; its status and transition_seq are the
             compare values.
        to_status: Target ElevationStatus.
        now: Transition timestamp.
        changes: Extra column values to write in the same UPDATE.

    Returns:
        Transition on success, None if the row changed underneath us.

    Raises:
        PamInvalidState: ``to_status`` is not reachable from req.status.
    """
    from models import db, ElevationRequest

    from_status = req.status
    if to_status not in TRANSITIONS[from_status]:
        raise PamInvalidState(
            f'Cannot move elevation request from {from_status.value} to {to_status.value}',
            request_id=req.id,
            current_status=from_status.value,
        )

    expected_seq = req.transition_seq
    values = dict(changes or {})
    values.update(
        status=to_status,
        updated_at=now,
        transition_seq=expected_seq + 1,
    )
    if to_status not in OPEN_STATUSES:
        values.update(open_slot=None, ended_at=now)

    request_id = req.id
    with guarded_io(f'transition to {to_status.value}'):
        result = db.session.execute(
            update(ElevationRequest)
            .where(
                ElevationRequest.id == request_id,
                ElevationRequest.status == from_status,
                ElevationRequest.transition_seq == expected_seq,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.session.rollback()
            logger.info('[pam] lost transition race request=%s %s->%s',
                        request_id, from_status.value, to_status.value)
            return None
        db.session.commit()

    return Transition(
        request=get_request(request_id),
        from_status=from_status,
        to_status=to_status,
        sequence=expected_seq + 1,
        at=now,
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def get_request(request_id):
    """Fresh read of one request, or None."""
    from models import db, ElevationRequest

    with guarded_io('read elevation request'):
        return db.session.get(ElevationRequest, request_id, populate_existing=True)


def find_due_requests(now, request_timeout: timedelta, limit=500):
    """Open requests whose deadline has passed.

    Pending requests are due ``request_timeout`` after requested_at;
    approved/active ones at expires_at.
    """
    from models import ElevationRequest

    pending_cutoff = now - request_timeout
    with guarded_io('select due requests'):
        return (
            ElevationRequest.query
            .filter(or_(
                and_(
                    ElevationRequest.status == ElevationStatus.PENDING,
                    ElevationRequest.requested_at <= pending_cutoff,
                ),
                and_(
                    ElevationRequest.status.in_([
                        ElevationStatus.APPROVED, ElevationStatus.ACTIVE,
                    ]),
                    ElevationRequest.expires_at.isnot(None),
                    ElevationRequest.expires_at <= now,
                ),
            ))
            .order_by(ElevationRequest.requested_at.asc())
            .limit(limit)
            .populate_existing()
            .all()
        )


def query_requests(filters: RequestFilter | None = None, cursor=None, limit=None):
    """One page of requests, newest first.

    Returns:
        Page of ElevationRequest; ``next_cursor`` is None on the last page.
    """
    from models import ElevationRequest

    filters = filters or RequestFilter()
    limit = clamp_limit(limit)

    q = ElevationRequest.query
    if filters.session_id is not None:
        q = q.filter(ElevationRequest.session_id == filters.session_id)
    if filters.user_id is not None:
        q = q.filter(ElevationRequest.user_id == filters.user_id)
    if filters.statuses:
        q = q.filter(ElevationRequest.status.in_(list(filters.statuses)))
    if filters.elevation_type is not None:
        q = q.filter(ElevationRequest.elevation_type == filters.elevation_type)
    if filters.requested_after is not None:
        q = q.filter(ElevationRequest.requested_at >= filters.requested_after)
    if filters.requested_before is not None:
        q = q.filter(ElevationRequest.requested_at < filters.requested_before)

    if cursor:
        after_at, after_id = decode_cursor(cursor, 2)
        q = q.filter(or_(
            ElevationRequest.requested_at < after_at,
            and_(
                ElevationRequest.requested_at == after_at,
                ElevationRequest.id < after_id,
            ),
        ))

    with guarded_io('query elevation requests'):
        rows = (
            q.order_by(ElevationRequest.requested_at.desc(), ElevationRequest.id.desc())
            .limit(limit + 1)
            .all()
        )

    has_more = len(rows) > limit
    rows = rows[:limit]
    next_cursor = None
    if has_more and rows:
        last = rows[-1]
        next_cursor = encode_cursor(last.requested_at, last.id)
    return Page(items=rows, next_cursor=next_cursor)


def iter_requests(filters: RequestFilter | None = None, page_size=None, cursor=None):
    """Yield matching requests page by page, fetching lazily."""
    while True:
        page = query_requests(filters, cursor=cursor, limit=page_size)
        yield from page.items
        if page.next_cursor is None:
            return
        cursor = page.next_cursor


def count_by_status():
    from models import db, ElevationRequest

    with guarded_io('count by status'):
        rows = (
            db.session.query(ElevationRequest.status, db.func.count(ElevationRequest.id))
            .group_by(ElevationRequest.status)
            .all()
        )
    return {status.value: count for status, count in rows}


def count_by_type():
    from models import db, ElevationRequest

    with guarded_io('count by type'):
        rows = (
            db.session.query(ElevationRequest.elevation_type,
                             db.func.count(ElevationRequest.id))
            .group_by(ElevationRequest.elevation_type)
            .all()
        )
    return {elevation_type.value: count for elevation_type, count in rows}
