"""
PAM routes — Elevation request lifecycle, audit trail, policy, and cron endpoints.

Lifecycle:
    POST /api/pam/sessions/<session_id>/elevations  — Request an elevation
    GET  /api/pam/elevations                        — List/filter requests
    GET  /api/pam/elevations/<id>                   — Get one request
    POST /api/pam/elevations/<id>/approve           — Approver approves
    POST /api/pam/elevations/<id>/deny              — Approver denies
    POST /api/pam/elevations/<id>/activate          — Session subsystem: action began
    POST /api/pam/elevations/<id>/complete          — Session subsystem: action ended
    POST /api/pam/elevations/<id>/revoke            — Approver forces termination
Audit:
    GET  /api/pam/elevations/<id>/audit             — Trail for one request
    GET  /api/pam/sessions/<session_id>/audit       — Trail for one session
    GET  /api/pam/audit/archivable                  — Entries past retention (admin)
Operations:
    GET  /api/pam/stats                             — Counters
    GET  /api/pam/config                            — Current policy
    PUT  /api/pam/config                            — Replace policy (admin)
    POST /api/pam/internal/expire                   — Cron: expire overdue requests

Identity is set in the session by the auth layer: user_id, display_name,
domain and roles. The session subsystem may call activate/complete with
``Authorization: Bearer $PAM_SERVICE_TOKEN`` instead.
"""
import hmac
import os
from datetime import datetime, timedelta, timezone

from flask import current_app, jsonify, request, session

from core.pam.audit_ledger import AuditContext
from core.pam.constants import ElevationStatus, ElevationType, coerce_enum
from core.pam.engine import get_engine
from core.pam.errors import PamError, PamInvalidArgument
from core.pam.scheduler import ExpirationScheduler
from core.pam.store import RequestFilter
from rate_limiter import limiter

APPROVER_ROLES = frozenset({'admin', 'pam_approver'})
ADMIN_ROLE = 'admin'


def register_pam_routes(app):

    @app.errorhandler(PamError)
    def pam_error(e):
        return jsonify(e.to_dict()), e.http_status

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @app.route('/api/pam/sessions/<session_id>/elevations', methods=['POST'])
    @limiter.limit("30 per minute")
    def pam_request_elevation(session_id):
        """Request elevated privileges for a session.

        Body:
            elevation_type (str): run_as_admin, run_as_user, run_as_service,
                run_as_system, domain_admin or local_admin.
            reason (str): Justification.
            target_process (str, optional)
            target_command (str, optional)
            target_account (str, optional): For run_as_user / run_as_service.
        """
        principal = _principal()
        if principal is None:
            return jsonify({'error': 'Authentication required'}), 401

        data = request.get_json(silent=True)
        if not data:
            return jsonify({'error': 'Request body is required'}), 400
        if not isinstance(data, dict):
            raise PamInvalidArgument('Request body must be a JSON object')
        if not data.get('elevation_type'):
            return jsonify({'error': 'elevation_type is required'}), 400

        req = get_engine().request(
            session_id=session_id,
            user_id=principal['user_id'],
            requester=principal['display_name'],
            domain=principal['domain'],
            elevation_type=data.get('elevation_type'),
            reason=data.get('reason'),
            target_process=data.get('target_process'),
            target_command=data.get('target_command'),
            target_account=data.get('target_account'),
            audit_context=_audit_context(),
        )
        return jsonify({'success': True, 'elevation': req.to_dict()}), 201

    @app.route('/api/pam/elevations', methods=['GET'])
    def pam_list_elevations():
        """List elevation requests, newest first.

        Query params:
            status (str, optional): Comma-separated statuses.
            session_id, user_id, elevation_type (str, optional)
            requested_after, requested_before (ISO 8601, optional)
            cursor (str, optional): ``next_cursor`` from the previous page.
            limit (int, optional): Page size (default 50, max 500).
        """
        principal = _principal()
        if principal is None:
            return jsonify({'error': 'Authentication required'}), 401

        user_filter = request.args.get('user_id')
        if not _is_approver(principal):
            # Non-approvers only ever see their own requests.
            user_filter = principal['user_id']

        filters = RequestFilter(
            session_id=request.args.get('session_id'),
            user_id=user_filter,
            statuses=_parse_statuses(request.args.get('status')),
            elevation_type=_parse_enum(ElevationType, request.args.get('elevation_type'),
                                       'elevation_type'),
            requested_after=_parse_datetime(request.args.get('requested_after'),
                                            'requested_after'),
            requested_before=_parse_datetime(request.args.get('requested_before'),
                                             'requested_before'),
        )
        page = get_engine().query(
            filters,
            cursor=request.args.get('cursor'),
            limit=request.args.get('limit', type=int),
        )
        return jsonify(page.to_dict('elevations'))

    @app.route('/api/pam/elevations/<request_id>', methods=['GET'])
    def pam_get_elevation(request_id):
        principal = _principal()
        if principal is None:
            return jsonify({'error': 'Authentication required'}), 401

        req = get_engine().get(request_id)
        if not _can_view(principal, req):
            return jsonify({'error': 'Not allowed to view this request'}), 403
        return jsonify({'elevation': req.to_dict()})

    @app.route('/api/pam/elevations/<request_id>/approve', methods=['POST'])
    def pam_approve_elevation(request_id):
        """Approve a pending request.

        Body (optional):
            duration_minutes (number): Shorter than the policy maximum;
                longer values are clamped.
        """
        principal = _principal()
        if principal is None:
            return jsonify({'error': 'Authentication required'}), 401
        if not _is_approver(principal):
            return jsonify({'error': 'Approver role required'}), 403

        engine = get_engine()
        req = engine.get(request_id)
        if req.user_id == principal['user_id']:
            return jsonify({'error': 'Cannot approve your own elevation request'}), 403

        body = _json_body()
        duration = None
        if body.get('duration_minutes') is not None:
            minutes = body['duration_minutes']
            if isinstance(minutes, bool) or not isinstance(minutes, (int, float)):
                return jsonify({'error': 'duration_minutes must be a number'}), 400
            try:
                duration = timedelta(minutes=minutes)
            except (OverflowError, ValueError) as e:
                raise PamInvalidArgument('duration_minutes is out of range') from e

        req = engine.approve(request_id, principal['user_id'], duration=duration,
                             audit_context=_audit_context())
        return jsonify({'success': True, 'elevation': req.to_dict()})

    @app.route('/api/pam/elevations/<request_id>/deny', methods=['POST'])
    def pam_deny_elevation(request_id):
        principal = _principal()
        if principal is None:
            return jsonify({'error': 'Authentication required'}), 401
        if not _is_approver(principal):
            return jsonify({'error': 'Approver role required'}), 403

        engine = get_engine()
        req = engine.get(request_id)
        if req.user_id == principal['user_id']:
            return jsonify({'error': 'Cannot deny your own elevation request'}), 403

        body = _json_body()
        req = engine.deny(request_id, principal['user_id'], reason=body.get('reason'),
                          audit_context=_audit_context())
        return jsonify({'success': True, 'elevation': req.to_dict()})

    @app.route('/api/pam/elevations/<request_id>/activate', methods=['POST'])
    def pam_activate_elevation(request_id):
        engine = get_engine()
        if not _is_service_call():
            principal = _principal()
            if principal is None:
                return jsonify({'error': 'Authentication required'}), 401
            if engine.get(request_id).user_id != principal['user_id']:
                return jsonify({'error': 'Only the requester can activate this elevation'}), 403

        req = engine.activate(request_id, audit_context=_audit_context())
        return jsonify({'success': True, 'elevation': req.to_dict()})

    @app.route('/api/pam/elevations/<request_id>/complete', methods=['POST'])
    def pam_complete_elevation(request_id):
        """Report the end of an elevated action.

        Body:
            outcome (str): 'success' or 'failure'.
            details (dict, optional): Exit code, output summary, etc.
        """
        engine = get_engine()
        if not _is_service_call():
            principal = _principal()
            if principal is None:
                return jsonify({'error': 'Authentication required'}), 401
            if engine.get(request_id).user_id != principal['user_id']:
                return jsonify({'error': 'Only the requester can complete this elevation'}), 403

        body = _json_body()
        if not body.get('outcome'):
            return jsonify({'error': 'outcome is required'}), 400
        details = body.get('details')
        if details is not None and not isinstance(details, dict):
            return jsonify({'error': 'details must be an object'}), 400

        req = engine.complete(request_id, body['outcome'], details=details,
                              audit_context=_audit_context())
        return jsonify({'success': True, 'elevation': req.to_dict()})

    @app.route('/api/pam/elevations/<request_id>/revoke', methods=['POST'])
    def pam_revoke_elevation(request_id):
        principal = _principal()
        if principal is None:
            return jsonify({'error': 'Authentication required'}), 401
        if not _is_approver(principal):
            return jsonify({'error': 'Approver role required'}), 403

        body = _json_body()
        req = get_engine().revoke(request_id, principal['user_id'], reason=body.get('reason'),
                                  audit_context=_audit_context())
        return jsonify({'success': True, 'elevation': req.to_dict()})

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    @app.route('/api/pam/elevations/<request_id>/audit', methods=['GET'])
    def pam_request_audit(request_id):
        principal = _principal()
        if principal is None:
            return jsonify({'error': 'Authentication required'}), 401

        engine = get_engine()
        if not _can_view(principal, engine.get(request_id)):
            return jsonify({'error': 'Not allowed to view this request'}), 403

        page = engine.audit_trail(
            request_id=request_id,
            cursor=request.args.get('cursor'),
            limit=request.args.get('limit', type=int),
        )
        return jsonify(page.to_dict('entries'))

    @app.route('/api/pam/sessions/<session_id>/audit', methods=['GET'])
    def pam_session_audit(session_id):
        principal = _principal()
        if principal is None:
            return jsonify({'error': 'Authentication required'}), 401
        if not _is_approver(principal):
            return jsonify({'error': 'Approver role required'}), 403

        page = get_engine().audit_trail(
            session_id=session_id,
            cursor=request.args.get('cursor'),
            limit=request.args.get('limit', type=int),
        )
        return jsonify(page.to_dict('entries'))

    @app.route('/api/pam/audit/archivable', methods=['GET'])
    def pam_archivable_audit():
        """Entries older than the retention period, for external archival."""
        principal = _principal()
        if principal is None:
            return jsonify({'error': 'Authentication required'}), 401
        if ADMIN_ROLE not in principal['roles']:
            return jsonify({'error': 'Admin role required'}), 403

        page = get_engine().archivable_audit_entries(
            cursor=request.args.get('cursor'),
            limit=request.args.get('limit', type=int),
        )
        return jsonify(page.to_dict('entries'))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    @app.route('/api/pam/stats', methods=['GET'])
    def pam_stats():
        principal = _principal()
        if principal is None:
            return jsonify({'error': 'Authentication required'}), 401
        if not _is_approver(principal):
            return jsonify({'error': 'Approver role required'}), 403
        return jsonify(get_engine().stats())

    @app.route('/api/pam/config', methods=['GET'])
    def pam_get_config():
        principal = _principal()
        if principal is None:
            return jsonify({'error': 'Authentication required'}), 401

        config = get_engine().config_store.snapshot()
        return jsonify({'config': config.to_dict(), 'version': config.version})

    @app.route('/api/pam/config', methods=['PUT'])
    def pam_put_config():
        principal = _principal()
        if principal is None:
            return jsonify({'error': 'Authentication required'}), 401
        if ADMIN_ROLE not in principal['roles']:
            return jsonify({'error': 'Admin role required'}), 403

        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({'error': 'Request body must be a JSON object'}), 400

        config = get_engine().config_store.save(data)
        current_app.logger.info('[pam] policy config updated by %s (version=%s)',
                                principal['user_id'], config.version)
        return jsonify({'success': True, 'config': config.to_dict(),
                        'version': config.version})

    @app.route('/api/pam/internal/expire', methods=['POST'])
    def pam_internal_expire():
        """Cron endpoint: expire overdue elevation requests."""
        # Auth: CRON_SECRET or ADMIN_PASSWORD
        auth_header = request.headers.get('Authorization', '')
        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            body = {}
        cron_secret = os.environ.get('CRON_SECRET', '')
        admin_password = os.environ.get('ADMIN_PASSWORD', '')

        authorized = False
        if cron_secret and _secret_matches(auth_header, f'Bearer {cron_secret}'):
            authorized = True
        elif admin_password and _secret_matches(str(body.get('password', '')), admin_password):
            authorized = True

        if not authorized:
            return jsonify({'error': 'Unauthorized'}), 401

        scheduler = current_app.extensions.get('pam_scheduler')
        if scheduler is None:
            scheduler = ExpirationScheduler(current_app._get_current_object(), get_engine())
        result = scheduler.run_once()
        return jsonify({'success': True, **result})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _principal():
    """Identity placed in the session by the auth layer, or None."""
    user_id = session.get('user_id')
    if not user_id:
        return None
    return {
        'user_id': str(user_id),
        'display_name': session.get('display_name') or str(user_id),
        'domain': session.get('domain'),
        'roles': frozenset(session.get('roles') or ()),
    }


def _is_approver(principal):
    return bool(principal['roles'] & APPROVER_ROLES)


def _can_view(principal, req):
    return req.user_id == principal['user_id'] or _is_approver(principal)


def _is_service_call():
    token = os.environ.get('PAM_SERVICE_TOKEN', '')
    if not token:
        return False
    auth_header = request.headers.get('Authorization', '')
    return _secret_matches(auth_header, f'Bearer {token}')


def _secret_matches(given, expected):
    """Constant-time comparison that accepts any characters."""
    return hmac.compare_digest(given.encode('utf-8', 'surrogatepass'),
                               expected.encode('utf-8', 'surrogatepass'))


def _json_body():
    """Optional JSON object body; absent or empty means {}."""
    body = request.get_json(silent=True)
    if not body:
        return {}
    if not isinstance(body, dict):
        raise PamInvalidArgument('Request body must be a JSON object')
    return body


def _audit_context():
    return AuditContext(
        ip_address=request.remote_addr,
        user_agent=request.headers.get('User-Agent'),
    )


def _parse_enum(enum_cls, value, name):
    if not value:
        return None
    try:
        return coerce_enum(enum_cls, value)
    except ValueError as e:
        raise PamInvalidArgument(f'Invalid {name}: {value}') from e


def _parse_statuses(value):
    if not value:
        return ()
    return tuple(
        _parse_enum(ElevationStatus, part, 'status')
        for part in value.split(',') if part.strip()
    )


def _parse_datetime(value, name):
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise PamInvalidArgument(f'{name} must be an ISO 8601 timestamp') from e
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
