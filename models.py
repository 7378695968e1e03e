"""
Database models for the GhostLink PAM service
"""
import uuid

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event

from core.pam.constants import ElevationStatus, ElevationType, utcnow

db = SQLAlchemy()


def _new_id():
    return str(uuid.uuid4())


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


def _iso(value):
    return value.isoformat() if value else None


class ElevationRequest(db.Model):
    """A request for temporary elevated privileges inside a remote session.

    Status changes go through core.pam.store only; never assign ``status``
    on a loaded instance and commit.
    """
    __tablename__ = 'pam_elevation_requests'

    id = db.Column(db.String(36), primary_key=True, default=_new_id)

    # References
    session_id = db.Column(db.String(36), nullable=False, index=True)
    user_id = db.Column(db.String(255), nullable=False, index=True)
    requested_by = db.Column(db.String(255), nullable=False)
    user_domain = db.Column(db.String(255))

    # Intent
    elevation_type = db.Column(
        db.Enum(ElevationType, name='elevation_type', values_callable=_enum_values),
        nullable=False,
    )
    reason = db.Column(db.Text, nullable=False)
    target_process = db.Column(db.String(255))
    target_command = db.Column(db.Text)
    target_account = db.Column(db.String(255))  # run_as_user / run_as_service

    # Lifecycle
    status = db.Column(
        db.Enum(ElevationStatus, name='elevation_status', values_callable=_enum_values),
        nullable=False,
        default=ElevationStatus.PENDING,
        index=True,
    )
    requested_at = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    expires_at = db.Column(db.DateTime)
    approved_by = db.Column(db.String(255))
    approved_at = db.Column(db.DateTime)
    denied_reason = db.Column(db.Text)
    auto_approved = db.Column(db.Boolean, nullable=False, default=False)
    ended_at = db.Column(db.DateTime)

    # Policy outcome, fixed at request time
    risk_score = db.Column(db.Integer, nullable=False, default=0)
    risk_level = db.Column(db.String(20), nullable=False, default='low')
    compliance_flags = db.Column(db.JSON, nullable=False, default=list)

    # Concurrency token: number of committed transitions.
    transition_seq = db.Column(db.Integer, nullable=False, default=1)

    # "<session_id>:<target>" while pending/approved/active, NULL once terminal.
    open_slot = db.Column(db.String(600), unique=True)

    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def __repr__(self):
        return f'<ElevationRequest {self.id} {self.elevation_type.value} {self.status.value}>'

    def to_dict(self):
        """Convert request to dictionary for API responses"""
        return {
            'id': self.id,
            'session_id': self.session_id,
            'user_id': self.user_id,
            'requested_by': self.requested_by,
            'user_domain': self.user_domain,
            'elevation_type': self.elevation_type.value,
            'reason': self.reason,
            'target_process': self.target_process,
            'target_command': self.target_command,
            'target_account': self.target_account,
            'status': self.status.value,
            'requested_at': _iso(self.requested_at),
            'expires_at': _iso(self.expires_at),
            'approved_by': self.approved_by,
            'approved_at': _iso(self.approved_at),
            'denied_reason': self.denied_reason,
            'auto_approved': self.auto_approved,
            'ended_at': _iso(self.ended_at),
            'risk_score': self.risk_score,
            'risk_level': self.risk_level,
            'compliance_flags': list(self.compliance_flags or []),
            'updated_at': _iso(self.updated_at),
        }


class PamAuditEntry(db.Model):
    """Append-only record of one elevation state transition."""
    __tablename__ = 'pam_audit_log'

    id = db.Column(db.String(36), primary_key=True, default=_new_id)
    elevation_request_id = db.Column(
        db.String(36), db.ForeignKey('pam_elevation_requests.id'), index=True,
    )
    session_id = db.Column(db.String(36), index=True)
    user_id = db.Column(db.String(255), nullable=False)  # identity at time of action
    action = db.Column(db.String(50), nullable=False)
    timestamp = db.Column(db.DateTime, nullable=False, default=utcnow, index=True)
    sequence = db.Column(db.Integer)  # request.transition_seq of this transition
    ip_address = db.Column(db.String(45))
    user_agent = db.Column(db.Text)
    risk_score = db.Column(db.Integer, nullable=False, default=0)
    compliance_flags = db.Column(db.JSON, nullable=False, default=list)
    details = db.Column(db.JSON)

    __table_args__ = (
        db.UniqueConstraint('elevation_request_id', 'sequence', name='uq_pam_audit_request_seq'),
    )

    def __repr__(self):
        return f'<PamAuditEntry {self.action} request={self.elevation_request_id}>'

    def to_dict(self):
        return {
            'id': self.id,
            'elevation_request_id': self.elevation_request_id,
            'session_id': self.session_id,
            'user_id': self.user_id,
            'action': self.action,
            'timestamp': _iso(self.timestamp),
            'sequence': self.sequence,
            'ip_address': self.ip_address,
            'user_agent': self.user_agent,
            'risk_score': self.risk_score,
            'compliance_flags': list(self.compliance_flags or []),
            'details': self.details or {},
        }


class AppSetting(db.Model):
    """Key-value application settings (JSON values)"""
    __tablename__ = 'app_settings'

    key = db.Column(db.String(100), primary_key=True)
    value = db.Column(db.JSON, nullable=False)
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow)

    def __repr__(self):
        return f'<AppSetting {self.key}>'


@event.listens_for(PamAuditEntry, 'before_update')
def _audit_entries_are_immutable(mapper, connection, target):
    raise ValueError(f'Audit entry {target.id} is append-only and cannot be modified')


@event.listens_for(PamAuditEntry, 'before_delete')
def _audit_entries_are_undeletable(mapper, connection, target):
    raise ValueError(f'Audit entry {target.id} is append-only and cannot be deleted')


__all__ = ['db', 'ElevationRequest', 'PamAuditEntry', 'AppSetting']
