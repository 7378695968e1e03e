"""Create PAM tables: pam_elevation_requests, pam_audit_log, app_settings

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa

revision = '001'
down_revision = None
branch_labels = None
depends_on = None

ELEVATION_TYPES = (
    'run_as_admin', 'run_as_user', 'run_as_service',
    'run_as_system', 'domain_admin', 'local_admin',
)
ELEVATION_STATUSES = (
    'pending', 'approved', 'active', 'denied', 'expired', 'completed', 'failed',
)


def upgrade():
    # --- Elevation requests ---
    op.create_table(
        'pam_elevation_requests',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('session_id', sa.String(36), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('requested_by', sa.String(255), nullable=False),
        sa.Column('user_domain', sa.String(255), nullable=True),
        sa.Column('elevation_type', sa.Enum(*ELEVATION_TYPES, name='elevation_type'),
                  nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('target_process', sa.String(255), nullable=True),
        sa.Column('target_command', sa.Text(), nullable=True),
        sa.Column('target_account', sa.String(255), nullable=True),
        sa.Column('status', sa.Enum(*ELEVATION_STATUSES, name='elevation_status'),
                  nullable=False, server_default='pending'),
        sa.Column('requested_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('approved_by', sa.String(255), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('denied_reason', sa.Text(), nullable=True),
        sa.Column('auto_approved', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('ended_at', sa.DateTime(), nullable=True),
        sa.Column('risk_score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('risk_level', sa.String(20), nullable=False, server_default='low'),
        sa.Column('compliance_flags', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('transition_seq', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('open_slot', sa.String(600), nullable=True, unique=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_pam_elevation_requests_session_id', 'pam_elevation_requests', ['session_id'])
    op.create_index('ix_pam_elevation_requests_user_id', 'pam_elevation_requests', ['user_id'])
    op.create_index('ix_pam_elevation_requests_status', 'pam_elevation_requests', ['status'])
    op.create_index('ix_pam_elevation_requests_requested_at', 'pam_elevation_requests',
                    ['requested_at'])

    # --- Append-only audit trail ---
    op.create_table(
        'pam_audit_log',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('elevation_request_id', sa.String(36),
                  sa.ForeignKey('pam_elevation_requests.id'), nullable=True),
        sa.Column('session_id', sa.String(36), nullable=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('timestamp', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('sequence', sa.Integer(), nullable=True),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('risk_score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('compliance_flags', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.UniqueConstraint('elevation_request_id', 'sequence', name='uq_pam_audit_request_seq'),
    )
    op.create_index('ix_pam_audit_log_elevation_request_id', 'pam_audit_log',
                    ['elevation_request_id'])
    op.create_index('ix_pam_audit_log_session_id', 'pam_audit_log', ['session_id'])
    op.create_index('ix_pam_audit_log_timestamp', 'pam_audit_log', ['timestamp'])

    # --- Key-value settings (pam_config lives here) ---
    op.create_table(
        'app_settings',
        sa.Column('key', sa.String(100), primary_key=True),
        sa.Column('value', sa.JSON(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )


def downgrade():
    op.drop_table('app_settings')
    op.drop_index('ix_pam_audit_log_timestamp', table_name='pam_audit_log')
    op.drop_index('ix_pam_audit_log_session_id', table_name='pam_audit_log')
    op.drop_index('ix_pam_audit_log_elevation_request_id', table_name='pam_audit_log')
    op.drop_table('pam_audit_log')
    op.drop_index('ix_pam_elevation_requests_requested_at', table_name='pam_elevation_requests')
    op.drop_index('ix_pam_elevation_requests_status', table_name='pam_elevation_requests')
    op.drop_index('ix_pam_elevation_requests_user_id', table_name='pam_elevation_requests')
    op.drop_index('ix_pam_elevation_requests_session_id', table_name='pam_elevation_requests')
    op.drop_table('pam_elevation_requests')
    sa.Enum(name='elevation_status').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='elevation_type').drop(op.get_bind(), checkfirst=True)
