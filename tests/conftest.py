"""
Pytest configuration and shared fixtures for GhostLink PAM tests
"""
import pytest
import os
import sys
import tempfile
from datetime import datetime, timedelta
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

# Set test environment before importing app
_db_fd, _db_path = tempfile.mkstemp(suffix='.db')
os.environ['FLASK_ENV'] = 'testing'
os.environ['TESTING'] = 'true'
os.environ['PAM_BACKGROUND_WORKERS'] = 'false'
os.environ['DATABASE_URL'] = f'sqlite:///{_db_path}'
os.environ.pop('SLACK_WEBHOOK_URL', None)


class FakeClock:
    """Settable clock for deadline tests."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Notifier stand-in that records events instead of posting webhooks."""

    def __init__(self):
        self.requested = []
        self.failed = []

    def on_requested(self, req, config):
        self.requested.append(req.id)

    def on_failed(self, req, config, reason):
        self.failed.append((req.id, reason))


@pytest.fixture(scope='session')
def app():
    """Create and configure a test Flask application instance"""
    from server import app as flask_app
    from models import db
    from rate_limiter import limiter

    flask_app.config.update({
        'TESTING': True,
        'SECRET_KEY': 'test-secret-key',
    })

    # Disable rate limiting for tests (must be done after init_limiter ran)
    limiter.enabled = False

    # Create tables inside a persistent app context
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()

    # Close and remove temporary database
    os.close(_db_fd)
    os.unlink(_db_path)


@pytest.fixture(autouse=True)
def _clean_db(app):
    """Clean up data between tests to avoid UNIQUE constraint violations."""
    from models import db
    yield
    db.session.rollback()
    for table in reversed(db.metadata.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_engine(app, clock, notifier):
    """Build an engine with a given policy and install it on the app."""
    from core.pam.audit_ledger import AuditLedger
    from core.pam.config import PamPolicyConfig, PolicyConfigStore
    from core.pam.engine import ElevationEngine

    previous = app.extensions.get('pam')

    def _make(**policy):
        config = PamPolicyConfig.from_dict(policy) if policy else PamPolicyConfig()
        engine = ElevationEngine(
            config_store=PolicyConfigStore(config),
            ledger=AuditLedger(app),
            notifier=notifier,
            clock=clock,
        )
        app.extensions['pam'] = engine
        return engine

    yield _make
    app.extensions['pam'] = previous


@pytest.fixture
def engine(make_engine):
    """Engine with the default policy: every type needs approval."""
    return make_engine()


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


def _login(app, user_id, roles=(), display_name=None, domain='corp.example.com'):
    client = app.test_client()
    with client.session_transaction() as sess:
        sess['user_id'] = user_id
        sess['display_name'] = display_name or user_id.title()
        sess['domain'] = domain
        sess['roles'] = list(roles)
    return client


@pytest.fixture
def requester_client(app):
    """Session for an ordinary technician"""
    return _login(app, 'carol')


@pytest.fixture
def approver_client(app):
    """Session for a PAM approver"""
    return _login(app, 'alice', roles=['pam_approver'])


@pytest.fixture
def admin_client(app):
    """Session for an administrator"""
    return _login(app, 'root-admin', roles=['admin'])


@pytest.fixture
def login(app):
    def _make(user_id, roles=()):
        return _login(app, user_id, roles=roles)
    return _make
