#!/usr/bin/env python3
"""
GhostLink PAM Server
Flask service for privileged access elevation requests, approvals and audit
"""

from flask import Flask, jsonify
from flask_cors import CORS
import logging
import os
from pathlib import Path
import secrets

from core.pam.constants import DEFAULT_EXPIRATION_INTERVAL_SECONDS, DEFAULT_IO_TIMEOUT_SECONDS

logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)
logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app, supports_credentials=True)

# Secret key for sessions (generate a secure one for production)
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', secrets.token_hex(32))
app.config['TESTING'] = os.environ.get('TESTING', '').lower() == 'true'

# Store and ledger I/O bound
io_timeout = float(os.environ.get('PAM_IO_TIMEOUT_SECONDS', DEFAULT_IO_TIMEOUT_SECONDS))

# Database configuration
database_url = os.environ.get('DATABASE_URL', f'sqlite:///{Path(__file__).parent}/ghostlink_pam.db')

# Fix Heroku/Vercel's postgres:// scheme (should be postgresql://)
if database_url and database_url.startswith('postgres://'):
    database_url = database_url.replace('postgres://', 'postgresql://', 1)

app.config['SQLALCHEMY_DATABASE_URI'] = database_url
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

# PostgreSQL-specific connection pool settings
if database_url and database_url.startswith('postgresql://'):
    app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
        'pool_size': 5,
        'max_overflow': 10,
        'pool_recycle': 300,  # Recycle connections after 5 minutes
        'pool_pre_ping': True,  # Test connections before using them
        'pool_timeout': io_timeout,
        'connect_args': {
            'connect_timeout': int(io_timeout),
            'options': f'-c statement_timeout={int(io_timeout * 1000)} '
                       f'-c lock_timeout={int(io_timeout * 1000)}',
            'keepalives': 1,
            'keepalives_idle': 30,
            'keepalives_interval': 10,
            'keepalives_count': 5
        }
    }
else:
    # SQLite settings (for local dev and tests); timeout is the busy wait
    app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
        'pool_pre_ping': True,
        'connect_args': {
            'timeout': io_timeout,
            'check_same_thread': False,
        }
    }

# PAM background workers
app.config['PAM_BACKGROUND_WORKERS'] = (
    os.environ.get('PAM_BACKGROUND_WORKERS', 'true').lower() not in ('0', 'false', 'no')
)
app.config['PAM_EXPIRATION_INTERVAL_SECONDS'] = float(
    os.environ.get('PAM_EXPIRATION_INTERVAL_SECONDS', DEFAULT_EXPIRATION_INTERVAL_SECONDS)
)

# Import and initialize database
from models import db
db.init_app(app)

# Initialize rate limiter
from rate_limiter import init_limiter
limiter = init_limiter(app)

# Register PAM routes
from routes.pam_routes import register_pam_routes
register_pam_routes(app)

# Attach the elevation engine (starts scheduler and audit retry worker)
from core.pam.engine import init_app as init_pam
init_pam(app)


@app.route('/api/health', methods=['GET'])
def health():
    """Liveness check"""
    scheduler = app.extensions.get('pam_scheduler')
    return jsonify({
        'status': 'ok',
        'service': 'ghostlink-pam',
        'scheduler_running': bool(scheduler and scheduler.running),
        'config_version': app.extensions['pam'].config_store.snapshot().version,
    })


if __name__ == '__main__':
    print("=" * 60)
    print("GhostLink PAM Server")
    print("=" * 60)
    print(f"Database: {app.config['SQLALCHEMY_DATABASE_URI'].split('@')[-1]}")
    print("Server starting on http://localhost:5000")
    print("=" * 60)

    app.run(host='0.0.0.0', port=5000, debug=False)
