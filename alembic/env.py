"""
Alembic environment configuration for Flask-SQLAlchemy integration
"""
from logging.config import fileConfig
import os
import sys
from pathlib import Path

from alembic import context

# Add parent directory to path to import Flask app
sys.path.insert(0, str(Path(__file__).parent.parent))

# Migrations must not start the expiration scheduler or audit retry worker
os.environ.setdefault('PAM_BACKGROUND_WORKERS', 'false')

# Import Flask app and models
from server import app
from models import db, ElevationRequest, PamAuditEntry, AppSetting  # noqa: F401

# this is the Alembic Config object
config = context.config

# Set sqlalchemy.url from Flask app config
config.set_main_option('sqlalchemy.url', app.config['SQLALCHEMY_DATABASE_URI'])

# Interpret the config file for Python logging
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Add model's MetaData for autogenerate support
target_metadata = db.metadata


def run_migrations_offline() -> None:
    """Emit SQL for the PAM tables without connecting."""
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,  # Compare column types
        compare_server_default=True,  # Compare default values
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Apply migrations through the Flask app's engine."""
    # Use Flask app context for database connection
    with app.app_context():
        connectable = db.engine

        with connectable.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=target_metadata,
                compare_type=True,  # Compare column types
                compare_server_default=True,  # Compare default values
                render_as_batch=connection.dialect.name == 'sqlite',
            )

            with context.begin_transaction():
                context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
