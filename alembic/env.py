"""
env.py — Alembic migration environment for dealflow

Migrates against the same engine the app uses (dealflow.database), so
DATABASE_URL is the only place the target is configured. SQLite runs in
batch mode because it cannot ALTER most column properties in place.

Called by: alembic CLI
Depends on: dealflow.database (engine), dealflow.models (Base + all tables)
"""

from logging.config import fileConfig

from alembic import context

from dealflow.database import engine
from dealflow.models import Base

if context.config.config_file_name is not None:
    fileConfig(context.config.config_file_name)

target_metadata = Base.metadata


def _options(url) -> dict:
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "render_as_batch": url.get_backend_name() == "sqlite",
    }


def run_migrations_offline() -> None:
    """Emit SQL for the configured database without connecting."""
    context.configure(url=engine.url, literal_binds=True, dialect_opts={"paramstyle": "named"},
                      **_options(engine.url))
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    with engine.connect() as connection:
        context.configure(connection=connection, **_options(engine.url))
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
