from logging.config import fileConfig

from sqlalchemy import pool, engine_from_config

from alembic import context

from app.core.config import settings
from app.database.connection import Base
import app.models  # noqa: F401  registers chats, messages and checkpoints

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _get_url() -> str:
    """alembic.ini override wins, otherwise the application's DATABASE_URL"""
    ini_url = config.get_main_option("sqlalchemy.url", default="")
    if not ini_url or ini_url.startswith("driver://"):
        ini_url = settings.database_url
    return ini_url


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode (generates SQL scripts)."""
    context.configure(
        url=_get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode (applies directly to the DB)."""
    section = config.get_section(config.config_ini_section, {})
    section["sqlalchemy.url"] = _get_url()
    connectable = engine_from_config(section, prefix="sqlalchemy.", poolclass=pool.NullPool)

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
