import logging
from logging.config import fileConfig
import sys
from pathlib import Path

from sqlalchemy import pool
from alembic import context

BASE_DIR = Path(__file__).resolve().parents[1]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))


def _get_settings():
    from config import get_settings

    return get_settings()


def _get_metadata():
    # importing models registers every table on Base.metadata
    import models  # noqa: F401
    from database import Base

    return Base.metadata


config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

settings = _get_settings()
config.set_main_option("sqlalchemy.url", settings.database_url)

target_metadata = _get_metadata()


def run_migrations_offline() -> None:
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    from database import build_engine

    connectable = build_engine(settings.database_url, poolclass=pool.NullPool)
    logger.info(f"Running migrations against {connectable.url.render_as_string()}")

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=connection.dialect.name == "sqlite",
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
