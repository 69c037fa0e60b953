from __future__ import annotations
import os
from logging.config import fileConfig
from alembic import context
from docsign.config import settings
from docsign.db import make_engine
from docsign.models import Base

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def database_url() -> str:
    """DATABASE_URL from the environment or settings; migrations need a real database."""
    url = os.getenv("DATABASE_URL") or settings.database_url
    if not url:
        raise RuntimeError("DATABASE_URL is not set; docsign runs on in-memory stores without it")
    if url in ("sqlite://", "sqlite:///:memory:"):
        raise RuntimeError("In-memory sqlite is created by init_db and cannot be migrated")
    return url


def migrate_offline(url: str) -> None:
    context.configure(url=url, target_metadata=target_metadata, literal_binds=True, compare_type=True)
    with context.begin_transaction():
        context.run_migrations()


def migrate_online(url: str) -> None:
    # same engine options the service uses at runtime
    engine = make_engine(url)
    try:
        with engine.connect() as connection:
            context.configure(connection=connection, target_metadata=target_metadata, compare_type=True)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


url = database_url()
if context.is_offline_mode():
    migrate_offline(url)
else:
    migrate_online(url)
