import asyncio
import logging
import os
from logging.config import fileConfig

from alembic import context
from sqlmodel import SQLModel

from scopegen import db

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env.scopegen")
target_metadata = SQLModel.metadata


def _database_url() -> str:
    """DATABASE_URL wins, then ``sqlalchemy.url`` from the ini file, then the app default."""
    return os.getenv("DATABASE_URL") or config.get_main_option("sqlalchemy.url") or db.DATABASE_URL


def _render_item(type_, obj, autogen_context):
    # UTCDateTime only tags results; the column itself is a plain aware DateTime
    if type_ == "type" and isinstance(obj, db.UTCDateTime):
        autogen_context.imports.add("import sqlalchemy as sa")
        return "sa.DateTime(timezone=True)"
    return False


def _skip_empty_revisions(migration_context, revision, directives) -> None:
    if getattr(config.cmd_opts, "autogenerate", False) and directives:
        script = directives[0]
        if script.upgrade_ops.is_empty():
            directives[:] = []
            logger.info("No model changes detected; revision not written")


def _configure_options(url: str) -> dict:
    return {
        "target_metadata": target_metadata,
        "compare_type": True,
        "render_item": _render_item,
        "render_as_batch": url.startswith("sqlite"),
        "process_revision_directives": _skip_empty_revisions,
    }


def run_migrations_offline() -> None:
    url = _database_url()
    context.configure(
        url=url,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_configure_options(url),
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection, url: str) -> None:
    context.configure(connection=connection, **_configure_options(url))

    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    url = _database_url()
    engine = db.configure_engine(url)
    try:
        async with engine.begin() as connection:
            await connection.run_sync(do_run_migrations, url)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
