"""Alembic migration environment for AumOS outcome learning.

Runs the ol_ migrations on the service's own async engine and logs through
the service's structlog setup. Offline mode (``alembic upgrade --sql``)
renders the SQL without connecting.
"""

import asyncio

from alembic import context
from sqlalchemy.engine import Connection

from aumos_outcome_learning.core.database import create_engine
from aumos_outcome_learning.core.models import Base
from aumos_outcome_learning.observability import configure_logging
from aumos_outcome_learning.settings import Settings

settings = Settings()
configure_logging(settings)
target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Emit the migration SQL for the configured database URL."""
    context.configure(
        url=settings.database_url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )
    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection: Connection) -> None:
    context.configure(connection=connection, target_metadata=target_metadata)
    with context.begin_transaction():
        context.run_migrations()


async def run_async_migrations() -> None:
    engine = create_engine(settings)
    try:
        async with engine.connect() as connection:
            await connection.run_sync(do_run_migrations)
    finally:
        await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_async_migrations())
