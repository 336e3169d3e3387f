from sqlalchemy import engine_from_config, pool
from alembic import context
from dashboard.core.config import settings
from dashboard.db.session import Base
from dashboard.db import models  # noqa

config = context.config
target_metadata = Base.metadata
# An explicit sqlalchemy.url (tests, one-off upgrades) wins over DATABASE_URL.
database_url = config.get_main_option("sqlalchemy.url") or settings.database_url


def _configure(**kwargs) -> None:
    # Batch mode lets ALTER-style operations work on SQLite too.
    context.configure(target_metadata=target_metadata, render_as_batch=True, **kwargs)
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_offline():
    _configure(url=database_url, literal_binds=True)


def run_migrations_online():
    connectable = engine_from_config({"sqlalchemy.url": database_url}, prefix="sqlalchemy.", poolclass=pool.NullPool)
    with connectable.connect() as connection:
        _configure(connection=connection)


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
