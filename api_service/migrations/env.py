from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

# this is the Alembic Config object, which provides
# access to the values within the .ini file in use.
config = context.config

# Interpret the config file for Python logging.
# This line sets up loggers basically.
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

import pathlib

# Model modules register their tables on Base.metadata when imported.
import devplane.prebuilds.models  # noqa: F401
import devplane.projects.models  # noqa: F401
import devplane.webhooks.models  # noqa: F401
import devplane.workspaces.models  # noqa: F401
from api_service.db.models import Base
from devplane.config.settings import AppSettings

# Determine project root from env.py's location: api_service/migrations/env.py
PROJECT_ROOT = pathlib.Path(__file__).resolve().parent.parent.parent
DOTENV_PATH = PROJECT_ROOT / ".env"

# Instantiate settings locally for Alembic, ensuring .env is loaded correctly
local_settings = AppSettings(_env_file=DOTENV_PATH)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode.

    This configures the context with just a URL and not an Engine.
    Calls to context.execute() here emit the given string to the
    script output.
    """
    url = local_settings.database.POSTGRES_URL_SYNC
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode against the configured database."""

    configuration = config.get_section(config.config_ini_section)
    # Use synchronous URL for Alembic
    configuration["sqlalchemy.url"] = local_settings.database.POSTGRES_URL_SYNC

    connectable = engine_from_config(
        configuration,
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
