from __future__ import annotations

import os
from logging.config import fileConfig

from alembic import context
from dotenv import load_dotenv
from sqlalchemy import engine_from_config, pool

from app.enrollsage.models import Base

# Every module's tables must be registered on Base.metadata.
import app.enrollsage.modules.admissions.models  # noqa: F401
import app.enrollsage.modules.billing.models  # noqa: F401
import app.enrollsage.modules.catalog.models  # noqa: F401
import app.enrollsage.modules.families.models  # noqa: F401
import app.enrollsage.modules.orders.models  # noqa: F401
import app.enrollsage.modules.payments.models  # noqa: F401
import app.enrollsage.modules.promotions.models  # noqa: F401
import app.enrollsage.modules.schools.models  # noqa: F401
import app.enrollsage.modules.team.models  # noqa: F401

load_dotenv()

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

db_url = (os.environ.get("DATABASE_URL") or "").strip()
if db_url:
    config.set_main_option("sqlalchemy.url", db_url)

target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata, render_as_batch=True)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
