from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

from app.enrollsage.models import Base

MIGRATIONS = Path(__file__).resolve().parents[1] / "migrations"


def _alembic_config():
    # No ini file, so the test run's logging setup is left alone.
    cfg = Config()
    cfg.set_main_option("script_location", str(MIGRATIONS))
    return cfg


def test_initial_migration_builds_the_model_schema(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'migrated.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    cfg = _alembic_config()
    command.upgrade(cfg, "head")

    engine = create_engine(url)
    try:
        insp = inspect(engine)
        assert set(insp.get_table_names()) - {"alembic_version"} == set(Base.metadata.tables)
        for name, table in Base.metadata.tables.items():
            assert {c["name"] for c in insp.get_columns(name)} == {c.name for c in table.columns}, name
        assert {i["name"] for i in insp.get_indexes("payments")} >= {
            "idx_payments_household",
            "idx_payments_invoice",
            "idx_payments_stripe_pi",
        }
        assert "uq_school_members_user_school" in {u["name"] for u in insp.get_unique_constraints("school_members")}

        # Downgrade drops every table and the revision replays cleanly.
        command.downgrade(cfg, "base")
        command.upgrade(cfg, "head")
        command.downgrade(cfg, "base")
        assert set(inspect(engine).get_table_names()) <= {"alembic_version"}
    finally:
        engine.dispose()
