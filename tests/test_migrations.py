from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

import config
from database import Base

ROOT = Path(__file__).resolve().parents[1]


def test_upgrade_head_builds_the_model_schema(tmp_path, monkeypatch) -> None:
    db_url = f"sqlite:///{tmp_path / 'ledger.db'}"
    monkeypatch.setenv("ALLOWANCE_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("ALLOWANCE_DATABASE_URL", db_url)
    config.get_settings.cache_clear()
    try:
        # no ini file, so alembic leaves the test logging setup alone
        cfg = Config()
        cfg.set_main_option("script_location", str(ROOT / "alembic"))
        command.upgrade(cfg, "head")
    finally:
        config.get_settings.cache_clear()

    engine = create_engine(db_url)
    inspector = inspect(engine)
    assert "alembic_version" in inspector.get_table_names()
    for name, table in Base.metadata.tables.items():
        columns = {column["name"] for column in inspector.get_columns(name)}
        assert columns == set(table.columns.keys())
    engine.dispose()
