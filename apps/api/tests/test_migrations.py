from __future__ import annotations

from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine, inspect

from storefront_api.core.settings import settings
from storefront_api.db.base import Base
from storefront_api.models.loyalty import LoyaltyReason


API_ROOT = Path(__file__).resolve().parents[1]


@pytest.fixture
def alembic_config(tmp_path, monkeypatch):
    db_path = tmp_path / "migrated.db"
    monkeypatch.setattr(settings, "database_url", f"sqlite+aiosqlite:///{db_path}")

    config = Config(str(API_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(API_ROOT / "alembic"))
    config.attributes["configure_logger"] = False
    return config, f"sqlite:///{db_path}"


def _describe(inspector, table: str) -> dict:
    return {
        "columns": {column["name"] for column in inspector.get_columns(table)},
        "indexes": {index["name"] for index in inspector.get_indexes(table)},
        "checks": {check["name"] for check in inspector.get_check_constraints(table)},
    }


def test_upgrade_matches_models_and_downgrade_drops_tables(alembic_config) -> None:
    config, sync_url = alembic_config

    command.upgrade(config, "head")

    engine = create_engine(sync_url)
    try:
        inspector = inspect(engine)
        for table_name in ("loyalty_wallets", "loyalty_transactions"):
            table = Base.metadata.tables[table_name]
            described = _describe(inspector, table_name)

            assert described["columns"] == {column.name for column in table.columns}
            assert described["indexes"] == {index.name for index in table.indexes}

        assert _describe(inspector, "loyalty_wallets")["checks"] == {
            "ck_loyalty_wallets_balance_non_negative",
            "ck_loyalty_wallets_earned_non_negative",
            "ck_loyalty_wallets_redeemed_non_negative",
        }
    finally:
        engine.dispose()

    head = ScriptDirectory.from_config(config).get_revision("head")
    assert list(head.module.loyalty_reason.enums) == [reason.value for reason in LoyaltyReason]

    command.downgrade(config, "base")

    engine = create_engine(sync_url)
    try:
        remaining = set(inspect(engine).get_table_names())
    finally:
        engine.dispose()
    assert "loyalty_wallets" not in remaining
    assert "loyalty_transactions" not in remaining
