"""Tests for the database schema and its bootstrap script."""

from __future__ import annotations

import pytest
from sqlalchemy import UniqueConstraint, create_engine, inspect

from db import init_db
from db.models import Base

REQUIRED_TABLES = {
    "user_security",
    "wallets",
    "withdrawal_whitelist",
    "login_attempts",
    "security_log",
    "trigger_orders",
}


def test_metadata_declares_all_tables():
    """Every persisted record has a table."""
    assert REQUIRED_TABLES <= set(Base.metadata.tables)


def test_one_wallet_per_user_and_chain():
    """The wallets table enforces (user_id, chain) uniqueness."""
    wallets = Base.metadata.tables["wallets"]
    unique = [tuple(c.name for c in con.columns) for con in wallets.constraints if isinstance(con, UniqueConstraint)]

    assert ("user_id", "chain") in unique
    assert wallets.c.encryption_version.default.arg == 1


def test_trigger_orders_have_lookup_indexes():
    """The scheduler looks orders up by status and token."""
    indexes = {ix.name: [c.name for c in ix.columns] for ix in Base.metadata.tables["trigger_orders"].indexes}

    assert indexes["idx_trigger_orders_status"] == ["status"]
    assert indexes["idx_trigger_orders_token"] == ["chain", "token_address"]


def test_init_db_creates_tables(tmp_path, monkeypatch):
    """db.init_db creates the schema at DATABASE_URL, idempotently."""
    db_file = tmp_path / "nested" / "custody.db"
    monkeypatch.setattr(init_db, "load_dotenv", lambda: None)
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_file}")

    assert init_db.main() == 0
    assert init_db.main() == 0

    engine = create_engine(f"sqlite:///{db_file}")
    try:
        assert REQUIRED_TABLES <= set(inspect(engine).get_table_names())
    finally:
        engine.dispose()


@pytest.mark.parametrize("table", sorted(REQUIRED_TABLES))
def test_tables_have_single_column_primary_key(table):
    pk = list(Base.metadata.tables[table].primary_key.columns)

    assert len(pk) == 1
