import pytest
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import IntegrityError

from model_service.conversion.ledger_sql import SqlJobLedger


@pytest.fixture()
def sql_ledger(tmp_path) -> SqlJobLedger:
    return SqlJobLedger(f"sqlite:///{tmp_path / 'ledger.db'}")


def test_creates_conversions_table_with_indexes(sql_ledger: SqlJobLedger) -> None:
    inspector = inspect(sql_ledger.engine)

    columns = {c["name"]: c for c in inspector.get_columns("conversions")}
    assert set(columns) == {"id", "image_key", "model_key", "status", "error", "created_at", "updated_at"}
    assert columns["model_key"]["nullable"] and columns["error"]["nullable"] and columns["updated_at"]["nullable"]
    assert not columns["image_key"]["nullable"]

    indexes = {i["name"]: i["column_names"] for i in inspector.get_indexes("conversions")}
    assert indexes["idx_conversions_status"] == ["status"]
    assert indexes["idx_conversions_created_at"] == ["created_at"]


def test_status_check_constraint(sql_ledger: SqlJobLedger) -> None:
    with pytest.raises(IntegrityError):
        with sql_ledger.engine.begin() as conn:
            conn.execute(
                text(
                    "INSERT INTO conversions (id, image_key, status, created_at) "
                    "VALUES ('x', 'images/x', 'archived', '2024-01-01T00:00:00Z')"
                )
            )


def test_accepts_existing_engine(tmp_path) -> None:
    engine = create_engine(f"sqlite:///{tmp_path / 'shared.db'}")

    ledger = SqlJobLedger(engine=engine)

    assert ledger.engine is engine
    assert ledger.get("missing") is None


def test_requires_url_or_engine() -> None:
    with pytest.raises(ValueError):
        SqlJobLedger()
