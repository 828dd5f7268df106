"""
SQL-backed job ledger.

Persists jobs in the ``conversions`` table through SQLAlchemy Core. Every
state change is a single conditional ``UPDATE ... WHERE id = ? AND status = ?``
so two writers racing on the same job cannot both win.
"""

from sqlalchemy import (
    CheckConstraint,
    Column,
    Index,
    MetaData,
    Table,
    Text,
    create_engine,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine, RowMapping
from sqlalchemy.exc import SQLAlchemyError

from .errors import StorageError
from .interfaces import LedgerGateway
from .models import JobRecord, JobStatus, is_lawful

metadata = MetaData()

conversions = Table(
    "conversions",
    metadata,
    Column("id", Text, primary_key=True),
    Column("image_key", Text, nullable=False),
    Column("model_key", Text, nullable=True),
    Column("status", Text, nullable=False),
    Column("error", Text, nullable=True),
    Column("created_at", Text, nullable=False),
    Column("updated_at", Text, nullable=True),
    CheckConstraint(
        "status IN ({})".format(", ".join(f"'{s}'" for s in JobStatus.ALL)),
        name="ck_conversions_status",
    ),
    Index("idx_conversions_status", "status"),
    Index("idx_conversions_created_at", "created_at"),
)


def _to_record(row: RowMapping) -> JobRecord:
    return JobRecord.from_dict(dict(row))


class SqlJobLedger(LedgerGateway):
    def __init__(self, url: str | None = None, *, engine: Engine | None = None) -> None:
        if engine is None:
            if not url:
                raise ValueError("either url or engine is required")
            engine = create_engine(url)
        self._engine = engine
        metadata.create_all(self._engine)

    @property
    def engine(self) -> Engine:
        return self._engine

    def insert(self, job: JobRecord) -> None:
        try:
            with self._engine.begin() as conn:
                conn.execute(insert(conversions).values(**job.to_dict()))
        except SQLAlchemyError as e:
            raise StorageError(f"failed to insert job {job.id}: {e}") from e

    def get(self, job_id: str) -> JobRecord | None:
        try:
            with self._engine.connect() as conn:
                row = conn.execute(select(conversions).where(conversions.c.id == job_id)).mappings().first()
        except SQLAlchemyError as e:
            raise StorageError(f"failed to load job {job_id}: {e}") from e
        return _to_record(row) if row is not None else None

    def transition(
        self,
        job_id: str,
        expected: str,
        target: str,
        *,
        updated_at: str,
        model_key: str | None = None,
        error: str | None = None,
    ) -> bool:
        if not is_lawful(expected, target):
            raise ValueError(f"unlawful transition {expected} -> {target}")
        values: dict[str, object] = {"status": target, "updated_at": updated_at}
        if model_key is not None:
            values["model_key"] = model_key
        if error is not None:
            values["error"] = error
        stmt = (
            update(conversions)
            .where(conversions.c.id == job_id, conversions.c.status == expected)
            .values(**values)
        )
        try:
            with self._engine.begin() as conn:
                result = conn.execute(stmt)
        except SQLAlchemyError as e:
            raise StorageError(f"failed to update job {job_id}: {e}") from e
        return result.rowcount == 1

    def list_by_status(self, status: str) -> list[JobRecord]:
        stmt = select(conversions).where(conversions.c.status == status).order_by(conversions.c.created_at)
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(stmt).mappings().all()
        except SQLAlchemyError as e:
            raise StorageError(f"failed to list {status} jobs: {e}") from e
        return [_to_record(r) for r in rows]
