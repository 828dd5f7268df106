from dataclasses import asdict, dataclass
from datetime import datetime, timezone


class JobStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    ALL = (PENDING, PROCESSING, COMPLETED, FAILED)
    TERMINAL = frozenset({COMPLETED, FAILED})


# Lawful edges of the job state machine. Nothing leaves a terminal state.
TRANSITIONS: dict[str, frozenset[str]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def is_lawful(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass(frozen=True)
class JobRecord:
    """A single upload-to-model lifecycle as stored in the ledger."""

    id: str
    image_key: str
    status: str
    created_at: str
    model_key: str | None = None
    error: str | None = None
    updated_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in JobStatus.TERMINAL

    def to_dict(self) -> dict[str, object]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "JobRecord":
        return cls(
            id=str(data["id"]),
            image_key=str(data["image_key"]),
            status=str(data["status"]),
            created_at=str(data["created_at"]),
            model_key=data.get("model_key"),  # type: ignore[arg-type]
            error=data.get("error"),  # type: ignore[arg-type]
            updated_at=data.get("updated_at"),  # type: ignore[arg-type]
        )
