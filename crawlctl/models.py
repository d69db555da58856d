from dataclasses import dataclass
from typing import Optional

# Record status (stored as INTEGER)
PENDING = 0
COMPLETED = 1

STATUS_NAMES = {PENDING: "pending", COMPLETED: "completed"}
STATUS_BY_NAME = {v: k for k, v in STATUS_NAMES.items()}


@dataclass
class QueueRecord:
    id: int
    payload: bytes
    status: int = PENDING
    kind: str = ""
    attempts: int = 0
    last_error: Optional[str] = None
    claimed_by: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row) -> "QueueRecord":
        return cls(
            id=row["id"],
            payload=bytes(row["payload"]),
            status=row["status"],
            kind=row["kind"],
            attempts=row["attempts"],
            last_error=row["last_error"],
            claimed_by=row["claimed_by"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @property
    def status_name(self) -> str:
        return STATUS_NAMES.get(self.status, str(self.status))
