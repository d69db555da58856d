"""CommandQueue: access and mutation logic over the command store."""
import sqlite3
from typing import Dict, Iterable, List, Optional, Sequence

from . import repository as repo
from .commands import Command, decode_command, encode_command
from .errors import EmptyQueue, UnknownIdentity
from .models import COMPLETED, QueueRecord


class CommandQueue:
    """One logical queue over one SQLite connection.

    The queue is handed to workers and commands explicitly; open one per
    thread when running several workers against the same file.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def close(self):
        self.conn.close()

    # ---------- core operations ----------
    def enqueue(self, command: Command) -> int:
        with self.conn:
            record_id = self._insert(command)
        command.id = record_id
        return record_id

    def is_empty(self) -> bool:
        return self.pending_count() == 0

    def pending_count(self, exclude: Sequence[int] = ()) -> int:
        return repo.count_pending(self.conn, exclude)

    def fetch_next(self, exclude: Sequence[int] = ()) -> Command:
        """Oldest pending command. Not a claim: unsafe with concurrent workers."""
        record = repo.first_pending(self.conn, exclude)
        if record is None:
            raise EmptyQueue("No pending commands")
        return self._restore(record)

    def mark_complete(self, command: Command) -> bool:
        with self.conn:
            flipped = self._complete(command)
        return flipped

    def complete_with(self, command: Command, follow_ups: Iterable[Command]) -> List[int]:
        """Enqueue follow-ups and complete ``command`` atomically."""
        follow_ups = list(follow_ups)
        with self.conn:
            ids = [self._insert(c) for c in follow_ups]
            self._complete(command)
        for c, record_id in zip(follow_ups, ids):
            c.id = record_id
        return ids

    # ---------- multi-worker support ----------
    def claim_next(self, worker_name: str, exclude: Sequence[int] = ()) -> Optional[Command]:
        record = repo.claim_one(self.conn, worker_name, exclude)
        if record is None:
            return None
        try:
            return self._restore(record)
        except Exception:
            repo.release(self.conn, record.id)
            raise

    def release(self, command: Command):
        repo.release(self.conn, command.id)

    def release_stale_claims(self) -> int:
        return repo.release_all_claims(self.conn)

    def record_failure(self, record_id: int, error: str):
        repo.record_failure(self.conn, record_id, error)

    # ---------- inspection ----------
    def get(self, record_id: int) -> Optional[QueueRecord]:
        return repo.get_record(self.conn, record_id)

    def counts(self) -> Dict[str, int]:
        return repo.counts(self.conn)

    def list_records(self, status: Optional[int] = None, limit: Optional[int] = None) -> List[QueueRecord]:
        return repo.list_records(self.conn, status=status, limit=limit)

    def prune_completed(self, older_than_seconds: int) -> int:
        return repo.prune_completed(self.conn, older_than_seconds)

    # ---------- internals ----------
    def _insert(self, command: Command) -> int:
        if command.id is not None:
            raise ValueError(f"Command already persisted with id {command.id}")
        return repo.insert_record(self.conn, kind=command.kind, payload=encode_command(command))

    def _complete(self, command: Command) -> bool:
        if command.id is None:
            raise UnknownIdentity(None)
        if repo.complete(self.conn, command.id):
            command.status = COMPLETED
            return True
        record = repo.get_record(self.conn, command.id)
        if record is None:
            raise UnknownIdentity(command.id)
        command.status = record.status
        return False

    def _restore(self, record: QueueRecord) -> Command:
        command = decode_command(record.payload, record_id=record.id)
        command.status = record.status
        return command
