import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence

from .models import PENDING, COMPLETED, STATUS_NAMES, QueueRecord
from .config import ALLOWED_CONFIG_KEYS, INTEGER_CONFIG_KEYS, NUMERIC_CONFIG_KEYS


def _stamp(moment: Optional[datetime] = None) -> str:
    """Fixed-width UTC text, so stored timestamps compare as strings."""
    moment = moment or datetime.now(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    return {r["key"]: r["value"] for r in cur.fetchall()}


def set_config(conn, key: str, value: str):
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    if key in NUMERIC_CONFIG_KEYS:
        parse, label = (int, "an integer") if key in INTEGER_CONFIG_KEYS else (float, "a number")
        try:
            number = parse(value)
        except ValueError:
            raise ValueError(f"{key} must be {label}.")
        if number < 0:
            raise ValueError(f"{key} must be >= 0.")
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(value)),
        )


# ---------- Commands: insert / select / complete ----------
def _exclusion(exclude: Sequence[int]):
    if not exclude:
        return "", ()
    marks = ",".join("?" for _ in exclude)
    return f" AND id NOT IN ({marks})", tuple(int(i) for i in exclude)


def insert_record(conn, *, kind: str, payload: bytes) -> int:
    """Insert a pending record. Caller owns the transaction."""
    ts = _stamp()
    cur = conn.execute(
        """INSERT INTO commands (payload, status, kind, attempts, created_at, updated_at)
           VALUES (?, ?, ?, 0, ?, ?)""",
        (sqlite3.Binary(payload), PENDING, kind, ts, ts),
    )
    return cur.lastrowid


def count_pending(conn, exclude: Sequence[int] = ()) -> int:
    clause, params = _exclusion(exclude)
    return conn.execute(
        f"SELECT COUNT(1) AS c FROM commands WHERE status=?{clause}",
        (PENDING, *params),
    ).fetchone()["c"]


def first_pending(conn, exclude: Sequence[int] = ()) -> Optional[QueueRecord]:
    clause, params = _exclusion(exclude)
    row = conn.execute(
        f"SELECT * FROM commands WHERE status=?{clause} ORDER BY id ASC LIMIT 1",
        (PENDING, *params),
    ).fetchone()
    return QueueRecord.from_row(row) if row else None


def claim_one(conn, worker_name: str, exclude: Sequence[int] = ()) -> Optional[QueueRecord]:
    clause, params = _exclusion(exclude)
    now = _stamp()
    with conn:
        row = conn.execute(
            f"""SELECT id FROM commands
                WHERE status=? AND claimed_by IS NULL{clause}
                ORDER BY id ASC
                LIMIT 1""",
            (PENDING, *params),
        ).fetchone()
        if not row:
            return None
        record_id = row["id"]
        updated = conn.execute(
            "UPDATE commands SET claimed_by=?, updated_at=? WHERE id=? AND status=? AND claimed_by IS NULL",
            (worker_name, now, record_id, PENDING),
        )
        if updated.rowcount != 1:
            return None
        return QueueRecord.from_row(
            conn.execute("SELECT * FROM commands WHERE id=?", (record_id,)).fetchone()
        )


def get_record(conn, record_id: int) -> Optional[QueueRecord]:
    row = conn.execute("SELECT * FROM commands WHERE id=?", (record_id,)).fetchone()
    return QueueRecord.from_row(row) if row else None


def complete(conn, record_id: int) -> bool:
    """Flip PENDING -> COMPLETED. Caller owns the transaction.

    Returns False when no pending row matched (already completed or unknown).
    """
    res = conn.execute(
        "UPDATE commands SET status=?, updated_at=?, claimed_by=NULL WHERE id=? AND status=?",
        (COMPLETED, _stamp(), record_id, PENDING),
    )
    return res.rowcount == 1


def record_failure(conn, record_id: int, error: str):
    with conn:
        conn.execute(
            """UPDATE commands
               SET attempts=attempts+1, last_error=?, claimed_by=NULL, updated_at=?
               WHERE id=?""",
            (error[:500], _stamp(), record_id),
        )


def release(conn, record_id: int):
    with conn:
        conn.execute(
            "UPDATE commands SET claimed_by=NULL, updated_at=? WHERE id=? AND status=?",
            (_stamp(), record_id, PENDING),
        )


def release_all_claims(conn) -> int:
    with conn:
        res = conn.execute(
            "UPDATE commands SET claimed_by=NULL, updated_at=? WHERE claimed_by IS NOT NULL AND status=?",
            (_stamp(), PENDING),
        )
    return res.rowcount


# ---------- Queries ----------
def list_records(conn, status: Optional[int] = None, limit: Optional[int] = None) -> List[QueueRecord]:
    sql = "SELECT * FROM commands"
    params: tuple = ()
    if status is not None:
        sql += " WHERE status=?"
        params = (status,)
    sql += " ORDER BY id ASC"
    if limit is not None:
        sql += " LIMIT ?"
        params += (int(limit),)
    return [QueueRecord.from_row(r) for r in conn.execute(sql, params).fetchall()]


def counts(conn) -> Dict[str, int]:
    out = {}
    for status, name in STATUS_NAMES.items():
        out[name] = conn.execute(
            "SELECT COUNT(1) AS c FROM commands WHERE status=?",
            (status,),
        ).fetchone()["c"]
    out["failing"] = conn.execute(
        "SELECT COUNT(1) AS c FROM commands WHERE status=? AND attempts > 0",
        (PENDING,),
    ).fetchone()["c"]
    return out


# ---------- Retention ----------
def prune_completed(conn, older_than_seconds: int) -> int:
    if older_than_seconds <= 0:
        raise ValueError("older_than_seconds must be > 0")
    try:
        with conn:
            res = conn.execute(
                "DELETE FROM commands WHERE status=? AND updated_at < ?",
                (COMPLETED, _stamp(datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds))),
            )
        return res.rowcount
    except sqlite3.Error as e:
        raise RuntimeError(f"DB error during prune: {e}")


def kinds(records: Iterable[QueueRecord]) -> Dict[str, int]:
    out: Dict[str, int] = {}
    for r in records:
        out[r.kind] = out.get(r.kind, 0) + 1
    return out
