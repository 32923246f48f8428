"""SQLite-backed durable storage for plan snapshots and control signals."""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import sqlite3
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, List, Mapping, Optional

from pydantic import ValidationError

from ..errors import PersistenceError
from ..planning.interfaces import ApprovalDecision
from .schema import Plan, PlanSnapshot, utc_now

DEFAULT_DB_PATH = Path("data/planexec.sqlite")
DEFAULT_HISTORY_LIMIT = 50
LOGGER = logging.getLogger(__name__)


def _as_iso(timestamp: datetime) -> str:
    """Serialise a timestamp to a timezone-aware ISO 8601 string."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat()


def _from_iso(value: str) -> datetime:
    """Parse an ISO 8601 timestamp produced by `_as_iso`."""
    return datetime.fromisoformat(value)


class MemoryStore:
    """Durable snapshot store shared by the scheduler and the CLI.

    Every :meth:`save` replaces the plan's current snapshot and appends a
    history row inside a single transaction, so a concurrent reader sees
    either the previous snapshot or the new one and never a partial write.
    """

    @staticmethod
    def _is_writable(path: Path) -> bool:
        parent = path.parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError:
            return False
        if path.exists():
            return os.access(path, os.W_OK)
        return os.access(parent, os.W_OK)

    @staticmethod
    def _fallback_db_path(source: Path) -> Path:
        digest = hashlib.sha1(source.as_posix().encode("utf-8")).hexdigest()[:12]
        fallback_dir = Path(tempfile.gettempdir()) / "planexec" / "db" / digest
        fallback_dir.mkdir(parents=True, exist_ok=True)
        return fallback_dir / source.name

    @classmethod
    def _resolve_db_path(cls, requested: Path) -> Path:
        resolved = requested.resolve()
        if cls._is_writable(resolved):
            return resolved
        fallback = cls._fallback_db_path(resolved)
        if not fallback.exists() and resolved.exists() and os.access(resolved, os.R_OK):
            try:
                shutil.copy2(resolved, fallback)
            except OSError:
                LOGGER.debug("Could not seed fallback database from %s", resolved, exc_info=True)
        if not cls._is_writable(fallback):
            raise PersistenceError(f"Unable to locate writable database path (attempted {requested})")
        return fallback

    def __init__(
        self,
        db_path: Path | str = DEFAULT_DB_PATH,
        *,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        requested_path = Path(db_path)
        self.db_path = self._resolve_db_path(requested_path)
        if self.db_path != requested_path.resolve():
            LOGGER.warning(
                "Database path %s is not writable; using fallback %s",
                requested_path,
                self.db_path,
            )
        self.history_limit = max(history_limit, 1)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = self._open_connection()
        self._bootstrap()

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                try:
                    self._conn.close()
                finally:
                    self._conn = None

    def __enter__(self) -> "MemoryStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _open_connection(self) -> sqlite3.Connection:
        try:
            connection = sqlite3.connect(str(self.db_path), timeout=30.0, check_same_thread=False)
            connection.row_factory = sqlite3.Row
            connection.execute("PRAGMA foreign_keys = ON")
        except sqlite3.Error as error:
            raise PersistenceError(f"Failed to open {self.db_path}: {error}") from error
        return connection

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "MemoryStore":
        paths = config.get("paths") or {}
        db_path = paths.get("db_path")
        if db_path:
            return cls(Path(db_path))

        data_path = paths.get("data") or "data"
        return cls(Path(data_path) / "planexec.sqlite")

    @property
    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise PersistenceError("Store has been closed.")
        return self._conn

    def _bootstrap(self) -> None:
        try:
            self._create_schema()
        except sqlite3.Error as error:
            self.close()
            raise PersistenceError(f"Failed to initialise {self.db_path}: {error}") from error

    def _create_schema(self) -> None:
        self.connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS plans (
                id TEXT PRIMARY KEY,
                goal TEXT NOT NULL,
                version INTEGER NOT NULL,
                status TEXT NOT NULL,
                payload TEXT NOT NULL,
                cancel_requested INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                saved_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                plan_id TEXT NOT NULL,
                version INTEGER NOT NULL,
                status TEXT NOT NULL,
                payload TEXT NOT NULL,
                saved_at TEXT NOT NULL,
                FOREIGN KEY(plan_id) REFERENCES plans(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_snapshots_plan
                ON snapshots(plan_id, id DESC);

            CREATE TABLE IF NOT EXISTS approvals (
                plan_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                approved INTEGER NOT NULL,
                note TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY(plan_id, step_id)
            );
            """
        )
        self.connection.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            connection = self.connection
            try:
                yield connection
                connection.commit()
            except sqlite3.Error as error:
                connection.rollback()
                raise PersistenceError(f"Database write failed: {error}") from error
            except Exception:
                connection.rollback()
                raise

    def _query(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self.connection.execute(sql, params).fetchall()
            except sqlite3.Error as error:
                raise PersistenceError(f"Database read failed: {error}") from error

    # Snapshot operations --------------------------------------------------------------
    def save(self, snapshot: PlanSnapshot) -> None:
        plan = snapshot.plan
        payload = plan.model_dump_json()
        saved_at = _as_iso(snapshot.saved_at)
        with self._transaction() as connection:
            connection.execute(
                """
                INSERT INTO plans (id, goal, version, status, payload, created_at, saved_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    goal = excluded.goal,
                    version = excluded.version,
                    status = excluded.status,
                    payload = excluded.payload,
                    saved_at = excluded.saved_at
                """,
                (
                    snapshot.plan_id,
                    plan.goal,
                    snapshot.version,
                    plan.status.value,
                    payload,
                    _as_iso(plan.created_at),
                    saved_at,
                ),
            )
            connection.execute(
                """
                INSERT INTO snapshots (plan_id, version, status, payload, saved_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (snapshot.plan_id, snapshot.version, plan.status.value, payload, saved_at),
            )
            connection.execute(
                """
                DELETE FROM snapshots
                WHERE plan_id = ? AND id NOT IN (
                    SELECT id FROM snapshots WHERE plan_id = ? ORDER BY id DESC LIMIT ?
                )
                """,
                (snapshot.plan_id, snapshot.plan_id, self.history_limit),
            )

    def load(self, plan_id: str) -> Optional[PlanSnapshot]:
        rows = self._query("SELECT * FROM plans WHERE id = ?", (plan_id,))
        if not rows:
            return None
        row = rows[0]
        return PlanSnapshot(
            plan_id=row["id"],
            version=row["version"],
            plan=self._decode_plan(row["payload"], plan_id),
            saved_at=_from_iso(row["saved_at"]),
        )

    def history(self, plan_id: str, limit: Optional[int] = None) -> List[PlanSnapshot]:
        """Return past snapshots for ``plan_id``, newest first."""
        sql = "SELECT * FROM snapshots WHERE plan_id = ? ORDER BY id DESC"
        params: tuple[Any, ...] = (plan_id,)
        if limit is not None:
            sql += " LIMIT ?"
            params = (plan_id, limit)
        return [
            PlanSnapshot(
                plan_id=row["plan_id"],
                version=row["version"],
                plan=self._decode_plan(row["payload"], plan_id),
                saved_at=_from_iso(row["saved_at"]),
            )
            for row in self._query(sql, params)
        ]

    def list_plans(self) -> List[Plan]:
        rows = self._query("SELECT id, payload FROM plans ORDER BY created_at ASC")
        return [self._decode_plan(row["payload"], row["id"]) for row in rows]

    @staticmethod
    def _decode_plan(payload: str, plan_id: str) -> Plan:
        try:
            return Plan.model_validate_json(payload)
        except ValidationError as error:
            raise PersistenceError(f"Stored snapshot for plan '{plan_id}' is corrupt: {error}") from error

    # Cancellation signals -------------------------------------------------------------
    def request_cancel(self, plan_id: str) -> bool:
        """Flag ``plan_id`` for cancellation; return ``False`` when unknown."""
        with self._transaction() as connection:
            cursor = connection.execute(
                "UPDATE plans SET cancel_requested = 1 WHERE id = ?",
                (plan_id,),
            )
            return cursor.rowcount > 0

    def cancel_requested(self, plan_id: str) -> bool:
        rows = self._query("SELECT cancel_requested FROM plans WHERE id = ?", (plan_id,))
        return bool(rows and rows[0]["cancel_requested"])

    def clear_cancel(self, plan_id: str) -> None:
        with self._transaction() as connection:
            connection.execute("UPDATE plans SET cancel_requested = 0 WHERE id = ?", (plan_id,))

    def clear_approvals(self, plan_id: str) -> int:
        """Drop decisions recorded for an earlier run; return how many were removed."""
        with self._transaction() as connection:
            cursor = connection.execute("DELETE FROM approvals WHERE plan_id = ?", (plan_id,))
            return cursor.rowcount

    # Approval signals -----------------------------------------------------------------
    def record_approval(self, plan_id: str, step_id: str, approved: bool, note: str = "") -> None:
        with self._transaction() as connection:
            connection.execute(
                """
                INSERT INTO approvals (plan_id, step_id, approved, note, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(plan_id, step_id) DO UPDATE SET
                    approved = excluded.approved,
                    note = excluded.note,
                    created_at = excluded.created_at
                """,
                (plan_id, step_id, int(approved), note, _as_iso(utc_now())),
            )

    def pop_approval(self, plan_id: str, step_id: str) -> Optional[ApprovalDecision]:
        """Consume the recorded decision for a step, if any."""
        with self._transaction() as connection:
            row = connection.execute(
                "SELECT approved, note FROM approvals WHERE plan_id = ? AND step_id = ?",
                (plan_id, step_id),
            ).fetchone()
            if row is None:
                return None
            connection.execute(
                "DELETE FROM approvals WHERE plan_id = ? AND step_id = ?",
                (plan_id, step_id),
            )
        return ApprovalDecision(step_id=step_id, approved=bool(row["approved"]), note=row["note"])


__all__ = ["DEFAULT_DB_PATH", "MemoryStore"]
