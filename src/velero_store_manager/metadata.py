from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
import sqlite3

from .models import WORKLOAD_KIND_APP, PendingSnapshotRequest, ScheduleEntry, Workload


class SnapshotScheduleStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def initialize(self) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS workloads (
                    id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    snapshot_schedule TEXT NOT NULL DEFAULT '',
                    snapshot_ttl TEXT NOT NULL DEFAULT '',
                    schedule_created_at TEXT
                )
                """
            )
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS pending_snapshots (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    scheduled_at TEXT NOT NULL
                )
                """
            )
            connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_pending_snapshots_owner
                ON pending_snapshots(owner_id, scheduled_at)
                """
            )
            connection.commit()

    def upsert_workload(self, workload_id: str, kind: str = WORKLOAD_KIND_APP) -> Workload:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                INSERT INTO workloads (id, kind) VALUES (?, ?)
                ON CONFLICT(id) DO UPDATE SET kind = excluded.kind
                """,
                (workload_id, kind),
            )
            row = connection.execute(
                "SELECT id, kind, snapshot_schedule, snapshot_ttl FROM workloads WHERE id = ?",
                (workload_id,),
            ).fetchone()
            connection.commit()

        return Workload(id=row[0], kind=row[1], snapshot_schedule=row[2], snapshot_ttl=row[3])

    def get_workload(self, workload_id: str) -> Workload | None:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                "SELECT id, kind, snapshot_schedule, snapshot_ttl FROM workloads WHERE id = ?",
                (workload_id,),
            )
            row = cursor.fetchone()

        if row is None:
            return None
        return Workload(id=row[0], kind=row[1], snapshot_schedule=row[2], snapshot_ttl=row[3])

    def get_schedule(self, workload_id: str) -> ScheduleEntry | None:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                SELECT id, snapshot_schedule, snapshot_ttl, schedule_created_at
                FROM workloads
                WHERE id = ? AND snapshot_schedule != ''
                """,
                (workload_id,),
            )
            row = cursor.fetchone()

        if row is None:
            return None
        return ScheduleEntry(
            owner_id=row[0],
            cron_expression=row[1],
            retention=row[2],
            created_at=datetime.fromisoformat(row[3]),
        )

    def set_snapshot_schedule(self, workload_id: str, cron_expression: str) -> None:
        created_at = datetime.now(timezone.utc).isoformat() if cron_expression else None
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                "UPDATE workloads SET snapshot_schedule = ?, schedule_created_at = ? WHERE id = ?",
                (cron_expression, created_at, workload_id),
            )
            connection.commit()

    def set_snapshot_ttl(self, workload_id: str, ttl: str) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute("UPDATE workloads SET snapshot_ttl = ? WHERE id = ?", (ttl, workload_id))
            connection.commit()

    def create_pending_snapshot(self, request_id: str, owner_id: str, scheduled_at: datetime) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                "INSERT INTO pending_snapshots (id, owner_id, scheduled_at) VALUES (?, ?, ?)",
                (request_id, owner_id, scheduled_at.isoformat()),
            )
            connection.commit()

    def delete_pending_snapshots(self, owner_id: str) -> int:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute("DELETE FROM pending_snapshots WHERE owner_id = ?", (owner_id,))
            connection.commit()

        return int(cursor.rowcount)

    def list_pending_snapshots(self, owner_id: str | None = None) -> list[PendingSnapshotRequest]:
        query = "SELECT id, owner_id, scheduled_at FROM pending_snapshots"
        params: tuple[str, ...] = ()
        if owner_id is not None:
            query += " WHERE owner_id = ?"
            params = (owner_id,)
        query += " ORDER BY scheduled_at ASC, id ASC"

        with sqlite3.connect(self.db_path) as connection:
            rows = connection.execute(query, params).fetchall()

        return [
            PendingSnapshotRequest(id=row[0], owner_id=row[1], scheduled_at=datetime.fromisoformat(row[2]))
            for row in rows
        ]
