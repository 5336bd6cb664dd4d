"""SQLite persistence for cases, case events, approvals, plans, and artifacts."""

from __future__ import annotations

import json
import sqlite3
import uuid
from pathlib import Path
from typing import Any

_WORKFLOW_COLUMNS = ("stage", "status", "retry_count")
_CLASSIFICATION_COLUMNS = ("area", "severity")


class CaseDB:
    """Small SQLite wrapper for the case pipeline tables."""

    def __init__(self, db_path: Path | str = ":memory:") -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._configure_connection()
        self._init_schema()

    def _configure_connection(self) -> None:
        """Apply local-first SQLite settings for durability and concurrent reads."""

        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout=5000")
        self.conn.execute("PRAGMA synchronous=NORMAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self.conn.execute("PRAGMA temp_store=MEMORY")

    def _init_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS cases (
                case_id TEXT PRIMARY KEY,
                org_id TEXT NOT NULL,
                stage TEXT NOT NULL DEFAULT 'intake',
                status TEXT NOT NULL DEFAULT 'open',
                retry_count INTEGER NOT NULL DEFAULT 0,
                max_retries INTEGER NOT NULL DEFAULT 3,
                risk_flags_json TEXT NOT NULL DEFAULT '[]',
                title TEXT NOT NULL DEFAULT '',
                description TEXT NOT NULL DEFAULT '',
                case_type TEXT NOT NULL DEFAULT '',
                severity TEXT NOT NULL DEFAULT '',
                area TEXT NOT NULL DEFAULT '',
                metadata_json TEXT NOT NULL DEFAULT '{}',
                version INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS case_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                case_id TEXT NOT NULL,
                org_id TEXT NOT NULL,
                stage TEXT NOT NULL,
                event_type TEXT NOT NULL,
                actor TEXT NOT NULL DEFAULT 'system',
                summary TEXT NOT NULL DEFAULT '',
                details_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY(case_id) REFERENCES cases(case_id)
            );

            CREATE TABLE IF NOT EXISTS approvals (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                case_id TEXT NOT NULL,
                org_id TEXT NOT NULL,
                stage TEXT NOT NULL,
                gate_type TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                decided_by TEXT NOT NULL DEFAULT '',
                decided_at TEXT,
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY(case_id) REFERENCES cases(case_id)
            );

            CREATE TABLE IF NOT EXISTS plans (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                case_id TEXT NOT NULL,
                org_id TEXT NOT NULL,
                version INTEGER NOT NULL,
                implementation_json TEXT NOT NULL DEFAULT '{}',
                risk_assessment_json TEXT NOT NULL DEFAULT '{}',
                review_status TEXT NOT NULL DEFAULT 'pending',
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(case_id, version),
                FOREIGN KEY(case_id) REFERENCES cases(case_id)
            );

            CREATE TABLE IF NOT EXISTS artifacts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                case_id TEXT NOT NULL,
                org_id TEXT NOT NULL,
                artifact_type TEXT NOT NULL,
                content_json TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY(case_id) REFERENCES cases(case_id)
            );
            """
        )
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_cases_status ON cases(status, stage)"
        )
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_case_events_case ON case_events(case_id, id)"
        )
        self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_approvals_case ON approvals(case_id, status)"
        )
        self.conn.commit()

    def create_case(
        self,
        *,
        org_id: str,
        title: str,
        case_type: str,
        case_id: str = "",
        description: str = "",
        severity: str = "",
        area: str = "",
        risk_flags: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        max_retries: int = 3,
    ) -> dict[str, Any]:
        case_id = case_id.strip() or str(uuid.uuid4())
        self.conn.execute(
            """
            INSERT INTO cases (
              case_id, org_id, stage, status, retry_count, max_retries, risk_flags_json,
              title, description, case_type, severity, area, metadata_json
            )
            VALUES (?, ?, 'intake', 'open', 0, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                case_id,
                org_id,
                max(0, int(max_retries)),
                json.dumps(list(risk_flags or [])),
                title,
                description,
                case_type,
                severity,
                area,
                json.dumps(metadata or {}, sort_keys=True),
            ),
        )
        self.conn.commit()
        return self.get_case(case_id) or {}

    def get_case(self, case_id: str) -> dict[str, Any] | None:
        row = self.conn.execute("SELECT * FROM cases WHERE case_id = ?", (case_id,)).fetchone()
        if row is None:
            return None
        return self._case_from_row(row)

    def _case_from_row(self, row: sqlite3.Row) -> dict[str, Any]:
        return {
            "case_id": str(row["case_id"]),
            "org_id": str(row["org_id"]),
            "stage": str(row["stage"]),
            "status": str(row["status"]),
            "retry_count": int(row["retry_count"] or 0),
            "max_retries": int(row["max_retries"] or 0),
            "risk_flags": json.loads(row["risk_flags_json"] or "[]"),
            "title": str(row["title"] or ""),
            "description": str(row["description"] or ""),
            "case_type": str(row["case_type"] or ""),
            "severity": str(row["severity"] or ""),
            "area": str(row["area"] or ""),
            "metadata": json.loads(row["metadata_json"] or "{}"),
            "version": int(row["version"] or 0),
            "created_at": str(row["created_at"]),
            "updated_at": str(row["updated_at"]),
        }

    def list_cases(
        self, statuses: list[str] | None = None, org_id: str = ""
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if statuses:
            clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(statuses)
        if org_id:
            clauses.append("org_id = ?")
            params.append(org_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.conn.execute(
            f"SELECT * FROM cases {where} ORDER BY created_at ASC, case_id ASC", params
        ).fetchall()
        return [self._case_from_row(row) for row in rows]

    def update_case_workflow(
        self,
        case_id: str,
        changes: dict[str, Any],
        expected_version: int | None = None,
    ) -> bool:
        """Apply stage/status/retry changes and bump the version in one statement.

        Returns False when the row is missing or ``expected_version`` no longer matches.
        """

        unknown = set(changes) - set(_WORKFLOW_COLUMNS)
        if unknown:
            raise ValueError(f"invalid_workflow_columns:{','.join(sorted(unknown))}")
        assignments = [f"{column} = ?" for column in _WORKFLOW_COLUMNS if column in changes]
        params: list[Any] = [changes[column] for column in _WORKFLOW_COLUMNS if column in changes]
        assignments.append("version = version + 1")
        assignments.append("updated_at = CURRENT_TIMESTAMP")
        sql = f"UPDATE cases SET {', '.join(assignments)} WHERE case_id = ?"
        params.append(case_id)
        if expected_version is not None:
            sql += " AND version = ?"
            params.append(int(expected_version))
        cur = self.conn.execute(sql, params)
        self.conn.commit()
        return cur.rowcount == 1

    def update_case_classification(self, case_id: str, changes: dict[str, Any]) -> bool:
        assignments: list[str] = []
        params: list[Any] = []
        for column in _CLASSIFICATION_COLUMNS:
            if column in changes:
                assignments.append(f"{column} = ?")
                params.append(str(changes[column]))
        if "risk_flags" in changes:
            assignments.append("risk_flags_json = ?")
            params.append(json.dumps([str(flag) for flag in changes["risk_flags"]]))
        if "metadata" in changes:
            assignments.append("metadata_json = ?")
            params.append(json.dumps(changes["metadata"], sort_keys=True))
        if not assignments:
            return False
        assignments.append("updated_at = CURRENT_TIMESTAMP")
        params.append(case_id)
        cur = self.conn.execute(
            f"UPDATE cases SET {', '.join(assignments)} WHERE case_id = ?", params
        )
        self.conn.commit()
        return cur.rowcount == 1

    def append_case_event(
        self,
        *,
        case_id: str,
        org_id: str,
        stage: str,
        event_type: str,
        summary: str = "",
        actor: str = "system",
        details: dict[str, Any] | None = None,
    ) -> int:
        cur = self.conn.execute(
            """
            INSERT INTO case_events (case_id, org_id, stage, event_type, actor, summary, details_json)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                case_id,
                org_id,
                stage,
                event_type,
                actor,
                summary,
                json.dumps(details or {}, sort_keys=True),
            ),
        )
        self.conn.commit()
        return int(cur.lastrowid)

    def list_case_events(
        self, case_id: str, event_type: str | None = None
    ) -> list[dict[str, Any]]:
        if event_type:
            rows = self.conn.execute(
                "SELECT * FROM case_events WHERE case_id = ? AND event_type = ? ORDER BY id ASC",
                (case_id, event_type),
            )
        else:
            rows = self.conn.execute(
                "SELECT * FROM case_events WHERE case_id = ? ORDER BY id ASC", (case_id,)
            )
        return [
            {
                "event_id": int(row["id"]),
                "case_id": str(row["case_id"]),
                "org_id": str(row["org_id"]),
                "stage": str(row["stage"]),
                "event_type": str(row["event_type"]),
                "actor": str(row["actor"]),
                "summary": str(row["summary"] or ""),
                "details": json.loads(row["details_json"] or "{}"),
                "created_at": str(row["created_at"]),
            }
            for row in rows
        ]

    def create_approval(
        self,
        *,
        case_id: str,
        org_id: str,
        stage: str,
        gate_type: str,
        status: str = "pending",
    ) -> int:
        cur = self.conn.execute(
            """
            INSERT INTO approvals (case_id, org_id, stage, gate_type, status)
            VALUES (?, ?, ?, ?, ?)
            """,
            (case_id, org_id, stage, gate_type, status),
        )
        self.conn.commit()
        return int(cur.lastrowid)

    def _approval_from_row(self, row: sqlite3.Row) -> dict[str, Any]:
        return {
            "approval_id": int(row["id"]),
            "case_id": str(row["case_id"]),
            "org_id": str(row["org_id"]),
            "stage": str(row["stage"]),
            "gate_type": str(row["gate_type"]),
            "status": str(row["status"]),
            "decided_by": str(row["decided_by"] or ""),
            "decided_at": str(row["decided_at"] or ""),
            "created_at": str(row["created_at"]),
        }

    def list_approvals(self, case_id: str, status: str | None = None) -> list[dict[str, Any]]:
        if status:
            rows = self.conn.execute(
                "SELECT * FROM approvals WHERE case_id = ? AND status = ? ORDER BY id ASC",
                (case_id, status),
            )
        else:
            rows = self.conn.execute(
                "SELECT * FROM approvals WHERE case_id = ? ORDER BY id ASC", (case_id,)
            )
        return [self._approval_from_row(row) for row in rows]

    def decide_approvals(self, case_id: str, status: str, decided_by: str) -> int:
        """Resolve every pending approval on the case; returns the number of rows changed."""

        if status not in {"approved", "rejected"}:
            raise ValueError("invalid_approval_status")
        cur = self.conn.execute(
            """
            UPDATE approvals
            SET status = ?, decided_by = ?, decided_at = CURRENT_TIMESTAMP
            WHERE case_id = ? AND status = 'pending'
            """,
            (status, decided_by, case_id),
        )
        self.conn.commit()
        return int(cur.rowcount)

    def insert_plan(
        self,
        *,
        case_id: str,
        org_id: str,
        implementation: dict[str, Any],
        risk_assessment: dict[str, Any] | None = None,
    ) -> int:
        row = self.conn.execute(
            "SELECT COALESCE(MAX(version), 0) FROM plans WHERE case_id = ?", (case_id,)
        ).fetchone()
        version = int(row[0]) + 1
        self.conn.execute(
            """
            INSERT INTO plans (case_id, org_id, version, implementation_json, risk_assessment_json)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                case_id,
                org_id,
                version,
                json.dumps(implementation, sort_keys=True),
                json.dumps(risk_assessment or {}, sort_keys=True),
            ),
        )
        self.conn.commit()
        return version

    def list_plans(self, case_id: str) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT * FROM plans WHERE case_id = ? ORDER BY version DESC", (case_id,)
        ).fetchall()
        return [
            {
                "case_id": str(row["case_id"]),
                "org_id": str(row["org_id"]),
                "version": int(row["version"]),
                "implementation": json.loads(row["implementation_json"] or "{}"),
                "risk_assessment": json.loads(row["risk_assessment_json"] or "{}"),
                "review_status": str(row["review_status"]),
                "created_at": str(row["created_at"]),
            }
            for row in rows
        ]

    def insert_artifact(
        self, *, case_id: str, org_id: str, artifact_type: str, content: dict[str, Any]
    ) -> int:
        cur = self.conn.execute(
            """
            INSERT INTO artifacts (case_id, org_id, artifact_type, content_json)
            VALUES (?, ?, ?, ?)
            """,
            (case_id, org_id, artifact_type, json.dumps(content, sort_keys=True)),
        )
        self.conn.commit()
        return int(cur.lastrowid)

    def list_artifacts(self, case_id: str) -> list[dict[str, Any]]:
        rows = self.conn.execute(
            "SELECT * FROM artifacts WHERE case_id = ? ORDER BY id ASC", (case_id,)
        ).fetchall()
        return [
            {
                "artifact_id": int(row["id"]),
                "case_id": str(row["case_id"]),
                "org_id": str(row["org_id"]),
                "artifact_type": str(row["artifact_type"]),
                "content": json.loads(row["content_json"] or "{}"),
                "created_at": str(row["created_at"]),
            }
            for row in rows
        ]

    def close(self) -> None:
        self.conn.close()
