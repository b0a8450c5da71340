"""Diagnosis record storage: in-memory and SQLite implementations."""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Collection
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from synapse_agent.agent.schema import ReasoningResult
from synapse_agent.types import DiagnosisStatus


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True, slots=True)
class DiagnosisRecord:
    """A stored diagnosis; status changes only through the lifecycle."""

    id: str
    result: ReasoningResult
    status: DiagnosisStatus
    created_at: str
    patient_id: str | None = None
    reviewer: str | None = None
    reviewed_at: str | None = None


class DiagnosisStore(Protocol):
    """Minimal storage contract used by the lifecycle and case-history lookup."""

    def put(self, record: DiagnosisRecord) -> None:
        """Insert a new record; existing ids are rejected."""

    def get(self, record_id: str) -> DiagnosisRecord | None:
        """Fetch one record."""

    def update_status(
        self,
        record_id: str,
        status: DiagnosisStatus,
        reviewer: str | None,
        *,
        only_if_in: Collection[DiagnosisStatus] | None = None,
    ) -> bool:
        """Atomically set status and reviewer; False when nothing was updated."""

    def list_by_patient(self, patient_id: str) -> list[DiagnosisRecord]:
        """Records for a patient, newest first."""

    def search(
        self,
        text: str,
        *,
        statuses: Collection[DiagnosisStatus] | None = None,
        limit: int = 3,
    ) -> list[DiagnosisRecord]:
        """Records whose primary suggestion contains `text` (case-insensitive)."""

    def stats(self) -> dict[str, object]:
        """Aggregate counts."""


class InMemoryDiagnosisStore:
    """Thread-safe store used for tests and local prototyping."""

    def __init__(self) -> None:
        self._records: dict[str, DiagnosisRecord] = {}
        self._lock = threading.Lock()

    def put(self, record: DiagnosisRecord) -> None:
        with self._lock:
            if record.id in self._records:
                raise ValueError(f"Diagnosis already stored: {record.id}")
            self._records[record.id] = record

    def get(self, record_id: str) -> DiagnosisRecord | None:
        return self._records.get(record_id)

    def update_status(
        self,
        record_id: str,
        status: DiagnosisStatus,
        reviewer: str | None,
        *,
        only_if_in: Collection[DiagnosisStatus] | None = None,
    ) -> bool:
        with self._lock:
            current = self._records.get(record_id)
            if current is None:
                return False
            if only_if_in is not None and current.status not in only_if_in:
                return False
            self._records[record_id] = replace(
                current,
                status=status,
                reviewer=reviewer or current.reviewer,
                reviewed_at=utc_now(),
            )
            return True

    def list_by_patient(self, patient_id: str) -> list[DiagnosisRecord]:
        records = [r for r in self._records.values() if r.patient_id == patient_id]
        return sorted(records, key=lambda r: r.created_at, reverse=True)

    def search(
        self,
        text: str,
        *,
        statuses: Collection[DiagnosisStatus] | None = None,
        limit: int = 3,
    ) -> list[DiagnosisRecord]:
        needle = text.lower()
        hits = [
            record
            for record in self._records.values()
            if needle in record.result.primary_suggestion.lower()
            and (statuses is None or record.status in statuses)
        ]
        return sorted(hits, key=lambda r: r.created_at, reverse=True)[:limit]

    def stats(self) -> dict[str, object]:
        by_status = {status.value: 0 for status in DiagnosisStatus}
        for record in list(self._records.values()):
            by_status[record.status.value] += 1
        return {"total": len(self._records), "by_status": by_status}


class SqliteDiagnosisStore:
    """SQLite-backed store; the result is kept as JSON."""

    def __init__(self, sqlite_path: str | Path = "synapse_agent.db") -> None:
        self._db_file = Path(sqlite_path)
        _ensure_diagnosis_table(self._db_file)

    def put(self, record: DiagnosisRecord) -> None:
        try:
            with sqlite3.connect(self._db_file) as conn:
                conn.execute(
                    "INSERT INTO diagnoses(id, patient_id, status, reviewer, created_at, "
                    "reviewed_at, primary_suggestion, result_json) VALUES(?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        record.id,
                        record.patient_id,
                        record.status.value,
                        record.reviewer,
                        record.created_at,
                        record.reviewed_at,
                        record.result.primary_suggestion,
                        record.result.model_dump_json(),
                    ),
                )
                conn.commit()
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"Diagnosis already stored: {record.id}") from exc

    def get(self, record_id: str) -> DiagnosisRecord | None:
        with sqlite3.connect(self._db_file) as conn:
            cur = conn.execute(f"SELECT {_COLUMNS} FROM diagnoses WHERE id = ?", (record_id,))
            row = cur.fetchone()
        return _row_to_record(row) if row else None

    def update_status(
        self,
        record_id: str,
        status: DiagnosisStatus,
        reviewer: str | None,
        *,
        only_if_in: Collection[DiagnosisStatus] | None = None,
    ) -> bool:
        query = (
            "UPDATE diagnoses SET status = ?, reviewer = COALESCE(?, reviewer), "
            "reviewed_at = ? WHERE id = ?"
        )
        params: list[object] = [status.value, reviewer, utc_now(), record_id]
        if only_if_in is not None:
            allowed = [s.value for s in only_if_in]
            query += f" AND status IN ({', '.join('?' for _ in allowed)})"
            params.extend(allowed)
        with sqlite3.connect(self._db_file) as conn:
            cur = conn.execute(query, params)
            conn.commit()
            return cur.rowcount > 0

    def list_by_patient(self, patient_id: str) -> list[DiagnosisRecord]:
        with sqlite3.connect(self._db_file) as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM diagnoses WHERE patient_id = ? ORDER BY created_at DESC",
                (patient_id,),
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def search(
        self,
        text: str,
        *,
        statuses: Collection[DiagnosisStatus] | None = None,
        limit: int = 3,
    ) -> list[DiagnosisRecord]:
        query = (
            f"SELECT {_COLUMNS} FROM diagnoses"
            " WHERE lower(primary_suggestion) LIKE ? ESCAPE '\\'"
        )
        params: list[object] = [f"%{_escape_like(text.lower())}%"]
        if statuses is not None:
            values = [s.value for s in statuses]
            query += f" AND status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with sqlite3.connect(self._db_file) as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_record(row) for row in rows]

    def stats(self) -> dict[str, object]:
        by_status = {status.value: 0 for status in DiagnosisStatus}
        with sqlite3.connect(self._db_file) as conn:
            rows = conn.execute("SELECT status, COUNT(*) FROM diagnoses GROUP BY status").fetchall()
        for status, count in rows:
            by_status[status] = count
        return {"total": sum(by_status.values()), "by_status": by_status}


_COLUMNS = "id, patient_id, status, reviewer, created_at, reviewed_at, result_json"


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _row_to_record(row: tuple) -> DiagnosisRecord:
    record_id, patient_id, status, reviewer, created_at, reviewed_at, result_json = row
    return DiagnosisRecord(
        id=record_id,
        result=ReasoningResult.model_validate_json(result_json),
        status=DiagnosisStatus(status),
        created_at=created_at,
        patient_id=patient_id,
        reviewer=reviewer,
        reviewed_at=reviewed_at,
    )


def _ensure_diagnosis_table(db_path: Path) -> None:
    with sqlite3.connect(db_path) as conn:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS diagnoses ("
            "id TEXT PRIMARY KEY, patient_id TEXT, status TEXT NOT NULL, reviewer TEXT, "
            "created_at TEXT NOT NULL, reviewed_at TEXT, primary_suggestion TEXT NOT NULL, "
            "result_json TEXT NOT NULL)"
        )
        conn.commit()
