"""Diagnosis review lifecycle: pending -> reviewed -> approved / rejected."""

from __future__ import annotations

import logging
import uuid

from synapse_agent.agent.schema import ReasoningResult
from synapse_agent.lifecycle.store import DiagnosisRecord, DiagnosisStore, utc_now
from synapse_agent.types import DiagnosisStatus

logger = logging.getLogger(__name__)

_OPEN_STATES = frozenset({DiagnosisStatus.PENDING, DiagnosisStatus.REVIEWED})


class DiagnosisNotFoundError(KeyError):
    pass


class InvalidStatusError(ValueError):
    pass


class TerminalStatusError(ValueError):
    """The record is already approved or rejected."""


def parse_status(value: str | DiagnosisStatus) -> DiagnosisStatus:
    if isinstance(value, DiagnosisStatus):
        return value
    try:
        return DiagnosisStatus(value)
    except ValueError as exc:
        allowed = ", ".join(status.value for status in DiagnosisStatus)
        raise InvalidStatusError(f"Invalid status {value!r}; expected one of: {allowed}") from exc


class DiagnosisLifecycle:
    def __init__(self, store: DiagnosisStore) -> None:
        self.store = store

    def create(self, result: ReasoningResult, *, patient_id: str | None = None) -> DiagnosisRecord:
        record = DiagnosisRecord(
            id=str(uuid.uuid4()),
            result=result,
            status=DiagnosisStatus.PENDING,
            created_at=utc_now(),
            patient_id=patient_id,
        )
        self.store.put(record)
        logger.info("Stored diagnosis %s (%s)", record.id, result.primary_suggestion)
        return record

    def get(self, record_id: str) -> DiagnosisRecord:
        record = self.store.get(record_id)
        if record is None:
            raise DiagnosisNotFoundError(f"Diagnosis not found: {record_id}")
        return record

    def set_status(
        self, record_id: str, new_status: str | DiagnosisStatus, reviewer: str | None = None
    ) -> DiagnosisRecord:
        """Move a record to `new_status`; terminal states block further changes."""
        status = parse_status(new_status)
        current = self.get(record_id)
        if current.status.is_terminal:
            raise TerminalStatusError(
                f"Diagnosis {record_id} is already {current.status.value}"
            )

        if not self.store.update_status(record_id, status, reviewer, only_if_in=_OPEN_STATES):
            # Lost a race with a concurrent transition (or a concurrent delete).
            latest = self.get(record_id)
            raise TerminalStatusError(f"Diagnosis {record_id} is already {latest.status.value}")

        logger.info(
            "Diagnosis %s: %s -> %s (reviewer=%s)",
            record_id,
            current.status.value,
            status.value,
            reviewer,
        )
        return self.get(record_id)

    def list_by_patient(self, patient_id: str) -> list[DiagnosisRecord]:
        return self.store.list_by_patient(patient_id)

    def stats(self) -> dict[str, object]:
        return self.store.stats()
