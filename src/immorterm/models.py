"""
Data model for the durable session record file.

SessionRecord describes one terminal the user has opened and not discarded;
ProjectState is the root object of the JSON file. Field names are snake_case
in Python and camelCase on disk.
"""

from dataclasses import dataclass, field
from typing import Any

from .naming import (
    DEFAULT_NAMING_TEMPLATE,
    external_session_name,
    naming_class,
)

SCHEMA_VERSION = 1


@dataclass
class SessionRecord:
    """
    A persistent terminal session.

    The external (multiplexer) session name is not stored independently: it
    is always computed from the namespace and the id.
    """

    id: str
    display_name: str
    namespace: str
    created_at: float
    last_attached_at: float
    correlation_id: str | None = None
    presentation: list[str] | None = None

    @property
    def external_session_name(self) -> str:
        return external_session_name(self.namespace, self.id)

    def naming_class(self, template: str = DEFAULT_NAMING_TEMPLATE) -> str:
        """Return "modifiable" or "pinned" for the current display name."""
        return naming_class(self.display_name, template)

    def touch(self, now: float) -> None:
        """Record a (re)attachment; the timestamp never moves backwards."""
        self.last_attached_at = max(self.last_attached_at, now)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the on-disk representation."""
        data: dict[str, Any] = {
            "id": self.id,
            "displayName": self.display_name,
            "externalSessionName": self.external_session_name,
            "createdAt": self.created_at,
            "lastAttachedAt": self.last_attached_at,
        }
        if self.correlation_id is not None:
            data["correlationId"] = self.correlation_id
        if self.presentation:
            data["presentation"] = list(self.presentation)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], namespace: str) -> "SessionRecord":
        """
        Deserialize from the on-disk representation.

        Raises:
            KeyError, TypeError, ValueError: if required fields are missing
                or have the wrong type.
        """
        record_id = data["id"]
        if not isinstance(record_id, str):
            raise TypeError(f"Record id must be a string, got {record_id!r}")

        created_at = float(data.get("createdAt", 0.0))
        presentation = data.get("presentation")
        if presentation is not None and not isinstance(presentation, list):
            raise TypeError("presentation must be a list of commands")

        return cls(
            id=record_id,
            display_name=str(data.get("displayName") or record_id),
            namespace=namespace,
            created_at=created_at,
            last_attached_at=max(float(data.get("lastAttachedAt", created_at)), created_at),
            correlation_id=data.get("correlationId"),
            presentation=[str(c) for c in presentation] if presentation else None,
        )


@dataclass
class ProjectState:
    """Root object of the durable record file."""

    namespace: str
    schema_version: int = SCHEMA_VERSION
    records: list[SessionRecord] = field(default_factory=list)
    last_reconciled_at: float | None = None

    def get(self, record_id: str) -> SessionRecord | None:
        for record in self.records:
            if record.id == record_id:
                return record
        return None

    def upsert(self, record: SessionRecord) -> None:
        """Insert or replace a record by id."""
        for index, existing in enumerate(self.records):
            if existing.id == record.id:
                self.records[index] = record
                return
        self.records.append(record)

    def remove(self, record_id: str) -> bool:
        before = len(self.records)
        self.records = [r for r in self.records if r.id != record_id]
        return len(self.records) < before

    def to_dict(self) -> dict[str, Any]:
        return {
            "schemaVersion": self.schema_version,
            "namespace": self.namespace,
            "records": [r.to_dict() for r in self.records],
            "lastReconciledAt": self.last_reconciled_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], default_namespace: str) -> "ProjectState":
        """
        Deserialize the file contents.

        Records with the same id keep the last occurrence, so ``records``
        stays unique by id even if the file was hand-edited.
        """
        namespace = data.get("namespace") or default_namespace
        if not isinstance(namespace, str):
            raise TypeError("namespace must be a string")

        raw_records = data.get("records", [])
        if not isinstance(raw_records, list):
            raise TypeError("records must be a list")

        state = cls(
            namespace=namespace,
            schema_version=int(data.get("schemaVersion", 0)),
            last_reconciled_at=data.get("lastReconciledAt"),
        )
        for raw in raw_records:
            state.upsert(SessionRecord.from_dict(raw, namespace))
        return state

    def copy(self) -> "ProjectState":
        """Snapshot with independent record objects."""
        return ProjectState(
            namespace=self.namespace,
            schema_version=self.schema_version,
            records=[
                SessionRecord(
                    id=r.id,
                    display_name=r.display_name,
                    namespace=r.namespace,
                    created_at=r.created_at,
                    last_attached_at=r.last_attached_at,
                    correlation_id=r.correlation_id,
                    presentation=list(r.presentation) if r.presentation else None,
                )
                for r in self.records
            ],
            last_reconciled_at=self.last_reconciled_at,
        )
