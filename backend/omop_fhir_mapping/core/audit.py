"""Audit trail for Observation reads and writes.

Each mapper operation emits one ``AuditEvent`` on the ``audit`` logger. The
event travels in the log record's ``audit_event`` extra so a handler can
ship it to an append-only store; the message itself is a one-line summary.
"""

import logging
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

audit_logger = logging.getLogger("audit")


class AuditAction(str, Enum):
    """Mapper operations that leave an audit entry."""

    READ = "read"
    SEARCH = "search"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class AuditOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class AuditEvent(BaseModel):
    """One audited mapper operation."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    action: AuditAction
    resource_type: str
    resource_id: str | None = Field(None, description="Logical id, when one was addressed")
    patient_id: str | None = Field(None, description="Logical id of the subject patient")
    outcome: AuditOutcome = AuditOutcome.SUCCESS
    details: dict | None = None

    @property
    def reference(self) -> str:
        """``Type/id``, or just the type for searches and failed creates."""
        if self.resource_id is None:
            return self.resource_type
        return f"{self.resource_type}/{self.resource_id}"

    def summary(self) -> str:
        parts = [self.action.value, self.reference]
        if self.patient_id is not None:
            parts.append(f"patient={self.patient_id}")
        if self.details and "record_count" in self.details:
            parts.append(f"records={self.details['record_count']}")
        parts.append(f"outcome={self.outcome.value}")
        return "audit " + " ".join(parts)


def emit(event: AuditEvent) -> AuditEvent:
    """Write ``event`` to the audit logger; failures are logged as warnings."""
    level = logging.INFO if event.outcome is AuditOutcome.SUCCESS else logging.WARNING
    audit_logger.log(level, event.summary(), extra={"audit_event": event.model_dump()})
    return event


def log_audit(
    action: AuditAction,
    resource_type: str,
    resource_id: str | None = None,
    patient_id: str | None = None,
    details: dict | None = None,
    success: bool = True,
) -> AuditEvent:
    """Record a write, or any operation that failed."""
    return emit(
        AuditEvent(
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            patient_id=patient_id,
            outcome=AuditOutcome.SUCCESS if success else AuditOutcome.FAILURE,
            details=details,
        )
    )


def log_data_access(
    resource_type: str,
    resource_id: str | None = None,
    patient_id: str | None = None,
    action: AuditAction = AuditAction.READ,
    record_count: int | None = None,
) -> AuditEvent:
    """Record a read or a search.

    Args:
        resource_type: Type of the resources returned
        resource_id: Logical id for a read
        patient_id: Subject of the resource read
        action: READ or SEARCH
        record_count: Number of resources a search returned
    """
    details = {"record_count": record_count} if record_count is not None else None
    return log_audit(action, resource_type, resource_id, patient_id, details)
