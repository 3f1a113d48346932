"""Core configuration, persistence and error types."""

from omop_fhir_mapping.core.audit import AuditAction, AuditEvent, log_audit, log_data_access
from omop_fhir_mapping.core.config import Settings, settings
from omop_fhir_mapping.core.database import Base, get_sync_engine, init_db, session_scope
from omop_fhir_mapping.core.exceptions import (
    EncounterNotFound,
    IdentityNotFound,
    InconsistentPairing,
    InvalidResource,
    MappingError,
    RangeWithoutValue,
    ResourceNotFound,
    UnmappableCodedValue,
    UnsupportedSearchParameter,
)

__all__ = [
    # Config
    "Settings",
    "settings",
    # Database
    "Base",
    "get_sync_engine",
    "init_db",
    "session_scope",
    # Audit
    "AuditAction",
    "AuditEvent",
    "log_audit",
    "log_data_access",
    # Errors
    "MappingError",
    "InvalidResource",
    "UnmappableCodedValue",
    "IdentityNotFound",
    "EncounterNotFound",
    "InconsistentPairing",
    "RangeWithoutValue",
    "ResourceNotFound",
    "UnsupportedSearchParameter",
]
