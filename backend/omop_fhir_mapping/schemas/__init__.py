"""Pydantic schemas and internal data types."""

from omop_fhir_mapping.schemas.base import ConceptDomain, Partition, ResourceKind
from omop_fhir_mapping.schemas.fhir import (
    CodeableConcept,
    Coding,
    Observation,
    ObservationComponent,
    ObservationValue,
    Period,
    Quantity,
    Reference,
    ReferenceRange,
)
from omop_fhir_mapping.schemas.rows import InternalId, MappedRow

__all__ = [
    # Enums
    "ConceptDomain",
    "Partition",
    "ResourceKind",
    # FHIR
    "CodeableConcept",
    "Coding",
    "Observation",
    "ObservationComponent",
    "ObservationValue",
    "Period",
    "Quantity",
    "Reference",
    "ReferenceRange",
    # Rows
    "InternalId",
    "MappedRow",
]
