"""Base enums shared across the mapping engine."""

from enum import Enum


class Partition(str, Enum):
    """Physical storage partition for an observation fact."""

    MEASUREMENT = "measurement"  # Quantitative rows
    OBSERVATION = "observation"  # Categorical/narrative rows


class ResourceKind(str, Enum):
    """FHIR resource types whose identities are mapped to OMOP keys."""

    OBSERVATION = "Observation"
    PATIENT = "Patient"
    ENCOUNTER = "Encounter"
    PRACTITIONER = "Practitioner"


class ConceptDomain(str, Enum):
    """OMOP domain_id values the engine routes on."""

    MEASUREMENT = "Measurement"
    OBSERVATION = "Observation"
