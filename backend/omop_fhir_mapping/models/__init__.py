"""SQLAlchemy ORM models for the OMOP FHIR Observation mapping engine.

Models:
- Person, Provider, VisitOccurrence (linked entities)
- Measurement, Observation (the two storage partitions)
- Concept, FhirOmopVocabularyMap, FhirIdMap (vocabulary and identity)
"""

from omop_fhir_mapping.core.database import Base
from omop_fhir_mapping.models.omop import (
    Measurement,
    Observation,
    Person,
    Provider,
    VisitOccurrence,
)
from omop_fhir_mapping.models.vocabulary import Concept, FhirIdMap, FhirOmopVocabularyMap

__all__ = [
    "Base",
    "Person",
    "Provider",
    "VisitOccurrence",
    "Measurement",
    "Observation",
    "Concept",
    "FhirOmopVocabularyMap",
    "FhirIdMap",
]
