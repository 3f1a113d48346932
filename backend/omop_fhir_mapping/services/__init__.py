"""Services for the OMOP FHIR Observation mapping engine.

Services implement the mapping between FHIR Observations and OMOP rows:
- VocabularyResolver: FHIR system <-> OMOP vocabulary cross-reference
- IdentityMapper: FHIR logical id <-> signed OMOP id
- PartitionClassifier: FHIR Observation -> measurement/observation row(s)
- ObservationReconstructor: OMOP row(s) -> FHIR Observation
- PredicateCompiler: FHIR search parameters -> storage filter clauses
- ObservationMapper: the engine facade wiring all of the above
"""

from omop_fhir_mapping.services.classifier import (
    ClassifiedEntity,
    PartitionClassifier,
    ResolvedCode,
)
from omop_fhir_mapping.services.concepts import (
    ConceptInfo,
    ConceptLookup,
    DatabaseConceptLookup,
)
from omop_fhir_mapping.services.identity import (
    DatabaseIdentityStore,
    IdentityMapper,
    IdentityStore,
)
from omop_fhir_mapping.services.observation_mapper import ObservationMapper
from omop_fhir_mapping.services.predicates import (
    Clause,
    Comparison,
    DateParam,
    DatePrefix,
    Operator,
    PredicateCompiler,
    Relationship,
    TokenParam,
)
from omop_fhir_mapping.services.reconstructor import ObservationReconstructor
from omop_fhir_mapping.services.storage import DatabaseObservationStore, ObservationStore
from omop_fhir_mapping.services.vocabulary_map import (
    DatabaseVocabularyMapStore,
    VocabularyMapEntry,
    VocabularyMapStore,
    VocabularyResolver,
)

__all__ = [
    # Vocabulary
    "VocabularyMapEntry",
    "VocabularyMapStore",
    "DatabaseVocabularyMapStore",
    "VocabularyResolver",
    "ConceptInfo",
    "ConceptLookup",
    "DatabaseConceptLookup",
    # Identity
    "IdentityStore",
    "DatabaseIdentityStore",
    "IdentityMapper",
    # Storage
    "ObservationStore",
    "DatabaseObservationStore",
    # Predicates
    "Clause",
    "Comparison",
    "DateParam",
    "DatePrefix",
    "Operator",
    "PredicateCompiler",
    "Relationship",
    "TokenParam",
    # Mapping
    "ClassifiedEntity",
    "PartitionClassifier",
    "ResolvedCode",
    "ObservationReconstructor",
    "ObservationMapper",
]
