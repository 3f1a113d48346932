"""OMOP row -> FHIR Observation reconstruction.

Inverse of the classifier. A systolic row becomes a blood pressure
composite: its diastolic sibling (same person, date and time) is looked
up and, when present, added as the second component. A systolic row with
no sibling still yields a composite with a single component.

Reconstruction never raises for vocabulary misses; unmapped concepts come
back as text.
"""

import logging

from omop_fhir_mapping.core.config import Settings, settings as default_settings
from omop_fhir_mapping.schemas.base import Partition, ResourceKind
from omop_fhir_mapping.schemas.fhir import (
    CodeableConcept,
    Coding,
    Observation,
    ObservationComponent,
    ObservationValue,
    Quantity,
    Reference,
    ReferenceRange,
)
from omop_fhir_mapping.schemas.rows import UNMAPPED_CONCEPT_ID, MappedRow
from omop_fhir_mapping.services.codes import (
    BP_SYSTOLIC_DIASTOLIC_CODE,
    BP_SYSTOLIC_DIASTOLIC_DISPLAY,
    DIASTOLIC_CONCEPT_ID,
    DIASTOLIC_DISPLAY,
    DIASTOLIC_LOINC_CODE,
    SYSTOLIC_CONCEPT_ID,
    SYSTOLIC_DISPLAY,
    SYSTOLIC_LOINC_CODE,
    TYPE_CONCEPT_TO_CATEGORY,
)
from omop_fhir_mapping.services.concepts import ConceptInfo, ConceptLookup
from omop_fhir_mapping.services.identity import IdentityMapper
from omop_fhir_mapping.services.storage import ObservationStore
from omop_fhir_mapping.services.vocabulary_map import VocabularyResolver

logger = logging.getLogger(__name__)


class ObservationReconstructor:
    """Build FHIR Observations from stored rows.

    Usage:
        reconstructor = ObservationReconstructor(store, concepts, resolver, identity)
        observation = reconstructor.build("17", row)
    """

    def __init__(
        self,
        store: ObservationStore,
        concepts: ConceptLookup,
        resolver: VocabularyResolver,
        identity: IdentityMapper,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._concepts = concepts
        self._resolver = resolver
        self._identity = identity
        self._settings = settings or default_settings

    def build(self, logical_id: str, row: MappedRow) -> Observation:
        """Reconstruct the Observation whose logical id is ``logical_id``."""
        observation = Observation(
            id=logical_id,
            status="final",
            code=CodeableConcept(),
            effectiveDateTime=row.effective,
        )

        if row.partition is Partition.MEASUREMENT and row.concept_id == SYSTOLIC_CONCEPT_ID:
            self._build_blood_pressure(observation, row)
        else:
            observation.code = self._code(row)
            value = self._value(row)
            if isinstance(value, Quantity):
                observation.value_quantity = value
            elif isinstance(value, CodeableConcept):
                observation.value_codeable_concept = value
            else:
                observation.value_string = value
            reference_range = self._range(row)
            if reference_range is not None:
                observation.reference_range = [reference_range]

        observation.subject = Reference.to(
            ResourceKind.PATIENT.value,
            self._identity.to_external(row.person_id, ResourceKind.PATIENT),
            display=row.person_name,
        )
        if row.visit_occurrence_id is not None:
            observation.context = Reference.to(
                ResourceKind.ENCOUNTER.value,
                self._identity.to_external(row.visit_occurrence_id, ResourceKind.ENCOUNTER),
            )
        category = TYPE_CONCEPT_TO_CATEGORY.get(row.type_concept_id)
        if category is not None:
            observation.category = [
                CodeableConcept(
                    coding=[
                        Coding(system=self._settings.observation_category_system, code=category)
                    ]
                )
            ]
        if row.provider_id is not None:
            observation.performer = [
                Reference.to(
                    ResourceKind.PRACTITIONER.value,
                    self._identity.to_external(row.provider_id, ResourceKind.PRACTITIONER),
                    display=row.provider_name or None,
                )
            ]
        if row.effective is None:
            logger.warning(f"Observation/{logical_id} has no readable effective time")
        return observation

    # -------------------------------------------------------------------------
    # Code and value
    # -------------------------------------------------------------------------

    def _coding(self, concept: ConceptInfo) -> Coding:
        return Coding(
            system=self._resolver.resolve_external(concept.vocabulary_id),
            code=concept.concept_code,
            display=concept.concept_name,
        )

    def _code(self, row: MappedRow) -> CodeableConcept:
        if row.concept_id != UNMAPPED_CONCEPT_ID:
            concept = self._concepts.get(row.concept_id)
            if concept is not None:
                return CodeableConcept(coding=[self._coding(concept)])
            logger.debug(f"Concept {row.concept_id} is not in the vocabulary")
        return CodeableConcept(text=row.source_value)

    def _value(self, row: MappedRow) -> ObservationValue | None:
        if row.value_as_number is not None:
            return self._quantity(row)
        if row.value_as_concept_id:
            concept = self._concepts.get(row.value_as_concept_id)
            if concept is not None:
                return CodeableConcept(coding=[self._coding(concept)])
        return row.text_value

    def _quantity(self, row: MappedRow) -> Quantity:
        quantity = Quantity(value=row.value_as_number, unit=row.unit_source_value)
        if row.unit_concept_id:
            unit = self._concepts.get(row.unit_concept_id)
            if unit is not None:
                quantity.unit = row.unit_source_value or unit.concept_name
                quantity.code = unit.concept_code
                quantity.system = self._resolver.resolve_external(unit.vocabulary_id)
        return quantity

    @staticmethod
    def _range(row: MappedRow, applies_to: Coding | None = None) -> ReferenceRange | None:
        if row.range_low is None and row.range_high is None:
            return None
        return ReferenceRange(
            low=Quantity(value=row.range_low) if row.range_low is not None else None,
            high=Quantity(value=row.range_high) if row.range_high is not None else None,
            appliesTo=[CodeableConcept(coding=[applies_to])] if applies_to is not None else [],
        )

    # -------------------------------------------------------------------------
    # Blood pressure
    # -------------------------------------------------------------------------

    def _loinc_system(self) -> str:
        return (
            self._resolver.resolve_external(self._settings.preferred_vocabulary)
            or self._settings.preferred_system_uri
        )

    def _component_coding(self, system: str, concept_id: int, code: str, display: str) -> Coding:
        concept = self._concepts.get(concept_id)
        return Coding(
            system=system,
            code=code,
            display=concept.concept_name if concept is not None else display,
        )

    def _component(self, row: MappedRow, coding: Coding) -> ObservationComponent:
        component = ObservationComponent(code=CodeableConcept(coding=[coding]))
        value = self._value(row)
        if isinstance(value, Quantity):
            component.value_quantity = value
        elif isinstance(value, CodeableConcept):
            component.value_codeable_concept = value
        else:
            component.value_string = value
        return component

    def _build_blood_pressure(self, observation: Observation, systolic: MappedRow) -> None:
        system = self._loinc_system()
        observation.code = CodeableConcept(
            coding=[
                Coding(
                    system=system,
                    code=BP_SYSTOLIC_DIASTOLIC_CODE,
                    display=BP_SYSTOLIC_DIASTOLIC_DISPLAY,
                )
            ]
        )

        pairs = [
            (
                systolic,
                self._component_coding(
                    system, SYSTOLIC_CONCEPT_ID, SYSTOLIC_LOINC_CODE, SYSTOLIC_DISPLAY
                ),
            )
        ]
        diastolic = None
        if systolic.effective is not None:
            diastolic = self._store.find_sibling(
                Partition.MEASUREMENT, DIASTOLIC_CONCEPT_ID, systolic.person_id, systolic.effective
            )
        if diastolic is not None:
            pairs.append(
                (
                    diastolic,
                    self._component_coding(
                        system, DIASTOLIC_CONCEPT_ID, DIASTOLIC_LOINC_CODE, DIASTOLIC_DISPLAY
                    ),
                )
            )

        observation.component = [self._component(row, coding) for row, coding in pairs]
        ranges = [
            self._range(row, Coding(system=coding.system, code=coding.code))
            for row, coding in pairs
        ]
        observation.reference_range = [r for r in ranges if r is not None]
