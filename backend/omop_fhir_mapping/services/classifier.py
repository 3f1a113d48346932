"""FHIR Observation -> OMOP row classification and construction.

Decides which partition a resource belongs to, resolves its code through
the vocabulary map, and builds the row (or, for blood pressure, the
systolic/diastolic row pair) ready for upsert.

Code precedence:
    1. A coding whose system resolves to the preferred vocabulary wins.
    2. Otherwise the first coding whose system resolves at all.
    3. Otherwise the row is stored against concept 0 with the raw text in
       its source value.

Partition routing:
    Quantity values always go to measurement. Otherwise the chosen
    concept's domain decides; anything not in the Measurement domain goes
    to observation. An update keeps the partition its identity encodes.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any

from omop_fhir_mapping.core.config import Settings, settings as default_settings
from omop_fhir_mapping.core.exceptions import (
    EncounterNotFound,
    InconsistentPairing,
    InvalidResource,
    RangeWithoutValue,
    ResourceNotFound,
    UnmappableCodedValue,
)
from omop_fhir_mapping.schemas.base import ConceptDomain, Partition, ResourceKind
from omop_fhir_mapping.schemas.fhir import (
    CodeableConcept,
    Coding,
    Observation,
    ObservationValue,
    Quantity,
    ReferenceRange,
)
from omop_fhir_mapping.schemas.rows import (
    UNKNOWN_TYPE_CONCEPT_ID,
    UNMAPPED_CONCEPT_ID,
    InternalId,
    MappedRow,
    normalize_instant,
)
from omop_fhir_mapping.services.codes import (
    BP_SYSTOLIC_DIASTOLIC_CODE,
    CATEGORY_TO_TYPE_CONCEPT,
    DIASTOLIC_CONCEPT_ID,
    DIASTOLIC_LOINC_CODE,
    SYSTOLIC_CONCEPT_ID,
    SYSTOLIC_LOINC_CODE,
)
from omop_fhir_mapping.services.concepts import ConceptInfo, ConceptLookup
from omop_fhir_mapping.services.identity import IdentityMapper
from omop_fhir_mapping.services.storage import ObservationStore
from omop_fhir_mapping.services.vocabulary_map import VocabularyResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedCode:
    """Outcome of code resolution for one resource."""

    coding: Coding | None = None
    vocabulary_id: str | None = None
    concept: ConceptInfo | None = None
    source_value: str | None = None

    @property
    def concept_id(self) -> int:
        return self.concept.concept_id if self.concept is not None else UNMAPPED_CONCEPT_ID


@dataclass
class ClassifiedEntity:
    """Rows to upsert for one resource, primary row first."""

    partition: Partition
    rows: list[MappedRow] = field(default_factory=list)
    composite: bool = False

    @property
    def primary(self) -> MappedRow:
        return self.rows[0]


class PartitionClassifier:
    """Build OMOP rows from a FHIR Observation.

    Usage:
        classifier = PartitionClassifier(resolver, concepts, identity, store)
        entity = classifier.classify(observation)
        for row in entity.rows:
            store.upsert(row)
    """

    def __init__(
        self,
        resolver: VocabularyResolver,
        concepts: ConceptLookup,
        identity: IdentityMapper,
        store: ObservationStore,
        settings: Settings | None = None,
    ) -> None:
        self._resolver = resolver
        self._concepts = concepts
        self._identity = identity
        self._store = store
        self._settings = settings or default_settings

    # -------------------------------------------------------------------------
    # Code resolution
    # -------------------------------------------------------------------------

    def resolve_code(self, code: CodeableConcept) -> ResolvedCode:
        """Pick the coding to store and look up its concept."""
        chosen: tuple[Coding, str] | None = None
        for coding in code.coding:
            if not coding.code:
                continue
            vocabulary = self._resolver.resolve_internal(coding.system)
            if vocabulary is None:
                continue
            if vocabulary == self._settings.preferred_vocabulary:
                chosen = (coding, vocabulary)
                break
            if chosen is None:
                chosen = (coding, vocabulary)

        if chosen is not None:
            coding, vocabulary = chosen
            concept = self._concepts.find(vocabulary, coding.code)
            if concept is not None:
                return ResolvedCode(coding=coding, vocabulary_id=vocabulary, concept=concept)
            logger.debug(f"{vocabulary}/{coding.code} has no concept; storing source text")
            return ResolvedCode(
                coding=coding,
                vocabulary_id=vocabulary,
                source_value=code.text or coding.as_source_text(),
            )

        first = code.first_coding()
        source_value = code.text or (first.as_source_text() if first is not None else None)
        return ResolvedCode(source_value=source_value or None)

    def is_blood_pressure(self, resolved: ResolvedCode) -> bool:
        return (
            resolved.coding is not None
            and resolved.vocabulary_id == self._settings.preferred_vocabulary
            and resolved.coding.code == BP_SYSTOLIC_DIASTOLIC_CODE
        )

    # -------------------------------------------------------------------------
    # Classification
    # -------------------------------------------------------------------------

    def classify(
        self, resource: Observation, existing: InternalId | None = None
    ) -> ClassifiedEntity:
        """Build the row(s) for ``resource``.

        Args:
            resource: The FHIR Observation to store
            existing: Identity of the row being updated, None on create

        Raises:
            InvalidResource: Missing or non-Patient subject, no effective time
            IdentityNotFound: Subject patient has no OMOP person
            EncounterNotFound: Context encounter does not exist
            UnmappableCodedValue: A coded value has no concept
            InconsistentPairing: Blood pressure rows do not pair up
            RangeWithoutValue: A range targets an absent blood pressure half
            ResourceNotFound: The row being updated does not exist
        """
        common = self._common_fields(resource)
        resolved = self.resolve_code(resource.code)

        if self.is_blood_pressure(resolved):
            return self._classify_blood_pressure(resource, existing, common)

        if existing is not None:
            self._check_not_paired(existing)
        partition = self.route(resource.value, resolved.concept, existing)
        row = MappedRow(
            partition=partition,
            native_id=existing.native_id if existing is not None else None,
            concept_id=resolved.concept_id,
            source_value=resolved.source_value if resolved.concept is None else None,
            **common,
        )
        if resource.value is not None:
            self._apply_value(row, resource.value)
        self._apply_first_range(row, resource.reference_range)
        return ClassifiedEntity(partition=partition, rows=[row])

    def route(
        self,
        value: ObservationValue | None,
        concept: ConceptInfo | None,
        existing: InternalId | None = None,
    ) -> Partition:
        """Partition a row belongs in; updates stay where they are."""
        if existing is not None:
            return existing.partition
        if isinstance(value, Quantity):
            return Partition.MEASUREMENT
        if concept is not None and concept.domain_id == ConceptDomain.MEASUREMENT.value:
            return Partition.MEASUREMENT
        return Partition.OBSERVATION

    def _check_not_paired(self, existing: InternalId) -> None:
        if existing.partition is not Partition.MEASUREMENT:
            return
        stored = self._store.find_by_id(existing.partition, existing.native_id)
        if stored is not None and stored.concept_id in (SYSTOLIC_CONCEPT_ID, DIASTOLIC_CONCEPT_ID):
            raise InconsistentPairing(
                f"Measurement {existing.native_id} is half of a blood pressure pair "
                "and can only be updated with a blood pressure resource"
            )

    def _common_fields(self, resource: Observation) -> dict[str, Any]:
        subject = resource.subject
        if subject is None or subject.resource_type != ResourceKind.PATIENT.value:
            raise InvalidResource("Observation subject must reference a Patient")
        person_id = self._identity.to_internal(subject.id_part, ResourceKind.PATIENT)

        instant = resource.effective_instant
        if instant is None:
            raise InvalidResource("Observation needs effectiveDateTime or effectivePeriod.start")

        return {
            "person_id": person_id,
            "effective": normalize_instant(instant),
            "visit_occurrence_id": self._visit_id(resource),
            "type_concept_id": self._type_concept_id(resource.category),
            "provider_id": self._provider_id(resource),
        }

    def _visit_id(self, resource: Observation) -> int | None:
        context = resource.context
        if context is None or not context.reference:
            return None
        if context.resource_type != ResourceKind.ENCOUNTER.value:
            logger.debug(f"Ignoring non-Encounter context {context.reference}")
            return None
        logical_id = context.id_part
        visit_id = self._identity.lookup_internal(logical_id, ResourceKind.ENCOUNTER)
        if visit_id is None or not self._store.visit_exists(visit_id):
            raise EncounterNotFound(logical_id)
        return visit_id

    def _type_concept_id(self, categories: list[CodeableConcept]) -> int:
        system = self._settings.observation_category_system
        for category in categories:
            for coding in category.coding:
                if coding.system not in (None, system):
                    continue
                type_concept_id = CATEGORY_TO_TYPE_CONCEPT.get(coding.code or "")
                if type_concept_id is not None:
                    return type_concept_id
        return UNKNOWN_TYPE_CONCEPT_ID

    def _provider_id(self, resource: Observation) -> int | None:
        for performer in resource.performer:
            if performer.resource_type != ResourceKind.PRACTITIONER.value:
                continue
            provider_id = self._identity.lookup_internal(
                performer.id_part, ResourceKind.PRACTITIONER
            )
            if provider_id is not None:
                return provider_id
            logger.warning(f"Performer {performer.reference} has no OMOP provider; skipped")
        return None

    # -------------------------------------------------------------------------
    # Values
    # -------------------------------------------------------------------------

    def _apply_value(self, row: MappedRow, value: ObservationValue) -> None:
        row.value_as_number = None
        row.value_as_concept_id = None
        row.value_as_string = None
        row.value_source_value = None
        row.unit_concept_id = None
        row.unit_source_value = None

        if isinstance(value, Quantity):
            row.value_as_number = value.value
            row.unit_concept_id = self._unit_concept_id(value)
            row.unit_source_value = value.unit or value.code
        elif isinstance(value, CodeableConcept):
            row.value_as_concept_id = self._value_concept_id(value)
            first = value.first_coding()
            row.value_source_value = value.text or (first.as_source_text() if first else None)
        elif isinstance(value, str):
            if row.partition is Partition.OBSERVATION:
                row.value_as_string = value
            else:
                row.value_source_value = value
        else:
            raise InvalidResource(f"Unsupported value type {type(value).__name__}")

    def _unit_concept_id(self, quantity: Quantity) -> int | None:
        if not quantity.code:
            return None
        if quantity.system:
            vocabulary = self._resolver.resolve_internal(quantity.system)
        else:
            vocabulary = self._settings.default_unit_vocabulary
        if vocabulary is None:
            logger.debug(f"Unit system {quantity.system} is not mapped")
            return None
        concept = self._concepts.find(vocabulary, quantity.code)
        return concept.concept_id if concept is not None else None

    def _value_concept_id(self, value: CodeableConcept) -> int:
        for coding in value.coding:
            if not coding.code:
                continue
            vocabulary = self._resolver.resolve_internal(coding.system)
            if vocabulary is None:
                continue
            concept = self._concepts.find(vocabulary, coding.code)
            if concept is not None:
                return concept.concept_id
        raise UnmappableCodedValue(
            f"No concept found for coded value {[c.as_source_text() for c in value.coding]}"
        )

    @staticmethod
    def _apply_first_range(row: MappedRow, ranges: list[ReferenceRange]) -> None:
        for reference_range in ranges:
            if reference_range.is_empty:
                continue
            row.range_low = reference_range.low.value if reference_range.low else None
            row.range_high = reference_range.high.value if reference_range.high else None
            return

    # -------------------------------------------------------------------------
    # Blood pressure
    # -------------------------------------------------------------------------

    def _in_preferred_vocabulary(self, coding: Coding, memo: dict[str, str | None]) -> bool:
        """Blood pressure codings without a system are matched on code alone."""
        if coding.system is None:
            return True
        if coding.system not in memo:
            memo[coding.system] = self._resolver.resolve_internal(coding.system)
        return memo[coding.system] == self._settings.preferred_vocabulary

    def _component_values(
        self, resource: Observation
    ) -> tuple[ObservationValue | None, ObservationValue | None]:
        systolic = diastolic = None
        vocabularies: dict[str, str | None] = {}
        for component in resource.component:
            for coding in component.code.coding:
                if not self._in_preferred_vocabulary(coding, vocabularies):
                    continue
                if coding.code == SYSTOLIC_LOINC_CODE and component.value is not None:
                    systolic = component.value
                elif coding.code == DIASTOLIC_LOINC_CODE and component.value is not None:
                    diastolic = component.value
        return systolic, diastolic

    def _classify_blood_pressure(
        self,
        resource: Observation,
        existing: InternalId | None,
        common: dict[str, Any],
    ) -> ClassifiedEntity:
        systolic_value, diastolic_value = self._component_values(resource)
        if systolic_value is None and diastolic_value is None:
            raise InconsistentPairing(
                "Either systolic or diastolic needs to be available in component"
            )

        systolic_row: MappedRow | None = None
        diastolic_row: MappedRow | None = None
        if existing is not None:
            systolic_row, diastolic_row = self._load_pair(existing)

        if systolic_row is None and systolic_value is not None:
            systolic_row = MappedRow(
                partition=Partition.MEASUREMENT,
                person_id=common["person_id"],
                concept_id=SYSTOLIC_CONCEPT_ID,
                source_value=SYSTOLIC_LOINC_CODE,
            )
        if diastolic_row is None and diastolic_value is not None:
            diastolic_row = MappedRow(
                partition=Partition.MEASUREMENT,
                person_id=common["person_id"],
                concept_id=DIASTOLIC_CONCEPT_ID,
                source_value=DIASTOLIC_LOINC_CODE,
            )

        # Stored halves absent from the update still take the shared fields,
        # so the pair keeps one person, date and time
        systolic_row = self._refresh(systolic_row, systolic_value, common)
        diastolic_row = self._refresh(diastolic_row, diastolic_value, common)

        self._distribute_ranges(resource.reference_range, systolic_row, diastolic_row)
        return ClassifiedEntity(
            partition=Partition.MEASUREMENT,
            rows=[r for r in (systolic_row, diastolic_row) if r is not None],
            composite=True,
        )

    def _refresh(
        self,
        row: MappedRow | None,
        value: ObservationValue | None,
        common: dict[str, Any],
    ) -> MappedRow | None:
        if row is None:
            return None
        row = replace(row, **common)
        if value is not None:
            self._apply_value(row, value)
        return row

    def _load_pair(self, existing: InternalId) -> tuple[MappedRow | None, MappedRow | None]:
        if existing.partition is not Partition.MEASUREMENT:
            raise InconsistentPairing("Blood pressure is stored in the measurement partition")
        loaded = self._store.find_by_id(existing.partition, existing.native_id)
        if loaded is None:
            raise ResourceNotFound(f"Measurement {existing.native_id} does not exist")

        if loaded.concept_id == SYSTOLIC_CONCEPT_ID:
            return loaded, self._sibling(loaded, DIASTOLIC_CONCEPT_ID)
        if loaded.concept_id == DIASTOLIC_CONCEPT_ID:
            return self._sibling(loaded, SYSTOLIC_CONCEPT_ID), loaded
        raise InconsistentPairing(
            f"Measurement {existing.native_id} is neither systolic nor diastolic "
            f"(concept {loaded.concept_id})"
        )

    def _sibling(self, row: MappedRow, concept_id: int) -> MappedRow | None:
        if row.effective is None:
            return None
        return self._store.find_sibling(
            Partition.MEASUREMENT, concept_id, row.person_id, row.effective
        )

    def _distribute_ranges(
        self,
        ranges: list[ReferenceRange],
        systolic_row: MappedRow | None,
        diastolic_row: MappedRow | None,
    ) -> None:
        targets = {SYSTOLIC_LOINC_CODE: systolic_row, DIASTOLIC_LOINC_CODE: diastolic_row}
        vocabularies: dict[str, str | None] = {}
        for reference_range in ranges:
            if reference_range.is_empty:
                continue
            codes = [
                coding.code
                for applies_to in reference_range.applies_to
                for coding in applies_to.coding
                if coding.code in targets and self._in_preferred_vocabulary(coding, vocabularies)
            ]
            if not codes:
                continue
            code = codes[0]
            row = targets[code]
            if row is None:
                raise RangeWithoutValue(
                    f"Reference range applies to {code} but that value is not available"
                )
            if reference_range.low is not None and reference_range.low.value is not None:
                row.range_low = reference_range.low.value
            if reference_range.high is not None and reference_range.high.value is not None:
                row.range_high = reference_range.high.value

