"""FHIR Observation <-> OMOP mapping engine.

``ObservationMapper`` is the entry point a resource server calls. It is
built explicitly from its collaborators; there is no process-wide
instance.

Usage:
    with session_scope() as session:
        mapper = ObservationMapper.from_session(session)
        logical_id = mapper.to_dbase(observation)
        stored = mapper.read(logical_id)
        page = mapper.search([("code", "http://loinc.org|85354-9")], limit=20)
"""

import logging
from typing import Any

from sqlalchemy.orm import Session

from omop_fhir_mapping.core.audit import AuditAction, log_audit, log_data_access
from omop_fhir_mapping.core.config import Settings, settings as default_settings
from omop_fhir_mapping.core.exceptions import MappingError, ResourceNotFound
from omop_fhir_mapping.schemas.base import Partition, ResourceKind
from omop_fhir_mapping.schemas.fhir import Observation
from omop_fhir_mapping.schemas.rows import UNMAPPED_CONCEPT_ID, InternalId, split_effective
from omop_fhir_mapping.services.classifier import PartitionClassifier
from omop_fhir_mapping.services.codes import DIASTOLIC_CONCEPT_ID, SYSTOLIC_CONCEPT_ID
from omop_fhir_mapping.services.concepts import ConceptLookup, DatabaseConceptLookup
from omop_fhir_mapping.services.identity import DatabaseIdentityStore, IdentityMapper
from omop_fhir_mapping.services.predicates import (
    Clause,
    Comparison,
    Operator,
    PredicateCompiler,
)
from omop_fhir_mapping.services.reconstructor import ObservationReconstructor
from omop_fhir_mapping.services.storage import (
    DatabaseObservationStore,
    ObservationStore,
    SortSpec,
)
from omop_fhir_mapping.services.vocabulary_map import (
    DatabaseVocabularyMapStore,
    VocabularyResolver,
)

logger = logging.getLogger(__name__)

RESOURCE_TYPE = ResourceKind.OBSERVATION.value

# Search walks measurement rows first, then observation rows
SEARCH_ORDER = (Partition.MEASUREMENT, Partition.OBSERVATION)


class ObservationMapper:
    """Create, update, read, search and delete FHIR Observations stored in OMOP."""

    def __init__(
        self,
        store: ObservationStore,
        resolver: VocabularyResolver,
        identity: IdentityMapper,
        concepts: ConceptLookup,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._identity = identity
        self._settings = settings or default_settings
        self._classifier = PartitionClassifier(resolver, concepts, identity, store, self._settings)
        self._reconstructor = ObservationReconstructor(
            store, concepts, resolver, identity, self._settings
        )
        self._compiler = PredicateCompiler(resolver, identity, self._settings)

    @classmethod
    def from_session(
        cls, session: Session, settings: Settings | None = None
    ) -> "ObservationMapper":
        """Wire the database-backed collaborators onto one session."""
        return cls(
            store=DatabaseObservationStore(session),
            resolver=VocabularyResolver(DatabaseVocabularyMapStore(session)),
            identity=IdentityMapper(DatabaseIdentityStore(session)),
            concepts=DatabaseConceptLookup(session),
            settings=settings,
        )

    @property
    def classifier(self) -> PartitionClassifier:
        return self._classifier

    @property
    def reconstructor(self) -> ObservationReconstructor:
        return self._reconstructor

    @property
    def compiler(self) -> PredicateCompiler:
        return self._compiler

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def to_dbase(self, resource: Observation, logical_id: str | None = None) -> str:
        """Create (``logical_id`` None) or update an Observation.

        Returns:
            The logical id of the stored resource. An update keeps the id it
            was given. For blood pressure the id addresses the systolic row,
            or the diastolic row when only that half exists.

        Raises:
            ResourceNotFound: When updating a logical id with no stored row
            MappingError: Any classification failure; nothing is written
        """
        action = AuditAction.CREATE if logical_id is None else AuditAction.UPDATE
        patient_id = resource.subject.id_part if resource.subject is not None else None
        try:
            existing = self._existing(logical_id) if logical_id is not None else None
            if logical_id is None and self._settings.deduplicate_on_create:
                existing = self._find_duplicate(resource)
                if existing is not None:
                    logger.info(
                        f"Duplicate create; updating {existing.partition.value} "
                        f"row {existing.native_id}"
                    )

            with self._store.transaction():
                entity = self._classifier.classify(resource, existing)
                native_ids = [self._store.upsert(row) for row in entity.rows]
                primary = InternalId(entity.partition, native_ids[0])
                stored_id = None
                if existing is not None and existing != primary:
                    # The pair gained a systolic row; it takes over the addressed id
                    stored_id = self._identity.move(existing, primary)
                if stored_id is None:
                    stored_id = self._identity.to_external_id(primary)
        except MappingError:
            log_audit(
                action,
                RESOURCE_TYPE,
                resource_id=logical_id,
                patient_id=patient_id,
                success=False,
            )
            raise

        log_audit(
            action,
            RESOURCE_TYPE,
            resource_id=stored_id,
            patient_id=patient_id,
            details={"partition": entity.partition.value, "rows": len(native_ids)},
        )
        return stored_id

    def remove(self, logical_id: str) -> int:
        """Delete an Observation and return the number of rows removed.

        Deleting a blood pressure composite removes its diastolic sibling too.

        Raises:
            ResourceNotFound: When nothing is stored under ``logical_id``
        """
        internal = self._existing(logical_id)
        with self._store.transaction():
            row = self._store.find_by_id(internal.partition, internal.native_id)
            removed = 0
            if (
                row is not None
                and row.partition is Partition.MEASUREMENT
                and row.concept_id == SYSTOLIC_CONCEPT_ID
                and row.effective is not None
            ):
                sibling = self._store.find_sibling(
                    Partition.MEASUREMENT, DIASTOLIC_CONCEPT_ID, row.person_id, row.effective
                )
                if sibling is not None and sibling.native_id is not None:
                    removed += self._store.delete(Partition.MEASUREMENT, sibling.native_id)
                    self._identity.forget(InternalId(Partition.MEASUREMENT, sibling.native_id))
            removed += self._store.delete(internal.partition, internal.native_id)
            self._identity.forget(internal)

        log_audit(
            AuditAction.DELETE, RESOURCE_TYPE, resource_id=logical_id, details={"rows": removed}
        )
        return removed

    def _existing(self, logical_id: str) -> InternalId:
        internal = self._identity.lookup_internal_id(logical_id)
        if (
            internal is None
            or self._store.find_by_id(internal.partition, internal.native_id) is None
        ):
            raise ResourceNotFound(f"{RESOURCE_TYPE}/{logical_id} does not exist")
        return internal

    def _find_duplicate(self, resource: Observation) -> InternalId | None:
        """Row already holding this subject, effective time and code, if any."""
        if resource.subject is None or resource.effective_instant is None:
            return None
        person_id = self._identity.lookup_internal(resource.subject.id_part, ResourceKind.PATIENT)
        if person_id is None:
            return None
        instant = resource.effective_instant
        resolved = self._classifier.resolve_code(resource.code)

        if self._classifier.is_blood_pressure(resolved):
            for concept_id in (SYSTOLIC_CONCEPT_ID, DIASTOLIC_CONCEPT_ID):
                row = self._store.find_sibling(
                    Partition.MEASUREMENT, concept_id, person_id, instant
                )
                if row is not None:
                    return row.internal_id
            return None

        day, time_string = split_effective(instant)
        comparisons = [
            Comparison("person.person_id", Operator.EQ, person_id),
            Comparison("date", Operator.EQ, day),
            Comparison("time", Operator.EQ, time_string),
            Comparison("concept_id", Operator.EQ, resolved.concept_id),
        ]
        if resolved.concept_id == UNMAPPED_CONCEPT_ID:
            comparisons.append(Comparison("source_value", Operator.EQ, resolved.source_value))
        # Only the partition this resource would be written to is a duplicate
        partition = self._classifier.route(resource.value, resolved.concept)
        for row in self._store.search(partition, [Clause(comparisons)], limit=1):
            return row.internal_id
        return None

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def read(self, logical_id: str) -> Observation:
        """Reconstruct the Observation stored under ``logical_id``.

        Raises:
            ResourceNotFound: When nothing is stored under ``logical_id``
        """
        internal = self._identity.lookup_internal_id(logical_id)
        row = None
        if internal is not None:
            row = self._store.find_by_id(internal.partition, internal.native_id)
        if row is None:
            log_data_access(RESOURCE_TYPE, resource_id=logical_id)
            raise ResourceNotFound(f"{RESOURCE_TYPE}/{logical_id} does not exist")

        observation = self._reconstructor.build(logical_id, row)
        log_data_access(
            RESOURCE_TYPE,
            resource_id=logical_id,
            patient_id=observation.subject.id_part if observation.subject else None,
        )
        return observation

    def compile(self, parameters: list[tuple[str, Any]]) -> list[Clause]:
        """Compile search parameters into one filter, with diastolic rows excluded.

        Comma-separated values of one parameter are ORed together.
        """
        clauses: list[Clause] = []
        for name, value in parameters:
            values = value.split(",") if isinstance(value, str) else [value]
            for index, single in enumerate(values):
                clauses.extend(self._compiler.compile(name, single, or_=index > 0))
        clauses.append(self._compiler.exclusion_clause())
        return clauses

    def search(
        self,
        parameters: list[tuple[str, Any]],
        offset: int = 0,
        limit: int | None = None,
        sort: SortSpec | None = None,
    ) -> list[Observation]:
        """Search both partitions.

        Pagination runs across measurement rows, then observation rows.
        """
        clauses = self.compile(parameters)
        results: list[Observation] = []
        for partition in SEARCH_ORDER:
            if limit is not None and len(results) >= limit:
                break
            total = self._store.count(partition, clauses)
            if offset >= total:
                offset -= total
                continue
            remaining = limit - len(results) if limit is not None else None
            for row in self._store.search(partition, clauses, offset, remaining, sort):
                logical_id = self._identity.to_external_id(row.internal_id)
                results.append(self._reconstructor.build(logical_id, row))
            offset = 0

        log_data_access(RESOURCE_TYPE, action=AuditAction.SEARCH, record_count=len(results))
        return results

    def count(self, parameters: list[tuple[str, Any]]) -> int:
        clauses = self.compile(parameters)
        return sum(self._store.count(partition, clauses) for partition in SEARCH_ORDER)
