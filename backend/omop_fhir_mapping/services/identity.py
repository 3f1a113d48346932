"""Logical FHIR id <-> OMOP native id translation.

FHIR logical ids are allocated from the ``fhir_id_map`` table the first
time an OMOP row is exposed. Observation resources span two partitions,
so their OMOP side is the signed id: measurement keys positive,
observation keys negated. The sign is fixed when the id is allocated.

Round-trip law, for every signed id ``x`` of kind ``k``:
    mapper.to_internal(mapper.to_external(x, k), k) == x
"""

import logging
from abc import ABC, abstractmethod

from sqlalchemy import select
from sqlalchemy.orm import Session

from omop_fhir_mapping.core.exceptions import IdentityNotFound
from omop_fhir_mapping.models.vocabulary import FhirIdMap
from omop_fhir_mapping.schemas.base import ResourceKind
from omop_fhir_mapping.schemas.rows import InternalId

logger = logging.getLogger(__name__)


class IdentityStore(ABC):
    """Persistent allocation of (resource kind, logical id, omop id) triples."""

    @abstractmethod
    def lookup_omop(self, kind: ResourceKind, fhir_id: int) -> int | None:
        ...

    @abstractmethod
    def lookup_fhir(self, kind: ResourceKind, omop_id: int) -> int | None:
        ...

    @abstractmethod
    def allocate(self, kind: ResourceKind, omop_id: int) -> int:
        """Allocate a new logical id for ``omop_id`` and return it."""
        ...

    @abstractmethod
    def register(self, kind: ResourceKind, fhir_id: int, omop_id: int) -> None:
        """Record an externally assigned logical id."""
        ...

    @abstractmethod
    def release(self, kind: ResourceKind, omop_id: int) -> None:
        """Forget the logical id of a deleted row."""
        ...

    @abstractmethod
    def repoint(self, kind: ResourceKind, omop_id: int, new_omop_id: int) -> int | None:
        """Move the logical id held by ``omop_id`` to ``new_omop_id``.

        Any logical id ``new_omop_id`` held before is released. Returns the
        moved logical id, or None when ``omop_id`` had none.
        """
        ...


class DatabaseIdentityStore(IdentityStore):
    """Identity store over the ``fhir_id_map`` table."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def lookup_omop(self, kind: ResourceKind, fhir_id: int) -> int | None:
        stmt = select(FhirIdMap.omop_id).where(
            FhirIdMap.fhir_id == fhir_id,
            FhirIdMap.resource_type == kind.value,
        )
        return self._session.execute(stmt).scalar_one_or_none()

    def lookup_fhir(self, kind: ResourceKind, omop_id: int) -> int | None:
        stmt = select(FhirIdMap.fhir_id).where(
            FhirIdMap.omop_id == omop_id,
            FhirIdMap.resource_type == kind.value,
        )
        return self._session.execute(stmt).scalar_one_or_none()

    def allocate(self, kind: ResourceKind, omop_id: int) -> int:
        entry = FhirIdMap(resource_type=kind.value, omop_id=omop_id)
        self._session.add(entry)
        self._session.flush()
        logger.debug(f"Allocated {kind.value}/{entry.fhir_id} for OMOP id {omop_id}")
        return entry.fhir_id

    def register(self, kind: ResourceKind, fhir_id: int, omop_id: int) -> None:
        self._session.add(FhirIdMap(fhir_id=fhir_id, resource_type=kind.value, omop_id=omop_id))
        self._session.flush()

    def _entry(self, kind: ResourceKind, omop_id: int) -> FhirIdMap | None:
        stmt = select(FhirIdMap).where(
            FhirIdMap.omop_id == omop_id,
            FhirIdMap.resource_type == kind.value,
        )
        return self._session.execute(stmt).scalar_one_or_none()

    def release(self, kind: ResourceKind, omop_id: int) -> None:
        entry = self._entry(kind, omop_id)
        if entry is not None:
            self._session.delete(entry)
            self._session.flush()

    def repoint(self, kind: ResourceKind, omop_id: int, new_omop_id: int) -> int | None:
        entry = self._entry(kind, omop_id)
        if entry is None:
            return None
        self.release(kind, new_omop_id)
        entry.omop_id = new_omop_id
        self._session.flush()
        logger.debug(f"Moved {kind.value}/{entry.fhir_id} from OMOP id {omop_id} to {new_omop_id}")
        return entry.fhir_id


class IdentityMapper:
    """Translate between caller-facing logical ids and OMOP ids.

    Usage:
        mapper = IdentityMapper(DatabaseIdentityStore(session))
        person_id = mapper.to_internal("42", ResourceKind.PATIENT)
        logical_id = mapper.to_external(-17, ResourceKind.OBSERVATION)
    """

    def __init__(self, store: IdentityStore) -> None:
        self._store = store

    @staticmethod
    def _parse(logical_id: str) -> int | None:
        try:
            value = int(str(logical_id).strip())
        except ValueError:
            return None
        return value if value > 0 else None

    def lookup_internal(self, logical_id: str, kind: ResourceKind) -> int | None:
        """Signed internal id for ``logical_id``, or None if never assigned."""
        fhir_id = self._parse(logical_id)
        if fhir_id is None:
            return None
        return self._store.lookup_omop(kind, fhir_id)

    def to_internal(self, logical_id: str, kind: ResourceKind) -> int:
        """Signed internal id for ``logical_id``.

        Raises:
            IdentityNotFound: If the logical id has never been assigned.
        """
        omop_id = self.lookup_internal(logical_id, kind)
        if omop_id is None:
            raise IdentityNotFound(str(logical_id), kind.value)
        return omop_id

    def to_external(self, signed_id: int, kind: ResourceKind) -> str:
        """Logical id for ``signed_id``, allocating one on first sight."""
        fhir_id = self._store.lookup_fhir(kind, signed_id)
        if fhir_id is None:
            fhir_id = self._store.allocate(kind, signed_id)
        return str(fhir_id)

    def to_internal_id(self, logical_id: str) -> InternalId:
        """Partition and native key of an Observation resource."""
        return InternalId.from_signed(self.to_internal(logical_id, ResourceKind.OBSERVATION))

    def lookup_internal_id(self, logical_id: str) -> InternalId | None:
        signed = self.lookup_internal(logical_id, ResourceKind.OBSERVATION)
        return InternalId.from_signed(signed) if signed is not None else None

    def to_external_id(self, internal: InternalId) -> str:
        return self.to_external(internal.signed, ResourceKind.OBSERVATION)

    def forget(self, internal: InternalId) -> None:
        self._store.release(ResourceKind.OBSERVATION, internal.signed)

    def move(self, source: InternalId, target: InternalId) -> str | None:
        """Hand the logical id of ``source`` over to ``target``.

        Used when a blood pressure update promotes a different row of the
        pair to primary; the caller keeps the id it addressed.
        """
        fhir_id = self._store.repoint(ResourceKind.OBSERVATION, source.signed, target.signed)
        return str(fhir_id) if fhir_id is not None else None
