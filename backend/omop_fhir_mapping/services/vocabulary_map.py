"""FHIR code system <-> OMOP vocabulary cross-reference.

The vocabulary map is a small, rarely changing table. Each FHIR system name
resolves to exactly one OMOP vocabulary; a vocabulary may be reached
through its FHIR URI or through a legacy "other" system name.

Misses are normal control flow: both resolver directions return None and
callers fall back to storing source text.

Usage:
    resolver = VocabularyResolver(DatabaseVocabularyMapStore(session))
    resolver.resolve_internal("http://loinc.org")   # "LOINC"
    resolver.resolve_external("LOINC")              # "http://loinc.org"
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from omop_fhir_mapping.models.vocabulary import FhirOmopVocabularyMap

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VocabularyMapEntry:
    """One cross-reference row."""

    omop_vocabulary: str
    fhir_system_uri: str | None = None
    other_system_name: str | None = None


class VocabularyMapStore(ABC):
    """Storage contract for vocabulary map entries."""

    @abstractmethod
    def save(self, entry: VocabularyMapEntry) -> None:
        """Insert a new entry."""
        ...

    @abstractmethod
    def update(self, entry: VocabularyMapEntry) -> None:
        """Replace the system names of an existing vocabulary's entry."""
        ...

    @abstractmethod
    def delete(self, omop_vocabulary: str) -> None:
        ...

    @abstractmethod
    def get_all(self) -> list[VocabularyMapEntry]:
        ...

    @abstractmethod
    def find_by_system(self, system_name: str) -> VocabularyMapEntry | None:
        """Find the entry whose FHIR URI or other system name matches exactly."""
        ...

    @abstractmethod
    def find_by_vocabulary(self, omop_vocabulary: str) -> VocabularyMapEntry | None:
        ...


class DatabaseVocabularyMapStore(VocabularyMapStore):
    """Vocabulary map store over the ``fhir_omop_vocabulary_map`` table."""

    def __init__(self, session: Session) -> None:
        self._session = session

    @staticmethod
    def _to_entry(row: FhirOmopVocabularyMap) -> VocabularyMapEntry:
        return VocabularyMapEntry(
            omop_vocabulary=row.omop_concept_code_name,
            fhir_system_uri=row.fhir_url_system_name,
            other_system_name=row.other_system_name,
        )

    def save(self, entry: VocabularyMapEntry) -> None:
        self._session.add(
            FhirOmopVocabularyMap(
                omop_concept_code_name=entry.omop_vocabulary,
                fhir_url_system_name=entry.fhir_system_uri,
                other_system_name=entry.other_system_name,
            )
        )
        self._session.flush()
        logger.info(
            f"New map entry added ({entry.omop_vocabulary}, "
            f"{entry.fhir_system_uri}, {entry.other_system_name})"
        )

    def update(self, entry: VocabularyMapEntry) -> None:
        row = self._session.get(FhirOmopVocabularyMap, entry.omop_vocabulary)
        if row is None:
            raise KeyError(f"No vocabulary map entry for {entry.omop_vocabulary}")
        row.fhir_url_system_name = entry.fhir_system_uri
        row.other_system_name = entry.other_system_name
        self._session.flush()
        logger.info(
            f"Map entry ({entry.omop_vocabulary}) updated to "
            f"({entry.fhir_system_uri}, {entry.other_system_name})"
        )

    def delete(self, omop_vocabulary: str) -> None:
        row = self._session.get(FhirOmopVocabularyMap, omop_vocabulary)
        if row is not None:
            self._session.delete(row)
            self._session.flush()
            logger.info(f"Map entry ({omop_vocabulary}) deleted")

    def get_all(self) -> list[VocabularyMapEntry]:
        stmt = select(FhirOmopVocabularyMap).order_by(FhirOmopVocabularyMap.omop_concept_code_name)
        entries = [self._to_entry(row) for row in self._session.execute(stmt).scalars()]
        logger.debug(f"{len(entries)} vocabulary map entries obtained")
        return entries

    def find_by_system(self, system_name: str) -> VocabularyMapEntry | None:
        stmt = (
            select(FhirOmopVocabularyMap)
            .where(
                or_(
                    FhirOmopVocabularyMap.fhir_url_system_name == system_name,
                    FhirOmopVocabularyMap.other_system_name == system_name,
                )
            )
            .order_by(FhirOmopVocabularyMap.omop_concept_code_name)
            .limit(1)
        )
        row = self._session.execute(stmt).scalars().first()
        return self._to_entry(row) if row is not None else None

    def find_by_vocabulary(self, omop_vocabulary: str) -> VocabularyMapEntry | None:
        row = self._session.get(FhirOmopVocabularyMap, omop_vocabulary)
        return self._to_entry(row) if row is not None else None


class VocabularyResolver:
    """Bidirectional lookup between FHIR system names and OMOP vocabularies.

    Stateless apart from its store; callers that need the same resolution
    several times in one mapping operation keep the returned value rather
    than asking again.
    """

    def __init__(self, store: VocabularyMapStore) -> None:
        self._store = store

    @property
    def store(self) -> VocabularyMapStore:
        return self._store

    def resolve_internal(self, system_uri: str | None) -> str | None:
        """Map a FHIR system URI (or legacy name) to an OMOP vocabulary id."""
        if not system_uri:
            return None
        entry = self._store.find_by_system(system_uri)
        if entry is None:
            logger.debug(f"No OMOP vocabulary found for {system_uri}")
            return None
        return entry.omop_vocabulary

    def resolve_external(self, omop_vocabulary: str | None) -> str | None:
        """Map an OMOP vocabulary id to its FHIR system URI.

        Falls back to the legacy system name when no URI is recorded.
        """
        if not omop_vocabulary:
            return None
        entry = self._store.find_by_vocabulary(omop_vocabulary)
        if entry is None:
            logger.debug(f"No FHIR system found for {omop_vocabulary}")
            return None
        return entry.fhir_system_uri or entry.other_system_name
