"""OMOP vocabulary concept lookup.

Resolves (vocabulary, code) pairs to concept ids and concept ids back to
their code and domain. The concept's ``domain_id`` drives partition
routing; this engine never decides a concept's domain itself.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from omop_fhir_mapping.models.vocabulary import Concept

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConceptInfo:
    """The parts of a vocabulary concept the engine reads."""

    concept_id: int
    concept_name: str
    concept_code: str
    vocabulary_id: str
    domain_id: str


class ConceptLookup(ABC):
    """Read-only access to vocabulary concepts."""

    @abstractmethod
    def find(self, vocabulary_id: str, code: str) -> ConceptInfo | None:
        """Find the concept carrying ``code`` in ``vocabulary_id``."""
        ...

    @abstractmethod
    def get(self, concept_id: int) -> ConceptInfo | None:
        """Get a concept by id."""
        ...


class DatabaseConceptLookup(ConceptLookup):
    """Concept lookup over the OMOP ``concept`` table."""

    def __init__(self, session: Session) -> None:
        self._session = session

    @staticmethod
    def _to_info(concept: Concept) -> ConceptInfo:
        return ConceptInfo(
            concept_id=concept.concept_id,
            concept_name=concept.concept_name,
            concept_code=concept.concept_code,
            vocabulary_id=concept.vocabulary_id,
            domain_id=concept.domain_id,
        )

    def find(self, vocabulary_id: str, code: str) -> ConceptInfo | None:
        stmt = (
            select(Concept)
            .where(Concept.vocabulary_id == vocabulary_id, Concept.concept_code == code)
            .order_by(Concept.concept_id)
            .limit(1)
        )
        concept = self._session.execute(stmt).scalars().first()
        if concept is None:
            logger.debug(f"No concept for {vocabulary_id}/{code}")
            return None
        return self._to_info(concept)

    def get(self, concept_id: int) -> ConceptInfo | None:
        concept = self._session.get(Concept, concept_id)
        return self._to_info(concept) if concept is not None else None
