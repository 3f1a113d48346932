"""SQLAlchemy models for OMOP vocabulary concepts and FHIR cross-references."""

from sqlalchemy import Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from omop_fhir_mapping.core.database import Base, BigIntKey


class Concept(Base):
    """OMOP Concept table (subset of columns).

    Concept 0 is the OMOP "No matching concept" sentinel; rows whose code
    could not be resolved are stored against it.
    """

    __tablename__ = "concept"

    concept_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    concept_name: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
    )
    domain_id: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
    )
    vocabulary_id: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
    )
    concept_class_id: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="",
    )
    standard_concept: Mapped[str | None] = mapped_column(
        String(1),
        nullable=True,
    )
    concept_code: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return (
            f"<Concept(concept_id={self.concept_id}, vocabulary='{self.vocabulary_id}', "
            f"code='{self.concept_code}', domain='{self.domain_id}')>"
        )

    @property
    def is_standard(self) -> bool:
        """Check if this is a standard concept."""
        return bool(self.standard_concept == "S")


class FhirOmopVocabularyMap(Base):
    """Static cross-reference between OMOP vocabularies and FHIR code systems.

    One OMOP vocabulary accepts either its FHIR system URI or a legacy
    "other" system name; each external name resolves to exactly one
    vocabulary.
    """

    __tablename__ = "fhir_omop_vocabulary_map"

    omop_concept_code_name: Mapped[str] = mapped_column(String(50), primary_key=True)
    fhir_url_system_name: Mapped[str | None] = mapped_column(String(255), index=True)
    other_system_name: Mapped[str | None] = mapped_column(String(255), index=True)

    def __repr__(self) -> str:
        return (
            f"<FhirOmopVocabularyMap({self.omop_concept_code_name} <-> "
            f"{self.fhir_url_system_name} / {self.other_system_name})>"
        )


class FhirIdMap(Base):
    """Persistent allocation of FHIR logical ids to OMOP native ids.

    ``omop_id`` is signed for Observation resources: measurement rows are
    stored positive, observation rows negated. Other resource types store
    the plain native key.
    """

    __tablename__ = "fhir_id_map"

    fhir_id: Mapped[int] = mapped_column(BigIntKey, primary_key=True, autoincrement=True)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False)
    omop_id: Mapped[int] = mapped_column(BigIntKey, nullable=False)

    __table_args__ = (
        UniqueConstraint("resource_type", "omop_id", name="uq_fhir_id_map_resource_omop"),
    )

    def __repr__(self) -> str:
        return f"<FhirIdMap({self.resource_type}/{self.fhir_id} -> {self.omop_id})>"
