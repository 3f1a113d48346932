"""OMOP CDM v5 SQLAlchemy Models.

This module defines the subset of the OHDSI OMOP Common Data Model that the
Observation mapping engine reads and writes.

Reference: https://ohdsi.github.io/CommonDataModel/cdm54.html

Tables Implemented:
    Clinical Data:
        - person: Patient demographics (with name columns for name search)
        - visit_occurrence: Healthcare encounters
        - measurement: Lab results and vitals (quantitative partition)
        - observation: Clinical observations (categorical/narrative partition)

    Health System Data:
        - provider: Healthcare providers

Date and time are stored split, as the CDM requires: a DATE column plus a
``HH:MM:SS`` string column. The engine only ever sees a single timestamp;
the split happens in the storage layer.

Usage:
    from omop_fhir_mapping.models.omop import Person, Measurement

    person = Person(
        person_id=1,
        gender_concept_id=8507,
        year_of_birth=1980,
        family_name="Doe",
    )
"""

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from omop_fhir_mapping.core.database import Base, BigIntKey


# =============================================================================
# Health System Data Tables
# =============================================================================


class Provider(Base):
    """Healthcare provider information.

    Based on OMOP CDM v5.4 PROVIDER table.
    """

    __tablename__ = "provider"

    provider_id: Mapped[int] = mapped_column(BigIntKey, primary_key=True, autoincrement=True)
    provider_name: Mapped[str | None] = mapped_column(String(255))
    npi: Mapped[str | None] = mapped_column(String(20))
    specialty_concept_id: Mapped[int | None] = mapped_column(Integer)
    provider_source_value: Mapped[str | None] = mapped_column(String(50))


# =============================================================================
# Clinical Data Tables
# =============================================================================


class Person(Base):
    """Patient demographic information.

    Based on OMOP CDM v5.4 PERSON table, extended with the name columns the
    FHIR Patient view needs (``subject:Patient.name`` searches and subject
    display text).
    """

    __tablename__ = "person"

    person_id: Mapped[int] = mapped_column(BigIntKey, primary_key=True, autoincrement=True)
    gender_concept_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    year_of_birth: Mapped[int] = mapped_column(Integer, nullable=False)
    month_of_birth: Mapped[int | None] = mapped_column(Integer)
    day_of_birth: Mapped[int | None] = mapped_column(Integer)
    birth_datetime: Mapped[datetime | None] = mapped_column(DateTime)
    race_concept_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ethnicity_concept_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    provider_id: Mapped[int | None] = mapped_column(BigIntKey, ForeignKey("provider.provider_id"))
    person_source_value: Mapped[str | None] = mapped_column(String(50))

    # Name extension
    family_name: Mapped[str | None] = mapped_column(String(255))
    given_name1: Mapped[str | None] = mapped_column(String(255))
    given_name2: Mapped[str | None] = mapped_column(String(255))
    prefix_name: Mapped[str | None] = mapped_column(String(255))
    suffix_name: Mapped[str | None] = mapped_column(String(255))

    provider: Mapped["Provider | None"] = relationship("Provider")

    @property
    def name_as_single_string(self) -> str | None:
        """Full display name, e.g. "Dr. Jane Q Doe Jr"."""
        parts = [
            self.prefix_name,
            self.given_name1,
            self.given_name2,
            self.family_name,
            self.suffix_name,
        ]
        name = " ".join(p.strip() for p in parts if p and p.strip())
        return name or None


class VisitOccurrence(Base):
    """Healthcare visit/encounter information.

    Based on OMOP CDM v5.4 VISIT_OCCURRENCE table.
    """

    __tablename__ = "visit_occurrence"

    visit_occurrence_id: Mapped[int] = mapped_column(
        BigIntKey, primary_key=True, autoincrement=True
    )
    person_id: Mapped[int] = mapped_column(
        BigIntKey, ForeignKey("person.person_id"), nullable=False
    )
    visit_concept_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    visit_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    visit_end_date: Mapped[date] = mapped_column(Date, nullable=False)
    visit_type_concept_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    provider_id: Mapped[int | None] = mapped_column(BigIntKey, ForeignKey("provider.provider_id"))
    visit_source_value: Mapped[str | None] = mapped_column(String(50))

    person: Mapped["Person"] = relationship("Person")


class Measurement(Base):
    """Patient measurement information.

    Records lab results, vital signs, and other quantitative measurements.
    Based on OMOP CDM v5.4 MEASUREMENT table.
    """

    __tablename__ = "measurement"

    measurement_id: Mapped[int] = mapped_column(BigIntKey, primary_key=True, autoincrement=True)
    person_id: Mapped[int] = mapped_column(
        BigIntKey, ForeignKey("person.person_id"), nullable=False
    )
    measurement_concept_id: Mapped[int] = mapped_column(Integer, nullable=False)
    measurement_date: Mapped[date] = mapped_column(Date, nullable=False)
    measurement_datetime: Mapped[datetime | None] = mapped_column(DateTime)
    measurement_time: Mapped[str | None] = mapped_column(String(10))
    measurement_type_concept_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    operator_concept_id: Mapped[int | None] = mapped_column(Integer)
    value_as_number: Mapped[Decimal | None] = mapped_column(Numeric(precision=18, scale=6))
    value_as_concept_id: Mapped[int | None] = mapped_column(Integer)
    unit_concept_id: Mapped[int | None] = mapped_column(Integer)
    range_low: Mapped[Decimal | None] = mapped_column(Numeric(precision=18, scale=6))
    range_high: Mapped[Decimal | None] = mapped_column(Numeric(precision=18, scale=6))
    provider_id: Mapped[int | None] = mapped_column(BigIntKey, ForeignKey("provider.provider_id"))
    visit_occurrence_id: Mapped[int | None] = mapped_column(
        BigIntKey, ForeignKey("visit_occurrence.visit_occurrence_id")
    )
    measurement_source_value: Mapped[str | None] = mapped_column(String(255))
    measurement_source_concept_id: Mapped[int | None] = mapped_column(Integer)
    unit_source_value: Mapped[str | None] = mapped_column(String(50))
    value_source_value: Mapped[str | None] = mapped_column(String(255))

    # Relationships
    person: Mapped["Person"] = relationship("Person")
    provider: Mapped["Provider | None"] = relationship("Provider")
    visit_occurrence: Mapped["VisitOccurrence | None"] = relationship("VisitOccurrence")

    __table_args__ = (
        Index("idx_measurement_person_date", "person_id", "measurement_date"),
        Index("idx_measurement_concept", "measurement_concept_id"),
        Index("idx_measurement_visit", "visit_occurrence_id"),
    )


class Observation(Base):
    """Patient observation information.

    Records clinical observations not captured elsewhere (e.g., social
    history, survey answers, coded findings).
    Based on OMOP CDM v5.3 OBSERVATION table, which still carries a time column.
    """

    __tablename__ = "observation"

    observation_id: Mapped[int] = mapped_column(BigIntKey, primary_key=True, autoincrement=True)
    person_id: Mapped[int] = mapped_column(
        BigIntKey, ForeignKey("person.person_id"), nullable=False
    )
    observation_concept_id: Mapped[int] = mapped_column(Integer, nullable=False)
    observation_date: Mapped[date] = mapped_column(Date, nullable=False)
    observation_datetime: Mapped[datetime | None] = mapped_column(DateTime)
    observation_time: Mapped[str | None] = mapped_column(String(10))
    observation_type_concept_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    value_as_number: Mapped[Decimal | None] = mapped_column(Numeric(precision=18, scale=6))
    value_as_string: Mapped[str | None] = mapped_column(String(255))
    value_as_concept_id: Mapped[int | None] = mapped_column(Integer)
    unit_concept_id: Mapped[int | None] = mapped_column(Integer)
    range_low: Mapped[Decimal | None] = mapped_column(Numeric(precision=18, scale=6))
    range_high: Mapped[Decimal | None] = mapped_column(Numeric(precision=18, scale=6))
    provider_id: Mapped[int | None] = mapped_column(BigIntKey, ForeignKey("provider.provider_id"))
    visit_occurrence_id: Mapped[int | None] = mapped_column(
        BigIntKey, ForeignKey("visit_occurrence.visit_occurrence_id")
    )
    observation_source_value: Mapped[str | None] = mapped_column(String(255))
    observation_source_concept_id: Mapped[int | None] = mapped_column(Integer)
    unit_source_value: Mapped[str | None] = mapped_column(String(50))
    value_source_value: Mapped[str | None] = mapped_column(String(255))

    # Relationships
    person: Mapped["Person"] = relationship("Person")
    provider: Mapped["Provider | None"] = relationship("Provider")
    visit_occurrence: Mapped["VisitOccurrence | None"] = relationship("VisitOccurrence")

    __table_args__ = (
        Index("idx_observation_person_date", "person_id", "observation_date"),
        Index("idx_observation_concept", "observation_concept_id"),
        Index("idx_observation_visit", "visit_occurrence_id"),
    )
