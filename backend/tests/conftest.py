"""Pytest configuration and fixtures for mapping engine tests."""

from collections.abc import Callable, Generator
from datetime import date
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import omop_fhir_mapping.models  # noqa: F401
from omop_fhir_mapping.core.config import Settings
from omop_fhir_mapping.core.database import Base
from omop_fhir_mapping.models import Concept, Person, Provider, VisitOccurrence
from omop_fhir_mapping.schemas.base import ResourceKind
from omop_fhir_mapping.schemas.fhir import Observation
from omop_fhir_mapping.scripts.seed_vocabulary_map import seed_entries
from omop_fhir_mapping.services.identity import DatabaseIdentityStore
from omop_fhir_mapping.services.observation_mapper import ObservationMapper
from omop_fhir_mapping.services.vocabulary_map import DatabaseVocabularyMapStore

LOINC = "http://loinc.org"
SNOMED = "http://snomed.info/sct"
UCUM = "http://unitsofmeasure.org"

PATIENT_ID = "42"
OTHER_PATIENT_ID = "7"
PRACTITIONER_ID = "5"
ENCOUNTER_ID = "900"

# (concept_id, name, domain, vocabulary, code)
CONCEPTS = [
    (3004249, "Systolic blood pressure", "Measurement", "LOINC", "8480-6"),
    (3012888, "Diastolic blood pressure", "Measurement", "LOINC", "8462-4"),
    (3027018, "Heart rate", "Measurement", "LOINC", "8867-4"),
    (3025315, "Body weight", "Measurement", "LOINC", "29463-7"),
    (3020891, "Body temperature", "Measurement", "LOINC", "8310-5"),
    (4302666, "Body temperature", "Measurement", "SNOMED", "386725007"),
    (40766362, "Tobacco smoking status", "Observation", "LOINC", "72166-2"),
    (4298794, "Smoker", "Observation", "SNOMED", "77176002"),
    (4144272, "Never smoked tobacco", "Observation", "SNOMED", "266919005"),
    (8876, "millimeter mercury column", "Unit", "UCUM", "mm[Hg]"),
    (8541, "per minute", "Unit", "UCUM", "/min"),
    (9529, "kilogram", "Unit", "UCUM", "kg"),
]


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    """Create an in-memory SQLite engine with every table."""
    test_engine = create_engine(
        "sqlite:///:memory:",
        echo=False,
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    try:
        yield test_engine
    finally:
        Base.metadata.drop_all(bind=test_engine)
        test_engine.dispose()


@pytest.fixture
def db_session(engine: Engine) -> Generator[Session, None, None]:
    """Create a database session on the test engine."""
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def seeded_session(db_session: Session) -> Session:
    """Session holding concepts, the vocabulary map, people and their logical ids."""
    for concept_id, name, domain, vocabulary, code in CONCEPTS:
        db_session.add(
            Concept(
                concept_id=concept_id,
                concept_name=name,
                domain_id=domain,
                vocabulary_id=vocabulary,
                concept_class_id="Clinical Observation",
                standard_concept="S",
                concept_code=code,
            )
        )
    seed_entries(DatabaseVocabularyMapStore(db_session))

    db_session.add(Provider(provider_id=1, provider_name="Gregory House"))
    db_session.add(
        Person(
            person_id=1,
            year_of_birth=1970,
            prefix_name="Dr.",
            given_name1="Jane",
            given_name2="Q",
            family_name="Doe",
        )
    )
    db_session.add(Person(person_id=2, year_of_birth=1985, given_name1="John", family_name="Smith"))
    db_session.flush()
    db_session.add(
        VisitOccurrence(
            visit_occurrence_id=1,
            person_id=1,
            visit_start_date=date(2023, 1, 1),
            visit_end_date=date(2023, 1, 1),
        )
    )
    db_session.flush()

    identities = DatabaseIdentityStore(db_session)
    identities.register(ResourceKind.PATIENT, int(PATIENT_ID), 1)
    identities.register(ResourceKind.PATIENT, int(OTHER_PATIENT_ID), 2)
    identities.register(ResourceKind.PRACTITIONER, int(PRACTITIONER_ID), 1)
    identities.register(ResourceKind.ENCOUNTER, int(ENCOUNTER_ID), 1)
    db_session.commit()
    return db_session


@pytest.fixture
def test_settings() -> Settings:
    return Settings(database_url="sqlite:///:memory:")


@pytest.fixture
def mapper(seeded_session: Session, test_settings: Settings) -> ObservationMapper:
    """Mapping engine wired onto the seeded session."""
    return ObservationMapper.from_session(seeded_session, settings=test_settings)


@pytest.fixture
def make_observation() -> Callable[..., Observation]:
    """Factory for single-valued Observations of patient 42."""

    def factory(**overrides: Any) -> Observation:
        data: dict[str, Any] = {
            "resourceType": "Observation",
            "status": "final",
            "code": {"coding": [{"system": LOINC, "code": "8867-4", "display": "Heart rate"}]},
            "subject": {"reference": f"Patient/{PATIENT_ID}"},
            "effectiveDateTime": "2023-01-01T10:00:00Z",
            "valueQuantity": {"value": 72, "unit": "beats/min", "system": UCUM, "code": "/min"},
        }
        data.update(overrides)
        return Observation.model_validate(data)

    return factory


@pytest.fixture
def make_blood_pressure() -> Callable[..., Observation]:
    """Factory for blood pressure composites; pass None to omit a component."""

    def factory(
        systolic: float | None = 120,
        diastolic: float | None = 80,
        **overrides: Any,
    ) -> Observation:
        components = []
        for code, value in (("8480-6", systolic), ("8462-4", diastolic)):
            if value is None:
                continue
            components.append(
                {
                    "code": {"coding": [{"system": LOINC, "code": code}]},
                    "valueQuantity": {
                        "value": value,
                        "unit": "mmHg",
                        "system": UCUM,
                        "code": "mm[Hg]",
                    },
                }
            )
        data: dict[str, Any] = {
            "resourceType": "Observation",
            "status": "final",
            "code": {"coding": [{"system": LOINC, "code": "85354-9"}]},
            "subject": {"reference": f"Patient/{PATIENT_ID}"},
            "effectiveDateTime": "2023-01-01T10:00:00Z",
            "component": components,
        }
        data.update(overrides)
        return Observation.model_validate(data)

    return factory
