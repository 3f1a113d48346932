"""Tests for search parameter compilation."""

from datetime import UTC, date, datetime
from unittest.mock import MagicMock

import pytest

from omop_fhir_mapping.core.config import Settings
from omop_fhir_mapping.core.exceptions import UnsupportedSearchParameter
from omop_fhir_mapping.schemas.base import Partition, ResourceKind
from omop_fhir_mapping.schemas.rows import InternalId
from omop_fhir_mapping.services.codes import DIASTOLIC_CONCEPT_ID
from omop_fhir_mapping.services.predicates import (
    Clause,
    Comparison,
    DateParam,
    DatePrefix,
    Operator,
    PredicateCompiler,
    Relationship,
    TokenParam,
    group_clauses,
)


def _vocabulary(system: str | None) -> str | None:
    return {"http://loinc.org": "LOINC", "http://snomed.info/sct": "SNOMED"}.get(system or "")


@pytest.fixture
def resolver() -> MagicMock:
    resolver = MagicMock()
    resolver.resolve_internal.side_effect = _vocabulary
    return resolver


@pytest.fixture
def identity() -> MagicMock:
    identity = MagicMock()
    identity.lookup_internal_id.side_effect = lambda logical_id: {
        "10": InternalId(Partition.MEASUREMENT, 3),
        "11": InternalId(Partition.OBSERVATION, 4),
    }.get(logical_id)
    identity.lookup_internal.side_effect = lambda logical_id, kind: (
        1 if (logical_id, kind) == ("42", ResourceKind.PATIENT) else None
    )
    return identity


@pytest.fixture
def compiler(resolver: MagicMock, identity: MagicMock) -> PredicateCompiler:
    return PredicateCompiler(resolver, identity, Settings())


def _fields(clause: Clause) -> list[tuple[str, Operator, object]]:
    return [(c.field, c.operator, c.value) for c in clause.comparisons]


class TestParamParsing:
    """Tests for token and date value parsing."""

    def test_token_with_system(self) -> None:
        parsed = TokenParam.parse("http://loinc.org|8480-6")
        assert parsed == TokenParam("http://loinc.org", "8480-6")

    def test_token_code_only(self) -> None:
        assert TokenParam.parse("8480-6") == TokenParam(None, "8480-6")

    def test_token_system_only(self) -> None:
        assert TokenParam.parse("http://loinc.org|") == TokenParam("http://loinc.org", None)

    def test_date_with_prefix(self) -> None:
        param = DateParam.parse("ge2023-01-01T10:00:00Z")
        assert param.prefix is DatePrefix.GE
        assert param.value == datetime(2023, 1, 1, 10, tzinfo=UTC)

    def test_date_without_prefix_is_eq(self) -> None:
        assert DateParam.parse("2023-01-01").prefix is DatePrefix.EQ

    def test_date_only(self) -> None:
        assert DateParam.parse("lt2023-01-01").value == date(2023, 1, 1)

    def test_year(self) -> None:
        """A bare year is the whole year."""
        param = DateParam.parse("2023")
        assert (param.prefix, param.value, param.until) == (
            DatePrefix.EQ,
            date(2023, 1, 1),
            date(2024, 1, 1),
        )

    def test_prefixed_month(self) -> None:
        param = DateParam.parse("ge2023-01")
        assert (param.prefix, param.value, param.until) == (
            DatePrefix.GE,
            date(2023, 1, 1),
            date(2023, 2, 1),
        )

    def test_december_ends_at_new_year(self) -> None:
        assert DateParam.parse("2023-12").until == date(2024, 1, 1)

    def test_full_date_has_no_period(self) -> None:
        assert DateParam.parse("2023-01-01").until is None

    @pytest.mark.parametrize("raw", ["sa2023", "eb2023-01-01", "ap2023-01-01T10:00:00Z"])
    def test_unknown_prefix_raises(self, raw: str) -> None:
        with pytest.raises(UnsupportedSearchParameter):
            DateParam.parse(raw)

    @pytest.mark.parametrize("raw", ["", "ge", "2023-13", "2023-02-30", "yesterday", "20230101x"])
    def test_malformed_value_raises(self, raw: str) -> None:
        with pytest.raises(UnsupportedSearchParameter):
            DateParam.parse(raw)


class TestIdCompilation:
    """Tests for _id."""

    def test_measurement_id(self, compiler: PredicateCompiler) -> None:
        [clause] = compiler.compile("_id", "10")
        assert _fields(clause) == [
            ("partition", Operator.EQ, Partition.MEASUREMENT),
            ("id", Operator.EQ, 3),
        ]

    def test_observation_id(self, compiler: PredicateCompiler) -> None:
        [clause] = compiler.compile("_id", "11")
        assert ("partition", Operator.EQ, Partition.OBSERVATION) in _fields(clause)

    def test_unknown_id_matches_nothing(self, compiler: PredicateCompiler) -> None:
        [clause] = compiler.compile("_id", "999")
        assert _fields(clause) == [("id", Operator.IN, ())]

    def test_or_joined(self, compiler: PredicateCompiler) -> None:
        [clause] = compiler.compile("_id", "11", or_=True)
        assert clause.upper_relationship is Relationship.OR


class TestDateCompilation:
    """Tests for date with comparison prefixes."""

    def test_date_and_time_use_same_operator(self, compiler: PredicateCompiler) -> None:
        [clause] = compiler.compile("date", "ge2023-01-01T10:00:00Z")
        assert clause.relationship is Relationship.AND
        assert _fields(clause) == [
            ("date", Operator.GE, date(2023, 1, 1)),
            ("time", Operator.GE, "10:00:00"),
        ]

    def test_offset_is_normalized(self, compiler: PredicateCompiler) -> None:
        [clause] = compiler.compile("date", "eq2023-01-01T12:00:00+02:00")
        assert ("time", Operator.EQ, "10:00:00") in _fields(clause)

    def test_date_only_compares_date(self, compiler: PredicateCompiler) -> None:
        [clause] = compiler.compile("date", "2023-01-01")
        assert _fields(clause) == [("date", Operator.EQ, date(2023, 1, 1))]

    def test_year_is_a_range(self, compiler: PredicateCompiler) -> None:
        [clause] = compiler.compile("date", "2023")
        assert clause.relationship is Relationship.AND
        assert _fields(clause) == [
            ("date", Operator.GE, date(2023, 1, 1)),
            ("date", Operator.LT, date(2024, 1, 1)),
        ]

    def test_ne_period_is_outside_either_end(self, compiler: PredicateCompiler) -> None:
        [clause] = compiler.compile("date", "ne2023-01")
        assert clause.relationship is Relationship.OR
        assert _fields(clause) == [
            ("date", Operator.LT, date(2023, 1, 1)),
            ("date", Operator.GE, date(2023, 2, 1)),
        ]

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("ge2023-01", (Operator.GE, date(2023, 1, 1))),
            ("gt2023-01", (Operator.GE, date(2023, 2, 1))),
            ("lt2023-01", (Operator.LT, date(2023, 1, 1))),
            ("le2023-01", (Operator.LT, date(2023, 2, 1))),
        ],
    )
    def test_period_bounds(
        self, compiler: PredicateCompiler, raw: str, expected: tuple[Operator, date]
    ) -> None:
        [clause] = compiler.compile("date", raw)
        assert _fields(clause) == [("date", *expected)]

    def test_bad_date_raises_in_permissive_mode(self, compiler: PredicateCompiler) -> None:
        with pytest.raises(UnsupportedSearchParameter):
            compiler.compile("date", "sa2023")

    def test_accepts_parsed_param(self, compiler: PredicateCompiler) -> None:
        param = DateParam(DatePrefix.NE, date(2023, 1, 1))
        [clause] = compiler.compile("date", param)
        assert _fields(clause) == [("date", Operator.NE, date(2023, 1, 1))]


class TestCodeCompilation:
    """Tests for code with optional system."""

    def test_system_and_code(self, compiler: PredicateCompiler) -> None:
        [clause] = compiler.compile("code", "http://snomed.info/sct|77176002")
        assert _fields(clause) == [
            ("concept.vocabulary_id", Operator.EQ, "SNOMED"),
            ("concept.concept_code", Operator.EQ, "77176002"),
        ]

    def test_blood_pressure_searches_systolic(self, compiler: PredicateCompiler) -> None:
        [clause] = compiler.compile("code", "http://loinc.org|85354-9")
        assert ("concept.concept_code", Operator.EQ, "8480-6") in _fields(clause)

    def test_code_without_system(self, compiler: PredicateCompiler) -> None:
        [clause] = compiler.compile("code", "8867-4")
        assert _fields(clause) == [("concept.concept_code", Operator.EQ, "8867-4")]

    def test_blood_pressure_code_without_system(self, compiler: PredicateCompiler) -> None:
        [clause] = compiler.compile("code", "85354-9")
        assert _fields(clause) == [("concept.concept_code", Operator.EQ, "8480-6")]

    def test_system_without_code(self, compiler: PredicateCompiler) -> None:
        [clause] = compiler.compile("code", "http://loinc.org|")
        assert _fields(clause) == [("concept.vocabulary_id", Operator.EQ, "LOINC")]

    def test_neither(self, compiler: PredicateCompiler) -> None:
        assert compiler.compile("code", TokenParam()) == []

    def test_unknown_system_matches_nothing(self, compiler: PredicateCompiler) -> None:
        [clause] = compiler.compile("code", "urn:local|X1")
        assert _fields(clause) == [("id", Operator.IN, ())]


class TestSubjectCompilation:
    """Tests for subject id and name."""

    def test_patient_id(self, compiler: PredicateCompiler) -> None:
        [clause] = compiler.compile("Patient:_id", "42")
        assert _fields(clause) == [("person.person_id", Operator.EQ, 1)]

    def test_subject_reference_alias(self, compiler: PredicateCompiler) -> None:
        [clause] = compiler.compile("subject", "Patient/42")
        assert _fields(clause) == [("person.person_id", Operator.EQ, 1)]

    def test_unknown_patient_matches_nothing(self, compiler: PredicateCompiler) -> None:
        [clause] = compiler.compile("Patient:_id", "7")
        assert _fields(clause) == [("id", Operator.IN, ())]

    def test_patient_name_or_across_name_fields(self, compiler: PredicateCompiler) -> None:
        [clause] = compiler.compile("Patient:name", "Doe")
        assert clause.relationship is Relationship.OR
        assert {c.field for c in clause.comparisons} == {
            "person.family_name",
            "person.given_name1",
            "person.given_name2",
            "person.prefix_name",
            "person.suffix_name",
        }
        assert all(c.operator is Operator.LIKE and c.value == "%Doe%" for c in clause.comparisons)


class TestUnsupportedParameters:
    """Tests for permissive and strict handling of unknown names."""

    def test_permissive_by_default(self, compiler: PredicateCompiler) -> None:
        assert compiler.compile("value-quantity", "gt100") == []

    def test_strict_raises(self, resolver: MagicMock, identity: MagicMock) -> None:
        strict = PredicateCompiler(resolver, identity, Settings(strict_search_parameters=True))
        with pytest.raises(UnsupportedSearchParameter):
            strict.compile("value-quantity", "gt100")


class TestExclusionAndGrouping:
    """Tests for the diastolic exclusion and clause grouping."""

    def test_exclusion_clause(self, compiler: PredicateCompiler) -> None:
        clause = compiler.exclusion_clause()
        assert _fields(clause) == [("concept_id", Operator.NE, DIASTOLIC_CONCEPT_ID)]

    def test_or_clauses_join_previous_group(self) -> None:
        a = Clause([Comparison("id", Operator.EQ, 1)])
        b = Clause([Comparison("id", Operator.EQ, 2)])
        c = Clause([Comparison("id", Operator.EQ, 3)], upper_relationship=Relationship.OR)
        assert group_clauses([a, b, c]) == [[a], [b, c]]

    def test_empty(self) -> None:
        assert group_clauses([]) == []
