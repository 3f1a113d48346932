"""Search parameter to filter expression compilation.

Translates FHIR Observation search parameters into a backend-agnostic
filter tree that the storage layer turns into a query. The compiler holds
no state between calls; identity and vocabulary lookups are delegated.

A filter tree is a flat list of ``Clause`` objects. Each clause joins its
comparisons with its own ``relationship``. Clauses are then grouped: a
clause whose ``upper_relationship`` is OR joins the group of the clause
before it, and the groups are ANDed together. So the sequence
``code, _id=1 (AND), _id=2 (OR)`` reads ``code AND (id=1 OR id=2)``.

Field paths understood by storage:
    partition, id, concept_id, date, time, source_value,
    concept.vocabulary_id, concept.concept_code,
    person.person_id, person.<name column>
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

from omop_fhir_mapping.core.config import Settings, settings as default_settings
from omop_fhir_mapping.core.exceptions import UnsupportedSearchParameter
from omop_fhir_mapping.schemas.base import ResourceKind
from omop_fhir_mapping.schemas.rows import normalize_instant, split_effective
from omop_fhir_mapping.services.codes import (
    BP_SYSTOLIC_DIASTOLIC_CODE,
    DIASTOLIC_CONCEPT_ID,
    SYSTOLIC_LOINC_CODE,
)
from omop_fhir_mapping.services.identity import IdentityMapper
from omop_fhir_mapping.services.vocabulary_map import VocabularyResolver

logger = logging.getLogger(__name__)

SP_RES_ID = "_id"
SP_DATE = "date"
SP_CODE = "code"
SP_PATIENT_ID = "Patient:_id"
SP_PATIENT_NAME = "Patient:name"

# Alternate spellings of the subject reference parameter
SUBJECT_ALIASES = ("subject", "patient", "subject:Patient")

PERSON_NAME_FIELDS = (
    "person.family_name",
    "person.given_name1",
    "person.given_name2",
    "person.prefix_name",
    "person.suffix_name",
)

# Year or year-month; searched as the whole period
PARTIAL_DATE = re.compile(r"(?P<year>\d{4})(?:-(?P<month>\d{2}))?")


class Operator(str, Enum):
    EQ = "eq"
    NE = "ne"
    LT = "lt"
    LE = "le"
    GT = "gt"
    GE = "ge"
    LIKE = "like"
    IN = "in"


class Relationship(str, Enum):
    AND = "and"
    OR = "or"


@dataclass(frozen=True)
class Comparison:
    """One ``field <op> value`` test."""

    field: str
    operator: Operator
    value: Any


@dataclass
class Clause:
    """Comparisons joined by ``relationship``; see module docstring for grouping."""

    comparisons: list[Comparison] = field(default_factory=list)
    relationship: Relationship = Relationship.AND
    upper_relationship: Relationship = Relationship.AND


def match_nothing() -> Clause:
    """A clause no row satisfies (unknown identity, unresolvable system)."""
    return Clause([Comparison("id", Operator.IN, ())])


def group_clauses(clauses: list[Clause]) -> list[list[Clause]]:
    """Split a clause list into OR-groups that are ANDed together."""
    groups: list[list[Clause]] = []
    for clause in clauses:
        if groups and clause.upper_relationship is Relationship.OR:
            groups[-1].append(clause)
        else:
            groups.append([clause])
    return groups


@dataclass(frozen=True)
class TokenParam:
    """``[system]|[code]`` token search value."""

    system: str | None = None
    code: str | None = None

    @classmethod
    def parse(cls, raw: str) -> "TokenParam":
        if "|" not in raw:
            return cls(system=None, code=raw or None)
        system, _, code = raw.partition("|")
        return cls(system=system or None, code=code or None)


class DatePrefix(str, Enum):
    EQ = "eq"
    NE = "ne"
    LT = "lt"
    LE = "le"
    GT = "gt"
    GE = "ge"


@dataclass(frozen=True)
class DateParam:
    """Prefixed date search value, e.g. ``ge2023-01-01T10:00:00Z``.

    ``value`` is a normalized UTC instant, or a plain ``date`` when the
    search value carries no time of day. A partial date (``2023``,
    ``2023-01``) is the period it names: ``value`` is its first day and
    ``until`` the first day after it.
    """

    prefix: DatePrefix
    value: datetime | date
    until: date | None = None

    @classmethod
    def parse(cls, raw: str) -> "DateParam":
        """Parse a FHIR date search value.

        Raises:
            UnsupportedSearchParameter: For an unknown prefix or a malformed date.
        """
        text = raw.strip()
        prefix = DatePrefix.EQ
        if text[:2].isalpha():
            try:
                prefix = DatePrefix(text[:2])
            except ValueError:
                raise UnsupportedSearchParameter(
                    f"Unsupported date prefix {text[:2]!r} in {raw!r}"
                ) from None
            text = text[2:]
        try:
            partial = PARTIAL_DATE.fullmatch(text)
            if partial is not None:
                year, month = int(partial["year"]), partial["month"]
                if month is None:
                    return cls(prefix, date(year, 1, 1), date(year + 1, 1, 1))
                start = date(year, int(month), 1)
                if start.month == 12:
                    return cls(prefix, start, date(year + 1, 1, 1))
                return cls(prefix, start, date(year, start.month + 1, 1))
            if "T" not in text:
                return cls(prefix, date.fromisoformat(text))
            instant = datetime.fromisoformat(text.replace("Z", "+00:00"))
            return cls(prefix, normalize_instant(instant))
        except ValueError as exc:
            raise UnsupportedSearchParameter(f"Malformed date search value {raw!r}") from exc


class PredicateCompiler:
    """Compile FHIR search parameters into storage filter clauses.

    Usage:
        compiler = PredicateCompiler(resolver, identity)
        clauses = compiler.compile("code", "http://loinc.org|8480-6")
        clauses += compiler.compile("date", "ge2023-01-01T00:00:00Z")
        clauses.append(compiler.exclusion_clause())
    """

    def __init__(
        self,
        resolver: VocabularyResolver,
        identity: IdentityMapper,
        settings: Settings | None = None,
    ) -> None:
        self._resolver = resolver
        self._identity = identity
        self._settings = settings or default_settings

    def compile(self, name: str, value: Any, or_: bool = False) -> list[Clause]:
        """Compile one parameter value.

        ``or_`` joins the result to the previous clause with OR, which is how
        repeated values of one parameter (``_id=1,2``) are expressed.

        Raises:
            UnsupportedSearchParameter: For unknown names in strict mode, and for
                unparseable date values.
        """
        upper = Relationship.OR if or_ else Relationship.AND

        if name == SP_RES_ID:
            clauses = self._compile_id(str(value))
        elif name == SP_DATE:
            param = value if isinstance(value, DateParam) else DateParam.parse(str(value))
            clauses = self._compile_date(param)
        elif name == SP_CODE:
            param = value if isinstance(value, TokenParam) else TokenParam.parse(str(value))
            clauses = self._compile_code(param)
        elif name == SP_PATIENT_ID or name in SUBJECT_ALIASES:
            clauses = self._compile_patient_id(str(value))
        elif name == SP_PATIENT_NAME:
            clauses = self._compile_patient_name(str(value))
        elif self._settings.strict_search_parameters:
            raise UnsupportedSearchParameter(f"Unsupported search parameter: {name}")
        else:
            logger.debug(f"Ignoring unsupported search parameter {name}={value}")
            return []

        for clause in clauses:
            clause.upper_relationship = upper
        return clauses

    def exclusion_clause(self) -> Clause:
        """Hide bare diastolic rows; they surface only inside their systolic composite."""
        return Clause([Comparison("concept_id", Operator.NE, DIASTOLIC_CONCEPT_ID)])

    def _compile_id(self, logical_id: str) -> list[Clause]:
        internal = self._identity.lookup_internal_id(logical_id)
        if internal is None:
            return [match_nothing()]
        return [
            Clause(
                [
                    Comparison("partition", Operator.EQ, internal.partition),
                    Comparison("id", Operator.EQ, internal.native_id),
                ]
            )
        ]

    def _compile_date(self, param: DateParam) -> list[Clause]:
        if param.until is not None:
            return [self._compile_period(param.prefix, param.value, param.until)]
        operator = Operator(param.prefix.value)
        if not isinstance(param.value, datetime):
            return [Clause([Comparison("date", operator, param.value)])]
        # Date and time are compared independently, so ranges that cross
        # midnight are not exact
        day, time_string = split_effective(param.value)
        return [
            Clause(
                [
                    Comparison("date", operator, day),
                    Comparison("time", operator, time_string),
                ]
            )
        ]

    def _compile_period(self, prefix: DatePrefix, start: date, until: date) -> Clause:
        if prefix is DatePrefix.EQ:
            return Clause(
                [Comparison("date", Operator.GE, start), Comparison("date", Operator.LT, until)]
            )
        if prefix is DatePrefix.NE:
            return Clause(
                [Comparison("date", Operator.LT, start), Comparison("date", Operator.GE, until)],
                relationship=Relationship.OR,
            )
        bound = {
            DatePrefix.GE: (Operator.GE, start),
            DatePrefix.GT: (Operator.GE, until),
            DatePrefix.LT: (Operator.LT, start),
            DatePrefix.LE: (Operator.LT, until),
        }
        operator, value = bound[prefix]
        return Clause([Comparison("date", operator, value)])

    def _compile_code(self, param: TokenParam) -> list[Clause]:
        code = param.code
        if param.system is None:
            if code is None:
                return []
            if code == BP_SYSTOLIC_DIASTOLIC_CODE:
                code = SYSTOLIC_LOINC_CODE
            return [Clause([Comparison("concept.concept_code", Operator.EQ, code)])]

        vocabulary = self._resolver.resolve_internal(param.system)
        if vocabulary is None:
            logger.debug(f"Search system {param.system} has no vocabulary; matching nothing")
            return [match_nothing()]
        if code is None:
            return [Clause([Comparison("concept.vocabulary_id", Operator.EQ, vocabulary)])]
        if vocabulary == self._settings.preferred_vocabulary and code == BP_SYSTOLIC_DIASTOLIC_CODE:
            code = SYSTOLIC_LOINC_CODE
        return [
            Clause(
                [
                    Comparison("concept.vocabulary_id", Operator.EQ, vocabulary),
                    Comparison("concept.concept_code", Operator.EQ, code),
                ]
            )
        ]

    def _compile_patient_id(self, reference: str) -> list[Clause]:
        logical_id = reference.rsplit("/", 1)[-1]
        person_id = self._identity.lookup_internal(logical_id, ResourceKind.PATIENT)
        if person_id is None:
            return [match_nothing()]
        return [Clause([Comparison("person.person_id", Operator.EQ, person_id)])]

    def _compile_patient_name(self, name: str) -> list[Clause]:
        pattern = f"%{name.strip()}%"
        return [
            Clause(
                [Comparison(f, Operator.LIKE, pattern) for f in PERSON_NAME_FIELDS],
                relationship=Relationship.OR,
            )
        ]
