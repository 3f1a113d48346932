"""Two-partition row storage.

The storage collaborator reads and writes ``MappedRow`` objects against the
OMOP ``measurement`` and ``observation`` tables. It is the only place that
knows the per-partition column names and the split date/time columns.

Filter trees from ``services.predicates`` are compiled here into
SQLAlchemy boolean expressions. Concept fields are reached through an
outer join on ``concept``, person fields through ``person``.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import and_, false, func, or_, select, true
from sqlalchemy.orm import Session
from sqlalchemy.sql.elements import ColumnElement

from omop_fhir_mapping.core.exceptions import ResourceNotFound
from omop_fhir_mapping.models.omop import Measurement, Observation, Person, VisitOccurrence
from omop_fhir_mapping.models.vocabulary import Concept
from omop_fhir_mapping.schemas.base import Partition
from omop_fhir_mapping.schemas.rows import (
    MappedRow,
    combine_effective,
    normalize_instant,
    split_effective,
)
from omop_fhir_mapping.services.predicates import (
    Clause,
    Comparison,
    Operator,
    Relationship,
    group_clauses,
)

logger = logging.getLogger(__name__)

# (field, descending)
SortSpec = list[tuple[str, bool]]


@dataclass(frozen=True)
class _PartitionTable:
    """Column names of one partition table."""

    model: type
    prefix: str

    def column(self, suffix: str) -> Any:
        return getattr(self.model, f"{self.prefix}_{suffix}")

    def value(self, entity: Any, suffix: str) -> Any:
        return getattr(entity, f"{self.prefix}_{suffix}")

    @property
    def id(self) -> Any:
        return self.column("id")


_TABLES: dict[Partition, _PartitionTable] = {
    Partition.MEASUREMENT: _PartitionTable(Measurement, "measurement"),
    Partition.OBSERVATION: _PartitionTable(Observation, "observation"),
}


def _to_float(value: Decimal | float | None) -> float | None:
    return float(value) if value is not None else None


class ObservationStore(ABC):
    """Storage contract for the two observation partitions."""

    @abstractmethod
    def find_by_id(self, partition: Partition, native_id: int) -> MappedRow | None:
        ...

    @abstractmethod
    def find_sibling(
        self,
        partition: Partition,
        concept_id: int,
        person_id: int,
        effective: datetime,
    ) -> MappedRow | None:
        """Find the row of ``concept_id`` sharing person, date and time."""
        ...

    @abstractmethod
    def search(
        self,
        partition: Partition,
        clauses: list[Clause],
        offset: int = 0,
        limit: int | None = None,
        sort: SortSpec | None = None,
    ) -> Iterator[MappedRow]:
        """Yield matching rows.

        The query runs on first iteration and its result is buffered, so the
        caller may write to the store while iterating. Reissue the call to
        see rows written since.
        """
        ...

    @abstractmethod
    def count(self, partition: Partition, clauses: list[Clause]) -> int:
        ...

    @abstractmethod
    def upsert(self, row: MappedRow) -> int:
        """Insert or update ``row`` and return its native id."""
        ...

    @abstractmethod
    def delete(self, partition: Partition, native_id: int) -> int:
        """Delete a row and return how many rows were removed."""
        ...

    @abstractmethod
    def visit_exists(self, visit_occurrence_id: int) -> bool:
        ...

    @abstractmethod
    def transaction(self) -> AbstractContextManager[None]:
        """Scope in which all writes of one logical resource succeed or fail together."""
        ...


class DatabaseObservationStore(ObservationStore):
    """Observation store over a SQLAlchemy session.

    Usage:
        with session_scope() as session:
            store = DatabaseObservationStore(session)
            row = store.find_by_id(Partition.MEASUREMENT, 17)
    """

    def __init__(self, session: Session) -> None:
        self._session = session

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def find_by_id(self, partition: Partition, native_id: int) -> MappedRow | None:
        entity = self._session.get(_TABLES[partition].model, native_id)
        return self._to_row(partition, entity) if entity is not None else None

    def find_sibling(
        self,
        partition: Partition,
        concept_id: int,
        person_id: int,
        effective: datetime,
    ) -> MappedRow | None:
        table = _TABLES[partition]
        day, time_string = split_effective(effective)
        stmt = (
            select(table.model)
            .where(
                table.column("concept_id") == concept_id,
                table.model.person_id == person_id,
                table.column("date") == day,
                table.column("time") == time_string,
            )
            .order_by(table.id)
            .limit(1)
        )
        entity = self._session.execute(stmt).scalars().first()
        return self._to_row(partition, entity) if entity is not None else None

    def search(
        self,
        partition: Partition,
        clauses: list[Clause],
        offset: int = 0,
        limit: int | None = None,
        sort: SortSpec | None = None,
    ) -> Iterator[MappedRow]:
        table = _TABLES[partition]
        stmt = self._filtered(table, partition, select(table.model), clauses)

        order_by = [
            self._column(table, name).desc() if descending else self._column(table, name).asc()
            for name, descending in (sort or [])
        ]
        stmt = stmt.order_by(*order_by, table.id)
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)

        # Buffered so upserts made while iterating do not disturb the cursor
        entities = self._session.execute(stmt).scalars().all()
        for entity in entities:
            yield self._to_row(partition, entity)

    def count(self, partition: Partition, clauses: list[Clause]) -> int:
        table = _TABLES[partition]
        stmt = self._filtered(table, partition, select(func.count(table.id)), clauses)
        return self._session.execute(stmt).scalar_one()

    def visit_exists(self, visit_occurrence_id: int) -> bool:
        return self._session.get(VisitOccurrence, visit_occurrence_id) is not None

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def upsert(self, row: MappedRow) -> int:
        table = _TABLES[row.partition]
        if row.native_id is not None:
            entity = self._session.get(table.model, row.native_id)
            if entity is None:
                raise ResourceNotFound(
                    f"{row.partition.value} row {row.native_id} does not exist"
                )
        else:
            entity = table.model()
            self._session.add(entity)

        self._apply(table, entity, row)
        self._session.flush()
        native_id = table.value(entity, "id")
        logger.debug(f"Upserted {row.partition.value} row {native_id}")
        return native_id

    def delete(self, partition: Partition, native_id: int) -> int:
        entity = self._session.get(_TABLES[partition].model, native_id)
        if entity is None:
            return 0
        self._session.delete(entity)
        self._session.flush()
        return 1

    @contextmanager
    def transaction(self) -> Iterator[None]:
        try:
            yield
            self._session.flush()
        except Exception:
            self._session.rollback()
            raise

    # -------------------------------------------------------------------------
    # Mapping
    # -------------------------------------------------------------------------

    def _to_row(self, partition: Partition, entity: Any) -> MappedRow:
        table = _TABLES[partition]
        person = entity.person
        provider = entity.provider
        return MappedRow(
            partition=partition,
            person_id=entity.person_id,
            concept_id=table.value(entity, "concept_id"),
            native_id=table.value(entity, "id"),
            effective=combine_effective(
                table.value(entity, "date"),
                table.value(entity, "time"),
            ),
            source_value=table.value(entity, "source_value"),
            source_concept_id=table.value(entity, "source_concept_id"),
            value_as_number=_to_float(entity.value_as_number),
            value_as_concept_id=entity.value_as_concept_id,
            value_as_string=getattr(entity, "value_as_string", None),
            value_source_value=entity.value_source_value,
            unit_concept_id=entity.unit_concept_id,
            unit_source_value=entity.unit_source_value,
            range_low=_to_float(entity.range_low),
            range_high=_to_float(entity.range_high),
            visit_occurrence_id=entity.visit_occurrence_id,
            provider_id=entity.provider_id,
            type_concept_id=table.value(entity, "type_concept_id"),
            person_name=person.name_as_single_string if person is not None else None,
            provider_name=provider.provider_name if provider is not None else None,
        )

    def _apply(self, table: _PartitionTable, entity: Any, row: MappedRow) -> None:
        if row.effective is None:
            raise ValueError("rows are written with an effective time")
        day, time_string = split_effective(row.effective)
        prefix = table.prefix

        entity.person_id = row.person_id
        setattr(entity, f"{prefix}_concept_id", row.concept_id)
        setattr(entity, f"{prefix}_date", day)
        setattr(entity, f"{prefix}_time", time_string)
        setattr(entity, f"{prefix}_datetime", normalize_instant(row.effective).replace(tzinfo=None))
        setattr(entity, f"{prefix}_type_concept_id", row.type_concept_id)
        setattr(entity, f"{prefix}_source_value", row.source_value)
        setattr(entity, f"{prefix}_source_concept_id", row.source_concept_id)

        entity.value_as_number = row.value_as_number
        entity.value_as_concept_id = row.value_as_concept_id
        entity.value_source_value = row.value_source_value
        if hasattr(table.model, "value_as_string"):
            entity.value_as_string = row.value_as_string
        entity.unit_concept_id = row.unit_concept_id
        entity.unit_source_value = row.unit_source_value
        entity.range_low = row.range_low
        entity.range_high = row.range_high
        entity.visit_occurrence_id = row.visit_occurrence_id
        entity.provider_id = row.provider_id

    # -------------------------------------------------------------------------
    # Filter compilation
    # -------------------------------------------------------------------------

    def _filtered(
        self,
        table: _PartitionTable,
        partition: Partition,
        stmt: Any,
        clauses: list[Clause],
    ) -> Any:
        stmt = stmt.select_from(table.model)
        fields = {c.field for clause in clauses for c in clause.comparisons}
        if any(f.startswith("concept.") for f in fields):
            stmt = stmt.outerjoin(Concept, table.column("concept_id") == Concept.concept_id)
        if any(f.startswith("person.") for f in fields):
            stmt = stmt.outerjoin(Person, table.model.person_id == Person.person_id)

        groups = group_clauses(clauses)
        if groups:
            stmt = stmt.where(
                and_(
                    *(
                        or_(*(self._clause(table, partition, clause) for clause in group))
                        for group in groups
                    )
                )
            )
        return stmt

    def _clause(
        self, table: _PartitionTable, partition: Partition, clause: Clause
    ) -> ColumnElement:
        expressions = [self._comparison(table, partition, c) for c in clause.comparisons]
        if not expressions:
            return true()
        if clause.relationship is Relationship.OR:
            return or_(*expressions)
        return and_(*expressions)

    def _comparison(
        self, table: _PartitionTable, partition: Partition, comparison: Comparison
    ) -> ColumnElement:
        if comparison.field == "partition":
            # Evaluated here, the partition is not a column
            same = comparison.value == partition
            if comparison.operator is Operator.NE:
                same = not same
            return true() if same else false()

        column = self._column(table, comparison.field)
        value = comparison.value
        match comparison.operator:
            case Operator.EQ:
                return column == value
            case Operator.NE:
                return column != value
            case Operator.LT:
                return column < value
            case Operator.LE:
                return column <= value
            case Operator.GT:
                return column > value
            case Operator.GE:
                return column >= value
            case Operator.LIKE:
                return column.like(value)
            case Operator.IN:
                return column.in_(list(value))
        raise ValueError(f"Unsupported operator {comparison.operator}")

    @staticmethod
    def _column(table: _PartitionTable, field: str) -> Any:
        if field.startswith("concept."):
            return getattr(Concept, field.split(".", 1)[1])
        if field.startswith("person."):
            return getattr(Person, field.split(".", 1)[1])
        if field in ("id", "concept_id", "date", "time", "source_value", "type_concept_id"):
            return table.column(field)
        raise ValueError(f"Unknown filter field {field}")
