"""Internal row and identity types.

``MappedRow`` is the partition-neutral shape of one physical measurement or
observation row as the engine sees it. It carries a single structured
timestamp; the CDM's split date + ``HH:MM:SS`` columns are produced and
parsed only at the storage boundary (``split_effective`` /
``combine_effective``).
"""

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime, time

from omop_fhir_mapping.schemas.base import Partition

logger = logging.getLogger(__name__)

UNMAPPED_CONCEPT_ID = 0
UNKNOWN_TYPE_CONCEPT_ID = 0

TIME_FORMAT = "%H:%M:%S"


@dataclass(frozen=True)
class InternalId:
    """Physical identity of a row: which partition, and its native key.

    At the identity boundary this is encoded as one signed integer:
    measurement keys are positive, observation keys are negated.
    """

    partition: Partition
    native_id: int

    def __post_init__(self) -> None:
        if self.native_id <= 0:
            raise ValueError(f"native ids are positive, got {self.native_id}")

    @property
    def signed(self) -> int:
        if self.partition is Partition.OBSERVATION:
            return -self.native_id
        return self.native_id

    @classmethod
    def from_signed(cls, signed_id: int) -> "InternalId":
        if signed_id < 0:
            return cls(Partition.OBSERVATION, -signed_id)
        return cls(Partition.MEASUREMENT, signed_id)


@dataclass
class MappedRow:
    """One physical row in either storage partition."""

    partition: Partition
    person_id: int
    concept_id: int = UNMAPPED_CONCEPT_ID
    native_id: int | None = None
    effective: datetime | None = None

    # Source columns, populated when the code could not be mapped
    source_value: str | None = None
    source_concept_id: int | None = None

    # Value: at most one of number/concept/string is authoritative
    value_as_number: float | None = None
    value_as_concept_id: int | None = None
    value_as_string: str | None = None
    value_source_value: str | None = None
    unit_concept_id: int | None = None
    unit_source_value: str | None = None

    range_low: float | None = None
    range_high: float | None = None

    visit_occurrence_id: int | None = None
    provider_id: int | None = None
    type_concept_id: int = UNKNOWN_TYPE_CONCEPT_ID

    # Display text joined in by storage on read; never written
    person_name: str | None = None
    provider_name: str | None = None

    @property
    def internal_id(self) -> InternalId | None:
        if self.native_id is None:
            return None
        return InternalId(self.partition, self.native_id)

    @property
    def text_value(self) -> str | None:
        """Narrative value: the string column, else the raw source value."""
        return self.value_as_string if self.value_as_string is not None else self.value_source_value


def normalize_instant(instant: datetime) -> datetime:
    """Convert to UTC and truncate to whole seconds.

    Naive datetimes are taken to be UTC already.
    """
    if instant.tzinfo is not None:
        instant = instant.astimezone(UTC)
    else:
        instant = instant.replace(tzinfo=UTC)
    return instant.replace(microsecond=0)


def split_effective(instant: datetime) -> tuple[date, str]:
    """Split an instant into the CDM's (date, "HH:MM:SS") columns."""
    instant = normalize_instant(instant)
    return instant.date(), instant.strftime(TIME_FORMAT)


def combine_effective(day: date | None, time_string: str | None) -> datetime | None:
    """Rebuild one UTC instant from the CDM's split columns.

    A missing time yields midnight. An unparseable time is logged and
    yields None so the caller can omit the effective time.
    """
    if day is None:
        return None
    if isinstance(day, datetime):
        day = day.date()
    if not time_string or not time_string.strip():
        return datetime.combine(day, time.min, tzinfo=UTC)
    try:
        parsed = datetime.strptime(time_string.strip(), TIME_FORMAT).time()
    except ValueError:
        logger.warning(f"Could not parse stored time '{time_string}' for {day}")
        return None
    return datetime.combine(day, parsed, tzinfo=UTC)
