"""Canonical FHIR Observation schemas.

Pydantic models mirroring the FHIR STU3 Observation JSON shape. Choice
elements (``value[x]``, ``effective[x]``) are separate fields aliased to
their FHIR JSON names; the ``value`` and ``effective_instant`` accessors
expose them as a single tagged value.

Usage:
    obs = Observation.model_validate(fhir_json)
    obs.value            # Quantity | CodeableConcept | str | None
    obs.model_dump(by_alias=True, exclude_none=True, mode="json")
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class FHIRModel(BaseModel):
    """Base for all FHIR element models."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Coding(FHIRModel):
    """A code defined by a terminology system."""

    system: str | None = None
    code: str | None = None
    display: str | None = None

    def matches(self, system: str | None, code: str | None) -> bool:
        """Check whether this coding carries the given system and code."""
        return self.system == system and self.code == code

    def as_source_text(self) -> str:
        """Flatten to "system code display" for source-value columns."""
        parts = (self.system, self.code, self.display)
        return " ".join(p for p in parts if p).strip()


class CodeableConcept(FHIRModel):
    """A concept expressed by one or more codings and/or free text."""

    coding: list[Coding] = Field(default_factory=list)
    text: str | None = None

    def first_coding(self) -> Coding | None:
        return self.coding[0] if self.coding else None

    def find_coding(self, system: str | None, code: str | None) -> Coding | None:
        for coding in self.coding:
            if coding.matches(system, code):
                return coding
        return None


class Quantity(FHIRModel):
    """A measured amount with optional unit coding."""

    value: float | None = None
    unit: str | None = None
    system: str | None = None
    code: str | None = None


class Reference(FHIRModel):
    """A reference to another resource, e.g. ``Patient/42``."""

    reference: str | None = None
    display: str | None = None

    @classmethod
    def to(cls, resource_type: str, logical_id: str, display: str | None = None) -> "Reference":
        return cls(reference=f"{resource_type}/{logical_id}", display=display)

    def _segments(self) -> list[str]:
        if not self.reference:
            return []
        # Absolute references keep the type/id pair at the end
        return [s for s in self.reference.rstrip("/").split("/") if s]

    @property
    def resource_type(self) -> str | None:
        segments = self._segments()
        return segments[-2] if len(segments) >= 2 else None

    @property
    def id_part(self) -> str | None:
        segments = self._segments()
        return segments[-1] if segments else None


class Period(FHIRModel):
    """A time range; either bound may be open."""

    start: datetime | None = None
    end: datetime | None = None


class ReferenceRange(FHIRModel):
    """Normal range for a value, optionally restricted to specific codes."""

    low: Quantity | None = None
    high: Quantity | None = None
    applies_to: list[CodeableConcept] = Field(default_factory=list, alias="appliesTo")
    text: str | None = None

    @property
    def is_empty(self) -> bool:
        """True when neither bound carries a value."""
        return (self.low is None or self.low.value is None) and (
            self.high is None or self.high.value is None
        )


ObservationValue = Quantity | CodeableConcept | str


class _ValueChoice(FHIRModel):
    """Shared ``value[x]`` choice element."""

    value_quantity: Quantity | None = Field(None, alias="valueQuantity")
    value_codeable_concept: CodeableConcept | None = Field(None, alias="valueCodeableConcept")
    value_string: str | None = Field(None, alias="valueString")

    @model_validator(mode="after")
    def _single_value(self) -> "_ValueChoice":
        present = [
            v
            for v in (self.value_quantity, self.value_codeable_concept, self.value_string)
            if v is not None
        ]
        if len(present) > 1:
            raise ValueError("only one value[x] element may be present")
        return self

    @property
    def value(self) -> ObservationValue | None:
        if self.value_quantity is not None:
            return self.value_quantity
        if self.value_codeable_concept is not None:
            return self.value_codeable_concept
        return self.value_string


class ObservationComponent(_ValueChoice):
    """One (code, value) pair of a composite observation."""

    code: CodeableConcept


class Observation(_ValueChoice):
    """FHIR Observation resource (the canonical clinical resource)."""

    resource_type: Literal["Observation"] = Field("Observation", alias="resourceType")
    id: str | None = None
    status: str = "final"
    category: list[CodeableConcept] = Field(default_factory=list)
    code: CodeableConcept
    subject: Reference | None = None
    context: Reference | None = None
    effective_date_time: datetime | None = Field(None, alias="effectiveDateTime")
    effective_period: Period | None = Field(None, alias="effectivePeriod")
    performer: list[Reference] = Field(default_factory=list)
    reference_range: list[ReferenceRange] = Field(default_factory=list, alias="referenceRange")
    component: list[ObservationComponent] = Field(default_factory=list)

    @model_validator(mode="after")
    def _single_effective(self) -> "Observation":
        if self.effective_date_time is not None and self.effective_period is not None:
            raise ValueError("only one effective[x] element may be present")
        return self

    @property
    def effective_instant(self) -> datetime | None:
        """The instant the observation applies to (period start for intervals)."""
        if self.effective_date_time is not None:
            return self.effective_date_time
        if self.effective_period is not None:
            return self.effective_period.start
        return None
