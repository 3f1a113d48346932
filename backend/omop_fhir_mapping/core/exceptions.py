"""Exceptions raised by the mapping engine.

Every fatal condition aborts the single logical operation it occurs in.
Vocabulary misses are not errors: resolvers return None and the caller
falls back to source-text storage.
"""


class MappingError(Exception):
    """Base class for all mapping engine errors."""


class InvalidResource(MappingError):
    """The canonical resource is structurally unusable (e.g. no Patient subject)."""


class UnmappableCodedValue(MappingError):
    """A coded value has no resolvable vocabulary concept."""


class IdentityNotFound(MappingError):
    """A logical identifier has never been assigned."""

    def __init__(self, logical_id: str, resource_type: str) -> None:
        self.logical_id = logical_id
        self.resource_type = resource_type
        super().__init__(f"{resource_type}/{logical_id} could not be found")


class EncounterNotFound(IdentityNotFound):
    """The Encounter referenced as an observation's context does not exist."""

    def __init__(self, logical_id: str) -> None:
        super().__init__(logical_id, "Encounter")


class InconsistentPairing(MappingError):
    """A blood-pressure composite does not match its stored systolic/diastolic rows."""


class RangeWithoutValue(MappingError):
    """A reference range applies to a blood-pressure half that carries no value."""


class ResourceNotFound(MappingError):
    """The row addressed by an update, read or delete does not exist."""


class UnsupportedSearchParameter(MappingError):
    """A search parameter cannot be used.

    Raised for an unrecognized name in strict search mode, and for a date
    value with an unknown prefix or a malformed date in any mode.
    """
