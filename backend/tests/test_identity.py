"""Tests for logical id <-> OMOP id translation."""

from unittest.mock import MagicMock

import pytest
from sqlalchemy.orm import Session

from omop_fhir_mapping.core.exceptions import IdentityNotFound
from omop_fhir_mapping.schemas.base import Partition, ResourceKind
from omop_fhir_mapping.schemas.rows import InternalId
from omop_fhir_mapping.services.identity import DatabaseIdentityStore, IdentityMapper


class TestInternalId:
    """Tests for the partition-tagged internal id."""

    def test_measurement_is_positive(self) -> None:
        assert InternalId(Partition.MEASUREMENT, 17).signed == 17

    def test_observation_is_negated(self) -> None:
        assert InternalId(Partition.OBSERVATION, 17).signed == -17

    def test_from_signed(self) -> None:
        assert InternalId.from_signed(5) == InternalId(Partition.MEASUREMENT, 5)
        assert InternalId.from_signed(-5) == InternalId(Partition.OBSERVATION, 5)

    def test_native_id_must_be_positive(self) -> None:
        with pytest.raises(ValueError):
            InternalId(Partition.MEASUREMENT, 0)
        with pytest.raises(ValueError):
            InternalId.from_signed(0)

    @pytest.mark.parametrize("signed_id", [1, 3, 1_000_000, -1, -42])
    def test_signed_round_trip(self, signed_id: int) -> None:
        assert InternalId.from_signed(signed_id).signed == signed_id


class TestIdentityMapperWithMockStore:
    """Tests for IdentityMapper against a mocked store."""

    def test_to_internal_unknown_raises(self) -> None:
        store = MagicMock()
        store.lookup_omop.return_value = None
        mapper = IdentityMapper(store)

        with pytest.raises(IdentityNotFound) as exc_info:
            mapper.to_internal("99", ResourceKind.PATIENT)
        assert exc_info.value.logical_id == "99"
        assert exc_info.value.resource_type == "Patient"

    def test_non_numeric_logical_id_is_not_found(self) -> None:
        store = MagicMock()
        mapper = IdentityMapper(store)

        assert mapper.lookup_internal("abc", ResourceKind.OBSERVATION) is None
        with pytest.raises(IdentityNotFound):
            mapper.to_internal("abc", ResourceKind.OBSERVATION)
        store.lookup_omop.assert_not_called()

    def test_to_external_allocates_on_first_sight(self) -> None:
        store = MagicMock()
        store.lookup_fhir.return_value = None
        store.allocate.return_value = 12
        mapper = IdentityMapper(store)

        assert mapper.to_external(-3, ResourceKind.OBSERVATION) == "12"
        store.allocate.assert_called_once_with(ResourceKind.OBSERVATION, -3)

    def test_to_external_reuses_existing(self) -> None:
        store = MagicMock()
        store.lookup_fhir.return_value = 8
        mapper = IdentityMapper(store)

        assert mapper.to_external(3, ResourceKind.OBSERVATION) == "8"
        store.allocate.assert_not_called()


class TestIdentityMapperWithDatabase:
    """Tests for IdentityMapper over fhir_id_map."""

    @pytest.fixture
    def mapper(self, db_session: Session) -> IdentityMapper:
        return IdentityMapper(DatabaseIdentityStore(db_session))

    @pytest.mark.parametrize("signed_id", [1, 17, -1, -17])
    def test_round_trip_law(self, mapper: IdentityMapper, signed_id: int) -> None:
        logical_id = mapper.to_external(signed_id, ResourceKind.OBSERVATION)
        assert mapper.to_internal(logical_id, ResourceKind.OBSERVATION) == signed_id

    def test_allocation_is_stable(self, mapper: IdentityMapper) -> None:
        first = mapper.to_external(-4, ResourceKind.OBSERVATION)
        second = mapper.to_external(-4, ResourceKind.OBSERVATION)
        assert first == second

    def test_partitions_get_distinct_ids(self, mapper: IdentityMapper) -> None:
        measurement = mapper.to_external_id(InternalId(Partition.MEASUREMENT, 4))
        observation = mapper.to_external_id(InternalId(Partition.OBSERVATION, 4))
        assert measurement != observation
        assert mapper.to_internal_id(observation) == InternalId(Partition.OBSERVATION, 4)

    def test_kinds_are_separate(self, mapper: IdentityMapper, db_session: Session) -> None:
        DatabaseIdentityStore(db_session).register(ResourceKind.PATIENT, 42, 1)

        assert mapper.to_internal("42", ResourceKind.PATIENT) == 1
        assert mapper.lookup_internal("42", ResourceKind.ENCOUNTER) is None

    def test_forget_releases_id(self, mapper: IdentityMapper) -> None:
        internal = InternalId(Partition.MEASUREMENT, 9)
        logical_id = mapper.to_external_id(internal)
        mapper.forget(internal)
        assert mapper.lookup_internal_id(logical_id) is None

    def test_move_hands_over_logical_id(self, mapper: IdentityMapper) -> None:
        """The moved id resolves to the new row; the new row's own id is released."""
        source = InternalId(Partition.MEASUREMENT, 3)
        target = InternalId(Partition.MEASUREMENT, 5)
        logical_id = mapper.to_external_id(source)
        replaced = mapper.to_external_id(target)

        assert mapper.move(source, target) == logical_id
        assert mapper.lookup_internal_id(logical_id) == target
        assert mapper.lookup_internal_id(replaced) is None
        assert mapper.to_external_id(target) == logical_id

    def test_move_without_id(self, mapper: IdentityMapper) -> None:
        source = InternalId(Partition.MEASUREMENT, 3)
        assert mapper.move(source, InternalId(Partition.MEASUREMENT, 5)) is None
