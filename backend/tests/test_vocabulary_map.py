"""Tests for the vocabulary map store and resolver."""

from unittest.mock import MagicMock

import pytest
from sqlalchemy.orm import Session

from omop_fhir_mapping.scripts.seed_vocabulary_map import DEFAULT_ENTRIES, seed_entries
from omop_fhir_mapping.services.vocabulary_map import (
    DatabaseVocabularyMapStore,
    VocabularyMapEntry,
    VocabularyResolver,
)


class TestDatabaseVocabularyMapStore:
    """Tests for CRUD over fhir_omop_vocabulary_map."""

    def test_save_and_find_by_vocabulary(self, db_session: Session) -> None:
        store = DatabaseVocabularyMapStore(db_session)
        store.save(VocabularyMapEntry("LOINC", "http://loinc.org", "urn:oid:2.16.840.1.113883.6.1"))

        entry = store.find_by_vocabulary("LOINC")
        assert entry is not None
        assert entry.fhir_system_uri == "http://loinc.org"
        assert entry.other_system_name == "urn:oid:2.16.840.1.113883.6.1"

    def test_find_by_system_matches_either_column(self, db_session: Session) -> None:
        store = DatabaseVocabularyMapStore(db_session)
        store.save(VocabularyMapEntry("SNOMED", "http://snomed.info/sct", "SNOMEDCT"))

        assert store.find_by_system("http://snomed.info/sct").omop_vocabulary == "SNOMED"
        assert store.find_by_system("SNOMEDCT").omop_vocabulary == "SNOMED"
        assert store.find_by_system("http://snomed.info") is None

    def test_update_replaces_system_names(self, db_session: Session) -> None:
        store = DatabaseVocabularyMapStore(db_session)
        store.save(VocabularyMapEntry("CVX", "http://example.org/cvx"))
        store.update(VocabularyMapEntry("CVX", "http://hl7.org/fhir/sid/cvx", "CVX-legacy"))

        entry = store.find_by_vocabulary("CVX")
        assert entry == VocabularyMapEntry("CVX", "http://hl7.org/fhir/sid/cvx", "CVX-legacy")

    def test_update_missing_entry_raises(self, db_session: Session) -> None:
        store = DatabaseVocabularyMapStore(db_session)
        with pytest.raises(KeyError):
            store.update(VocabularyMapEntry("NOPE", "http://example.org"))

    def test_delete(self, db_session: Session) -> None:
        store = DatabaseVocabularyMapStore(db_session)
        store.save(VocabularyMapEntry("NDC", "http://hl7.org/fhir/sid/ndc"))
        store.delete("NDC")
        assert store.find_by_vocabulary("NDC") is None

    def test_delete_missing_is_noop(self, db_session: Session) -> None:
        DatabaseVocabularyMapStore(db_session).delete("NOPE")

    def test_get_all_sorted(self, db_session: Session) -> None:
        store = DatabaseVocabularyMapStore(db_session)
        store.save(VocabularyMapEntry("UCUM", "http://unitsofmeasure.org"))
        store.save(VocabularyMapEntry("LOINC", "http://loinc.org"))
        assert [e.omop_vocabulary for e in store.get_all()] == ["LOINC", "UCUM"]


class TestVocabularyResolver:
    """Tests for bidirectional system resolution."""

    @pytest.fixture
    def resolver(self, db_session: Session) -> VocabularyResolver:
        store = DatabaseVocabularyMapStore(db_session)
        seed_entries(store)
        return VocabularyResolver(store)

    def test_resolve_internal_primary_uri(self, resolver: VocabularyResolver) -> None:
        assert resolver.resolve_internal("http://loinc.org") == "LOINC"

    def test_resolve_internal_alternate_uri(self, resolver: VocabularyResolver) -> None:
        assert resolver.resolve_internal("urn:oid:2.16.840.1.113883.6.96") == "SNOMED"

    def test_resolve_internal_miss_returns_none(self, resolver: VocabularyResolver) -> None:
        assert resolver.resolve_internal("http://example.org/local-codes") is None

    def test_resolve_internal_empty_returns_none(self, resolver: VocabularyResolver) -> None:
        assert resolver.resolve_internal(None) is None
        assert resolver.resolve_internal("") is None

    def test_resolve_external_returns_fhir_uri(self, resolver: VocabularyResolver) -> None:
        """The inverse lookup yields the FHIR system, not the OMOP name."""
        assert resolver.resolve_external("LOINC") == "http://loinc.org"
        assert resolver.resolve_external("UCUM") == "http://unitsofmeasure.org"

    def test_resolve_external_miss_returns_none(self, resolver: VocabularyResolver) -> None:
        assert resolver.resolve_external("MedDRA") is None

    def test_resolve_external_falls_back_to_other_name(self) -> None:
        store = MagicMock()
        store.find_by_vocabulary.return_value = VocabularyMapEntry("LOCAL", None, "urn:local")
        assert VocabularyResolver(store).resolve_external("LOCAL") == "urn:local"


class TestSeedEntries:
    """Tests for the vocabulary map seed."""

    def test_seed_is_idempotent(self, db_session: Session) -> None:
        store = DatabaseVocabularyMapStore(db_session)
        assert seed_entries(store) == len(DEFAULT_ENTRIES)
        assert seed_entries(store) == 0
        assert len(store.get_all()) == len(DEFAULT_ENTRIES)

    def test_seed_update_existing(self, db_session: Session) -> None:
        store = DatabaseVocabularyMapStore(db_session)
        store.save(VocabularyMapEntry("LOINC", "http://example.org/loinc"))

        assert seed_entries(store, update_existing=True) == len(DEFAULT_ENTRIES)
        assert store.find_by_vocabulary("LOINC").fhir_system_uri == "http://loinc.org"

    def test_seed_keeps_existing_without_update(self, db_session: Session) -> None:
        store = DatabaseVocabularyMapStore(db_session)
        store.save(VocabularyMapEntry("LOINC", "http://example.org/loinc"))

        seed_entries(store)
        assert store.find_by_vocabulary("LOINC").fhir_system_uri == "http://example.org/loinc"
