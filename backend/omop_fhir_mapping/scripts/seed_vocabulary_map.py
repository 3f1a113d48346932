"""Seed script for loading the FHIR <-> OMOP vocabulary cross-reference.

Usage:
    python -m omop_fhir_mapping.scripts.seed_vocabulary_map

Loads the standard code system entries into ``fhir_omop_vocabulary_map``.
Existing entries are left untouched unless ``--update`` is given, so the
script can be run repeatedly.
"""

import argparse
import logging

from sqlalchemy.orm import Session

from omop_fhir_mapping.core.database import close_db, init_db, session_scope
from omop_fhir_mapping.services.vocabulary_map import (
    DatabaseVocabularyMapStore,
    VocabularyMapEntry,
    VocabularyMapStore,
)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# (OMOP vocabulary_id, FHIR system URI, HL7 OID)
DEFAULT_ENTRIES: list[VocabularyMapEntry] = [
    VocabularyMapEntry("LOINC", "http://loinc.org", "urn:oid:2.16.840.1.113883.6.1"),
    VocabularyMapEntry("SNOMED", "http://snomed.info/sct", "urn:oid:2.16.840.1.113883.6.96"),
    VocabularyMapEntry("UCUM", "http://unitsofmeasure.org", "urn:oid:2.16.840.1.113883.6.8"),
    VocabularyMapEntry(
        "RxNorm",
        "http://www.nlm.nih.gov/research/umls/rxnorm",
        "urn:oid:2.16.840.1.113883.6.88",
    ),
    VocabularyMapEntry(
        "ICD10CM", "http://hl7.org/fhir/sid/icd-10-cm", "urn:oid:2.16.840.1.113883.6.90"
    ),
    VocabularyMapEntry(
        "ICD9CM", "http://hl7.org/fhir/sid/icd-9-cm", "urn:oid:2.16.840.1.113883.6.103"
    ),
    VocabularyMapEntry("CPT4", "http://www.ama-assn.org/go/cpt", "urn:oid:2.16.840.1.113883.6.12"),
    VocabularyMapEntry(
        "HCPCS",
        "http://www.cms.gov/Medicare/Coding/HCPCSReleaseCodeSets",
        "urn:oid:2.16.840.1.113883.6.285",
    ),
    VocabularyMapEntry("NDC", "http://hl7.org/fhir/sid/ndc", "urn:oid:2.16.840.1.113883.6.69"),
    VocabularyMapEntry("CVX", "http://hl7.org/fhir/sid/cvx", "urn:oid:2.16.840.1.113883.12.292"),
]


def seed_entries(
    store: VocabularyMapStore,
    entries: list[VocabularyMapEntry] | None = None,
    update_existing: bool = False,
) -> int:
    """Insert missing entries.

    Returns:
        Number of entries inserted or updated.
    """
    changed = 0
    for entry in entries if entries is not None else DEFAULT_ENTRIES:
        current = store.find_by_vocabulary(entry.omop_vocabulary)
        if current is None:
            store.save(entry)
            changed += 1
        elif update_existing and current != entry:
            store.update(entry)
            changed += 1
    logger.info(f"Seeded {changed} vocabulary map entries")
    return changed


def verify_seed(session: Session) -> None:
    """Log the map as it now stands."""
    entries = DatabaseVocabularyMapStore(session).get_all()
    logger.info(f"Verification: {len(entries)} vocabulary map entries in database")
    for entry in entries:
        logger.info(
            f"  {entry.omop_vocabulary}: {entry.fhir_system_uri} / {entry.other_system_name}"
        )


def seed_vocabulary_map(update_existing: bool = False, create_tables: bool = False) -> None:
    """Main function to seed the vocabulary map.

    Args:
        update_existing: Overwrite entries whose URIs differ from the defaults.
        create_tables: Create missing tables first (development databases).
    """
    logger.info("Starting vocabulary map seed...")
    if create_tables:
        init_db()

    with session_scope() as session:
        seed_entries(DatabaseVocabularyMapStore(session), update_existing=update_existing)
        verify_seed(session)

    logger.info("Vocabulary map seed completed successfully!")


def main() -> None:
    """Entry point for running seed script."""
    parser = argparse.ArgumentParser(description="Seed the FHIR/OMOP vocabulary map")
    parser.add_argument("--update", action="store_true", help="overwrite differing entries")
    parser.add_argument("--create-tables", action="store_true", help="create missing tables")
    args = parser.parse_args()
    try:
        seed_vocabulary_map(update_existing=args.update, create_tables=args.create_tables)
    finally:
        close_db()


if __name__ == "__main__":
    main()
