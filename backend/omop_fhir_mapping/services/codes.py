"""Fixed codes the mapping engine treats specially.

Blood pressure is the one composite fact: FHIR carries it as a single
``85354-9`` resource with two components, OMOP stores it as two sibling
measurement rows (systolic and diastolic) sharing person, date and time.
"""

SYSTOLIC_CONCEPT_ID = 3004249
DIASTOLIC_CONCEPT_ID = 3012888

SYSTOLIC_LOINC_CODE = "8480-6"
DIASTOLIC_LOINC_CODE = "8462-4"

BP_SYSTOLIC_DIASTOLIC_CODE = "85354-9"
BP_SYSTOLIC_DIASTOLIC_DISPLAY = "Blood pressure systolic & diastolic"

SYSTOLIC_DISPLAY = "Systolic blood pressure"
DIASTOLIC_DISPLAY = "Diastolic blood pressure"

# FHIR observation-category code -> OMOP type concept
CATEGORY_TO_TYPE_CONCEPT: dict[str, int] = {
    "exam": 44818701,  # From physical examination
    "laboratory": 44818702,  # Lab result
    "survey": 45905771,  # Observation recorded from a survey
}

# OMOP type concept -> FHIR observation-category code
TYPE_CONCEPT_TO_CATEGORY: dict[int, str] = {
    44818701: "exam",
    44818702: "laboratory",
    45905771: "survey",
    38000277: "laboratory",  # Lab observation numeric result
    38000278: "laboratory",  # Lab observation concept code result
    38000280: "exam",  # Observation recorded from EHR
    38000281: "exam",  # Observation recorded from EHR with text result
}
