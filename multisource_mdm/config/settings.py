"""
Configuration settings for the Multi-Source Reconciliation Pipeline.

Holds the system-of-record policy, per-source field mappings, code value
mappings, critical-field quality rules and warehouse table names consumed by
the crosswalk, merge and historization layers.
"""

import os

# Warehouse location (SQLite file); override with MDM_WAREHOUSE_PATH
WAREHOUSE_DB_PATH = os.environ.get("MDM_WAREHOUSE_PATH", "data/warehouse/mdm.db")

# Raw source files root used by the command line runner
SOURCE_DATA_PATH = os.environ.get("MDM_SOURCE_PATH", "data/sources")

# Source Systems (source A is listed first)
SOURCE_SYSTEMS = {
    "source_a": "OMS",
    "source_b": "VEMS",
}

# Rolling recency window (days) of source history that participates in matching
ROLLING_WINDOW_DAYS = 7

# Open-ended effective_end for current dimension rows
OPEN_END_SENTINEL = "9999-12-31 23:59:59"

# Accepted batch identifier format
BATCH_ID_PATTERN = r"^[A-Za-z0-9_-]+$"

# Per-entity-type run lock
RUN_LOCK_TIMEOUT_SECONDS = 300
RUN_LOCK_POLL_SECONDS = 0.5
RUN_LOCK_TTL_SECONDS = 3600

# Match confidence
MATCH_CONFIDENCE = {
    "BOTH_EXACT": 100,
    "SOURCE_A_ONLY": 90,
    "SOURCE_B_ONLY": 90,
}

EMAIL_PATTERN = r"^[\w\.\-+]+@[\w\.\-]+\.[A-Za-z]{2,}$"
PHONE_PATTERN = r"^[0-9]{10}$"
STATE_PATTERN = r"^[A-Z]{2}$"

# System-of-record policy: entity type -> natural key, primary source, fields
ENTITY_POLICIES = {
    "veteran": {
        "primary_source": "OMS",
        "fields": {
            "first_name": {"dtype": "string", "normalize": "upper", "tracked": True},
            "last_name": {"dtype": "string", "normalize": "upper", "tracked": True},
            "date_of_birth": {"dtype": "date", "tracked": True},
            "gender": {"dtype": "string", "normalize": "upper", "tracked": True},
            # Contact info is more current in VEMS
            "email": {"dtype": "string", "normalize": "lower", "primary_source": "VEMS"},
            "phone": {"dtype": "string", "normalize": "phone", "primary_source": "VEMS"},
            "address": {"dtype": "string", "normalize": "upper", "primary_source": "VEMS", "tracked": True},
            "city": {"dtype": "string", "normalize": "upper", "primary_source": "VEMS", "tracked": True},
            "state": {"dtype": "string", "normalize": "upper", "primary_source": "VEMS", "tracked": True},
            "zip_code": {"dtype": "string", "normalize": "zip", "primary_source": "VEMS", "tracked": True},
            "disability_rating": {"dtype": "int", "tracked": True},
            "branch_of_service": {"dtype": "string", "normalize": "upper", "tracked": True},
            "discharge_date": {"dtype": "date", "tracked": True},
        },
        "derived": {
            "full_name": {"separator": " ", "fields": ["first_name", "last_name"]},
            "full_address": {"separator": ", ", "fields": ["address", "city", "state", "zip_code"]},
        },
    },
    "evaluator": {
        # VEMS has more current evaluator data
        "primary_source": "VEMS",
        "fields": {
            "first_name": {"dtype": "string", "normalize": "upper", "tracked": True},
            "last_name": {"dtype": "string", "normalize": "upper", "tracked": True},
            "credential": {"dtype": "string", "normalize": "upper", "tracked": True},
            "specialty": {"dtype": "string", "normalize": "code:specialty", "tracked": True},
            "license_number": {"dtype": "string", "normalize": "trim", "tracked": True},
            "license_state": {"dtype": "string", "normalize": "upper", "tracked": True},
            "email": {"dtype": "string", "normalize": "lower"},
            "phone": {"dtype": "string", "normalize": "phone"},
            "active_flag": {"dtype": "boolean", "default": True, "tracked": True},
        },
        "derived": {
            "full_name": {"separator": " ", "fields": ["first_name", "last_name"]},
        },
    },
    "facility": {
        "primary_source": "OMS",
        "fields": {
            "facility_name": {"dtype": "string", "normalize": "upper", "tracked": True},
            "facility_type": {"dtype": "string", "normalize": "upper", "tracked": True},
            "address": {"dtype": "string", "normalize": "upper", "tracked": True},
            "city": {"dtype": "string", "normalize": "upper", "tracked": True},
            "state": {"dtype": "string", "normalize": "upper", "tracked": True},
            "zip_code": {"dtype": "string", "normalize": "zip", "tracked": True},
            "phone": {"dtype": "string", "normalize": "phone", "tracked": True},
            "capacity": {"dtype": "int"},
            "active_flag": {"dtype": "boolean", "default": True, "tracked": True},
        },
        "derived": {
            "full_address": {"separator": ", ", "fields": ["address", "city", "state", "zip_code"]},
        },
    },
    "exam_request": {
        "primary_source": "OMS",
        "depends_on": ["veteran", "facility"],
        "fields": {
            "veteran_ssn": {"dtype": "string", "normalize": "trim"},
            "facility_id": {"dtype": "string", "normalize": "trim"},
            "request_type": {"dtype": "string", "normalize": "code:request_type", "tracked": True},
            "request_date": {"dtype": "date", "tracked": True},
            "priority_level": {"dtype": "string", "normalize": "upper", "tracked": True},
            "sla_days": {"dtype": "int", "tracked": True},
            "current_status": {"dtype": "string", "normalize": "upper", "tracked": True},
            "completion_date": {"dtype": "date", "tracked": True},
        },
        "references": {
            "master_veteran_id": {"entity_type": "veteran", "field": "veteran_ssn", "tracked": True},
            "master_facility_id": {"entity_type": "facility", "field": "facility_id", "tracked": True},
        },
    },
    "evaluation": {
        # Clinical data from OMS, scheduling from VEMS
        "primary_source": "OMS",
        "fields": {
            "veteran_ssn": {"dtype": "string", "normalize": "trim"},
            "evaluator_npi": {"dtype": "string", "normalize": "trim"},
            "facility_id": {"dtype": "string", "normalize": "trim"},
            "evaluation_date": {"dtype": "date", "primary_source": "VEMS", "tracked": True},
            "evaluation_type": {"dtype": "string", "normalize": "upper", "tracked": True},
            "specialty": {"dtype": "string", "normalize": "code:specialty", "tracked": True},
            "primary_diagnosis": {"dtype": "string", "normalize": "upper", "tracked": True},
            "report_submitted_date": {"dtype": "date", "tracked": True},
        },
        "references": {
            "master_veteran_id": {"entity_type": "veteran", "field": "veteran_ssn", "tracked": True},
            "master_evaluator_id": {"entity_type": "evaluator", "field": "evaluator_npi", "tracked": True},
            "master_facility_id": {"entity_type": "facility", "field": "facility_id", "tracked": True},
        },
    },
    "appointment": {
        # VEMS owns scheduling
        "primary_source": "VEMS",
        "fields": {
            "veteran_ssn": {"dtype": "string", "normalize": "trim"},
            "evaluator_npi": {"dtype": "string", "normalize": "trim"},
            "facility_id": {"dtype": "string", "normalize": "trim"},
            "scheduled_datetime": {"dtype": "timestamp", "tracked": True},
            "appointment_status": {"dtype": "string", "normalize": "code:appointment_status", "tracked": True},
            "event_type": {"dtype": "string", "normalize": "upper", "tracked": True},
        },
        "references": {
            "master_veteran_id": {"entity_type": "veteran", "field": "veteran_ssn", "tracked": True},
            "master_evaluator_id": {"entity_type": "evaluator", "field": "evaluator_npi", "tracked": True},
            "master_facility_id": {"entity_type": "facility", "field": "facility_id", "tracked": True},
        },
    },
}

# Field mappings: entity type -> source system -> standard name -> source column.
# Standard names missing from a mapping are read under the same name.
FIELD_MAPPINGS = {
    "veteran": {
        "OMS": {
            "natural_key": "vet_ssn",
            "source_record_id": "oms_veteran_id",
            "first_name": "vet_first",
            "last_name": "vet_last",
            "date_of_birth": "dob",
            "gender": "sex",
            "email": "email_addr",
            "phone": "phone_num",
            "disability_rating": "disability_pct",
            "branch_of_service": "branch",
        },
        "VEMS": {
            "natural_key": "ssn",
            "source_record_id": "vems_veteran_id",
            "date_of_birth": "birth_date",
            "branch_of_service": "service_branch",
        },
    },
    "evaluator": {
        "OMS": {
            "natural_key": "provider_npi",
            "source_record_id": "oms_evaluator_id",
            "first_name": "provider_first",
            "last_name": "provider_last",
            "specialty": "specialty_code",
        },
        "VEMS": {
            "natural_key": "npi_number",
            "source_record_id": "vems_evaluator_id",
            "specialty": "specialty_name",
        },
    },
    "facility": {
        "OMS": {
            "natural_key": "facility_id",
            "source_record_id": "oms_facility_id",
        },
        "VEMS": {
            "natural_key": "facility_id",
            "source_record_id": "vems_facility_id",
        },
    },
    "exam_request": {
        "OMS": {
            "natural_key": "request_num",
            "source_record_id": "oms_request_id",
            "request_type": "request_type_code",
            "request_date": "request_received_date",
        },
        "VEMS": {
            "natural_key": "exam_request_id",
            "source_record_id": "vems_request_id",
            "request_type": "request_type_code",
        },
    },
    "evaluation": {
        "OMS": {
            "natural_key": "evaluation_num",
            "source_record_id": "oms_evaluation_id",
            "evaluator_npi": "provider_npi",
            "evaluation_date": "exam_date",
            "specialty": "specialty_code",
        },
        "VEMS": {
            "natural_key": "evaluation_id",
            "source_record_id": "vems_evaluation_id",
            "evaluator_npi": "npi_number",
            "specialty": "specialty_name",
        },
    },
    "appointment": {
        "OMS": {
            "natural_key": "appt_num",
            "source_record_id": "oms_appointment_id",
            "evaluator_npi": "provider_npi",
            "scheduled_datetime": "appt_datetime",
            "appointment_status": "status_code",
        },
        "VEMS": {
            "natural_key": "appointment_id",
            "source_record_id": "vems_appointment_id",
            "evaluator_npi": "npi_number",
        },
    },
}

# Code value mappings: mapping name -> source system -> source code -> standard value
CODE_MAPPINGS = {
    "specialty": {
        "OMS": {
            "PSYCH": "PSYCHIATRY",
            "ORTHO": "ORTHOPEDICS",
            "NEURO": "NEUROLOGY",
            "CARD": "CARDIOLOGY",
            "GEN": "GENERAL MEDICINE",
        },
        "VEMS": {
            "PSYCHIATRY": "PSYCHIATRY",
            "ORTHOPEDICS": "ORTHOPEDICS",
            "NEUROLOGY": "NEUROLOGY",
            "CARDIOLOGY": "CARDIOLOGY",
            "GENERAL MEDICINE": "GENERAL MEDICINE",
        },
    },
    "request_type": {
        "OMS": {
            "CP": "C&P EXAM",
            "DBQ": "DBQ FORM",
            "REEX": "RE-EXAMINATION",
            "IME": "INDEPENDENT MEDICAL EXAM",
        },
        "VEMS": {
            "C&P_EXAM": "C&P EXAM",
            "DBQ": "DBQ FORM",
            "RE_EXAM": "RE-EXAMINATION",
            "IME": "INDEPENDENT MEDICAL EXAM",
        },
    },
    "appointment_status": {
        "OMS": {
            "SCH": "SCHEDULED",
            "CNF": "CONFIRMED",
            "CAN": "CANCELLED",
            "NS": "NO_SHOW",
            "COMP": "COMPLETED",
        },
        "VEMS": {
            "SCHEDULED": "SCHEDULED",
            "CONFIRMED": "CONFIRMED",
            "CANCELLED": "CANCELLED",
            "NO_SHOW": "NO_SHOW",
            "COMPLETED": "COMPLETED",
        },
    },
}

# Critical-field scoring rules (weights per entity type sum to 100)
DQ_RULES = {
    "veteran": [
        {"field": "first_name", "weight": 15},
        {"field": "last_name", "weight": 15},
        {"field": "date_of_birth", "weight": 15},
        {"field": "master_id", "weight": 20, "check": "pattern", "pattern": r"^[0-9]{9}$"},
        {"field": "email", "weight": 10, "check": "pattern", "pattern": EMAIL_PATTERN},
        {"field": "phone", "weight": 10, "check": "pattern", "pattern": PHONE_PATTERN},
        {"field": "state", "weight": 5, "check": "pattern", "pattern": STATE_PATTERN},
        {"field": "disability_rating", "weight": 10, "check": "range", "min": 0, "max": 100},
    ],
    "evaluator": [
        {"field": "master_id", "weight": 25, "check": "pattern", "pattern": r"^[0-9]{10}$"},
        {"field": "first_name", "weight": 15},
        {"field": "last_name", "weight": 15},
        {"field": "license_number", "weight": 15},
        {
            "field": "specialty",
            "weight": 15,
            "check": "one_of",
            "values": ["PSYCHIATRY", "ORTHOPEDICS", "NEUROLOGY", "CARDIOLOGY", "GENERAL MEDICINE"],
        },
        {"field": "email", "weight": 10, "check": "pattern", "pattern": EMAIL_PATTERN},
        {"field": "active_flag", "weight": 5},
    ],
    "facility": [
        {"field": "master_id", "weight": 30},
        {"field": "facility_name", "weight": 20},
        {"field": "state", "weight": 15, "check": "pattern", "pattern": STATE_PATTERN},
        {"field": "city", "weight": 10},
        {"field": "phone", "weight": 10, "check": "pattern", "pattern": PHONE_PATTERN},
        {"field": "capacity", "weight": 5, "check": "range", "min": 0, "max": 100000},
        {"field": "active_flag", "weight": 10},
    ],
    "exam_request": [
        {"field": "master_veteran_id", "weight": 30},
        {"field": "master_facility_id", "weight": 20},
        {"field": "request_date", "weight": 20},
        {"field": "request_type", "weight": 15},
        {"field": "sla_days", "weight": 15, "check": "range", "min": 1, "max": 365},
    ],
    "evaluation": [
        {"field": "master_id", "weight": 20},
        {"field": "master_veteran_id", "weight": 20},
        {"field": "master_evaluator_id", "weight": 20},
        {"field": "evaluation_date", "weight": 20},
        {"field": "evaluation_type", "weight": 10},
        {"field": "report_submitted_date", "weight": 10},
    ],
    "appointment": [
        {"field": "master_id", "weight": 20},
        {"field": "master_veteran_id", "weight": 20},
        {"field": "scheduled_datetime", "weight": 20},
        {
            "field": "appointment_status",
            "weight": 15,
            "check": "one_of",
            "values": ["SCHEDULED", "CONFIRMED", "CANCELLED", "NO_SHOW", "COMPLETED"],
        },
        {"field": "master_evaluator_id", "weight": 15},
        {"field": "master_facility_id", "weight": 10},
    ],
}

# Table Names
TABLE_NAMES = {
    "crosswalk": "crosswalk",
    "orphans": "orphan_records",
    "merged": "merged_records",
    "conflicts": "conflict_log",
    "dimension": "dimension_versions",
    "batch_runs": "batch_runs",
    "run_locks": "run_locks",
}
