"""
Shared fixtures for the reconciliation pipeline tests.

Raw source rows are built as all-string DataFrames, the way CSV feeds
arrive, so every test exercises the policy-driven typing.
"""

from datetime import datetime
from typing import Any, Dict, List

import pytest
from pyspark.sql import SparkSession

from multisource_mdm.pipelines.reconciliation import Warehouse, load_entity_policy

AS_OF = datetime(2024, 3, 10, 12, 0, 0)
INGESTED = "2024-03-09 08:00:00"

# Small entity type used by unit tests; raw columns use the standard names
MEMBER_POLICIES = {
    "member": {
        "primary_source": "OMS",
        "fields": {
            "name": {"dtype": "string", "normalize": "upper", "tracked": True},
            "rating": {"dtype": "int", "tracked": True},
            "email": {"dtype": "string", "normalize": "lower", "primary_source": "VEMS"},
            "active_flag": {"dtype": "boolean", "default": True, "tracked": True},
        },
    },
}

MEMBER_RULES = {
    "member": [
        {"field": "name", "weight": 50},
        {"field": "rating", "weight": 30, "check": "range", "min": 0, "max": 100},
        {"field": "email", "weight": 20, "check": "pattern", "pattern": r"^[^@]+@[^@]+\.[a-z]{2,}$"},
    ],
}


@pytest.fixture(scope="session")
def spark():
    session = (
        SparkSession.builder
        .master("local[2]")
        .appName("multisource-mdm-tests")
        .config("spark.sql.shuffle.partitions", "2")
        .config("spark.sql.session.timeZone", "UTC")
        .config("spark.ui.enabled", "false")
        .getOrCreate()
    )
    yield session
    session.stop()


@pytest.fixture
def warehouse(tmp_path):
    return Warehouse(str(tmp_path / "warehouse" / "mdm.db"))


@pytest.fixture
def raw_frame(spark):
    """Build an all-string DataFrame from row dicts (missing keys become null)."""

    def build(rows: List[Dict[str, Any]], columns: List[str] = None):
        if columns is None:
            columns = []
            for row in rows:
                for key in row:
                    if key not in columns:
                        columns.append(key)
        schema = ", ".join(f"`{name}` string" for name in columns)
        data = [
            tuple(None if row.get(name) is None else str(row.get(name)) for name in columns)
            for row in rows
        ]
        return spark.createDataFrame(data, schema)

    return build


@pytest.fixture
def member_policy():
    return load_entity_policy("member", policies=MEMBER_POLICIES, field_mappings={})


def member_row(key, record_id=None, batch_id="B1", ingested=INGESTED, **fields):
    row = {
        "natural_key": key,
        "source_record_id": record_id,
        "batch_id": batch_id,
        "ingestion_timestamp": ingested,
    }
    row.update(fields)
    return row


# =============================================================================
# CONFIGURED ENTITY TYPE RAW ROWS (configured field mappings)
# =============================================================================

def oms_veteran(ssn="123456789", batch_id="B1", ingested=INGESTED, **overrides):
    row = {
        "vet_ssn": ssn,
        "oms_veteran_id": f"OMS-{ssn}",
        "vet_first": "John",
        "vet_last": "Smith",
        "dob": "1980-05-01",
        "sex": "m",
        "email_addr": "JOHN@OLD.COM",
        "phone_num": "(555) 123-4567",
        "address": "1 Main St",
        "city": "Austin",
        "state": "tx",
        "zip_code": "78701",
        "disability_pct": "50",
        "branch": "Army",
        "discharge_date": "2004-06-30",
        "batch_id": batch_id,
        "ingestion_timestamp": ingested,
    }
    row.update(overrides)
    return row


def vems_veteran(ssn="123456789", batch_id="B1", ingested=INGESTED, **overrides):
    row = {
        "ssn": ssn,
        "vems_veteran_id": f"VEMS-{ssn}",
        "first_name": "JOHN",
        "last_name": "Smith",
        "birth_date": "1980-05-01",
        "gender": "M",
        "email": "john@new.com",
        "phone": "555-987-6543",
        "address": "1 Main St",
        "city": "Austin",
        "state": "TX",
        "zip_code": "78701",
        "disability_rating": "70",
        "service_branch": "ARMY",
        "discharge_date": "2004-06-30",
        "batch_id": batch_id,
        "ingestion_timestamp": ingested,
    }
    row.update(overrides)
    return row


def facility(facility_id="FAC01", source="OMS", batch_id="B1", **overrides):
    row = {
        "facility_id": facility_id,
        f"{source.lower()}_facility_id": f"{source}-{facility_id}",
        "facility_name": "Austin Clinic",
        "facility_type": "Clinic",
        "address": "9 Oak Ave",
        "city": "Austin",
        "state": "TX",
        "zip_code": "78702",
        "phone": "5550001111",
        "capacity": "40",
        "active_flag": "Y",
        "batch_id": batch_id,
        "ingestion_timestamp": INGESTED,
    }
    row.update(overrides)
    return row


def oms_exam_request(request_num="REQ1", veteran_ssn="123456789", facility_id="FAC01",
                     batch_id="B1", **overrides):
    row = {
        "request_num": request_num,
        "oms_request_id": f"OMS-{request_num}",
        "veteran_ssn": veteran_ssn,
        "facility_id": facility_id,
        "request_type_code": "CP",
        "request_received_date": "2024-03-01",
        "priority_level": "routine",
        "sla_days": "30",
        "current_status": "scheduled",
        "batch_id": batch_id,
        "ingestion_timestamp": INGESTED,
    }
    row.update(overrides)
    return row


def vems_exam_request(request_num="REQ1", veteran_ssn="123456789", facility_id="FAC01",
                      batch_id="B1", **overrides):
    row = {
        "exam_request_id": request_num,
        "vems_request_id": f"VEMS-{request_num}",
        "veteran_ssn": veteran_ssn,
        "facility_id": facility_id,
        "request_type_code": "C&P_EXAM",
        "request_date": "2024-03-01",
        "priority_level": "ROUTINE",
        "sla_days": "30",
        "current_status": "SCHEDULED",
        "batch_id": batch_id,
        "ingestion_timestamp": INGESTED,
    }
    row.update(overrides)
    return row


def evaluator(npi="1234567890", source="OMS", batch_id="B1", **overrides):
    if source == "OMS":
        row = {
            "provider_npi": npi,
            "oms_evaluator_id": f"OMS-{npi}",
            "provider_first": "Ada",
            "provider_last": "Lovelace",
            "specialty_code": "PSYCH",
        }
    else:
        row = {
            "npi_number": npi,
            "vems_evaluator_id": f"VEMS-{npi}",
            "first_name": "ADA",
            "last_name": "Lovelace",
            "specialty_name": "Psychiatry",
        }
    row.update({
        "credential": "MD",
        "license_number": "TX-1001",
        "license_state": "TX",
        "email": "ada@clinic.org",
        "phone": "5550002222",
        "active_flag": "Y",
        "batch_id": batch_id,
        "ingestion_timestamp": INGESTED,
    })
    row.update(overrides)
    return row


def oms_appointment(appt_num="APT1", veteran_ssn="123456789", npi="1234567890",
                    facility_id="FAC01", batch_id="B1", **overrides):
    row = {
        "appt_num": appt_num,
        "oms_appointment_id": f"OMS-{appt_num}",
        "veteran_ssn": veteran_ssn,
        "provider_npi": npi,
        "facility_id": facility_id,
        "appt_datetime": "2024-03-12 09:30:00",
        "status_code": "SCH",
        "event_type": "scheduled",
        "batch_id": batch_id,
        "ingestion_timestamp": INGESTED,
    }
    row.update(overrides)
    return row


def vems_appointment(appt_num="APT1", veteran_ssn="123456789", npi="1234567890",
                     facility_id="FAC01", batch_id="B1", **overrides):
    row = {
        "appointment_id": appt_num,
        "vems_appointment_id": f"VEMS-{appt_num}",
        "veteran_ssn": veteran_ssn,
        "npi_number": npi,
        "facility_id": facility_id,
        "scheduled_datetime": "2024-03-12 09:30:00",
        "appointment_status": "SCHEDULED",
        "event_type": "SCHEDULED",
        "batch_id": batch_id,
        "ingestion_timestamp": INGESTED,
    }
    row.update(overrides)
    return row
