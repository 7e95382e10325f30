from datetime import datetime, timedelta
from uuid import uuid4

import pytest

from clinsight.models.records import ClinicalRecord, RecordType, SeverityLevel
from clinsight.observability.metrics import reset_metrics_collector


@pytest.fixture(autouse=True)
def metrics():
    """Fresh global metrics collector per test."""
    return reset_metrics_collector()


@pytest.fixture
def make_record():
    """Factory for clinical records with sensible defaults."""

    def _make(**overrides) -> ClinicalRecord:
        fields = {
            "patient_id": uuid4(),
            "provider_id": uuid4(),
            "record_type": RecordType.DIAGNOSIS,
            "title": "Acute decompensated heart failure",
            "clinical_narrative": "Shortness of breath, bilateral leg edema, elevated BNP.",
            "icd_codes": ["I50.9"],
            "encounter_date": datetime.utcnow() - timedelta(days=3),
            "severity_level": SeverityLevel.HIGH,
            "department": "cardiology",
            "created_by": "dr-test",
        }
        fields.update(overrides)
        return ClinicalRecord(**fields)

    return _make
