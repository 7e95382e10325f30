"""Clinical record persistence."""

from clinsight.repository.base import ClinicalRecordRepository
from clinsight.repository.memory import InMemoryClinicalRecordRepository
from clinsight.repository.postgres import PostgresClinicalRecordRepository

__all__ = [
    "ClinicalRecordRepository",
    "InMemoryClinicalRecordRepository",
    "PostgresClinicalRecordRepository",
]
