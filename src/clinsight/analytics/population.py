"""
Population health aggregation.

Groups a record population by one of the aggregation keys and summarises
each group. Everything here is synchronous and CPU-bound; the service runs
it off the event loop.
"""

from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone
from typing import Iterable
import re

from clinsight.models.analytics import (
    AGGREGATION_KEYS,
    PopulationCriteria,
    PopulationHealthInsights,
    RecordGroupAnalysis,
)
from clinsight.models.records import ClinicalRecord

UNSPECIFIED = "UNSPECIFIED"
TOP_CODES = 10

_TIME_RANGE_RE = re.compile(r"^(\d+)([dwmy])$")
_UNIT_DAYS = {"d": 1, "w": 7, "m": 30, "y": 365}


def parse_time_range(value: str) -> timedelta | None:
    """
    Parse ``all`` or ``<n><unit>`` (d, w, m=30 days, y=365 days).

    Returns None for ``all``.
    """
    text = value.strip().lower()
    if text == "all":
        return None
    match = _TIME_RANGE_RE.match(text)
    if not match or int(match.group(1)) == 0:
        raise ValueError(f"Invalid time range {value!r}; expected 'all' or e.g. '30d', '12w', '6m', '1y'")
    return timedelta(days=int(match.group(1)) * _UNIT_DAYS[match.group(2)])


def matches_criteria(record: ClinicalRecord, criteria: PopulationCriteria, now: datetime) -> bool:
    """
    Whether a record belongs to the population.

    ``condition`` matches a diagnosis code prefix or, failing that, appears
    in the title or narrative (case-insensitive).
    """
    window = parse_time_range(criteria.time_range)
    if window is not None and _naive_utc(record.encounter_date) < _naive_utc(now) - window:
        return False

    if criteria.condition:
        condition = criteria.condition.strip()
        prefix = condition.upper()
        if not any(code.startswith(prefix) for code in record.icd_codes):
            text = f"{record.title} {record.clinical_narrative or ''}".lower()
            if condition.lower() not in text:
                return False
    return True


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def group_key(record: ClinicalRecord, aggregation: str) -> str:
    if aggregation not in AGGREGATION_KEYS:
        raise ValueError(f"aggregation must be one of {AGGREGATION_KEYS}")
    value = getattr(record, aggregation)
    if value is None:
        return UNSPECIFIED
    return value.value if hasattr(value, "value") else str(value)


def group_records(records: Iterable[ClinicalRecord], aggregation: str = "record_type") -> dict[str, list[ClinicalRecord]]:
    groups: dict[str, list[ClinicalRecord]] = defaultdict(list)
    for record in records:
        groups[group_key(record, aggregation)].append(record)
    return dict(groups)


def analyze_record_group(group: str, records: list[ClinicalRecord]) -> RecordGroupAnalysis:
    severity = Counter(
        r.severity_level.value if r.severity_level else UNSPECIFIED for r in records
    )
    codes = Counter(code for r in records for code in r.icd_codes)
    encounters = [r.encounter_date for r in records]

    return RecordGroupAnalysis(
        group=group,
        record_count=len(records),
        patient_count=len({r.patient_id for r in records}),
        high_risk_count=sum(1 for r in records if r.is_high_risk),
        special_handling_count=sum(1 for r in records if r.requires_special_handling),
        severity_distribution=dict(severity),
        top_icd_codes=sorted(codes.items(), key=lambda item: (-item[1], item[0]))[:TOP_CODES],
        earliest_encounter=min(encounters) if encounters else None,
        latest_encounter=max(encounters) if encounters else None,
    )


def build_population_insights(records: list[ClinicalRecord], aggregation: str = "record_type") -> PopulationHealthInsights:
    insights = PopulationHealthInsights(aggregation=aggregation)
    for group, members in group_records(records, aggregation).items():
        insights.add_insight(group, analyze_record_group(group, members))
    return insights
