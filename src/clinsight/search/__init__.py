"""Bounded search execution and score fusion."""

from clinsight.search.executor import FanInOutcome, SearchExecutor
from clinsight.search.ranking import (
    aggregate_risk,
    confidence_score,
    determine_risk_level,
    historical_risk,
    rank_cases,
)

__all__ = [
    "FanInOutcome",
    "SearchExecutor",
    "aggregate_risk",
    "confidence_score",
    "determine_risk_level",
    "historical_risk",
    "rank_cases",
]
