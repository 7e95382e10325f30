"""
Clinical analytics.

- features: rule-based risk features
- population: population grouping and aggregation
- service: ClinicalAnalyticsService (import from clinsight.analytics.service)
"""

from clinsight.analytics.features import ClinicalFeatures
from clinsight.analytics.population import build_population_insights, parse_time_range

__all__ = ["ClinicalFeatures", "build_population_insights", "parse_time_range"]
