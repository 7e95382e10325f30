"""
Score fusion for similarity results.

Pure functions: no I/O, deterministic for a given input.
"""

from typing import Iterable, Sequence

from clinsight.models.analytics import RiskLevel, SimilarCaseResult

DEFAULT_BASE_WEIGHT = 0.7
NEUTRAL_RISK = 0.5

# Evidence needed before confidence stops being discounted
_FULL_EVIDENCE = 10


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def rank_cases(
    cases: Iterable[SimilarCaseResult],
    top_k: int,
    similarity_threshold: float = 0.0,
    exclude_ids: Iterable[str] = (),
) -> list[SimilarCaseResult]:
    """
    Threshold, dedupe and order similar cases.

    Duplicates (same case id) keep their best score. Ordering is by score
    descending, then case id, so equal scores rank the same way every time.
    Cases without a score only pass a zero threshold.
    """
    excluded = set(exclude_ids)
    best: dict[str, SimilarCaseResult] = {}
    for case in cases:
        if case.case_id in excluded:
            continue
        score = case.similarity_score if case.similarity_score is not None else 0.0
        if score < similarity_threshold:
            continue
        current = best.get(case.case_id)
        if current is None or score > (current.similarity_score or 0.0):
            best[case.case_id] = case

    ranked = sorted(best.values(), key=lambda c: (-(c.similarity_score or 0.0), c.case_id))
    return ranked[:max(top_k, 0)]


def historical_risk(cases: Sequence[SimilarCaseResult]) -> float:
    """Similarity-weighted mean of the cases' risk indicators; neutral with no cases."""
    if not cases:
        return NEUTRAL_RISK

    weights = [max(c.similarity_score or 0.0, 0.0) for c in cases]
    total = sum(weights)
    if total == 0:
        return _clamp(sum(c.risk_indicator for c in cases) / len(cases))
    return _clamp(sum(w * c.risk_indicator for w, c in zip(weights, cases)) / total)


def aggregate_risk(
    base_risk: float,
    cases: Sequence[SimilarCaseResult],
    base_weight: float = DEFAULT_BASE_WEIGHT,
) -> float:
    """Blend the record's own risk with the risk observed in similar cases."""
    if not 0.0 <= base_weight <= 1.0:
        raise ValueError("base_weight must be between 0 and 1")
    blended = base_weight * _clamp(base_risk) + (1 - base_weight) * historical_risk(cases)
    return _clamp(blended)


def determine_risk_level(score: float) -> RiskLevel:
    if score >= 0.8:
        return RiskLevel.HIGH
    if score >= 0.6:
        return RiskLevel.MODERATE
    if score >= 0.3:
        return RiskLevel.LOW
    return RiskLevel.MINIMAL


def confidence_score(guideline_scores: Sequence[float], case_scores: Sequence[float]) -> float:
    """
    Confidence in a decision support answer.

    Guideline relevance counts for 60%, case similarity for 40%, and the
    whole is discounted while fewer than ten pieces of evidence were found.
    """
    if not guideline_scores and not case_scores:
        return 0.0

    def mean(scores: Sequence[float]) -> float:
        return sum(_clamp(s) for s in scores) / len(scores) if scores else 0.0

    evidence = 0.6 * mean(guideline_scores) + 0.4 * mean(case_scores)
    coverage = min(1.0, (len(guideline_scores) + len(case_scores)) / _FULL_EVIDENCE)
    return round(_clamp(evidence * (0.5 + 0.5 * coverage)), 4)
