"""
Confidence Scorer

Weighted composition of the component sub-scores and the recommendation
handed to the settlement consumer.
"""

from typing import Optional, Tuple

from ..config.settings import ConfidenceThresholds
from .types import ComponentScores, Recommendation


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def interval_quality(estimate: float, half_width: float) -> float:
    """1 - half_width / estimate, clamped to [0, 1]"""
    if estimate <= 0:
        return 1.0 if half_width <= 0 else 0.0
    return clamp(1.0 - half_width / estimate)


class ConfidenceScorer:
    """Maps component scores to (confidence, recommendation)"""

    def __init__(self, thresholds: Optional[ConfidenceThresholds] = None):
        self.thresholds = thresholds or ConfidenceThresholds()

    def confidence(self, components: ComponentScores) -> float:
        weights = self.thresholds.weights
        scores = components.as_dict()
        return clamp(sum(weights[name] * clamp(scores[name]) for name in weights))

    def recommend(self, confidence: float) -> Recommendation:
        if confidence >= self.thresholds.resolve:
            return Recommendation.RESOLVE
        if confidence >= self.thresholds.resolve_flagged:
            return Recommendation.RESOLVE_FLAGGED
        if confidence >= self.thresholds.delay:
            return Recommendation.DELAY
        return Recommendation.CANCEL

    def score(self, components: ComponentScores) -> Tuple[float, Recommendation]:
        confidence = self.confidence(components)
        return confidence, self.recommend(confidence)
