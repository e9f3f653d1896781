"""
Confidence scoring for matched rules.

Each condition that held is a piece of evidence. Exact matches are strong
evidence; substring and pattern matches are weaker. Pieces combine like
independent signals:

    confidence = 1 - product(1 - weight(operator) * evidence_strength)

so every extra condition can only raise confidence, a single weak
condition stays well below 1, and the result is always in [0, 1].
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping

DEFAULT_OPERATOR_WEIGHTS: Mapping[str, float] = MappingProxyType({
    "equals": 1.0,
    "startsWith": 0.8,
    "endsWith": 0.8,
    "greaterThan": 0.8,
    "lessThan": 0.8,
    "contains": 0.6,
    "regex": 0.5,
})


@dataclass(frozen=True)
class ConfidencePolicy:
    operator_weights: Mapping[str, float] = field(default_factory=lambda: DEFAULT_OPERATOR_WEIGHTS)
    evidence_strength: float = 0.7
    default_weight: float = 0.5

    def __post_init__(self):
        weights = [*self.operator_weights.values(), self.default_weight, self.evidence_strength]
        if any(not 0.0 <= w <= 1.0 for w in weights):
            raise ValueError("confidence weights must lie in [0, 1]")

    def score(self, operators: Iterable[str]) -> float:
        """Confidence for a rule whose conditions, by operator, all held."""
        miss = 1.0
        for operator in operators:
            weight = self.operator_weights.get(operator, self.default_weight)
            miss *= 1.0 - weight * self.evidence_strength
        return round(1.0 - miss, 4)
