"""Decision policy thresholds.

The blend weights and the auto-approval threshold are tunable defaults without
a derivation behind them. Keep them in configuration, not in the engine.
"""

from dataclasses import dataclass

from patchwatch.config import Settings, settings


class PolicyError(ValueError):
    """Raised when a policy is internally inconsistent."""

    pass


@dataclass(frozen=True)
class DecisionPolicy:
    """Thresholds and weights used by the decision engine."""

    similarity_floor: float = 0.6
    uncertain_min: float = 0.8
    exact_min: float = 0.95
    auto_approval_threshold: float = 0.8
    similarity_weight: float = 0.7
    ai_weight: float = 0.3
    ai_rejected_factor: float = 0.9
    ai_primary_threshold: float = 0.9
    unknown_version_factor: float = 0.85
    verification_boost: float = 0.05
    tie_epsilon: float = 0.01

    def __post_init__(self):
        if not 0.5 <= self.auto_approval_threshold <= 1.0:
            raise PolicyError("auto_approval_threshold must be within [0.5, 1.0]")
        if not 0.0 <= self.similarity_floor <= self.uncertain_min <= self.exact_min <= 1.0:
            raise PolicyError("similarity thresholds must satisfy floor <= uncertain <= exact")
        if abs(self.similarity_weight + self.ai_weight - 1.0) > 1e-6:
            raise PolicyError("similarity_weight and ai_weight must sum to 1")

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "DecisionPolicy":
        return cls(
            similarity_floor=config.similarity_floor,
            uncertain_min=config.uncertain_similarity_min,
            exact_min=config.exact_similarity_min,
            auto_approval_threshold=config.auto_approval_threshold,
            similarity_weight=config.similarity_weight,
            ai_weight=config.ai_confidence_weight,
            ai_rejected_factor=config.ai_rejected_factor,
            ai_primary_threshold=config.ai_primary_threshold,
            unknown_version_factor=config.unknown_version_factor,
            verification_boost=config.verification_boost,
            tie_epsilon=config.tie_epsilon,
        )

    def is_uncertain(self, similarity: float) -> bool:
        return self.uncertain_min <= similarity < self.exact_min
