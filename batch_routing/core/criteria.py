"""
Optimization criteria for multi-objective route scoring.

The four weights form a convex combination over the distance, preparation
alignment, traffic and delivery-window sub-scores. Invalid weights are
rejected rather than normalized, since the 0-100 optimization score is only
meaningful when the weights sum to one.
"""
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional
import logging

from batch_routing.core.constants import CRITERIA_WEIGHT_TOLERANCE
from batch_routing.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OptimizationCriteria:
    """
    Weight vector used by the sequence scorer.
    """
    distance_weight: float
    preparation_time_weight: float
    traffic_weight: float
    delivery_window_weight: float

    @classmethod
    def balanced(cls) -> 'OptimizationCriteria':
        """40% distance, 30% preparation time, 20% traffic, 10% delivery window."""
        return cls(
            distance_weight=0.4,
            preparation_time_weight=0.3,
            traffic_weight=0.2,
            delivery_window_weight=0.1,
        )

    @classmethod
    def distance_focused(cls) -> 'OptimizationCriteria':
        return cls(
            distance_weight=0.6,
            preparation_time_weight=0.2,
            traffic_weight=0.15,
            delivery_window_weight=0.05,
        )

    @classmethod
    def time_focused(cls) -> 'OptimizationCriteria':
        return cls(
            distance_weight=0.2,
            preparation_time_weight=0.4,
            traffic_weight=0.3,
            delivery_window_weight=0.1,
        )

    @classmethod
    def from_preset(cls, name: str) -> 'OptimizationCriteria':
        """
        Build criteria from a named preset.

        Args:
            name: One of 'balanced', 'distance_focused', 'time_focused'.

        Raises:
            ConfigurationError: If the preset name is unknown.
        """
        presets = {
            'balanced': cls.balanced,
            'distance_focused': cls.distance_focused,
            'time_focused': cls.time_focused,
        }
        key = (name or '').strip().lower()
        if key not in presets:
            raise ConfigurationError(
                f"Unknown optimization criteria preset '{name}'. Expected one of: {', '.join(sorted(presets))}"
            )
        return presets[key]()

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'OptimizationCriteria':
        """
        Create criteria from a dictionary of weights.

        Missing weights are treated as configuration errors, not defaulted.
        """
        if not data:
            raise ConfigurationError("Optimization criteria data is empty")
        try:
            return cls(
                distance_weight=float(data['distance_weight']),
                preparation_time_weight=float(data['preparation_time_weight']),
                traffic_weight=float(data['traffic_weight']),
                delivery_window_weight=float(data['delivery_window_weight']),
            )
        except KeyError as e:
            raise ConfigurationError(f"Missing optimization criteria weight: {e.args[0]}") from e
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid optimization criteria weight: {e}") from e

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)

    @property
    def weight_sum(self) -> float:
        return (
            self.distance_weight
            + self.preparation_time_weight
            + self.traffic_weight
            + self.delivery_window_weight
        )

    @property
    def is_valid(self) -> bool:
        """True when all weights are non-negative and sum to 1.0 within tolerance."""
        weights = (
            self.distance_weight,
            self.preparation_time_weight,
            self.traffic_weight,
            self.delivery_window_weight,
        )
        if any(w < 0 for w in weights):
            return False
        return abs(self.weight_sum - 1.0) <= CRITERIA_WEIGHT_TOLERANCE

    def validate(self) -> 'OptimizationCriteria':
        """
        Validate the weights.

        Returns:
            The criteria itself, for chaining.

        Raises:
            ConfigurationError: If any weight is negative or the weights do not sum to 1.0.
        """
        if not self.is_valid:
            logger.error(f"Rejected optimization criteria {self.to_dict()} (sum={self.weight_sum:.4f})")
            raise ConfigurationError(
                f"Invalid optimization criteria: weights must be non-negative and sum to 1.0 "
                f"(got sum={self.weight_sum:.4f})"
            )
        return self
