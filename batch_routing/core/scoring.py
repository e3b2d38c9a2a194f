"""
Multi-criteria scoring of order sequences.

A sequence is a permutation of order indices. Pickups are visited in sequence
order, followed by deliveries in the same order, and the score combines four
sub-scores, each roughly in [0, 1], weighted by the optimization criteria.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Mapping, Optional, Sequence
import logging

import numpy as np
from django.utils import timezone

from batch_routing.core.constants import (
    DEFAULT_PREPARATION_SCORE,
    DELIVERY_WINDOW_PLACEHOLDER_SCORE,
    DISTANCE_NORMALIZATION_KM,
    INITIAL_TRAVEL_MINUTES,
    MINUTES_PER_ORDER,
    PREPARATION_DELAY_HORIZON_MINUTES,
    STARTING_ORDER_READINESS_MINUTES,
    TRANSITION_DISTANCE_NORMALIZATION_KM,
)
from batch_routing.core.criteria import OptimizationCriteria
from batch_routing.core.distance_matrix import DistanceMatrixBuilder
from batch_routing.core.route_types import Order, PreparationWindow, TrafficCondition
from batch_routing.utils.helpers import minutes_between

logger = logging.getLogger(__name__)


@dataclass
class SequenceScorer:
    """
    Scores candidate sequences for one solve.

    All inputs are treated as immutable snapshots for the duration of the solve.
    """
    orders: Sequence[Order]
    distance_matrix: np.ndarray
    criteria: OptimizationCriteria
    traffic_conditions: Mapping[str, TrafficCondition] = field(default_factory=dict)
    preparation_windows: Mapping[str, PreparationWindow] = field(default_factory=dict)
    reference_time: Optional[datetime] = None

    def __post_init__(self):
        if self.reference_time is None:
            self.reference_time = timezone.now()
        self.num_orders = len(self.orders)

    def _pickup(self, order_idx: int) -> int:
        return DistanceMatrixBuilder.pickup_index(order_idx)

    def _delivery(self, order_idx: int) -> int:
        return DistanceMatrixBuilder.delivery_index(order_idx, self.num_orders)

    def total_distance(self, sequence: Sequence[int]) -> float:
        """
        Two-phase route distance: driver -> pickups in order -> deliveries in order.
        """
        if not sequence:
            return 0.0

        m = self.distance_matrix
        total = m[0, self._pickup(sequence[0])]

        for a, b in zip(sequence, sequence[1:]):
            total += m[self._pickup(a), self._pickup(b)]

        total += m[self._pickup(sequence[-1]), self._delivery(sequence[0])]

        for a, b in zip(sequence, sequence[1:]):
            total += m[self._delivery(a), self._delivery(b)]

        return float(total)

    def distance_score(self, sequence: Sequence[int]) -> float:
        if not sequence:
            return 0.0
        return max(0.0, 1.0 - self.total_distance(sequence) / DISTANCE_NORMALIZATION_KM)

    def preparation_score(self, sequence: Sequence[int]) -> float:
        """
        Average alignment between simulated pickup times and predicted readiness.
        """
        if not sequence:
            return 0.0

        total = 0.0
        pickup_time = self.reference_time + timedelta(minutes=INITIAL_TRAVEL_MINUTES)

        for order_idx in sequence:
            window = self.preparation_windows.get(self.orders[order_idx].id)
            if window is None:
                total += DEFAULT_PREPARATION_SCORE
            elif window.is_ready_by(pickup_time):
                total += window.confidence_score
            else:
                delay_minutes = minutes_between(pickup_time, window.estimated_completion_time)
                penalty = max(0.0, 1.0 - delay_minutes / PREPARATION_DELAY_HORIZON_MINUTES)
                total += window.confidence_score * penalty

            pickup_time += timedelta(minutes=MINUTES_PER_ORDER)

        return total / len(sequence)

    def traffic_condition_for(self, order: Order) -> TrafficCondition:
        return self.traffic_conditions.get(order.id, TrafficCondition.MODERATE)

    def traffic_score(self, sequence: Sequence[int]) -> float:
        if not sequence:
            return 0.0
        scores = [self.traffic_condition_for(self.orders[i]).score for i in sequence]
        return sum(scores) / len(scores)

    def delivery_window_score(self, sequence: Sequence[int]) -> float:
        # Customer delivery windows are not modeled yet; constant placeholder.
        return DELIVERY_WINDOW_PLACEHOLDER_SCORE

    def breakdown(self, sequence: Sequence[int]) -> Dict[str, float]:
        parts = {
            'distance': self.distance_score(sequence),
            'preparation': self.preparation_score(sequence),
            'traffic': self.traffic_score(sequence),
            'delivery_window': self.delivery_window_score(sequence),
        }
        parts['total'] = (
            parts['distance'] * self.criteria.distance_weight
            + parts['preparation'] * self.criteria.preparation_time_weight
            + parts['traffic'] * self.criteria.traffic_weight
            + parts['delivery_window'] * self.criteria.delivery_window_weight
        )
        return parts

    def score(self, sequence: Sequence[int]) -> float:
        """Weighted total score in [0, 1]."""
        return self.breakdown(sequence)['total']

    def transition_score(self, from_idx: int, to_idx: int) -> float:
        """
        Greedy score for moving from one order's pickup to another's.
        """
        distance = self.distance_matrix[self._pickup(from_idx), self._pickup(to_idx)]
        distance_score = max(0.0, 1.0 - distance / TRANSITION_DISTANCE_NORMALIZATION_KM)

        target = self.orders[to_idx]
        window = self.preparation_windows.get(target.id)
        preparation_score = window.confidence_score if window is not None else DEFAULT_PREPARATION_SCORE

        traffic_score = self.traffic_condition_for(target).score

        return (
            distance_score * self.criteria.distance_weight
            + preparation_score * self.criteria.preparation_time_weight
            + traffic_score * self.criteria.traffic_weight
        )

    def starting_order(self) -> int:
        """
        Order with the earliest high-confidence readiness; 0 when nothing stands out.
        """
        best_order = 0
        best_score = 0.0
        horizon = self.reference_time + timedelta(minutes=STARTING_ORDER_READINESS_MINUTES)

        for idx, order in enumerate(self.orders):
            window = self.preparation_windows.get(order.id)
            if window is None:
                continue
            readiness = 1.0 if window.is_ready_by(horizon) else 0.5
            candidate = readiness * window.confidence_score
            if candidate > best_score:
                best_score = candidate
                best_order = idx

        return best_order

    def average_traffic_score(self) -> float:
        if not self.orders:
            return TrafficCondition.UNKNOWN.score
        return self.traffic_score(list(range(self.num_orders)))

    def order_indices(self) -> List[int]:
        return list(range(self.num_orders))
