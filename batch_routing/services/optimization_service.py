"""
Top-level route optimization for a driver's batch of orders.
"""
from datetime import datetime
from typing import Callable, Mapping, Optional, Sequence
import logging

from django.utils import timezone

from batch_routing.core.criteria import OptimizationCriteria
from batch_routing.core.distance_matrix import (
    DistanceMatrixBuilder,
    GoogleDistanceMatrixProvider,
    HaversineDistanceProvider,
)
from batch_routing.core.exceptions import DataError
from batch_routing.core.route_builder import RouteBuilder
from batch_routing.core.route_types import (
    Location,
    OptimizedRoute,
    Order,
    PreparationWindow,
    TrafficCondition,
)
from batch_routing.core.scoring import SequenceScorer
from batch_routing.core.sequence_solver import SequenceSolver
from batch_routing.settings import USE_ROAD_DISTANCE_BY_DEFAULT
from batch_routing.utils.helpers import format_route_for_display

logger = logging.getLogger(__name__)


class RouteOptimizationService:
    """
    Computes the optimal pickup/delivery route for a batch.

    ConfigurationError and DataError propagate to the caller; there is no
    fallback route.
    """

    def __init__(
        self,
        solver: Optional[SequenceSolver] = None,
        route_builder: Optional[RouteBuilder] = None,
        distance_provider=None,
        preparation_predictor=None,
        condition_provider=None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize the optimization service.

        Args:
            solver: Sequence solver. Defaults to SequenceSolver().
            route_builder: Route builder. Defaults to RouteBuilder().
            distance_provider: Object with build_matrix(points). Defaults to
                haversine, or Google road distances when USE_ROAD_DISTANCE_BY_DEFAULT is set.
            preparation_predictor: Used when no preparation windows are passed in.
            condition_provider: Used when no traffic conditions are passed in.
            clock: Callable returning the current time. Defaults to django.utils.timezone.now.
        """
        self.solver = solver or SequenceSolver()
        self.route_builder = route_builder or RouteBuilder()
        if distance_provider is None:
            distance_provider = GoogleDistanceMatrixProvider() if USE_ROAD_DISTANCE_BY_DEFAULT else HaversineDistanceProvider()
        self.distance_provider = distance_provider
        self.preparation_predictor = preparation_predictor
        self.condition_provider = condition_provider
        self.clock = clock or timezone.now

    def calculate_optimal_route(
        self,
        orders: Sequence[Order],
        driver_location: Location,
        criteria: Optional[OptimizationCriteria] = None,
        preparation_windows: Optional[Mapping[str, PreparationWindow]] = None,
        traffic_conditions: Optional[Mapping[str, TrafficCondition]] = None,
        batch_id: Optional[str] = None
    ) -> OptimizedRoute:
        """
        Calculate the optimal route for a batch of orders.

        Args:
            orders: Orders in the batch.
            driver_location: Current driver position.
            criteria: Weights for the score. Defaults to the balanced preset.
            preparation_windows: Order id -> predicted window. Fetched from the
                preparation predictor when None.
            traffic_conditions: Order id -> traffic condition. Fetched from the
                condition provider when None.
            batch_id: Batch identifier for the returned route.

        Returns:
            OptimizedRoute; an empty route when there are no orders.

        Raises:
            ConfigurationError: If the criteria weights are invalid.
            DataError: If the driver location or an order location lacks coordinates.
        """
        criteria = (criteria or OptimizationCriteria.balanced()).validate()
        orders = list(orders)

        if not orders:
            logger.info(f"No orders for batch {batch_id}; returning empty route.")
            return self.route_builder.empty_route(batch_id or 'batch_empty', criteria)

        self._check_unique_ids(orders)
        now = self.clock()

        distance_matrix = DistanceMatrixBuilder.create_distance_matrix(
            driver_location, orders, provider=self.distance_provider
        )
        num_points, longest_leg = DistanceMatrixBuilder.describe(distance_matrix)
        logger.debug(f"Distance matrix: {num_points} points, longest leg {longest_leg:.2f}km")

        if preparation_windows is None:
            preparation_windows = self._predict_windows(orders)
        if traffic_conditions is None:
            traffic_conditions = self._fetch_traffic(orders)

        scorer = SequenceScorer(
            orders=orders,
            distance_matrix=distance_matrix,
            criteria=criteria,
            traffic_conditions=traffic_conditions,
            preparation_windows=preparation_windows,
            reference_time=now,
        )
        result = self.solver.solve_with_scorer(scorer)

        route = self.route_builder.build_route(
            orders,
            result.sequence,
            distance_matrix,
            scorer,
            batch_id=batch_id,
            start_time=now,
        )
        route.metadata.update({
            'algorithm': result.algorithm,
            'evaluations': result.evaluations,
            'two_opt_passes': result.passes,
            'solve_time_ms': round(result.elapsed_ms, 3),
        })

        logger.info(
            f"Optimized batch {route.batch_id}: {len(orders)} orders via {result.algorithm}, "
            f"{result.evaluations} evaluations in {result.elapsed_ms:.1f}ms, "
            f"{route.total_distance_km:.2f}km, score {route.optimization_score:.1f}"
        )
        logger.debug(format_route_for_display(route))
        return route

    @staticmethod
    def _check_unique_ids(orders: Sequence[Order]) -> None:
        seen = set()
        for order in orders:
            if order.id in seen:
                raise DataError(f"Duplicate order id in batch: {order.id}")
            seen.add(order.id)

    def _predict_windows(self, orders: Sequence[Order]) -> Mapping[str, PreparationWindow]:
        if self.preparation_predictor is None:
            return {}
        windows = self.preparation_predictor.predict(orders) or {}
        logger.debug(f"Predicted preparation windows for {len(windows)} of {len(orders)} orders")
        return windows

    def _fetch_traffic(self, orders: Sequence[Order]) -> Mapping[str, TrafficCondition]:
        if self.condition_provider is None:
            return {}
        return self.condition_provider.get_traffic_conditions(orders) or {}
