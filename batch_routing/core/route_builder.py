"""
Turns a solved order permutation into an OptimizedRoute with waypoints,
arrival estimates and totals.
"""
from datetime import datetime, timedelta
from typing import List, Optional, Sequence
import logging

import numpy as np
from django.utils import timezone

from batch_routing.core.criteria import OptimizationCriteria
from batch_routing.core.distance_matrix import DistanceMatrixBuilder
from batch_routing.core.route_types import (
    OptimizedRoute,
    Order,
    RouteWaypoint,
    TrafficCondition,
    WaypointType,
    new_route_id,
)
from batch_routing.core.scoring import SequenceScorer
from batch_routing.settings import (
    AVERAGE_SPEED_KMH,
    DELIVERY_SERVICE_MINUTES,
    PICKUP_SERVICE_MINUTES,
    TRAFFIC_DURATION_MULTIPLIER,
)

logger = logging.getLogger(__name__)


class RouteBuilder:
    """
    Builds routes in two phases: every pickup in sequence order, then every
    delivery in the same order.
    """

    def __init__(
        self,
        average_speed_kmh: float = AVERAGE_SPEED_KMH,
        pickup_service_minutes: float = PICKUP_SERVICE_MINUTES,
        delivery_service_minutes: float = DELIVERY_SERVICE_MINUTES,
        traffic_multiplier: float = TRAFFIC_DURATION_MULTIPLIER
    ):
        if average_speed_kmh <= 0:
            raise ValueError("average_speed_kmh must be positive")
        self.average_speed_kmh = average_speed_kmh
        self.pickup_service = timedelta(minutes=pickup_service_minutes)
        self.delivery_service = timedelta(minutes=delivery_service_minutes)
        self.traffic_multiplier = traffic_multiplier

    def travel_time(self, distance_km: float) -> timedelta:
        return timedelta(hours=distance_km / self.average_speed_kmh)

    def build_route(
        self,
        orders: Sequence[Order],
        sequence: Sequence[int],
        distance_matrix: np.ndarray,
        scorer: SequenceScorer,
        batch_id: Optional[str] = None,
        start_time: Optional[datetime] = None
    ) -> OptimizedRoute:
        """
        Build the route for a solved sequence.

        Args:
            orders: Orders in the batch, indexed as in the distance matrix.
            sequence: Permutation of order indices.
            distance_matrix: (1 + 2n) x (1 + 2n) matrix in km.
            scorer: Scorer used for the solve, reused for the score breakdown.
            batch_id: Batch identifier. Defaults to 'batch_<first order id>'.
            start_time: Departure time. Defaults to now.

        Returns:
            OptimizedRoute with 2n waypoints.
        """
        if not orders or not sequence:
            return self.empty_route(batch_id or 'batch_empty', scorer.criteria)

        num_orders = len(orders)
        batch_id = batch_id or f"batch_{orders[0].id}"
        current_time = start_time or timezone.now()

        stops = [(WaypointType.PICKUP, idx, DistanceMatrixBuilder.pickup_index(idx)) for idx in sequence]
        stops += [
            (WaypointType.DELIVERY, idx, DistanceMatrixBuilder.delivery_index(idx, num_orders))
            for idx in sequence
        ]

        waypoints: List[RouteWaypoint] = []
        total_distance = 0.0
        total_duration = timedelta()
        previous_index = 0  # driver

        for position, (waypoint_type, order_idx, matrix_index) in enumerate(stops, start=1):
            order = orders[order_idx]
            leg_distance = float(distance_matrix[previous_index, matrix_index])
            leg_time = self.travel_time(leg_distance)
            service_time = self.pickup_service if waypoint_type == WaypointType.PICKUP else self.delivery_service

            current_time += leg_time
            location = order.pickup_location if waypoint_type == WaypointType.PICKUP else order.delivery_location

            waypoints.append(RouteWaypoint(
                type=waypoint_type,
                order_id=order.id,
                location=location,
                sequence=position,
                estimated_arrival_time=current_time,
                estimated_duration=service_time,
                distance_from_previous=leg_distance,
            ))

            current_time += service_time
            total_distance += leg_distance
            total_duration += leg_time + service_time
            previous_index = matrix_index

        breakdown = scorer.breakdown(list(sequence))
        traffic_condition = TrafficCondition.from_score(scorer.average_traffic_score())

        route = OptimizedRoute(
            id=new_route_id(),
            batch_id=batch_id,
            waypoints=waypoints,
            total_distance_km=total_distance,
            total_duration=total_duration,
            duration_in_traffic=total_duration * self.traffic_multiplier,
            optimization_score=breakdown['total'] * 100.0,
            criteria=scorer.criteria,
            created_at=timezone.now(),
            overall_traffic_condition=traffic_condition,
            metadata={
                'score_breakdown': breakdown,
                'order_sequence': [orders[idx].id for idx in sequence],
            },
        )

        logger.debug(
            f"Built route {route.id} for {batch_id}: {len(waypoints)} waypoints, "
            f"{total_distance:.2f}km, score {route.optimization_score:.1f}"
        )
        return route

    def empty_route(self, batch_id: str, criteria: OptimizationCriteria) -> OptimizedRoute:
        return OptimizedRoute(
            id=new_route_id(),
            batch_id=batch_id,
            waypoints=[],
            total_distance_km=0.0,
            total_duration=timedelta(),
            duration_in_traffic=timedelta(),
            optimization_score=0.0,
            criteria=criteria,
            created_at=timezone.now(),
            overall_traffic_condition=TrafficCondition.UNKNOWN,
            metadata={'score_breakdown': {}, 'order_sequence': []},
        )
