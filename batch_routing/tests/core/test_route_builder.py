import unittest
from datetime import timedelta

from batch_routing.core.criteria import OptimizationCriteria
from batch_routing.core.route_builder import RouteBuilder
from batch_routing.core.route_types import TrafficCondition, WaypointType
from batch_routing.core.scoring import SequenceScorer
from batch_routing.tests.core.matrices import two_order_matrix
from batch_routing.tests.factories import REFERENCE_TIME, make_order


class TestRouteBuilder(unittest.TestCase):

    def setUp(self):
        self.orders = [make_order('o1'), make_order('o2')]
        self.matrix = two_order_matrix()
        self.scorer = SequenceScorer(
            orders=self.orders,
            distance_matrix=self.matrix,
            criteria=OptimizationCriteria.balanced(),
            reference_time=REFERENCE_TIME,
        )
        self.builder = RouteBuilder()

    def test_two_phase_waypoints(self):
        route = self.builder.build_route(self.orders, [1, 0], self.matrix, self.scorer, start_time=REFERENCE_TIME)
        types = [wp.type for wp in route.waypoints]
        self.assertEqual(types, [WaypointType.PICKUP] * 2 + [WaypointType.DELIVERY] * 2)
        self.assertEqual([wp.order_id for wp in route.waypoints], ['o2', 'o1', 'o2', 'o1'])
        self.assertEqual([wp.sequence for wp in route.waypoints], [1, 2, 3, 4])
        self.assertEqual(route.order_ids, ['o2', 'o1'])

    def test_total_distance_equals_sum_of_legs(self):
        for sequence in ([0, 1], [1, 0]):
            route = self.builder.build_route(self.orders, sequence, self.matrix, self.scorer)
            self.assertAlmostEqual(route.total_distance_km, sum(wp.distance_from_previous for wp in route.waypoints))
            self.assertAlmostEqual(route.total_distance_km, self.scorer.total_distance(sequence))

    def test_leg_distances_use_delivery_indices(self):
        route = self.builder.build_route(self.orders, [1, 0], self.matrix, self.scorer)
        self.assertEqual([wp.distance_from_previous for wp in route.waypoints], [5.0, 2.0, 4.0, 1.0])

    def test_timing(self):
        route = self.builder.build_route(self.orders, [0, 1], self.matrix, self.scorer, start_time=REFERENCE_TIME)
        # 1 km at 40 km/h is 1.5 minutes
        self.assertEqual(route.waypoints[0].estimated_arrival_time, REFERENCE_TIME + timedelta(minutes=1.5))
        # then 5 min pickup service and 2 km (3 min) to the next pickup
        self.assertEqual(route.waypoints[1].estimated_arrival_time, REFERENCE_TIME + timedelta(minutes=9.5))
        self.assertEqual(route.waypoints[2].estimated_duration, timedelta(minutes=3))

        # 10 km travel (15 min) + 2 x 5 + 2 x 3 service
        self.assertEqual(route.total_duration, timedelta(minutes=31))
        self.assertEqual(route.duration_in_traffic, timedelta(minutes=31) * 1.2)

    def test_score_and_metadata(self):
        route = self.builder.build_route(self.orders, [0, 1], self.matrix, self.scorer)
        self.assertAlmostEqual(route.optimization_score, self.scorer.score([0, 1]) * 100)
        self.assertEqual(route.metadata['order_sequence'], ['o1', 'o2'])
        self.assertIn('distance', route.metadata['score_breakdown'])
        self.assertEqual(route.overall_traffic_condition, TrafficCondition.MODERATE)
        self.assertEqual(route.batch_id, 'batch_o1')
        self.assertTrue(route.id.startswith('route_'))

    def test_overall_traffic_condition(self):
        scorer = SequenceScorer(
            orders=self.orders,
            distance_matrix=self.matrix,
            criteria=OptimizationCriteria.balanced(),
            traffic_conditions={'o1': TrafficCondition.CLEAR, 'o2': TrafficCondition.CLEAR},
            reference_time=REFERENCE_TIME,
        )
        route = self.builder.build_route(self.orders, [0, 1], self.matrix, scorer, batch_id='b-7')
        self.assertEqual(route.overall_traffic_condition, TrafficCondition.CLEAR)
        self.assertEqual(route.batch_id, 'b-7')

    def test_empty_route(self):
        route = self.builder.empty_route('b-empty', OptimizationCriteria.balanced())
        self.assertEqual(route.waypoints, [])
        self.assertEqual(route.total_distance_km, 0.0)
        self.assertEqual(route.optimization_score, 0.0)

    def test_invalid_speed(self):
        with self.assertRaises(ValueError):
            RouteBuilder(average_speed_kmh=0)


if __name__ == '__main__':
    unittest.main()
