import unittest

from batch_routing.core.criteria import OptimizationCriteria
from batch_routing.core.route_types import TrafficCondition
from batch_routing.core.scoring import SequenceScorer
from batch_routing.tests.core.matrices import two_order_matrix
from batch_routing.tests.factories import REFERENCE_TIME, make_order, make_window


class TestSequenceScorer(unittest.TestCase):

    def setUp(self):
        self.orders = [make_order('o1'), make_order('o2')]
        self.matrix = two_order_matrix()

    def _scorer(self, **kwargs):
        params = {
            'orders': self.orders,
            'distance_matrix': self.matrix,
            'criteria': OptimizationCriteria.balanced(),
            'reference_time': REFERENCE_TIME,
        }
        params.update(kwargs)
        return SequenceScorer(**params)

    def test_total_distance_two_phase(self):
        scorer = self._scorer()
        self.assertAlmostEqual(scorer.total_distance([0, 1]), 10.0)
        self.assertAlmostEqual(scorer.total_distance([1, 0]), 12.0)
        self.assertEqual(scorer.total_distance([]), 0.0)

    def test_distance_score(self):
        scorer = self._scorer()
        self.assertAlmostEqual(scorer.distance_score([0, 1]), 0.8)

    def test_distance_score_floors_at_zero(self):
        scorer = self._scorer(distance_matrix=self.matrix * 10)
        self.assertEqual(scorer.distance_score([0, 1]), 0.0)

    def test_preparation_score(self):
        windows = {
            'o1': make_window('o1', 10, confidence=0.9),
            'o2': make_window('o2', 50, confidence=0.8),
        }
        scorer = self._scorer(preparation_windows=windows)
        # o1 ready at the first pickup (+15), o2 15 min late at the second (+35)
        self.assertAlmostEqual(scorer.preparation_score([0, 1]), (0.9 + 0.8 * 0.5) / 2)
        # o2 35 min late at +15 earns nothing, o1 is ready at +35
        self.assertAlmostEqual(scorer.preparation_score([1, 0]), (0.0 + 0.9) / 2)

    def test_preparation_score_without_windows(self):
        self.assertAlmostEqual(self._scorer().preparation_score([0, 1]), 0.5)

    def test_traffic_score_defaults_to_moderate(self):
        scorer = self._scorer(traffic_conditions={'o1': TrafficCondition.HEAVY})
        self.assertAlmostEqual(scorer.traffic_score([0, 1]), (0.4 + 0.6) / 2)
        self.assertAlmostEqual(scorer.average_traffic_score(), 0.5)

    def test_breakdown_total_is_weighted_sum(self):
        scorer = self._scorer()
        parts = scorer.breakdown([0, 1])
        expected = 0.8 * 0.4 + 0.5 * 0.3 + 0.6 * 0.2 + 0.8 * 0.1
        self.assertAlmostEqual(parts['total'], expected)
        self.assertAlmostEqual(scorer.score([0, 1]), expected)
        self.assertEqual(parts['delivery_window'], 0.8)

    def test_transition_score(self):
        windows = {'o2': make_window('o2', 0, confidence=0.7)}
        scorer = self._scorer(preparation_windows=windows, traffic_conditions={'o2': TrafficCondition.CLEAR})
        # pickup-to-pickup hop is 2 km of 20
        expected = 0.9 * 0.4 + 0.7 * 0.3 + 1.0 * 0.2
        self.assertAlmostEqual(scorer.transition_score(0, 1), expected)

    def test_starting_order_prefers_ready_confident_order(self):
        orders = [make_order('a'), make_order('b'), make_order('c')]
        windows = {
            'a': make_window('a', 40, confidence=1.0),   # not ready by +10 -> 0.5
            'c': make_window('c', 5, confidence=0.9),    # ready -> 0.9
        }
        scorer = SequenceScorer(
            orders=orders,
            distance_matrix=two_order_matrix(),
            criteria=OptimizationCriteria.balanced(),
            preparation_windows=windows,
            reference_time=REFERENCE_TIME,
        )
        self.assertEqual(scorer.starting_order(), 2)

    def test_starting_order_defaults_to_first(self):
        self.assertEqual(self._scorer().starting_order(), 0)

    def test_reference_time_defaults_to_now(self):
        scorer = SequenceScorer(self.orders, self.matrix, OptimizationCriteria.balanced())
        self.assertIsNotNone(scorer.reference_time)


if __name__ == '__main__':
    unittest.main()
