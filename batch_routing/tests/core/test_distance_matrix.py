import unittest
from unittest.mock import patch, MagicMock

import numpy as np
import requests
from django.core.cache import cache

from batch_routing.core.constants import MAX_SAFE_DISTANCE
from batch_routing.core.distance_matrix import (
    DistanceMatrixBuilder,
    GoogleDistanceMatrixProvider,
    HaversineDistanceProvider,
)
from batch_routing.core.exceptions import DataError
from batch_routing.core.route_types import Location, Order
from batch_routing.tests.factories import make_location, make_order


class TestHaversine(unittest.TestCase):

    def test_haversine_distance(self):
        # (0,0) to (1,1) is roughly 157 km
        dist = DistanceMatrixBuilder.haversine_distance(0.0, 0.0, 1.0, 1.0)
        self.assertAlmostEqual(dist, 157.2, delta=1.0)

    def test_zero_distance(self):
        self.assertEqual(DistanceMatrixBuilder.haversine_distance(1.0, 1.0, 1.0, 1.0), 0.0)

    def test_returns_python_float(self):
        self.assertIsInstance(DistanceMatrixBuilder.haversine_distance(0.0, 0.0, 0.0, 1.0), float)

    def test_provider_matrix_is_symmetric(self):
        points = [make_location(), make_location(0.01, 0.0), make_location(0.0, 0.02)]
        matrix = HaversineDistanceProvider().build_matrix(points)
        self.assertEqual(matrix.shape, (3, 3))
        np.testing.assert_allclose(matrix, matrix.T)
        np.testing.assert_array_equal(np.diag(matrix), np.zeros(3))


class TestDistanceMatrixBuilder(unittest.TestCase):

    def setUp(self):
        self.driver = make_location(-0.01, -0.01)
        self.orders = [
            make_order('o1', pickup_offset=(0.0, 0.0), delivery_offset=(0.02, 0.02)),
            make_order('o2', pickup_offset=(0.005, 0.0), delivery_offset=(0.03, 0.01)),
        ]

    def test_indices(self):
        self.assertEqual(DistanceMatrixBuilder.pickup_index(0), 1)
        self.assertEqual(DistanceMatrixBuilder.pickup_index(1), 2)
        self.assertEqual(DistanceMatrixBuilder.delivery_index(0, 2), 3)
        self.assertEqual(DistanceMatrixBuilder.delivery_index(1, 2), 4)

    def test_matrix_shape_and_layout(self):
        matrix = DistanceMatrixBuilder.create_distance_matrix(self.driver, self.orders)
        self.assertEqual(matrix.shape, (5, 5))
        np.testing.assert_array_equal(np.diag(matrix), np.zeros(5))

        expected = DistanceMatrixBuilder.haversine_distance(
            self.driver.latitude, self.driver.longitude,
            self.orders[1].delivery_location.latitude, self.orders[1].delivery_location.longitude,
        )
        self.assertAlmostEqual(matrix[0, 4], expected)

    def test_missing_driver_location_raises(self):
        with self.assertRaises(DataError):
            DistanceMatrixBuilder.create_distance_matrix(None, self.orders)
        with self.assertRaises(DataError):
            DistanceMatrixBuilder.create_distance_matrix(Location(latitude=None, longitude=101.0), self.orders)

    def test_missing_order_coordinates_raise(self):
        broken = Order(
            id='bad',
            pickup_location=make_location(),
            delivery_location=Location(latitude=3.1, longitude=None),
        )
        with self.assertRaises(DataError) as ctx:
            DistanceMatrixBuilder.create_distance_matrix(self.driver, [broken])
        self.assertIn('bad', str(ctx.exception))

    def test_non_finite_or_out_of_range_coordinates_raise(self):
        with self.assertRaises(DataError):
            DistanceMatrixBuilder.create_distance_matrix(Location(latitude=float('nan'), longitude=101.0), self.orders)
        with self.assertRaises(DataError):
            DistanceMatrixBuilder.create_distance_matrix(Location(latitude=3.1, longitude=float('inf')), self.orders)

        far_away = Order(
            id='o9',
            pickup_location=Location(latitude=95.0, longitude=101.0),
            delivery_location=make_location(),
        )
        with self.assertRaises(DataError) as ctx:
            DistanceMatrixBuilder.create_distance_matrix(self.driver, [far_away])
        self.assertIn('o9 pickup', str(ctx.exception))

    def test_valid_coordinates_property(self):
        self.assertTrue(make_location().has_valid_coordinates)
        self.assertTrue(Location(latitude=-90.0, longitude=180.0).has_valid_coordinates)
        self.assertFalse(Location(latitude=None, longitude=1.0).has_valid_coordinates)
        self.assertFalse(Location(latitude=float('nan'), longitude=1.0).has_valid_coordinates)
        self.assertFalse(Location(latitude=10.0, longitude=-180.5).has_valid_coordinates)

    def test_provider_shape_mismatch_raises(self):
        provider = MagicMock()
        provider.build_matrix.return_value = np.zeros((2, 2))
        with self.assertRaises(DataError):
            DistanceMatrixBuilder.create_distance_matrix(self.driver, self.orders, provider=provider)

    def test_sanitize(self):
        raw = np.array([[0.0, np.nan, -3.0], [np.inf, 0.0, 5.0], [2e7, 1.0, 0.0]])
        clean = DistanceMatrixBuilder.sanitize(raw)
        self.assertEqual(clean[0, 1], MAX_SAFE_DISTANCE)
        self.assertEqual(clean[0, 2], 0.0)
        self.assertEqual(clean[1, 0], MAX_SAFE_DISTANCE)
        self.assertEqual(clean[2, 0], MAX_SAFE_DISTANCE)
        self.assertEqual(clean[1, 2], 5.0)

    def test_sanitize_none(self):
        self.assertEqual(DistanceMatrixBuilder.sanitize(None).shape, (0, 0))

    def test_describe(self):
        matrix = np.array([[0.0, 2.5], [4.0, 0.0]])
        self.assertEqual(DistanceMatrixBuilder.describe(matrix), (2, 4.0))
        self.assertEqual(DistanceMatrixBuilder.describe(np.zeros((0, 0))), (0, 0.0))


class TestGoogleDistanceMatrixProvider(unittest.TestCase):

    def setUp(self):
        cache.clear()
        self.points = [make_location(), make_location(0.01, 0.0)]

    def _ok_response(self):
        return {
            'status': 'OK',
            'rows': [
                {'elements': [{'status': 'OK', 'distance': {'value': 0}},
                              {'status': 'OK', 'distance': {'value': 1500}}]},
                {'elements': [{'status': 'OK', 'distance': {'value': 1600}},
                              {'status': 'NOT_FOUND'}]},
            ],
        }

    def test_without_api_key_uses_fallback(self):
        fallback = MagicMock()
        fallback.build_matrix.return_value = np.zeros((2, 2))
        provider = GoogleDistanceMatrixProvider(fallback=fallback)
        provider.api_key = None
        provider.build_matrix(self.points)
        fallback.build_matrix.assert_called_once_with(self.points)

    @patch('batch_routing.core.distance_matrix.requests.get')
    def test_converts_meters_and_caches(self, mock_get):
        mock_response = MagicMock()
        mock_response.json.return_value = self._ok_response()
        mock_get.return_value = mock_response

        provider = GoogleDistanceMatrixProvider(api_key='test-key')
        matrix = provider.build_matrix(self.points)

        self.assertAlmostEqual(matrix[0, 1], 1.5)
        self.assertAlmostEqual(matrix[1, 0], 1.6)
        self.assertEqual(matrix[1, 1], MAX_SAFE_DISTANCE)

        # Second call is served from the cache
        provider.build_matrix(self.points)
        self.assertEqual(mock_get.call_count, 1)

    @patch('batch_routing.core.distance_matrix.time.sleep')
    @patch('batch_routing.core.distance_matrix.requests.get')
    def test_request_failure_falls_back_to_haversine(self, mock_get, mock_sleep):
        mock_get.side_effect = requests.RequestException("connection refused")
        provider = GoogleDistanceMatrixProvider(api_key='test-key', use_cache=False)

        matrix = provider.build_matrix(self.points)

        expected = HaversineDistanceProvider().build_matrix(self.points)
        np.testing.assert_allclose(matrix, expected)
        self.assertTrue(mock_sleep.called)

    @patch('batch_routing.core.distance_matrix.requests.get')
    def test_api_error_status_falls_back(self, mock_get):
        mock_response = MagicMock()
        mock_response.json.return_value = {'status': 'REQUEST_DENIED', 'error_message': 'bad key'}
        mock_get.return_value = mock_response

        provider = GoogleDistanceMatrixProvider(api_key='test-key', use_cache=False)
        with self.assertLogs('batch_routing.core.distance_matrix', level='ERROR'):
            matrix = provider.build_matrix(self.points)
        self.assertEqual(matrix.shape, (2, 2))


if __name__ == '__main__':
    unittest.main()
