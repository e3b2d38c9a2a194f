import unittest
from unittest.mock import patch, MagicMock

from requests import Response as RequestsResponse
from requests.exceptions import ConnectionError as RequestsConnectionError, HTTPError

from batch_routing.core.exceptions import TransientFetchError
from batch_routing.core.route_types import Location, TrafficCondition
from batch_routing.services.external_data_service import ExternalConditionService
from batch_routing.settings import BACKOFF_FACTOR, MAX_RETRIES, RETRY_DELAY_SECONDS
from batch_routing.tests.factories import make_location, make_order


def http_error_response(status_code):
    response = MagicMock(spec=RequestsResponse)
    response.status_code = status_code
    response.raise_for_status.side_effect = HTTPError(response=response)
    return response


def ok_response(payload):
    response = MagicMock(spec=RequestsResponse)
    response.status_code = 200
    response.json.return_value = payload
    return response


class TestMakeApiRequest(unittest.TestCase):

    def setUp(self):
        self.service = ExternalConditionService(traffic_api_url='http://fakeapi.test/traffic')
        self.url = 'http://fakeapi.test/traffic'

    @patch('requests.get')
    def test_success(self, mock_get):
        mock_get.return_value = ok_response({'status': 'success'})
        result = self.service._make_api_request('traffic', self.url, {'a': 1}, api_key='k')
        self.assertEqual(result, {'status': 'success'})
        mock_get.assert_called_once_with(
            self.url, params={'a': 1}, headers={'Authorization': 'Bearer k'}, timeout=10
        )

    @patch('time.sleep')
    @patch('requests.get')
    def test_rate_limit_retried(self, mock_get, mock_sleep):
        mock_get.side_effect = [http_error_response(429), ok_response({'status': 'success'})]
        result = self.service._make_api_request('traffic', self.url, {})
        self.assertEqual(result, {'status': 'success'})
        mock_sleep.assert_called_once_with(RETRY_DELAY_SECONDS * (BACKOFF_FACTOR ** 0))

    @patch('time.sleep')
    @patch('requests.get')
    def test_auth_error_not_retried(self, mock_get, mock_sleep):
        mock_get.return_value = http_error_response(401)
        with self.assertRaises(TransientFetchError) as ctx:
            self.service._make_api_request('traffic', self.url, {})
        self.assertEqual(ctx.exception.source, 'traffic')
        self.assertEqual(mock_get.call_count, 1)
        mock_sleep.assert_not_called()

    @patch('time.sleep')
    @patch('requests.get')
    def test_connection_errors_exhaust_retries(self, mock_get, mock_sleep):
        mock_get.side_effect = RequestsConnectionError("unreachable")
        with self.assertRaises(TransientFetchError):
            self.service._make_api_request('weather', self.url, {})
        self.assertEqual(mock_get.call_count, MAX_RETRIES)
        self.assertEqual(mock_sleep.call_count, MAX_RETRIES - 1)

    @patch('requests.get')
    def test_malformed_json(self, mock_get):
        response = ok_response(None)
        response.json.side_effect = ValueError("No JSON object could be decoded")
        mock_get.return_value = response
        with self.assertRaises(TransientFetchError):
            self.service._make_api_request('traffic', self.url, {})

    def test_missing_url(self):
        service = ExternalConditionService()
        with self.assertRaises(TransientFetchError):
            service._make_api_request('traffic', '', {})


class TestConditions(unittest.TestCase):

    def setUp(self):
        self.orders = [make_order('o1'), make_order('o2', pickup_offset=(0.01, 0.0))]

    @patch('requests.get')
    def test_traffic_conditions_mapped_by_order(self, mock_get):
        mock_get.return_value = ok_response({'status': 'success', 'conditions': ['heavy', 'gridlock']})
        service = ExternalConditionService(traffic_api_url='http://fakeapi.test/traffic')

        conditions = service.get_traffic_conditions(self.orders)

        self.assertEqual(conditions, {'o1': TrafficCondition.HEAVY, 'o2': TrafficCondition.UNKNOWN})
        points = mock_get.call_args.kwargs['params']['points']
        self.assertEqual(points.count('|'), 1)

    @patch('requests.get')
    def test_traffic_feed_failure_status(self, mock_get):
        mock_get.return_value = ok_response({'status': 'error'})
        service = ExternalConditionService(traffic_api_url='http://fakeapi.test/traffic')
        with self.assertRaises(TransientFetchError):
            service.get_traffic_conditions(self.orders)

    def test_no_orders(self):
        self.assertEqual(ExternalConditionService().get_traffic_conditions([]), {})

    @patch('requests.get')
    def test_weather(self, mock_get):
        mock_get.return_value = ok_response({
            'status': 'success',
            'weather': {'condition': 'Heavy_Rain', 'severity': 'Heavy', 'temperature_celsius': 23},
        })
        service = ExternalConditionService(weather_api_url='http://fakeapi.test/weather')
        weather = service.get_weather_condition(make_location())
        self.assertEqual(weather, {'condition': 'heavy_rain', 'severity': 'heavy', 'temperature': 23})

    def test_weather_without_coordinates(self):
        self.assertIsNone(ExternalConditionService().get_weather_condition(Location(None, None)))

    def test_mock_mode_is_deterministic(self):
        service = ExternalConditionService(use_mocks=True)
        first = service.get_traffic_conditions(self.orders)
        second = service.get_traffic_conditions(self.orders)
        self.assertEqual(first, second)
        self.assertEqual(set(first), {'o1', 'o2'})
        self.assertEqual(service.get_weather_condition(make_location())['condition'], 'clear')


if __name__ == '__main__':
    unittest.main()
