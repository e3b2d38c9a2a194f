"""
Service for fetching traffic and weather conditions from external feeds.

This module provides an HTTP implementation of the ConditionProvider
interface used by the optimization service and the adjustment monitor.
"""
import hashlib
import json
import logging
import time
from typing import Any, Dict, Mapping, Optional, Sequence

import requests
from requests.exceptions import HTTPError, RequestException

from batch_routing.core.exceptions import TransientFetchError
from batch_routing.core.route_types import Location, Order, TrafficCondition
from batch_routing.settings import (
    BACKOFF_FACTOR,
    MAX_RETRIES,
    REQUEST_TIMEOUT_SECONDS,
    RETRY_DELAY_SECONDS,
    TRAFFIC_API_KEY,
    TRAFFIC_API_URL,
    WEATHER_API_KEY,
    WEATHER_API_URL,
)

logger = logging.getLogger(__name__)

_MOCK_TRAFFIC_LEVELS = (
    TrafficCondition.CLEAR,
    TrafficCondition.LIGHT,
    TrafficCondition.MODERATE,
    TrafficCondition.HEAVY,
)


class ExternalConditionService:
    """
    Fetches traffic around order pickups and weather at a location.

    Expected feed responses:
        traffic: {"status": "success", "conditions": ["light", "heavy", ...]}
                 one entry per requested point, in request order.
        weather: {"status": "success",
                  "weather": {"condition": "rain", "severity": "moderate", "temperature_celsius": 21}}
    """

    def __init__(
        self,
        traffic_api_url: Optional[str] = None,
        traffic_api_key: Optional[str] = None,
        weather_api_url: Optional[str] = None,
        weather_api_key: Optional[str] = None,
        use_mocks: bool = False
    ):
        """
        Initialize the external condition service.

        Args:
            traffic_api_url: Traffic feed endpoint. Defaults to TRAFFIC_API_URL.
            traffic_api_key: API key for the traffic feed.
            weather_api_url: Weather feed endpoint. Defaults to WEATHER_API_URL.
            weather_api_key: API key for the weather feed.
            use_mocks: Return deterministic mock data instead of calling the feeds.
        """
        self.traffic_api_url = traffic_api_url or TRAFFIC_API_URL
        self.traffic_api_key = traffic_api_key or TRAFFIC_API_KEY
        self.weather_api_url = weather_api_url or WEATHER_API_URL
        self.weather_api_key = weather_api_key or WEATHER_API_KEY
        self.use_mocks = use_mocks

    def _make_api_request(self, source: str, url: str, params: Dict[str, Any], api_key: Optional[str] = None) -> Dict[str, Any]:
        """
        Make an API request with retry logic.

        Rate limiting (429) and connection errors are retried with exponential
        backoff; authentication errors and other HTTP errors are not.

        Raises:
            TransientFetchError: When no usable response could be obtained.
        """
        if not url:
            raise TransientFetchError(source, "no API URL configured")

        headers = {}
        if api_key:
            headers['Authorization'] = f'Bearer {api_key}'

        for attempt in range(MAX_RETRIES):
            try:
                response = requests.get(url, params=params, headers=headers, timeout=REQUEST_TIMEOUT_SECONDS)
                response.raise_for_status()
                return response.json()
            except HTTPError as http_err:
                status_code = http_err.response.status_code if http_err.response is not None else None
                logger.error(f"HTTP error occurred fetching {source}: {http_err} - Status: {status_code}")
                if status_code == 429 and attempt < MAX_RETRIES - 1:
                    sleep_time = RETRY_DELAY_SECONDS * (BACKOFF_FACTOR ** attempt)
                    logger.info(f"Rate limit exceeded. Retrying in {sleep_time:.2f} seconds...")
                    time.sleep(sleep_time)
                    continue
                if status_code in (401, 403):
                    logger.error("Authentication/Authorization error. Check API key.")
                    raise TransientFetchError(source, f"authentication failed ({status_code})") from http_err
                raise TransientFetchError(source, f"HTTP {status_code}") from http_err
            except (json.JSONDecodeError, ValueError) as json_err:
                logger.error(f"Failed to decode JSON response for {source}: {json_err}")
                raise TransientFetchError(source, "malformed JSON response") from json_err
            except RequestException as req_err:
                logger.error(f"Request exception occurred fetching {source}: {req_err}")
                if attempt < MAX_RETRIES - 1:
                    sleep_time = RETRY_DELAY_SECONDS * (BACKOFF_FACTOR ** attempt)
                    logger.info(f"Retrying in {sleep_time:.2f} seconds...")
                    time.sleep(sleep_time)
                    continue
                raise TransientFetchError(source, str(req_err)) from req_err

        raise TransientFetchError(source, f"no response after {MAX_RETRIES} attempts")

    def get_traffic_conditions(self, orders: Sequence[Order]) -> Mapping[str, TrafficCondition]:
        """
        Get the traffic condition around each order's pickup.

        Returns:
            Mapping of order id to TrafficCondition.
        """
        if not orders:
            return {}

        if self.use_mocks:
            logger.info("Using mock traffic data.")
            return self._mock_traffic_conditions(orders)

        points = "|".join(
            f"{o.pickup_location.latitude},{o.pickup_location.longitude}" for o in orders
        )
        logger.info(f"Fetching traffic conditions for {len(orders)} pickups...")
        api_response = self._make_api_request('traffic', self.traffic_api_url, {'points': points}, self.traffic_api_key)

        if api_response.get('status') != 'success':
            raise TransientFetchError('traffic', f"feed status {api_response.get('status')!r}")

        levels = api_response.get('conditions', [])
        if len(levels) != len(orders):
            logger.warning(
                f"Traffic feed returned {len(levels)} conditions for {len(orders)} pickups; "
                "missing entries are treated as unknown."
            )

        conditions = {}
        for idx, order in enumerate(orders):
            raw = levels[idx] if idx < len(levels) else None
            conditions[order.id] = TrafficCondition.parse(raw)
        return conditions

    def get_weather_condition(self, location: Location) -> Optional[Dict[str, Any]]:
        """
        Get the current weather at a location.

        Returns:
            Dict with 'condition', 'severity' and 'temperature', or None when the
            location has no coordinates.
        """
        if location is None or not location.has_coordinates:
            return None

        if self.use_mocks:
            logger.info("Using mock weather data.")
            return self._mock_weather(location)

        params = {"lat": location.latitude, "lon": location.longitude, "units": "metric"}
        api_response = self._make_api_request('weather', self.weather_api_url, params, self.weather_api_key)

        weather_info = api_response.get('weather') if api_response.get('status') == 'success' else None
        if not weather_info:
            raise TransientFetchError('weather', "feed returned no weather data")

        return {
            'condition': str(weather_info.get('condition', 'unknown')).lower(),
            'severity': str(weather_info.get('severity', 'unknown')).lower(),
            'temperature': weather_info.get('temperature_celsius'),
        }

    # --- Mock data ---
    @staticmethod
    def _mock_traffic_conditions(orders: Sequence[Order]) -> Dict[str, TrafficCondition]:
        conditions = {}
        for order in orders:
            digest = int(hashlib.md5(str(order.id).encode()).hexdigest(), 16)
            conditions[order.id] = _MOCK_TRAFFIC_LEVELS[digest % len(_MOCK_TRAFFIC_LEVELS)]
        return conditions

    @staticmethod
    def _mock_weather(location: Location) -> Dict[str, Any]:
        return {'condition': 'clear', 'severity': 'light', 'temperature': 24.0}
