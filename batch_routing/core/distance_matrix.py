"""
Distance matrix utilities for batch route optimization.

The matrix covers the point set {driver} + {pickup_i} + {delivery_i}, so for
n orders it is (1 + 2n) x (1 + 2n):

    index 0            driver location
    index 1 .. n       pickup of order i at 1 + i
    index n+1 .. 2n    delivery of order i at 1 + n + i

Great-circle distance is the default proxy for road distance. A road-distance
provider backed by the Google Distance Matrix API can be swapped in.
"""
from typing import Dict, List, Optional, Sequence, Tuple, Any
import hashlib
import json
import logging
import time
from urllib.parse import quote

import numpy as np
import requests
from django.core.cache import cache

from batch_routing.core.constants import (
    EARTH_RADIUS_KM,
    MAX_API_ELEMENTS,
    MAX_SAFE_DISTANCE,
)
from batch_routing.core.exceptions import DataError
from batch_routing.core.route_types import Location, Order
from batch_routing.settings import (
    BACKOFF_FACTOR,
    GOOGLE_MAPS_API_KEY,
    GOOGLE_MAPS_API_URL,
    MAX_RETRIES,
    REQUEST_TIMEOUT_SECONDS,
    RETRY_DELAY_SECONDS,
    ROAD_DISTANCE_CACHE_TIMEOUT,
)

logger = logging.getLogger(__name__)


class HaversineDistanceProvider:
    """Great-circle distances between points, in kilometers."""

    name = 'haversine'

    def build_matrix(self, points: Sequence[Location]) -> np.ndarray:
        num_points = len(points)
        matrix = np.zeros((num_points, num_points))

        for i in range(num_points):
            for j in range(num_points):
                if i == j:
                    continue
                matrix[i, j] = DistanceMatrixBuilder.haversine_distance(
                    points[i].latitude, points[i].longitude,
                    points[j].latitude, points[j].longitude
                )
        return matrix


class GoogleDistanceMatrixProvider:
    """
    Road distances from the Google Distance Matrix API.

    Results are cached through the Django cache. Any API failure falls back to
    the haversine provider so that a solve never blocks on the network.
    """

    name = 'google_distance_matrix'

    def __init__(
        self,
        api_key: Optional[str] = None,
        use_cache: bool = True,
        fallback: Optional[HaversineDistanceProvider] = None
    ):
        self.api_key = api_key or GOOGLE_MAPS_API_KEY
        self.use_cache = use_cache
        self.fallback = fallback or HaversineDistanceProvider()

    def build_matrix(self, points: Sequence[Location]) -> np.ndarray:
        if not self.api_key:
            logger.warning("No Google Maps API key. Falling back to haversine distances.")
            return self.fallback.build_matrix(points)

        cache_key = self._cache_key(points)
        if self.use_cache:
            cached = cache.get(cache_key)
            if cached is not None:
                logger.info("Using cached road distance matrix.")
                return np.array(cached, dtype=float)

        try:
            addresses = [self._format_address(p) for p in points]
            rows = self._fetch_distance_rows(addresses)
            matrix = np.array(rows, dtype=float)
            if matrix.shape != (len(points), len(points)):
                raise ValueError(f"API returned matrix of shape {matrix.shape} for {len(points)} points")
        except Exception as e:
            logger.error(f"Error creating road distance matrix from API: {e}", exc_info=True)
            logger.info("Falling back to haversine distances.")
            return self.fallback.build_matrix(points)

        if self.use_cache:
            cache.set(cache_key, matrix.tolist(), ROAD_DISTANCE_CACHE_TIMEOUT)
        return matrix

    @staticmethod
    def _cache_key(points: Sequence[Location]) -> str:
        coords = [[p.latitude, p.longitude] for p in points]
        digest = hashlib.md5(json.dumps(coords).encode()).hexdigest()
        return f"batch_routing:road_matrix:{digest}"

    @staticmethod
    def _format_address(location: Location) -> str:
        """Format location as 'latitude,longitude' string for API request."""
        return f"{location.latitude},{location.longitude}"

    def _fetch_distance_rows(self, addresses: List[str]) -> List[List[float]]:
        max_rows = max(1, MAX_API_ELEMENTS // len(addresses))
        rows: List[List[float]] = []

        for start in range(0, len(addresses), max_rows):
            origin_addresses = addresses[start:start + max_rows]
            response = self._send_request_with_retry(origin_addresses, addresses)
            rows.extend(self._process_api_response(response))
        return rows

    @staticmethod
    def _process_api_response(response: Dict[str, Any]) -> List[List[float]]:
        """Converts API distances (meters) into kilometers."""
        distance_rows = []
        for row in response.get('rows', []):
            dist_row_km = []
            for element in row.get('elements', []):
                if element.get('status') == 'OK':
                    dist_row_km.append(element.get('distance', {}).get('value', 0) / 1000.0)
                else:
                    logger.warning(
                        "Google Maps API element status was not 'OK'. Using MAX_SAFE_DISTANCE for this element."
                    )
                    dist_row_km.append(MAX_SAFE_DISTANCE)
            distance_rows.append(dist_row_km)
        return distance_rows

    def _send_request_with_retry(self, origin_addresses: List[str], dest_addresses: List[str]) -> Dict[str, Any]:
        """Sends request with retry logic using exponential backoff."""
        retry_count = 0

        while retry_count < MAX_RETRIES:
            try:
                response = self._send_request(origin_addresses, dest_addresses)
            except requests.RequestException as e:
                logger.warning(f"Request failed: {e}")
                retry_count += 1
                if retry_count >= MAX_RETRIES:
                    logger.error("Max retries reached for road distance request.")
                    raise
                sleep_time = RETRY_DELAY_SECONDS * (BACKOFF_FACTOR ** (retry_count - 1))
                logger.info(f"Retrying in {sleep_time} seconds")
                time.sleep(sleep_time)
                continue

            api_status = response.get('status')
            if api_status == 'OK':
                return response
            if api_status == 'OVER_QUERY_LIMIT':
                retry_count += 1
                sleep_time = RETRY_DELAY_SECONDS * (BACKOFF_FACTOR ** (retry_count - 1))
                logger.info(f"Rate limit exceeded, retrying in {sleep_time} seconds")
                time.sleep(sleep_time)
                continue
            raise ValueError(f"Google Maps API error: {response.get('error_message', api_status)}")

        raise ValueError("All road distance API retries failed")

    def _send_request(self, origin_addresses: List[str], dest_addresses: List[str]) -> Dict[str, Any]:
        request = (
            f"{GOOGLE_MAPS_API_URL}?units=metric"
            f"&origins={quote('|'.join(origin_addresses))}"
            f"&destinations={quote('|'.join(dest_addresses))}"
            f"&key={self.api_key}"
        )
        response = requests.get(request, timeout=REQUEST_TIMEOUT_SECONDS)
        return response.json()


class DistanceMatrixBuilder:
    """
    Builder class for the driver/pickup/delivery distance matrix.
    """

    @staticmethod
    def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
        """
        Calculate the great circle distance between two points
        on the earth (specified in decimal degrees).

        Returns:
            Distance in kilometers
        """
        lat1, lon1, lat2, lon2 = map(np.radians, [lat1, lon1, lat2, lon2])

        dlon = lon2 - lon1
        dlat = lat2 - lat1
        a = np.sin(dlat / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlon / 2) ** 2
        c = 2 * np.arcsin(np.sqrt(a))

        return float(c * EARTH_RADIUS_KM)

    @staticmethod
    def pickup_index(order_idx: int) -> int:
        return 1 + order_idx

    @staticmethod
    def delivery_index(order_idx: int, num_orders: int) -> int:
        return 1 + num_orders + order_idx

    @staticmethod
    def build_point_list(driver_location: Optional[Location], orders: Sequence[Order]) -> List[Location]:
        """
        Collect [driver] + pickups + deliveries, rejecting unusable coordinates.

        Raises:
            DataError: If the driver location or any order coordinate is missing,
                non-finite or outside WGS84 bounds.
        """
        _require_valid(driver_location, "Driver location")

        for order in orders:
            _require_valid(order.pickup_location, f"Order {order.id} pickup location")
            _require_valid(order.delivery_location, f"Order {order.id} delivery location")

        points = [driver_location]
        points.extend(order.pickup_location for order in orders)
        points.extend(order.delivery_location for order in orders)
        return points

    @staticmethod
    def create_distance_matrix(
        driver_location: Location,
        orders: Sequence[Order],
        provider=None
    ) -> np.ndarray:
        """
        Create the (1 + 2n) x (1 + 2n) distance matrix in kilometers.

        Args:
            driver_location: Current driver location.
            orders: Orders in the batch.
            provider: Object exposing build_matrix(points). Defaults to haversine.

        Returns:
            2D numpy array with a zero diagonal.
        """
        points = DistanceMatrixBuilder.build_point_list(driver_location, orders)
        provider = provider or HaversineDistanceProvider()

        matrix = DistanceMatrixBuilder.sanitize(provider.build_matrix(points))
        expected_shape = (len(points), len(points))
        if matrix.shape != expected_shape:
            raise DataError(f"Distance provider returned shape {matrix.shape}, expected {expected_shape}")

        np.fill_diagonal(matrix, 0.0)
        logger.debug(f"Distance matrix calculated for {len(points)} points using {getattr(provider, 'name', provider)}")
        return matrix

    @staticmethod
    def sanitize(matrix: Optional[np.ndarray]) -> np.ndarray:
        """
        Replace NaN, infinite, negative and excessive values with safe bounds.
        """
        if matrix is None:
            return np.zeros((0, 0))

        sanitized = np.array(matrix, dtype=float)
        if sanitized.size == 0:
            return sanitized.reshape(0, 0) if sanitized.ndim != 2 else sanitized

        sanitized = np.nan_to_num(sanitized, nan=MAX_SAFE_DISTANCE)
        sanitized[np.isinf(sanitized)] = MAX_SAFE_DISTANCE
        sanitized[sanitized > MAX_SAFE_DISTANCE] = MAX_SAFE_DISTANCE
        sanitized[sanitized < 0] = 0
        return sanitized

    @staticmethod
    def describe(matrix: np.ndarray) -> Tuple[int, float]:
        """Return (number of points, longest leg in km) for log messages."""
        if matrix.size == 0:
            return 0, 0.0
        return matrix.shape[0], float(matrix.max())


def _require_valid(location: Optional[Location], label: str) -> None:
    if location is None or not location.has_coordinates:
        raise DataError(f"{label} is missing latitude or longitude")
    if not location.has_valid_coordinates:
        raise DataError(f"{label} has invalid coordinates ({location.latitude}, {location.longitude})")
