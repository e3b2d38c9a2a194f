"""
Core data types for the route optimization engine.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional
import logging
import math
import uuid

from django.utils import timezone

from batch_routing.core.criteria import OptimizationCriteria

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Location:
    """
    Represents a geographic point with latitude and longitude.
    Coordinates may be None when upstream geocoding failed.
    """
    latitude: Optional[float]
    longitude: Optional[float]
    address: Optional[str] = None

    def __post_init__(self):
        # Convert to float if strings were provided
        if isinstance(self.latitude, str):
            object.__setattr__(self, 'latitude', float(self.latitude))
        if isinstance(self.longitude, str):
            object.__setattr__(self, 'longitude', float(self.longitude))

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def has_valid_coordinates(self) -> bool:
        """Coordinates are present, finite and within WGS84 bounds."""
        if not self.has_coordinates:
            return False
        if not (math.isfinite(self.latitude) and math.isfinite(self.longitude)):
            return False
        return -90.0 <= self.latitude <= 90.0 and -180.0 <= self.longitude <= 180.0


@dataclass(frozen=True)
class Order:
    """An order carried in a driver's batch. Immutable once in a batch."""
    id: str
    pickup_location: Location
    delivery_location: Location
    vendor_id: Optional[str] = None
    status: str = 'assigned'


class PreparationStatus(str, Enum):
    NOT_STARTED = 'not_started'
    IN_PROGRESS = 'in_progress'
    READY = 'ready'


@dataclass(frozen=True)
class PreparationWindow:
    """
    Predicted readiness of an order, supplied per optimization run by an external predictor.
    """
    order_id: str
    estimated_completion_time: datetime
    confidence_score: float = 0.8
    estimated_start_time: Optional[datetime] = None
    vendor_id: Optional[str] = None

    def __post_init__(self):
        clamped = min(max(float(self.confidence_score), 0.0), 1.0)
        if clamped != self.confidence_score:
            logger.warning(
                f"Confidence score {self.confidence_score} for order {self.order_id} clamped to {clamped}."
            )
        object.__setattr__(self, 'confidence_score', clamped)

    def is_ready_by(self, moment: datetime) -> bool:
        """Check if the order will be ready by a specific time."""
        return self.estimated_completion_time <= moment

    def status_at(self, moment: datetime) -> PreparationStatus:
        if self.estimated_start_time is not None and moment < self.estimated_start_time:
            return PreparationStatus.NOT_STARTED
        if moment < self.estimated_completion_time:
            return PreparationStatus.IN_PROGRESS
        return PreparationStatus.READY


class TrafficCondition(str, Enum):
    CLEAR = 'clear'
    LIGHT = 'light'
    MODERATE = 'moderate'
    HEAVY = 'heavy'
    SEVERE = 'severe'
    UNKNOWN = 'unknown'

    @property
    def score(self) -> float:
        return _TRAFFIC_SCORES[self]

    @classmethod
    def from_score(cls, average_score: float) -> 'TrafficCondition':
        """Bucket an average traffic sub-score back into a condition."""
        if average_score >= 1.0:
            return cls.CLEAR
        if average_score >= 0.8:
            return cls.LIGHT
        if average_score >= 0.6:
            return cls.MODERATE
        if average_score >= 0.4:
            return cls.HEAVY
        return cls.SEVERE

    @classmethod
    def parse(cls, value: Any) -> 'TrafficCondition':
        """Parse a severity from a feed payload; unrecognised values map to UNKNOWN."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            logger.debug(f"Unrecognised traffic severity {value!r}; treating as unknown.")
            return cls.UNKNOWN


_TRAFFIC_SCORES = {
    TrafficCondition.CLEAR: 1.0,
    TrafficCondition.LIGHT: 0.8,
    TrafficCondition.MODERATE: 0.6,
    TrafficCondition.HEAVY: 0.4,
    TrafficCondition.SEVERE: 0.2,
    TrafficCondition.UNKNOWN: 0.6,
}


class WaypointType(str, Enum):
    PICKUP = 'pickup'
    DELIVERY = 'delivery'


@dataclass(frozen=True)
class RouteWaypoint:
    """One stop in a computed route."""
    type: WaypointType
    order_id: str
    location: Location
    sequence: int  # 1-based
    estimated_arrival_time: datetime
    estimated_duration: timedelta
    distance_from_previous: float  # km

    @property
    def is_pickup(self) -> bool:
        return self.type == WaypointType.PICKUP


@dataclass(frozen=True)
class OptimizedRoute:
    """Result of one optimization call. Superseded, never mutated."""
    id: str
    batch_id: str
    waypoints: List[RouteWaypoint]
    total_distance_km: float
    total_duration: timedelta
    duration_in_traffic: timedelta
    optimization_score: float  # 0-100
    criteria: OptimizationCriteria
    created_at: datetime
    overall_traffic_condition: TrafficCondition
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def order_ids(self) -> List[str]:
        return [wp.order_id for wp in self.pickup_waypoints]

    @property
    def pickup_waypoints(self) -> List[RouteWaypoint]:
        return [wp for wp in self.waypoints if wp.type == WaypointType.PICKUP]

    @property
    def delivery_waypoints(self) -> List[RouteWaypoint]:
        return [wp for wp in self.waypoints if wp.type == WaypointType.DELIVERY]


class RouteEventType(str, Enum):
    ORDER_ADDED = 'order_added'
    ORDER_REMOVED = 'order_removed'
    ORDER_STATUS_CHANGED = 'order_status_changed'
    DRIVER_LOCATION_UPDATE = 'driver_location_update'
    ROUTE_DEVIATION = 'route_deviation'
    TRAFFIC_INCIDENT = 'traffic_incident'
    WEATHER_UPDATE = 'weather_update'
    PREPARATION_DELAY = 'preparation_delay'
    ORDER_READY_EARLY = 'order_ready_early'


@dataclass(frozen=True)
class RouteEvent:
    """Transient signal consumed by the adjustment monitor."""
    batch_id: str
    type: RouteEventType
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=timezone.now)
    id: str = field(default_factory=lambda: f"evt_{uuid.uuid4().hex[:12]}")


class RouteUpdateReason(str, Enum):
    TRAFFIC_CHANGE = 'traffic_change'
    WEATHER_CHANGE = 'weather_change'
    PREPARATION_DELAY = 'preparation_delay'
    ORDER_ADDED = 'order_added'
    ORDER_CANCELLATION = 'order_cancellation'
    ROUTE_DEVIATION = 'route_deviation'
    ORDER_READY_EARLY = 'order_ready_early'
    PERIODIC_CHECK = 'periodic_check'
    DRIVER_REQUEST = 'driver_request'


@dataclass(frozen=True)
class RouteUpdate:
    """An accepted replacement plan for a batch."""
    route_id: str  # Superseded route
    new_route_id: str
    updated_waypoints: List[RouteWaypoint]
    new_optimization_score: float
    reason: RouteUpdateReason
    updated_at: datetime
    changes: Dict[str, Any] = field(default_factory=dict)


class MonitorStatus(str, Enum):
    COMPUTED = 'computed'
    MONITORING = 'monitoring'
    RECOMPUTING = 'recomputing'
    STOPPED = 'stopped'


class LogSeverity(str, Enum):
    DEBUG = 'debug'
    INFO = 'info'
    WARNING = 'warning'
    ERROR = 'error'

    @property
    def level(self) -> int:
        return getattr(logging, self.name)


@dataclass(frozen=True)
class MonitoringLogEntry:
    """Append-only audit record of an optimization decision."""
    batch_id: str
    event_type: str
    severity: LogSeverity
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=timezone.now)


def new_route_id() -> str:
    return f"route_{uuid.uuid4().hex}"
