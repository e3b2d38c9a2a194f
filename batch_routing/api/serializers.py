"""
Serializers for the batch routing engine.

These convert engine DTOs into primitive structures for whatever layer
persists or displays them, and validate incoming optimization requests.
"""
import logging

from rest_framework import serializers

from batch_routing.core.constants import CRITERIA_WEIGHT_TOLERANCE
from batch_routing.core.criteria import OptimizationCriteria
from batch_routing.core.route_types import Location, Order

logger = logging.getLogger(__name__)

CRITERIA_PRESETS = ('balanced', 'distance_focused', 'time_focused')


class LocationSerializer(serializers.Serializer):
    """Serializer for Location objects."""
    latitude = serializers.FloatField(min_value=-90.0, max_value=90.0, help_text="Latitude in decimal degrees.")
    longitude = serializers.FloatField(min_value=-180.0, max_value=180.0, help_text="Longitude in decimal degrees.")
    address = serializers.CharField(max_length=255, required=False, allow_null=True, allow_blank=True,
                                    help_text="Street address (optional).")

    def create(self, validated_data):
        return Location(**validated_data)


class OrderSerializer(serializers.Serializer):
    """Serializer for an order in a batch."""
    id = serializers.CharField(max_length=100, help_text="Unique order identifier.")
    pickup_location = LocationSerializer(help_text="Where the order is collected (vendor).")
    delivery_location = LocationSerializer(help_text="Where the order is delivered (customer).")
    vendor_id = serializers.CharField(max_length=100, required=False, allow_null=True)
    status = serializers.CharField(max_length=50, default='assigned')

    def create(self, validated_data):
        data = dict(validated_data)
        data['pickup_location'] = Location(**data['pickup_location'])
        data['delivery_location'] = Location(**data['delivery_location'])
        return Order(**data)


class OptimizationCriteriaSerializer(serializers.Serializer):
    """Serializer for the four scoring weights. Weights must sum to 1.0."""
    distance_weight = serializers.FloatField(min_value=0.0)
    preparation_time_weight = serializers.FloatField(min_value=0.0)
    traffic_weight = serializers.FloatField(min_value=0.0)
    delivery_window_weight = serializers.FloatField(min_value=0.0)

    def validate(self, data):
        total = sum(data[name] for name in (
            'distance_weight', 'preparation_time_weight', 'traffic_weight', 'delivery_window_weight'
        ))
        if abs(total - 1.0) > CRITERIA_WEIGHT_TOLERANCE:
            raise serializers.ValidationError(f"Weights must sum to 1.0 (got {total:.4f}).")
        return data

    def create(self, validated_data):
        return OptimizationCriteria(**validated_data)


class RouteOptimizationRequestSerializer(serializers.Serializer):
    """Serializer for a batch optimization request."""
    batch_id = serializers.CharField(max_length=100, required=False, allow_null=True)
    orders = OrderSerializer(many=True, help_text="Orders in the driver's batch.")
    driver_location = LocationSerializer(help_text="Current driver position.")
    criteria = OptimizationCriteriaSerializer(required=False, allow_null=True,
                                              help_text="Explicit weights. Overrides criteria_preset.")
    criteria_preset = serializers.ChoiceField(choices=CRITERIA_PRESETS, default='balanced')

    def validate_orders(self, value):
        ids = [order['id'] for order in value]
        duplicates = sorted({order_id for order_id in ids if ids.count(order_id) > 1})
        if duplicates:
            raise serializers.ValidationError(f"Duplicate order ids: {', '.join(duplicates)}")
        return value

    def to_service_kwargs(self):
        """
        Build keyword arguments for RouteOptimizationService.calculate_optimal_route
        from validated data.
        """
        data = self.validated_data
        if data.get('criteria'):
            criteria = OptimizationCriteria(**data['criteria'])
        else:
            criteria = OptimizationCriteria.from_preset(data['criteria_preset'])

        return {
            'orders': [OrderSerializer().create(order) for order in data['orders']],
            'driver_location': Location(**data['driver_location']),
            'criteria': criteria,
            'batch_id': data.get('batch_id'),
        }


class RouteWaypointSerializer(serializers.Serializer):
    """Serializer for a stop in an optimized route."""
    type = serializers.CharField(source='type.value')
    order_id = serializers.CharField()
    location = LocationSerializer()
    sequence = serializers.IntegerField()
    estimated_arrival_time = serializers.DateTimeField()
    estimated_duration = serializers.DurationField()
    distance_from_previous = serializers.FloatField(help_text="Leg distance in kilometers.")


class OptimizedRouteSerializer(serializers.Serializer):
    """Serializer for OptimizedRoute DTOs."""
    id = serializers.CharField()
    batch_id = serializers.CharField()
    waypoints = RouteWaypointSerializer(many=True)
    total_distance_km = serializers.FloatField()
    total_duration = serializers.DurationField()
    duration_in_traffic = serializers.DurationField()
    optimization_score = serializers.FloatField(help_text="Score on a 0-100 scale.")
    criteria = OptimizationCriteriaSerializer()
    created_at = serializers.DateTimeField()
    overall_traffic_condition = serializers.CharField(source='overall_traffic_condition.value')
    metadata = serializers.JSONField()


class RouteUpdateSerializer(serializers.Serializer):
    """Serializer for RouteUpdate DTOs published by the adjustment monitor."""
    route_id = serializers.CharField(help_text="ID of the superseded route.")
    new_route_id = serializers.CharField()
    updated_waypoints = RouteWaypointSerializer(many=True)
    new_optimization_score = serializers.FloatField()
    reason = serializers.CharField(source='reason.value')
    updated_at = serializers.DateTimeField()
    changes = serializers.JSONField()


class MonitoringLogEntrySerializer(serializers.Serializer):
    """Serializer for monitoring log entries."""
    batch_id = serializers.CharField()
    event_type = serializers.CharField()
    severity = serializers.CharField(source='severity.value')
    message = serializers.CharField()
    data = serializers.JSONField()
    timestamp = serializers.DateTimeField()
