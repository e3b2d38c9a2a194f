"""
Real-time monitoring and re-optimization of active batches.

Each monitored batch owns a BatchMonitorState: its current route, a periodic
timer, its event subscriptions and a cache of the latest conditions reported
by events. Recomputations run on an executor, at most one per batch at a
time; triggers that arrive while one is running are coalesced into a single
follow-up run.
"""
from collections import deque
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple
import logging
import threading

from django.utils import timezone

from batch_routing.core.constants import (
    ADVERSE_WEATHER_CONDITIONS,
    COMPOSITION_CHANGE_STATUSES,
    SEVERE_TRAFFIC_LEVELS,
)
from batch_routing.core.exceptions import TransientFetchError
from batch_routing.core.route_types import (
    Location,
    LogSeverity,
    MonitorStatus,
    OptimizedRoute,
    RouteEvent,
    RouteEventType,
    RouteUpdate,
    RouteUpdateReason,
    TrafficCondition,
)
from batch_routing.services.event_bus import RouteEventBus, Subscription
from batch_routing.services.monitoring_log import MonitoringLog
from batch_routing.services.optimization_service import RouteOptimizationService
from batch_routing.services.providers import fetch_with_timeout
from batch_routing.settings import (
    FETCH_TIMEOUT_SECONDS,
    MAX_REOPTIMIZATIONS_PER_HOUR,
    MONITOR_INTERVAL_SECONDS,
    MONITOR_MAX_WORKERS,
    ORDER_READY_EARLY_THRESHOLD_MINUTES,
    PREPARATION_DELAY_THRESHOLD_MINUTES,
    REOPTIMIZATION_COOLDOWN_SECONDS,
    ROUTE_DEVIATION_THRESHOLD_KM,
    SIGNIFICANCE_THRESHOLD,
    TRAFFIC_OVERRIDE_TTL_SECONDS,
)

logger = logging.getLogger(__name__)

UpdateListener = Callable[[str, RouteUpdate], None]

_STATUS_REASONS = {
    'cancelled': RouteUpdateReason.ORDER_CANCELLATION,
    'delivered': RouteUpdateReason.ORDER_CANCELLATION,
    'picked_up': RouteUpdateReason.DRIVER_REQUEST,
    'ready': RouteUpdateReason.ORDER_READY_EARLY,
}


@dataclass
class BatchMonitorState:
    """Everything the monitor knows about one batch."""
    batch_id: str
    current_route: OptimizedRoute
    status: MonitorStatus = MonitorStatus.COMPUTED
    superseded_route_id: Optional[str] = None
    lock: Any = field(default_factory=threading.Lock, repr=False)
    in_flight: bool = False
    queued_reason: Optional[RouteUpdateReason] = None
    queued_events: List[RouteEvent] = field(default_factory=list)
    timer: Any = field(default=None, repr=False)
    subscriptions: List[Subscription] = field(default_factory=list, repr=False)

    # Condition cache fed by events; traffic overrides carry the time they were reported
    traffic_overrides: Dict[str, Tuple[TrafficCondition, datetime]] = field(default_factory=dict)
    weather: Optional[Dict[str, Any]] = None
    driver_location: Optional[Location] = None
    last_events: Deque[RouteEvent] = field(default_factory=lambda: deque(maxlen=20), repr=False)

    # Publication times of accepted updates within the last hour
    update_times: Deque[datetime] = field(default_factory=deque, repr=False)

    generation: int = 0
    recomputations: int = 0
    accepted_updates: int = 0
    throttled_updates: int = 0
    skipped_cycles: int = 0
    coalesced_triggers: int = 0

    @property
    def is_active(self) -> bool:
        return self.status in (MonitorStatus.MONITORING, MonitorStatus.RECOMPUTING)


class AdjustmentMonitor:
    """
    Watches active batches and publishes a RouteUpdate whenever a
    recomputed route beats the current one by at least the significance
    threshold.
    """

    def __init__(
        self,
        optimization_service: RouteOptimizationService,
        order_source,
        location_source,
        event_bus: RouteEventBus,
        preparation_predictor=None,
        condition_provider=None,
        monitoring_log: Optional[MonitoringLog] = None,
        significance_threshold: float = SIGNIFICANCE_THRESHOLD,
        interval_seconds: float = MONITOR_INTERVAL_SECONDS,
        fetch_timeout_seconds: float = FETCH_TIMEOUT_SECONDS,
        cooldown_seconds: float = REOPTIMIZATION_COOLDOWN_SECONDS,
        max_updates_per_hour: int = MAX_REOPTIMIZATIONS_PER_HOUR,
        traffic_override_ttl_seconds: float = TRAFFIC_OVERRIDE_TTL_SECONDS,
        executor: Optional[Executor] = None,
        fetch_executor: Optional[Executor] = None,
        timer_factory: Optional[Callable[..., Any]] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize the adjustment monitor.

        Args:
            optimization_service: Service used to recompute routes.
            order_source: Provides get_remaining_orders(batch_id).
            location_source: Provides get_current_location(batch_id).
            event_bus: Bus the monitor subscribes to for each batch.
            preparation_predictor: Source of preparation windows. Defaults to the
                optimization service's predictor.
            condition_provider: Source of traffic and weather. Defaults to the
                optimization service's provider.
            monitoring_log: Audit log. A private one is created when None.
            significance_threshold: Minimum score gain (0-100 points) to publish an update.
            interval_seconds: Period of the background re-check.
            fetch_timeout_seconds: Per-call timeout for collaborator fetches.
            cooldown_seconds: Minimum time between two published updates of a batch.
            max_updates_per_hour: Cap on published updates per batch in any rolling hour.
            traffic_override_ttl_seconds: How long event-reported traffic masks provider data.
            executor: Runs recomputations. Defaults to a thread pool.
            fetch_executor: Runs collaborator fetches. Defaults to a thread pool.
            timer_factory: Builds the periodic timer. Defaults to threading.Timer.
            clock: Callable returning the current time. Defaults to django.utils.timezone.now.
        """
        self.optimization_service = optimization_service
        self.order_source = order_source
        self.location_source = location_source
        self.event_bus = event_bus
        if preparation_predictor is None:
            preparation_predictor = getattr(optimization_service, 'preparation_predictor', None)
        if condition_provider is None:
            condition_provider = getattr(optimization_service, 'condition_provider', None)
        self.preparation_predictor = preparation_predictor
        self.condition_provider = condition_provider
        self.monitoring_log = monitoring_log if monitoring_log is not None else MonitoringLog()
        self.significance_threshold = significance_threshold
        self.interval_seconds = interval_seconds
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self.max_updates_per_hour = max_updates_per_hour
        self.traffic_override_ttl = timedelta(seconds=traffic_override_ttl_seconds)
        self._clock = clock or timezone.now

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=MONITOR_MAX_WORKERS, thread_name_prefix='batch-recompute'
        )
        self._owns_fetch_executor = fetch_executor is None
        self._fetch_executor = fetch_executor or ThreadPoolExecutor(
            max_workers=MONITOR_MAX_WORKERS, thread_name_prefix='batch-fetch'
        )
        self._timer_factory = timer_factory or threading.Timer

        self._lock = threading.Lock()
        self._states: Dict[str, BatchMonitorState] = {}
        self._listeners: List[UpdateListener] = []

    # --- Lifecycle ---

    def start_monitoring(self, batch_id: str, route: OptimizedRoute) -> BatchMonitorState:
        with self._lock:
            existing = self._states.get(batch_id)
            if existing is not None:
                logger.warning(f"Batch {batch_id} is already being monitored; keeping existing state.")
                return existing
            state = BatchMonitorState(batch_id=batch_id, current_route=route)
            self._states[batch_id] = state

        for event_type in RouteEventType:
            state.subscriptions.append(
                self.event_bus.subscribe(event_type, self.handle_event, batch_id=batch_id)
            )

        with state.lock:
            state.status = MonitorStatus.MONITORING
        self._arm_timer(state)

        self.monitoring_log.record(
            batch_id, 'monitoring_started', LogSeverity.INFO,
            f"Started monitoring route {route.id}",
            {'route_id': route.id, 'optimization_score': route.optimization_score,
             'interval_seconds': self.interval_seconds},
        )
        return state

    def stop_monitoring(self, batch_id: str) -> bool:
        """
        Stop monitoring a batch. Any recomputation still running is discarded.

        Returns:
            True if the batch was being monitored.
        """
        with self._lock:
            state = self._states.pop(batch_id, None)
        if state is None:
            logger.warning(f"Batch {batch_id} is not being monitored.")
            return False

        with state.lock:
            if state.timer is not None:
                state.timer.cancel()
                state.timer = None
            subscriptions = list(state.subscriptions)
            state.subscriptions.clear()
            state.status = MonitorStatus.STOPPED
            state.generation += 1
            state.queued_reason = None
            state.queued_events = []

        for subscription in subscriptions:
            subscription.cancel()

        self.monitoring_log.record(
            batch_id, 'monitoring_stopped', LogSeverity.INFO,
            "Stopped monitoring",
            {'recomputations': state.recomputations, 'accepted_updates': state.accepted_updates},
        )
        return True

    def shutdown(self, wait: bool = False) -> None:
        for batch_id in self.active_batches():
            self.stop_monitoring(batch_id)
        if self._owns_executor:
            self._executor.shutdown(wait=wait)
        if self._owns_fetch_executor:
            self._fetch_executor.shutdown(wait=wait)

    def _arm_timer(self, state: BatchMonitorState) -> None:
        with state.lock:
            if state.status == MonitorStatus.STOPPED:
                return
            timer = self._timer_factory(
                self.interval_seconds, self._on_timer, args=(state, state.generation)
            )
            timer.daemon = True
            state.timer = timer
        timer.start()

    def _on_timer(self, state: BatchMonitorState, generation: int) -> None:
        if state.status == MonitorStatus.STOPPED or state.generation != generation:
            return
        try:
            self._trigger(state, RouteUpdateReason.PERIODIC_CHECK, ())
        except Exception as e:
            logger.error(f"Periodic check failed for batch {state.batch_id}: {e}", exc_info=True)
        finally:
            self._arm_timer(state)

    # --- Queries ---

    def get_current_route(self, batch_id: str) -> Optional[OptimizedRoute]:
        state = self._states.get(batch_id)
        return state.current_route if state is not None else None

    def get_status(self, batch_id: str) -> Optional[MonitorStatus]:
        state = self._states.get(batch_id)
        return state.status if state is not None else None

    def get_state(self, batch_id: str) -> Optional[BatchMonitorState]:
        return self._states.get(batch_id)

    def active_batches(self) -> List[str]:
        with self._lock:
            return list(self._states)

    def add_update_listener(self, callback: UpdateListener) -> None:
        self._listeners.append(callback)

    # --- Events ---

    def handle_event(self, event: RouteEvent) -> Optional[Future]:
        """
        Update the condition cache from an event and trigger a recomputation
        when the event qualifies.
        """
        state = self._states.get(event.batch_id)
        if state is None or not state.is_active:
            logger.debug(f"Ignoring {event.type.value} event for unmonitored batch {event.batch_id}")
            return None

        self._update_condition_cache(state, event)

        reason = self.classify_event(event)
        if reason is None:
            return None

        self.monitoring_log.record(
            event.batch_id, 'event_received', LogSeverity.INFO,
            f"{event.type.value} event triggers recomputation ({reason.value})",
            {'event_id': event.id, 'event_type': event.type.value, 'reason': reason.value, 'data': dict(event.data)},
        )
        return self._trigger(state, reason, (event,))

    def classify_event(self, event: RouteEvent) -> Optional[RouteUpdateReason]:
        """Map an event to the reason it warrants a recomputation, or None."""
        data = event.data or {}

        if event.type == RouteEventType.ORDER_ADDED:
            return RouteUpdateReason.ORDER_ADDED

        if event.type == RouteEventType.ORDER_REMOVED:
            return RouteUpdateReason.ORDER_CANCELLATION

        if event.type == RouteEventType.ORDER_STATUS_CHANGED:
            status = _event_status(data)
            if status in COMPOSITION_CHANGE_STATUSES:
                return _STATUS_REASONS[status]
            return None

        if event.type == RouteEventType.TRAFFIC_INCIDENT:
            severity = str(data.get('severity', '')).lower()
            return RouteUpdateReason.TRAFFIC_CHANGE if severity in SEVERE_TRAFFIC_LEVELS else None

        if event.type == RouteEventType.WEATHER_UPDATE:
            return RouteUpdateReason.WEATHER_CHANGE if _is_adverse_weather(data) else None

        if event.type == RouteEventType.ROUTE_DEVIATION:
            if _as_float(data.get('deviation_km')) > ROUTE_DEVIATION_THRESHOLD_KM:
                return RouteUpdateReason.ROUTE_DEVIATION
            return None

        if event.type == RouteEventType.PREPARATION_DELAY:
            if _as_float(data.get('delay_minutes')) > PREPARATION_DELAY_THRESHOLD_MINUTES:
                return RouteUpdateReason.PREPARATION_DELAY
            return None

        if event.type == RouteEventType.ORDER_READY_EARLY:
            if _as_float(data.get('minutes_early')) > ORDER_READY_EARLY_THRESHOLD_MINUTES:
                return RouteUpdateReason.ORDER_READY_EARLY
            return None

        # Driver location updates only refresh the cache
        return None

    def _update_condition_cache(self, state: BatchMonitorState, event: RouteEvent) -> None:
        data = event.data or {}
        with state.lock:
            state.last_events.append(event)

            if event.type == RouteEventType.DRIVER_LOCATION_UPDATE:
                location = data.get('location')
                if location is None and data.get('latitude') is not None and data.get('longitude') is not None:
                    location = Location(latitude=data['latitude'], longitude=data['longitude'])
                if isinstance(location, Location):
                    state.driver_location = location

            elif event.type == RouteEventType.TRAFFIC_INCIDENT:
                condition = TrafficCondition.parse(data.get('severity'))
                order_ids = data.get('order_ids')
                if order_ids is None:
                    order_ids = [data['order_id']] if data.get('order_id') else state.current_route.order_ids
                reported_at = self._clock()
                for order_id in order_ids:
                    state.traffic_overrides[order_id] = (condition, reported_at)

            elif event.type == RouteEventType.WEATHER_UPDATE:
                state.weather = dict(data)

            elif event.type == RouteEventType.ORDER_REMOVED:
                state.traffic_overrides.pop(data.get('order_id'), None)

            elif event.type == RouteEventType.ORDER_STATUS_CHANGED:
                if _event_status(data) in ('cancelled', 'delivered'):
                    state.traffic_overrides.pop(data.get('order_id'), None)

    # --- Recomputation ---

    def trigger_recomputation(
        self,
        batch_id: str,
        reason: RouteUpdateReason,
        events: Iterable[RouteEvent] = ()
    ) -> Optional[Future]:
        """
        Request a recomputation for a batch.

        Returns:
            The submitted future, or None when the batch is not monitored or
            the trigger was coalesced into the one already running.
        """
        state = self._states.get(batch_id)
        if state is None or not state.is_active:
            logger.debug(f"Not recomputing unmonitored batch {batch_id}")
            return None
        return self._trigger(state, RouteUpdateReason(reason), tuple(events))

    def _trigger(self, state: BatchMonitorState, reason: RouteUpdateReason, events) -> Optional[Future]:
        with state.lock:
            if not state.is_active:
                return None
            if state.in_flight:
                state.queued_reason = reason
                state.queued_events.extend(events)
                state.coalesced_triggers += 1
                logger.debug(f"Recomputation for {state.batch_id} already running; queued {reason.value}")
                return None
            state.in_flight = True
            state.status = MonitorStatus.RECOMPUTING
            generation = state.generation

        return self._executor.submit(self._run, state, reason, list(events), generation)

    def _run(self, state: BatchMonitorState, reason: RouteUpdateReason, events: List[RouteEvent], generation: int):
        try:
            return self.recompute(state, reason, events, generation)
        except Exception as e:
            logger.error(f"Recomputation failed for batch {state.batch_id}: {e}", exc_info=True)
            self.monitoring_log.record(
                state.batch_id, 'recomputation_failed', LogSeverity.ERROR,
                f"Recomputation failed: {e}", {'reason': reason.value},
            )
            return None
        finally:
            follow_up = None
            with state.lock:
                state.in_flight = False
                if state.status == MonitorStatus.RECOMPUTING:
                    state.status = MonitorStatus.MONITORING
                if state.queued_reason is not None and state.is_active:
                    follow_up = (state.queued_reason, tuple(state.queued_events))
                state.queued_reason = None
                state.queued_events = []
            if follow_up is not None:
                self._trigger(state, *follow_up)

    def recompute(
        self,
        state: BatchMonitorState,
        reason: RouteUpdateReason,
        events: Iterable[RouteEvent] = (),
        generation: Optional[int] = None
    ) -> Optional[RouteUpdate]:
        """
        Recompute the route for a batch and publish it if it is significantly better.

        Returns:
            The published RouteUpdate, or None when skipped, rejected or discarded.
        """
        batch_id = state.batch_id
        events = list(events)
        if generation is None:
            generation = state.generation
        with state.lock:
            state.recomputations += 1

        try:
            orders = list(self._fetch(self.order_source.get_remaining_orders, batch_id,
                                      description='remaining orders') or [])
            if len(orders) < 2:
                with state.lock:
                    state.skipped_cycles += 1
                self.monitoring_log.record(
                    batch_id, 'recomputation_skipped', LogSeverity.INFO,
                    f"Only {len(orders)} remaining order(s); nothing to re-sequence",
                    {'reason': reason.value, 'remaining_orders': len(orders)},
                )
                return None

            location = self._fetch(self.location_source.get_current_location, batch_id,
                                   description='driver location')
            if location is None:
                location = state.driver_location
            if location is None:
                with state.lock:
                    state.skipped_cycles += 1
                self.monitoring_log.record(
                    batch_id, 'recomputation_skipped', LogSeverity.WARNING,
                    "Driver location unavailable", {'reason': reason.value},
                )
                return None

            windows = {}
            if self.preparation_predictor is not None:
                windows = dict(self._fetch(self.preparation_predictor.predict, orders,
                                           description='preparation windows') or {})

            traffic = {}
            if self.condition_provider is not None:
                traffic = dict(self._fetch(self.condition_provider.get_traffic_conditions, orders,
                                           description='traffic conditions') or {})
        except TransientFetchError as e:
            with state.lock:
                state.skipped_cycles += 1
            self.monitoring_log.record(
                batch_id, 'fetch_failed', LogSeverity.WARNING,
                f"Skipping recomputation: {e}", {'reason': reason.value, 'source': e.source},
            )
            return None

        reason = self._refresh_weather(state, location, reason)

        now = self._clock()
        order_ids = {o.id for o in orders}
        with state.lock:
            current = state.current_route
            expired = [oid for oid, (_, reported_at) in state.traffic_overrides.items()
                       if now - reported_at > self.traffic_override_ttl]
            for oid in expired:
                del state.traffic_overrides[oid]
            traffic.update({oid: condition for oid, (condition, _) in state.traffic_overrides.items()
                            if oid in order_ids})
            weather = dict(state.weather) if state.weather else None
        if expired:
            logger.debug(f"Expired traffic overrides for batch {batch_id}: {', '.join(expired)}")

        new_route = self.optimization_service.calculate_optimal_route(
            orders,
            location,
            criteria=current.criteria,
            preparation_windows=windows,
            traffic_conditions=traffic,
            batch_id=batch_id,
        )
        delta = new_route.optimization_score - current.optimization_score

        throttle_message = None
        with state.lock:
            if state.status == MonitorStatus.STOPPED or state.generation != generation:
                logger.info(f"Discarding recomputed route for batch {batch_id}: monitoring stopped")
                return None

            update = None
            if delta >= self.significance_threshold:
                throttle_message = self._throttle_message(state, now)
                if throttle_message is not None:
                    state.throttled_updates += 1
                else:
                    update = RouteUpdate(
                        route_id=current.id,
                        new_route_id=new_route.id,
                        updated_waypoints=list(new_route.waypoints),
                        new_optimization_score=new_route.optimization_score,
                        reason=reason,
                        updated_at=now,
                        changes={
                            'previous_score': current.optimization_score,
                            'score_delta': delta,
                            'previous_distance_km': current.total_distance_km,
                            'new_total_distance_km': new_route.total_distance_km,
                            'new_total_duration_minutes': new_route.total_duration.total_seconds() / 60.0,
                            'remaining_orders': len(orders),
                            'trigger_events': [e.id for e in events],
                            'weather': weather,
                        },
                    )
                    state.superseded_route_id = current.id
                    state.current_route = new_route
                    state.accepted_updates += 1
                    state.update_times.append(now)

        if throttle_message is not None:
            self.monitoring_log.record(
                batch_id, 'update_throttled', LogSeverity.INFO,
                f"Score gain {delta:.2f} not published: {throttle_message}",
                {'reason': reason.value, 'current_score': current.optimization_score,
                 'candidate_score': new_route.optimization_score, 'score_delta': delta},
            )
            return None

        if update is None:
            self.monitoring_log.record(
                batch_id, 'update_rejected', LogSeverity.DEBUG,
                f"Score gain {delta:.2f} below threshold {self.significance_threshold:.2f}",
                {'reason': reason.value, 'current_score': current.optimization_score,
                 'candidate_score': new_route.optimization_score, 'score_delta': delta},
            )
            return None

        self.monitoring_log.record(
            batch_id, 'route_updated', LogSeverity.INFO,
            f"Route {current.id} superseded by {new_route.id} (+{delta:.2f} points, {reason.value})",
            {'reason': reason.value, 'score_delta': delta,
             'new_distance_km': new_route.total_distance_km,
             'new_duration_seconds': new_route.total_duration.total_seconds()},
        )
        self._notify(batch_id, update)
        return update

    def _throttle_message(self, state: BatchMonitorState, now: datetime) -> Optional[str]:
        """Why an otherwise significant update may not be published now, or None. Caller holds state.lock."""
        hour_ago = now - timedelta(hours=1)
        while state.update_times and state.update_times[0] <= hour_ago:
            state.update_times.popleft()

        if state.update_times and now - state.update_times[-1] < self.cooldown:
            return f"cooldown of {self.cooldown.total_seconds() / 60:.0f} min active"
        if len(state.update_times) >= self.max_updates_per_hour:
            return f"maximum of {self.max_updates_per_hour} updates per hour reached"
        return None

    def _refresh_weather(
        self,
        state: BatchMonitorState,
        location: Location,
        reason: RouteUpdateReason
    ) -> RouteUpdateReason:
        """
        Poll the condition provider for weather at the driver's position.

        A periodic check that finds adverse weather is reported as a weather change.
        A failed poll keeps the cached weather.
        """
        get_weather = getattr(self.condition_provider, 'get_weather_condition', None)
        if get_weather is None:
            return reason

        try:
            weather = self._fetch(get_weather, location, description='weather')
        except TransientFetchError as e:
            self.monitoring_log.record(
                state.batch_id, 'fetch_failed', LogSeverity.WARNING,
                f"Keeping cached weather: {e}", {'reason': reason.value, 'source': e.source},
            )
            return reason

        if not weather:
            return reason

        with state.lock:
            state.weather = dict(weather)
        if reason == RouteUpdateReason.PERIODIC_CHECK and _is_adverse_weather(weather):
            return RouteUpdateReason.WEATHER_CHANGE
        return reason

    def _fetch(self, fn, *args, description: str):
        return fetch_with_timeout(
            self._fetch_executor, fn, *args,
            timeout=self.fetch_timeout_seconds, description=description,
        )

    def _notify(self, batch_id: str, update: RouteUpdate) -> None:
        for listener in list(self._listeners):
            try:
                listener(batch_id, update)
            except Exception as e:
                logger.error(f"Route update listener failed for batch {batch_id}: {e}", exc_info=True)


def _as_float(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _event_status(data) -> str:
    return str(data.get('status') or '').lower()


def _is_adverse_weather(data) -> bool:
    condition = str(data.get('condition') or '').lower()
    severity = str(data.get('severity') or '').lower()
    return condition in ADVERSE_WEATHER_CONDITIONS or severity in SEVERE_TRAFFIC_LEVELS
