"""
Interfaces of the external collaborators the engine talks to.

The engine never owns order, location, preparation or condition data; it
asks these collaborators for snapshots. Any object with the matching methods
can be injected.
"""
from concurrent.futures import Executor, TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence
import logging

from batch_routing.core.exceptions import TransientFetchError
from batch_routing.core.route_types import Location, Order, PreparationWindow, TrafficCondition

logger = logging.getLogger(__name__)


class OrderSource(Protocol):
    def get_active_orders(self, batch_id: str) -> List[Order]:
        ...

    def get_remaining_orders(self, batch_id: str) -> List[Order]:
        """Orders of the batch that are neither delivered nor cancelled."""
        ...


class PreparationPredictor(Protocol):
    def predict(self, orders: Sequence[Order]) -> Mapping[str, PreparationWindow]:
        """Map order id to its predicted preparation window."""
        ...


class ConditionProvider(Protocol):
    def get_traffic_conditions(self, orders: Sequence[Order]) -> Mapping[str, TrafficCondition]:
        """Map order id to the traffic condition around its pickup."""
        ...

    def get_weather_condition(self, location: Location) -> Optional[Dict[str, Any]]:
        ...


class DriverLocationSource(Protocol):
    def get_current_location(self, batch_id: str) -> Optional[Location]:
        ...


def fetch_with_timeout(
    executor: Executor,
    fn: Callable[..., Any],
    *args: Any,
    timeout: float,
    description: str
) -> Any:
    """
    Run a collaborator call on the executor and wait at most `timeout` seconds.

    Raises:
        TransientFetchError: If the call times out or raises.
    """
    future = executor.submit(fn, *args)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError as e:
        future.cancel()
        logger.warning(f"Fetching {description} timed out after {timeout}s")
        raise TransientFetchError(description, f"timed out after {timeout}s") from e
    except TransientFetchError:
        raise
    except Exception as e:
        logger.warning(f"Fetching {description} failed: {e}")
        raise TransientFetchError(description, str(e)) from e
