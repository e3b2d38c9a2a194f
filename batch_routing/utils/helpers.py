"""
Helper functions for the batch routing engine.
"""
import datetime
import enum
import json
import logging
from typing import Any, Optional

import numpy as np

logger = logging.getLogger(__name__)


def format_duration(seconds: float) -> str:
    """
    Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds.

    Returns:
        String like '1h 5m 0s', '12m 30s' or '0m 0s'.
    """
    s_int = int(seconds)
    hours, remainder = divmod(s_int, 3600)
    minutes, secs = divmod(remainder, 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    parts.append(f"{minutes}m")
    parts.append(f"{secs}s")
    return " ".join(parts)


def minutes_between(start: datetime.datetime, end: datetime.datetime) -> float:
    """Signed number of minutes from start to end."""
    return (end - start).total_seconds() / 60.0


def safe_json_dumps(obj: Any, indent: Optional[int] = None) -> str:
    """
    Safely convert an object to a JSON string, handling non-serializable types.

    Args:
        obj: Object to convert to JSON.
        indent: Optional indentation passed to json.dumps.

    Returns:
        JSON string representation of the object.
    """
    def handle_non_serializable(o):
        if isinstance(o, (datetime.datetime, datetime.date)):
            return o.isoformat()
        if isinstance(o, datetime.timedelta):
            return o.total_seconds()
        if isinstance(o, enum.Enum):
            return o.value
        if isinstance(o, np.ndarray):
            return o.tolist()
        if isinstance(o, np.integer):
            return int(o)
        if isinstance(o, np.floating):
            return float(o)
        if isinstance(o, (set, frozenset, tuple)):
            return list(o)
        if hasattr(o, '__dict__'):
            return o.__dict__
        return str(o)

    return json.dumps(obj, default=handle_non_serializable, indent=indent)


def format_route_for_display(route) -> str:
    """
    Format an OptimizedRoute as one line per stop.

    Args:
        route: OptimizedRoute to render.

    Returns:
        Multi-line string, header first.
    """
    header = (
        f"Route {route.id} (batch {route.batch_id}): {route.total_distance_km:.2f} km, "
        f"{format_duration(route.total_duration.total_seconds())}, "
        f"score {route.optimization_score:.1f}, traffic {route.overall_traffic_condition.value}"
    )
    if not route.waypoints:
        return f"{header}\n  (no stops)"

    lines = [header]
    for wp in route.waypoints:
        label = wp.location.address or f"{wp.location.latitude:.5f},{wp.location.longitude:.5f}"
        lines.append(
            f"  {wp.sequence:>2}. {wp.type.value:<8} {wp.order_id} @ {label} "
            f"(+{wp.distance_from_previous:.2f} km, ETA {wp.estimated_arrival_time:%H:%M})"
        )
    return "\n".join(lines)
