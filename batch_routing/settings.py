import os
import logging

# Try to load environment variables from file
try:
    from batch_routing.utils.env_loader import load_env_from_file
    env_paths = [
        os.path.join(os.path.dirname(os.path.dirname(__file__)), 'env_var.env'),  # Project root
        os.path.join(os.path.dirname(__file__), 'env_var.env'),  # App directory
    ]

    for path in env_paths:
        if os.path.exists(path) and load_env_from_file(path, override=False):
            break
except ImportError:
    # Module might not be available during initial imports
    pass

logger = logging.getLogger(__name__)


def _env_float(name, default):
    raw = os.getenv(name)
    if raw is None or raw == '':
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid value for {name}: {raw!r}. Using default {default}.")
        return default


def _env_int(name, default):
    return int(_env_float(name, default))


# Google Maps API configuration (optional road-distance provider)
GOOGLE_MAPS_API_KEY = os.getenv('GOOGLE_MAPS_API_KEY')
GOOGLE_MAPS_API_URL = 'https://maps.googleapis.com/maps/api/distancematrix/json'
USE_ROAD_DISTANCE_BY_DEFAULT = os.getenv('USE_ROAD_DISTANCE_BY_DEFAULT', 'False').lower() == 'true'

# API request settings
MAX_RETRIES = 3
BACKOFF_FACTOR = 2  # Exponential backoff
RETRY_DELAY_SECONDS = 1
REQUEST_TIMEOUT_SECONDS = 10
ROAD_DISTANCE_CACHE_TIMEOUT = 60 * 60 * 24  # 1 day

# External condition feeds (traffic / weather)
TRAFFIC_API_URL = os.getenv('TRAFFIC_API_URL', '')
TRAFFIC_API_KEY = os.getenv('TRAFFIC_API_KEY')
WEATHER_API_URL = os.getenv('WEATHER_API_URL', '')
WEATHER_API_KEY = os.getenv('WEATHER_API_KEY')

# --- Route building ---
AVERAGE_SPEED_KMH = _env_float('BATCH_ROUTING_AVERAGE_SPEED_KMH', 40.0)
PICKUP_SERVICE_MINUTES = _env_float('BATCH_ROUTING_PICKUP_SERVICE_MINUTES', 5.0)
DELIVERY_SERVICE_MINUTES = _env_float('BATCH_ROUTING_DELIVERY_SERVICE_MINUTES', 3.0)
TRAFFIC_DURATION_MULTIPLIER = _env_float('BATCH_ROUTING_TRAFFIC_MULTIPLIER', 1.2)

# --- Solver ---
EXACT_SOLVER_MAX_ORDERS = 3
TWO_OPT_MAX_PASSES = _env_int('BATCH_ROUTING_TWO_OPT_MAX_PASSES', 50)
TWO_OPT_TIME_BUDGET_SECONDS = _env_float('BATCH_ROUTING_TWO_OPT_TIME_BUDGET_SECONDS', 2.0)

# --- Monitoring / re-optimization ---
SIGNIFICANCE_THRESHOLD = _env_float('BATCH_ROUTING_SIGNIFICANCE_THRESHOLD', 5.0)  # Points on 0-100 scale
MONITOR_INTERVAL_SECONDS = _env_float('BATCH_ROUTING_MONITOR_INTERVAL_SECONDS', 30.0)
FETCH_TIMEOUT_SECONDS = _env_float('BATCH_ROUTING_FETCH_TIMEOUT_SECONDS', 5.0)
MONITOR_MAX_WORKERS = _env_int('BATCH_ROUTING_MONITOR_MAX_WORKERS', 4)

ROUTE_DEVIATION_THRESHOLD_KM = _env_float('BATCH_ROUTING_DEVIATION_THRESHOLD_KM', 1.0)
PREPARATION_DELAY_THRESHOLD_MINUTES = _env_float('BATCH_ROUTING_PREP_DELAY_THRESHOLD_MINUTES', 15.0)
ORDER_READY_EARLY_THRESHOLD_MINUTES = _env_float('BATCH_ROUTING_READY_EARLY_THRESHOLD_MINUTES', 10.0)

# Anti-thrash guards on published updates
REOPTIMIZATION_COOLDOWN_SECONDS = _env_float('BATCH_ROUTING_REOPTIMIZATION_COOLDOWN_SECONDS', 5 * 60.0)
MAX_REOPTIMIZATIONS_PER_HOUR = _env_int('BATCH_ROUTING_MAX_REOPTIMIZATIONS_PER_HOUR', 6)

# Traffic reported by events wins over the provider for this long (seconds)
TRAFFIC_OVERRIDE_TTL_SECONDS = _env_float('BATCH_ROUTING_TRAFFIC_OVERRIDE_TTL_SECONDS', 10 * 60.0)
