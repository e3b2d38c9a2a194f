# Earth radius used by the great-circle distance (km)
EARTH_RADIUS_KM = 6371.0

# Upper bound for distance values (km)
MAX_SAFE_DISTANCE = 1e6

# Google Distance Matrix API only accepts 100 elements per request
MAX_API_ELEMENTS = 100

# --- Scoring model ---
# Total route distance at which the distance sub-score reaches zero (km)
DISTANCE_NORMALIZATION_KM = 50.0
# Single pickup-to-pickup hop at which the transition distance score reaches zero (km)
TRANSITION_DISTANCE_NORMALIZATION_KM = 20.0

# Simulated clock for preparation alignment (minutes)
INITIAL_TRAVEL_MINUTES = 15
MINUTES_PER_ORDER = 20
PREPARATION_DELAY_HORIZON_MINUTES = 30.0
# Look-ahead used when picking the nearest-neighbor starting order (minutes)
STARTING_ORDER_READINESS_MINUTES = 10

DEFAULT_PREPARATION_SCORE = 0.5
DELIVERY_WINDOW_PLACEHOLDER_SCORE = 0.8

CRITERIA_WEIGHT_TOLERANCE = 0.001

# Traffic severities that demand attention from the monitor
SEVERE_TRAFFIC_LEVELS = ('heavy', 'severe')
ADVERSE_WEATHER_CONDITIONS = ('storm', 'thunderstorm', 'heavy_rain', 'snow', 'hail', 'fog', 'flood')
COMPOSITION_CHANGE_STATUSES = ('cancelled', 'delivered', 'picked_up', 'ready')
