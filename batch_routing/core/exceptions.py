"""
Exceptions raised by the route optimization engine.
"""


class RouteEngineError(Exception):
    """Base exception for the engine."""
    pass


class ConfigurationError(RouteEngineError):
    """Raised when optimization criteria or engine settings are invalid."""
    pass


class DataError(RouteEngineError):
    """Raised when required input data is missing or malformed."""
    pass


class TransientFetchError(RouteEngineError):
    """Raised when an external collaborator fails or times out during monitoring."""

    def __init__(self, source: str, message: str = ""):
        self.source = source
        self.message = message
        super().__init__(f"Failed to fetch {source}: {message}" if message else f"Failed to fetch {source}")
