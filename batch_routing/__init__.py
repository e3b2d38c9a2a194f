"""
Batch Routing Module.

This module provides multi-order route optimization for delivery drivers
and continuous re-planning of the active route as conditions change.
"""

__version__ = '0.1.0'
