"""
Core module initialization.
Exports configuration, logging and the error taxonomy.
"""

from restaurant_engine.core.config import get_settings, setup_logging, Settings, EnvironmentMode
from restaurant_engine.core.exceptions import (
    OrderEngineError,
    ValidationError,
    NotFoundError,
    InvalidTransitionError,
    ConflictError,
    TransientInfraError,
    ExhaustedRetryError,
)

__all__ = [
    "get_settings",
    "setup_logging",
    "Settings",
    "EnvironmentMode",
    "OrderEngineError",
    "ValidationError",
    "NotFoundError",
    "InvalidTransitionError",
    "ConflictError",
    "TransientInfraError",
    "ExhaustedRetryError",
]
