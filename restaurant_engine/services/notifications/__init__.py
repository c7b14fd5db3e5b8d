"""
Notification Service Factory

Returns Mock or Real notification service based on ENV_MODE.
"""

import logging
from functools import lru_cache

from restaurant_engine.core.config import get_settings
from restaurant_engine.services.notifications.base import (
    BaseNotificationService,
    EventKind,
    NotificationMessage,
    NotificationResult,
)
from restaurant_engine.services.notifications.dispatcher import (
    CeleryNotificationDispatcher,
    NotificationDispatcher,
)
from restaurant_engine.services.notifications.messages import event_payload, render
from restaurant_engine.services.notifications.mock import MockNotificationService
from restaurant_engine.services.notifications.real import RealNotificationService

logger = logging.getLogger(__name__)


@lru_cache()
def get_notification_service() -> BaseNotificationService:
    """Get the configured notification service."""
    settings = get_settings()

    if settings.is_development:
        logger.info("Notification Service: Using MockNotificationService (development mode)")
        return MockNotificationService(failure_rate=0.05)

    logger.info(f"Notification Service: Using RealNotificationService ({settings.env_mode.value} mode)")
    return RealNotificationService(settings)


def reset_notification_service() -> None:
    """Clear the cached service instance."""
    get_notification_service.cache_clear()


__all__ = [
    "get_notification_service",
    "reset_notification_service",
    "render",
    "event_payload",
    "BaseNotificationService",
    "CeleryNotificationDispatcher",
    "EventKind",
    "NotificationDispatcher",
    "NotificationMessage",
    "NotificationResult",
    "MockNotificationService",
    "RealNotificationService",
]
