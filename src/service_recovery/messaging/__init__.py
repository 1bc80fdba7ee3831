"""
Recovery notification messaging
"""

from .redis_client import InMemoryNotificationSink, NotificationSink, RedisChannels, RedisNotificationSink
from .schemas import MessageSource, MessageType, ServiceRecoveryMessage, service_recovery_message

__all__ = [
    "InMemoryNotificationSink",
    "NotificationSink",
    "RedisChannels",
    "RedisNotificationSink",
    "MessageSource",
    "MessageType",
    "ServiceRecoveryMessage",
    "service_recovery_message",
]
