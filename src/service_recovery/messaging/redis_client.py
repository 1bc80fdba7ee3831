"""
Notification sinks for recovery events

The workflow engine publishes a ``service_recovery`` message whenever a
service finishes recovering. Publishing never raises into the engine: a sink
that cannot deliver logs the failure and returns False.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Protocol

import redis.asyncio as redis
from pydantic import ValidationError

from .schemas import BaseMessage, MessageType, ServiceRecoveryMessage

logger = logging.getLogger(__name__)


class RedisChannels:
    """Redis channel names for recovery messages"""
    SERVICE_RECOVERY = "maas:service_recovery"


class NotificationSink(Protocol):
    async def publish_recovery(self, message: ServiceRecoveryMessage) -> bool: ...


class RedisNotificationSink:
    """
    Redis pub/sub publisher for recovery notifications

    Handles:
    - Connection management
    - Message serialization
    - Logging delivery failures instead of propagating them
    """

    def __init__(self, redis_url: str = "redis://localhost:6379/1", channel: str = RedisChannels.SERVICE_RECOVERY):
        self.redis_url = redis_url
        self.channel = channel
        self.redis_client: Optional[redis.Redis] = None
        self.is_connected = False
        self.published_count = 0

        # Message type to class mapping
        self.message_classes = {
            MessageType.SERVICE_RECOVERY: ServiceRecoveryMessage,
        }

    async def connect(self) -> bool:
        """Establish connection to Redis"""
        try:
            self.redis_client = redis.from_url(self.redis_url)
            await self.redis_client.ping()
            self.is_connected = True
            logger.info(f"Connected to Redis at {self.redis_url}")
            return True
        except (redis.RedisError, OSError) as e:
            logger.error(f"Failed to connect to Redis: {e}")
            self.is_connected = False
            return False

    async def disconnect(self):
        """Close Redis connection"""
        if self.redis_client:
            try:
                await self.redis_client.aclose()
            except (redis.RedisError, OSError) as e:
                logger.error(f"Error disconnecting from Redis: {e}")
        self.is_connected = False
        logger.info("Disconnected from Redis")

    async def publish_message(self, channel: str, message: BaseMessage) -> bool:
        """
        Publish a message to a Redis channel

        Args:
            channel: Redis channel name
            message: Message object to publish

        Returns:
            True if published successfully, False otherwise
        """
        if not self.is_connected:
            logger.error(f"Not connected to Redis, dropping {message.message_type} message")
            return False

        try:
            await self.redis_client.publish(channel, message.model_dump_json())
            self.published_count += 1
            logger.info(f"Published message to {channel}: {message.message_type}")
            return True
        except (redis.RedisError, OSError) as e:
            logger.error(f"Failed to publish message to {channel}: {e}")
            return False

    async def publish_recovery(self, message: ServiceRecoveryMessage) -> bool:
        return await self.publish_message(self.channel, message)

    def decode_message(self, raw_data: Any) -> Optional[BaseMessage]:
        """Deserialize a payload received from the channel"""
        if isinstance(raw_data, bytes):
            raw_data = raw_data.decode('utf-8')
        try:
            message_data = json.loads(raw_data)
        except json.JSONDecodeError as e:
            logger.error(f"Invalid message payload: {e}")
            return None

        message_type = message_data.get('message_type')
        if not message_type:
            logger.error("Message missing message_type field")
            return None

        try:
            message_class = self.message_classes.get(MessageType(message_type))
        except ValueError:
            logger.error(f"Unknown message type: {message_type}")
            return None

        try:
            return message_class(**message_data)
        except ValidationError as e:
            logger.error(f"Message validation error: {e}")
            return None

    async def health_check(self) -> Dict[str, Any]:
        """Perform health check on Redis connection"""
        if not self.is_connected:
            return {"status": "disconnected", "error": "Not connected to Redis"}

        try:
            await self.redis_client.ping()
            info = await self.redis_client.info('server')
        except (redis.RedisError, OSError) as e:
            return {"status": "error", "error": str(e), "connected": False}

        return {
            "status": "healthy",
            "connected": self.is_connected,
            "channel": self.channel,
            "published_count": self.published_count,
            "redis_version": info.get('redis_version'),
        }


class InMemoryNotificationSink:
    """Collects recovery notifications in process"""

    def __init__(self):
        self.messages: List[ServiceRecoveryMessage] = []

    async def publish_recovery(self, message: ServiceRecoveryMessage) -> bool:
        self.messages.append(message)
        logger.info(f"Recovery notification for {message.service} recorded")
        return True
