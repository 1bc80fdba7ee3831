"""
Message schemas for recovery notifications published over Redis pub/sub
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class MessageType(str, Enum):
    """Types of messages published by the recovery subsystem"""
    SERVICE_RECOVERY = "service_recovery"


class MessageSource(str, Enum):
    """Source services for messages"""
    RECOVERY_ENGINE = "recovery_engine"


class BaseMessage(BaseModel):
    """Base message schema for all pub/sub messages"""
    model_config = ConfigDict(use_enum_values=True)

    message_type: MessageType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source: MessageSource = MessageSource.RECOVERY_ENGINE
    message_id: Optional[str] = None


class ServiceRecoveryMessage(BaseMessage):
    """Sent when a service's recovery workflow reaches monitoring"""
    message_type: MessageType = MessageType.SERVICE_RECOVERY
    data: Dict[str, Any] = Field(
        description="Recovery data including service, workflow_id and recovery_time_ms"
    )

    @field_validator('data')
    @classmethod
    def validate_recovery_data(cls, v):
        required_fields = ['service', 'workflow_id', 'recovery_time_ms']
        for field in required_fields:
            if field not in v:
                raise ValueError(f"Required field '{field}' missing from recovery data")
        if not isinstance(v['recovery_time_ms'], int) or v['recovery_time_ms'] < 0:
            raise ValueError("recovery_time_ms must be a non-negative integer")
        return v

    @property
    def service(self) -> str:
        return self.data['service']

    @property
    def workflow_id(self) -> str:
        return self.data['workflow_id']

    @property
    def recovery_time_ms(self) -> int:
        return self.data['recovery_time_ms']


def service_recovery_message(service: str, workflow_id: str, recovery_time_ms: int, **extra: Any) -> ServiceRecoveryMessage:
    return ServiceRecoveryMessage(
        data={
            "service": service,
            "workflow_id": workflow_id,
            "recovery_time_ms": recovery_time_ms,
            **extra,
        }
    )


EXAMPLE_SERVICE_RECOVERY_DATA = {
    "service": "gemini_2_5_flash_lite",
    "workflow_id": "wf_3f2a9c1b7d4e",
    "recovery_time_ms": 245000,
    "steps_completed": 5,
}
