"""
Notification event payloads handed to the delivery transport
"""
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
import enum
from ordercore.models.schemas import Role


class NotificationType(str, enum.Enum):
    ORDER_CREATED = "ORDER_CREATED"
    ORDER_STATUS_CHANGED = "ORDER_STATUS_CHANGED"
    PAYMENT_STATUS_CHANGED = "PAYMENT_STATUS_CHANGED"
    LOW_STOCK = "LOW_STOCK"
    SYSTEM_ALERT = "SYSTEM_ALERT"


class Priority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class NotificationEvent(BaseModel):
    """Ephemeral event, never persisted by this service"""
    type: NotificationType
    title: str
    message: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    order_id: Optional[int] = None
    product_id: Optional[int] = None
    priority: Priority = Priority.MEDIUM
    data: Dict[str, Any] = Field(default_factory=dict)
    # Events carrying the same key are published once
    dedup_key: Optional[str] = None


class Recipients(BaseModel):
    """Notification scope: specific users and/or whole role classes"""
    user_ids: List[int] = Field(default_factory=list)
    roles: List[Role] = Field(default_factory=list)

    def channels(self) -> List[str]:
        """Transport channel names, user channels first"""
        channels = [f"user:{user_id}" for user_id in dict.fromkeys(self.user_ids)]
        channels.extend(f"role:{role.value}" for role in dict.fromkeys(self.roles))
        return channels

    def is_empty(self) -> bool:
        return not self.user_ids and not self.roles
