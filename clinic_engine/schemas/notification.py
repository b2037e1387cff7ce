from pydantic import BaseModel, Field, field_validator
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import enum

from ..models.notification import NotificationSeverity

class FeedSource(str, enum.Enum):
    SERVER = "server"
    CLINICAL = "clinical"

class NotificationBucket(str, enum.Enum):
    TODAY = "today"
    YESTERDAY = "yesterday"
    THIS_WEEK = "this_week"
    OLDER = "older"

    @property
    def label(self) -> str:
        return BUCKET_LABELS[self]

BUCKET_LABELS = {
    NotificationBucket.TODAY: "Today",
    NotificationBucket.YESTERDAY: "Yesterday",
    NotificationBucket.THIS_WEEK: "This Week",
    NotificationBucket.OLDER: "Older",
}

class NotificationRecord(BaseModel):
    """Server-delivered notification."""

    id: str
    severity: NotificationSeverity = NotificationSeverity.INFO
    category: Optional[str] = None
    title: str
    message: str = ""
    is_read: bool = False
    is_archived: bool = False
    created_at: datetime
    target_id: Optional[str] = None
    target_type: Optional[str] = None
    action_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("created_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @field_validator("metadata", mode="before")
    @classmethod
    def _empty_metadata(cls, value):
        return value or {}

class ClinicalAlert(BaseModel):
    """Alert derived from the active patient snapshot. Never persisted."""

    id: str
    kind: str
    severity: NotificationSeverity = NotificationSeverity.CRITICAL
    category: str = "clinical"
    title: str
    message: str
    values: List[str] = Field(default_factory=list)
    patient_id: str
    patient_name: Optional[str] = None

    @property
    def display_text(self) -> str:
        return ", ".join(self.values)

class NotificationFilter(BaseModel):
    unread_only: bool = False
    category: Optional[str] = None
    page: int = 1
    limit: int = 50

class FeedItem(BaseModel):
    id: str
    source: FeedSource
    severity: NotificationSeverity
    category: Optional[str] = None
    title: str
    message: str
    extracted_items: List[str] = Field(default_factory=list)
    is_read: bool
    archivable: bool
    created_at: datetime
    relative_time: str
    bucket: NotificationBucket
    target_id: Optional[str] = None
    target_type: Optional[str] = None
    action_url: Optional[str] = None

class FeedGroup(BaseModel):
    bucket: NotificationBucket
    label: str
    items: List[FeedItem]

class NotificationFeed(BaseModel):
    groups: List[FeedGroup]
    unread_count: int
    total: int
    badge: str = ""
