from sqlalchemy import Column, String, DateTime, Boolean, Text, JSON, Enum as SQLEnum
from sqlalchemy.sql import func
import enum
import uuid

from ..core.database import Base

class NotificationSeverity(str, enum.Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), nullable=True, index=True)

    severity = Column(SQLEnum(NotificationSeverity), nullable=False, default=NotificationSeverity.INFO)
    category = Column(String(50), nullable=True, index=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False, default="")

    # What the notification points at, e.g. an appointment
    target_id = Column(String(36), nullable=True)
    target_type = Column(String(50), nullable=True)
    action_url = Column(String(500), nullable=True)

    is_read = Column(Boolean, default=False, nullable=False)
    is_archived = Column(Boolean, default=False, nullable=False)
    # "metadata" is reserved on declarative classes
    extra = Column("metadata", JSON, nullable=True)

    read_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    def __repr__(self):
        return f"<Notification(id={self.id}, category='{self.category}', read={self.is_read})>"
