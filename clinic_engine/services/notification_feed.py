"""
Unified notification feed.

Server notifications (persisted, can be read and archived) are merged with
clinical alerts (computed, always unread, never archived), messages are
cleaned of raw JSON list artifacts, and every item is placed in exactly one
recency bucket: Today, Yesterday, This Week or Older.
"""
import json
import logging
import re
from datetime import datetime, timezone, tzinfo
from typing import Dict, Iterable, List, Optional, Tuple

from ..core.errors import MalformedPayload
from ..models.notification import NotificationSeverity
from ..schemas.notification import (
    ClinicalAlert,
    FeedGroup,
    FeedItem,
    FeedSource,
    NotificationBucket,
    NotificationFeed,
    NotificationFilter,
    NotificationRecord,
)
from .gateways import NotificationGateway
from .timeline import business_timezone

logger = logging.getLogger(__name__)

_ARRAY_LIKE = re.compile(r"\[[\s\S]*?\]")
_QUOTES_AND_BRACKETS = re.compile(r"[\"'\[\]]")
_COMMA = re.compile(r"\s*,\s*")
_WHITESPACE = re.compile(r"\s+")

# Each pass removes at least one closing bracket
_MAX_PASSES = 32

PRACTITIONER_ROLES = frozenset({"doctor", "practitioner", "docteur"})
PRACTITIONER_CATEGORIES = frozenset({"appointment", "clinical"})

BUCKET_ORDER = (
    NotificationBucket.TODAY,
    NotificationBucket.YESTERDAY,
    NotificationBucket.THIS_WEEK,
    NotificationBucket.OLDER,
)


def _strip_item(value) -> str:
    return str(value).strip().strip("\"'").strip()


def _fallback_list(text: str) -> str:
    text = _QUOTES_AND_BRACKETS.sub("", text)
    text = _COMMA.sub(", ", text)
    return _WHITESPACE.sub(" ", text).strip()


def _parse_array(match_text: str) -> List[str]:
    try:
        parsed = json.loads(match_text)
    except ValueError as e:
        raise MalformedPayload(f"Not a JSON array: {match_text!r}") from e
    return [
        item for item in (_strip_item(value) for value in parsed if value is not None) if item
    ]


def _rewrite_arrays(message: str, collected: List[str], keep_empty: bool) -> str:
    def replace(match) -> str:
        text = match.group(0)
        try:
            items = _parse_array(text)
        except MalformedPayload:
            fallback = _fallback_list(text)
            if fallback:
                collected.append(fallback)
            return fallback
        collected.extend(items)
        if items:
            return ", ".join(items)
        return text if keep_empty else ""

    return _ARRAY_LIKE.sub(replace, message)


def _to_fixpoint(message: str, collected: List[str], keep_empty: bool) -> str:
    for _ in range(_MAX_PASSES):
        rewritten = _rewrite_arrays(message, collected, keep_empty)
        if rewritten == message:
            break
        message = rewritten
    return message


def format_notification_message(message: Optional[str]) -> str:
    """Replace raw JSON lists embedded in a message by a readable list.

    ``'Patient has allergies: ["Peanuts"]'`` becomes
    ``'Patient has allergies: Peanuts'``. Lists that are not valid JSON lose
    their quotes and brackets instead. Applying the function again returns
    the same string.
    """
    if not message or not isinstance(message, str):
        return message or ""
    return _to_fixpoint(message, [], keep_empty=True)


def parse_notification_message(message: Optional[str]) -> Tuple[str, List[str]]:
    """Split a message into its cleaned text and the items of embedded lists."""
    if not message or not isinstance(message, str):
        return "", []
    items: List[str] = []
    clean = _to_fixpoint(message, items, keep_empty=False)
    clean = re.sub(r"\s*:\s*$", "", clean)
    clean = re.sub(r"\s{2,}", " ", clean).strip()
    return clean, items


def _align(instant: datetime, reference: datetime) -> datetime:
    if instant.tzinfo is None and reference.tzinfo is not None:
        return instant.replace(tzinfo=timezone.utc)
    if instant.tzinfo is not None and reference.tzinfo is None:
        return instant.astimezone(timezone.utc).replace(tzinfo=None)
    return instant


def _local(instant: datetime, tz: tzinfo) -> datetime:
    # Naive instants are UTC
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(tz)


def format_relative_time(timestamp: datetime, now: datetime) -> str:
    """Human relative time of ``timestamp`` seen from ``now``."""
    timestamp = _align(timestamp, now)
    seconds = (now - timestamp).total_seconds()
    if seconds < 60:
        return "now"
    minutes = int(seconds // 60)
    if minutes < 60:
        return f"{minutes} min ago"
    hours = int(seconds // 3600)
    if hours < 24:
        return f"{hours} h ago"
    days = int(seconds // 86400)
    if days == 1:
        return "yesterday"
    if days < 7:
        return f"{days} days ago"
    if timestamp.tzinfo is not None and now.tzinfo is not None:
        timestamp = timestamp.astimezone(now.tzinfo)
    return timestamp.strftime("%d/%m/%Y")


def bucket_for(
    created_at: datetime, now: datetime, tz: Optional[tzinfo] = None
) -> NotificationBucket:
    """Recency bucket from calendar days between ``created_at`` and ``now``."""
    tz = tz or business_timezone()
    days = (_local(now, tz).date() - _local(created_at, tz).date()).days
    if days <= 0:
        return NotificationBucket.TODAY
    if days == 1:
        return NotificationBucket.YESTERDAY
    if days < 7:
        return NotificationBucket.THIS_WEEK
    return NotificationBucket.OLDER


def group_by_bucket(items: Iterable[FeedItem]) -> List[FeedGroup]:
    """Group feed items by bucket, leaving out empty buckets."""
    grouped: Dict[NotificationBucket, List[FeedItem]] = {bucket: [] for bucket in BUCKET_ORDER}
    for item in items:
        grouped[item.bucket].append(item)
    return [
        FeedGroup(bucket=bucket, label=bucket.label, items=grouped[bucket])
        for bucket in BUCKET_ORDER
        if grouped[bucket]
    ]


def is_relevant_for_role(record: NotificationRecord, role: Optional[str]) -> bool:
    """Practitioners see their clinical workload, everybody sees critical items."""
    if record.severity is NotificationSeverity.CRITICAL:
        return True
    if (role or "").lower() not in PRACTITIONER_ROLES:
        return False
    if record.category in PRACTITIONER_CATEGORIES:
        return True
    return record.category == "patient" and record.severity is NotificationSeverity.WARNING


def format_badge_count(count: int) -> str:
    if count <= 0:
        return ""
    return "99+" if count > 99 else str(count)


class NotificationAggregator:
    """Notification feed of one viewer.

    Read/archive flags are kept locally and only flipped after the
    notification service accepted the change. Clinical alerts are never sent
    to the service.
    """

    def __init__(self, gateway: NotificationGateway, tz: Optional[tzinfo] = None):
        self.gateway = gateway
        self.tz = tz
        self._records: Dict[str, NotificationRecord] = {}
        self._alerts: Dict[str, ClinicalAlert] = {}

    @property
    def notifications(self) -> List[NotificationRecord]:
        return list(self._records.values())

    @property
    def alerts(self) -> List[ClinicalAlert]:
        return list(self._alerts.values())

    async def refresh(
        self,
        notification_filter: Optional[NotificationFilter] = None,
        role: Optional[str] = None,
    ) -> List[NotificationRecord]:
        """Reload server notifications, keeping those relevant to ``role``."""
        records = await self.gateway.fetch_notifications(notification_filter or NotificationFilter())
        if role is not None:
            records = [r for r in records if is_relevant_for_role(r, role)]
        self.set_notifications(records)
        logger.debug(f"Loaded {len(records)} notifications")
        return self.notifications

    def set_notifications(self, records: Iterable[NotificationRecord]) -> None:
        self._records = {record.id: record for record in records}

    def set_clinical_alerts(self, alerts: Iterable[ClinicalAlert]) -> None:
        self._alerts = {alert.id: alert for alert in alerts}

    def is_clinical_alert(self, notification_id: str) -> bool:
        return notification_id in self._alerts

    def unread_count(self) -> int:
        """Unread server notifications plus every clinical alert."""
        unread = sum(
            1 for record in self._records.values()
            if not record.is_read and not record.is_archived
        )
        return unread + len(self._alerts)

    def merged_items(self, now: Optional[datetime] = None) -> List[FeedItem]:
        """Server notifications and clinical alerts as feed items, newest first."""
        now = now or datetime.now(timezone.utc)
        items = [self._alert_item(alert, now) for alert in self._alerts.values()]
        items.extend(
            self._record_item(record, now)
            for record in self._records.values()
            if not record.is_archived
        )
        return sorted(items, key=lambda item: _align(item.created_at, now), reverse=True)

    def build_feed(self, now: Optional[datetime] = None) -> NotificationFeed:
        items = self.merged_items(now)
        unread = self.unread_count()
        return NotificationFeed(
            groups=group_by_bucket(items),
            unread_count=unread,
            total=len(items),
            badge=format_badge_count(unread),
        )

    def _record_item(self, record: NotificationRecord, now: datetime) -> FeedItem:
        _, extracted = parse_notification_message(record.message)
        return FeedItem(
            id=record.id,
            source=FeedSource.SERVER,
            severity=record.severity,
            category=record.category,
            title=record.title,
            message=format_notification_message(record.message),
            extracted_items=extracted,
            is_read=record.is_read,
            archivable=True,
            created_at=record.created_at,
            relative_time=format_relative_time(record.created_at, now),
            bucket=bucket_for(record.created_at, now, self.tz),
            target_id=record.target_id,
            target_type=record.target_type,
            action_url=record.action_url,
        )

    def _alert_item(self, alert: ClinicalAlert, now: datetime) -> FeedItem:
        return FeedItem(
            id=alert.id,
            source=FeedSource.CLINICAL,
            severity=alert.severity,
            category=alert.category,
            title=alert.title,
            message=alert.message,
            extracted_items=list(alert.values),
            is_read=False,
            archivable=False,
            created_at=now,
            relative_time=format_relative_time(now, now),
            bucket=NotificationBucket.TODAY,
            target_id=alert.patient_id,
            target_type="patient",
        )

    async def mark_read(self, notification_id: str) -> bool:
        """Mark a server notification read. Clinical alerts have no read state."""
        if self.is_clinical_alert(notification_id):
            logger.debug(f"Ignoring read for clinical alert {notification_id}")
            return False

        record = self._records.get(notification_id)
        if record is not None and record.is_read:
            return True

        await self.gateway.mark_notification_read(notification_id)
        if record is not None:
            self._records[notification_id] = record.model_copy(update={"is_read": True})
        return True

    async def mark_all_read(self) -> int:
        updated = await self.gateway.mark_all_notifications_read()
        self._records = {
            key: record.model_copy(update={"is_read": True})
            for key, record in self._records.items()
        }
        logger.info(f"Marked {updated} notifications as read")
        return updated

    async def archive(self, notification_id: str) -> bool:
        """Archive a server notification. Clinical alerts cannot be archived."""
        if self.is_clinical_alert(notification_id):
            logger.warning(f"Rejected archive of clinical alert {notification_id}")
            return False

        await self.gateway.archive_notification(notification_id)
        record = self._records.get(notification_id)
        if record is not None:
            self._records[notification_id] = record.model_copy(update={"is_archived": True})
        return True
