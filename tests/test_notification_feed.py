from datetime import datetime, timedelta, timezone

import pytest

from clinic_engine.core.errors import RemoteMutationFailed
from clinic_engine.models.notification import NotificationSeverity
from clinic_engine.schemas.notification import (
    ClinicalAlert,
    FeedSource,
    NotificationBucket,
    NotificationRecord,
)
from clinic_engine.services.notification_feed import (
    NotificationAggregator,
    bucket_for,
    format_badge_count,
    format_notification_message,
    format_relative_time,
    is_relevant_for_role,
    parse_notification_message,
)

NOW = datetime(2024, 3, 10, 10, 0, tzinfo=timezone.utc)


def alert(patient_id="pat-1"):
    return ClinicalAlert(
        id=f"allergy-alert-{patient_id}",
        kind="allergy",
        title="Known allergies",
        message="Patient has allergies: Peanuts",
        values=["Peanuts"],
        patient_id=patient_id,
    )


def record(notification_id="n-1", **kwargs):
    kwargs.setdefault("title", "Appointment reminder")
    kwargs.setdefault("created_at", NOW - timedelta(hours=1))
    return NotificationRecord(id=notification_id, **kwargs)


class TestFormatNotificationMessage:
    def test_json_list_replaced(self):
        assert (
            format_notification_message('Patient has allergies: ["Peanuts"]')
            == "Patient has allergies: Peanuts"
        )

    def test_idempotent(self):
        once = format_notification_message('Allergies: ["Peanuts", "Latex"] and [\'Dust\', x]')
        assert format_notification_message(once) == once

    def test_several_items(self):
        assert format_notification_message('Allergies: ["Peanuts","Latex"]') == "Allergies: Peanuts, Latex"

    def test_invalid_json_falls_back(self):
        assert format_notification_message("Allergies: ['Peanuts', 'Latex']") == "Allergies: Peanuts, Latex"

    def test_plain_text_unchanged(self):
        assert format_notification_message("Appointment at 10:00") == "Appointment at 10:00"

    def test_empty_list_kept(self):
        assert format_notification_message("Allergies: []") == "Allergies: []"

    def test_empty_message(self):
        assert format_notification_message("") == ""
        assert format_notification_message(None) == ""


class TestParseNotificationMessage:
    def test_items_extracted(self):
        clean, items = parse_notification_message('Patient has allergies: ["Peanuts", "Latex"]')

        assert clean == "Patient has allergies: Peanuts, Latex"
        assert items == ["Peanuts", "Latex"]

    def test_empty_list_removed_with_trailing_colon(self):
        assert parse_notification_message("Allergies: []") == ("Allergies", [])

    def test_no_list(self):
        assert parse_notification_message("Lab results ready") == ("Lab results ready", [])


class TestRelativeTime:
    @pytest.mark.parametrize("delta,expected", [
        (timedelta(seconds=30), "now"),
        (timedelta(minutes=5), "5 min ago"),
        (timedelta(hours=3), "3 h ago"),
        (timedelta(days=1, hours=2), "yesterday"),
        (timedelta(days=4), "4 days ago"),
        (timedelta(days=40), "30/01/2024"),
    ])
    def test_ranges(self, delta, expected):
        assert format_relative_time(NOW - delta, NOW) == expected

    def test_naive_timestamp(self):
        assert format_relative_time(datetime(2024, 3, 10, 9, 30), NOW) == "30 min ago"


class TestBucketing:
    @pytest.mark.parametrize("created_at,expected", [
        (datetime(2024, 3, 10, 9, 0), NotificationBucket.TODAY),
        (datetime(2024, 3, 9, 23, 0), NotificationBucket.YESTERDAY),
        (datetime(2024, 3, 4, 12, 0), NotificationBucket.THIS_WEEK),
        (datetime(2024, 2, 1, 12, 0), NotificationBucket.OLDER),
    ])
    def test_buckets(self, created_at, expected):
        now = datetime(2024, 3, 10, 10, 0)
        assert bucket_for(created_at, now, timezone.utc) is expected

    def test_local_calendar_day(self):
        # 23:30 UTC on the 9th is already the 10th at UTC+1
        created_at = datetime(2024, 3, 9, 23, 30, tzinfo=timezone.utc)
        tz = timezone(timedelta(hours=1))
        assert bucket_for(created_at, NOW, tz) is NotificationBucket.TODAY

    def test_naive_now_is_utc(self):
        created_at = datetime(2024, 3, 9, 23, 30, tzinfo=timezone.utc)
        tz = timezone(timedelta(hours=1))
        naive_now = NOW.replace(tzinfo=None)

        assert bucket_for(created_at, naive_now, tz) is bucket_for(created_at, NOW, tz)
        assert bucket_for(created_at.replace(tzinfo=None), naive_now, tz) is NotificationBucket.TODAY


class TestRoleFilter:
    def test_critical_visible_to_everyone(self):
        assert is_relevant_for_role(record(severity="critical", category="system"), "receptionist")

    def test_practitioner_categories(self):
        assert is_relevant_for_role(record(category="appointment"), "doctor")
        assert is_relevant_for_role(record(category="patient", severity="warning"), "docteur")
        assert not is_relevant_for_role(record(category="patient"), "doctor")
        assert not is_relevant_for_role(record(category="finance"), "doctor")

    def test_other_roles(self):
        assert not is_relevant_for_role(record(category="appointment"), "accountant")


def test_badge_count():
    assert format_badge_count(0) == ""
    assert format_badge_count(7) == "7"
    assert format_badge_count(150) == "99+"


class TestNotificationAggregator:
    @pytest.mark.asyncio
    async def test_feed_merges_and_groups(self, clinic):
        clinic.add_notification("today", NOW - timedelta(hours=1), message='Allergies: ["Latex"]')
        clinic.add_notification("old", NOW - timedelta(days=30), is_read=True)
        aggregator = NotificationAggregator(clinic, tz=timezone.utc)
        await aggregator.refresh()
        aggregator.set_clinical_alerts([alert()])

        feed = aggregator.build_feed(NOW)

        assert [g.label for g in feed.groups] == ["Today", "Older"]
        today = feed.groups[0].items
        assert [i.id for i in today] == ["allergy-alert-pat-1", "today"]
        assert today[0].source is FeedSource.CLINICAL
        assert not today[0].archivable
        assert today[1].message == "Allergies: Latex"
        assert today[1].extracted_items == ["Latex"]
        assert feed.total == 3
        assert feed.unread_count == 2
        assert feed.badge == "2"

    @pytest.mark.asyncio
    async def test_every_item_in_one_bucket(self, clinic):
        for days in range(10):
            clinic.add_notification(f"n-{days}", NOW - timedelta(days=days))
        aggregator = NotificationAggregator(clinic, tz=timezone.utc)
        await aggregator.refresh()

        feed = aggregator.build_feed(NOW)

        ids = [item.id for group in feed.groups for item in group.items]
        assert sorted(ids) == sorted(f"n-{d}" for d in range(10))

    @pytest.mark.asyncio
    async def test_mark_read_updates_after_success(self, clinic):
        clinic.add_notification("n-1", NOW)
        aggregator = NotificationAggregator(clinic)
        await aggregator.refresh()

        assert await aggregator.mark_read("n-1")
        assert aggregator.unread_count() == 0

        # Already read: no second call
        await aggregator.mark_read("n-1")
        assert clinic.read_calls == ["n-1"]

    @pytest.mark.asyncio
    async def test_mark_read_failure_keeps_flag(self, clinic, mutation_failure):
        clinic.add_notification("n-1", NOW)
        aggregator = NotificationAggregator(clinic)
        await aggregator.refresh()
        clinic.fail_notification_mutation = mutation_failure

        with pytest.raises(RemoteMutationFailed):
            await aggregator.mark_read("n-1")

        assert aggregator.unread_count() == 1

    @pytest.mark.asyncio
    async def test_clinical_alerts_never_sent(self, clinic):
        aggregator = NotificationAggregator(clinic)
        aggregator.set_clinical_alerts([alert()])

        assert not await aggregator.mark_read("allergy-alert-pat-1")
        assert not await aggregator.archive("allergy-alert-pat-1")
        assert clinic.read_calls == []
        assert clinic.archive_calls == []
        assert aggregator.unread_count() == 1

    @pytest.mark.asyncio
    async def test_archive_hides_item(self, clinic):
        clinic.add_notification("n-1", NOW)
        aggregator = NotificationAggregator(clinic)
        await aggregator.refresh()

        assert await aggregator.archive("n-1")

        assert aggregator.build_feed(NOW).total == 0
        assert aggregator.unread_count() == 0

    @pytest.mark.asyncio
    async def test_mark_all_read(self, clinic):
        clinic.add_notification("n-1", NOW)
        clinic.add_notification("n-2", NOW)
        aggregator = NotificationAggregator(clinic)
        await aggregator.refresh()
        aggregator.set_clinical_alerts([alert()])

        assert await aggregator.mark_all_read() == 2
        assert aggregator.unread_count() == 1

    @pytest.mark.asyncio
    async def test_refresh_with_role(self, clinic):
        clinic.add_notification("a", NOW, category="appointment")
        clinic.add_notification("f", NOW, category="finance")
        aggregator = NotificationAggregator(clinic)

        records = await aggregator.refresh(role="doctor")

        assert [r.id for r in records] == ["a"]

    def test_severity_defaults(self):
        assert record().severity is NotificationSeverity.INFO
