import tempfile
import unittest
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock
from zoneinfo import ZoneInfo

from tether.active_tracker import ActiveNotificationTracker
from tether.dismissal_store import DismissalStore
from tether.event_processor import EventProcessor, build_notification_body
from tether.identity import compute_key, notification_id_for
from tether.models import EventSnapshot
from tether.state_store import StateStore, StorageError


NEW_YORK = ZoneInfo("America/New_York")
T = datetime(2026, 2, 1, 15, 0, tzinfo=timezone.utc)


def _event(**overrides) -> EventSnapshot:
    base = EventSnapshot(
        calendar_id="calendar-1",
        event_id="event-123",
        title="Standup",
        start=T,
        end=T + timedelta(hours=1),
        location="Room A",
        description="Daily sync",
        reminder_minutes=(15,),
    )
    return replace(base, **overrides)


class EventProcessorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.state_store = StateStore(str(Path(self.temp_dir.name) / "state.db"))
        self.dismissal_store = DismissalStore(self.state_store)
        self.tracker = ActiveNotificationTracker(self.state_store)
        self.sink = mock.Mock()

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _processor(self, **kwargs) -> EventProcessor:
        options = {
            "dismissal_store": self.dismissal_store,
            "tracker": self.tracker,
            "sink": self.sink,
            "state_store": self.state_store,
        }
        options.update(kwargs)
        return EventProcessor(**options)

    def test_rejects_incomplete_events(self) -> None:
        processor = self._processor()
        for event in (
            _event(event_id=""),
            _event(start=None),
            _event(end=None),
            _event(reminder_minutes=()),
        ):
            self.assertEqual(processor.process_event(event, T - timedelta(minutes=30)), set())
        self.sink.create.assert_not_called()

    def test_stale_event_yields_empty_valid_set(self) -> None:
        event = _event(start=T - timedelta(days=3), end=T - timedelta(days=2))
        self.assertEqual(self._processor().process_event(event, T), set())
        self.sink.create.assert_not_called()

    def test_recently_ended_event_is_still_processed(self) -> None:
        event = _event(start=T - timedelta(hours=24), end=T - timedelta(hours=23))
        keys = self._processor().process_event(event, T)
        self.assertEqual(keys, {compute_key(event, 15)})
        self.sink.create.assert_called_once()

    def test_schedule_show_dismiss_scenario(self) -> None:
        event = _event()
        key = compute_key(event, 15)
        notification_id = notification_id_for(key)

        keys = self._processor().process_event(event, T - timedelta(minutes=30))
        self.assertEqual(keys, {key})
        self.sink.create.assert_called_once()
        args, kwargs = self.sink.create.call_args
        self.assertEqual(args[0], notification_id)
        self.assertEqual(args[1], "Standup")
        self.assertEqual(args[4], {"eventId": "event-123", "eventHash": key, "eventEnd": int((T + timedelta(hours=1)).timestamp() * 1000)})
        self.assertEqual(kwargs["schedule"], T - timedelta(minutes=15))

        self.sink.reset_mock()
        keys = self._processor().process_event(event, T - timedelta(minutes=10))
        self.assertEqual(keys, {key})
        self.sink.create.assert_called_once()
        self.assertNotIn("schedule", self.sink.create.call_args.kwargs)

        self.dismissal_store.dismiss(key, event.end)
        self.sink.reset_mock()
        keys = self._processor().process_event(event, T)
        self.assertEqual(keys, {key})
        self.sink.create.assert_not_called()

    def test_reminder_at_or_before_first_run_is_skipped(self) -> None:
        event = _event()
        reminder_time = T - timedelta(minutes=15)

        keys = self._processor(first_run_timestamp=reminder_time).process_event(event, T)
        self.assertEqual(keys, {compute_key(event, 15)})
        self.sink.create.assert_not_called()

        keys = self._processor(first_run_timestamp=reminder_time - timedelta(milliseconds=1)).process_event(event, T)
        self.assertEqual(keys, {compute_key(event, 15)})
        self.sink.create.assert_called_once()

    def test_first_run_filter_only_drops_earlier_reminders(self) -> None:
        event = _event(reminder_minutes=(60, 5))
        first_run = T - timedelta(minutes=30)
        keys = self._processor(first_run_timestamp=first_run).process_event(event, T - timedelta(minutes=20))
        self.assertEqual(keys, {compute_key(event, 60), compute_key(event, 5)})
        self.sink.create.assert_called_once()
        self.assertEqual(self.sink.create.call_args.kwargs["schedule"], T - timedelta(minutes=5))

    def test_active_snooze_suppresses_until_it_expires(self) -> None:
        event = _event()
        key = compute_key(event, 15)
        until = T + timedelta(minutes=5)
        self.dismissal_store.snooze(key, event.end, until)

        self.assertEqual(self._processor().process_event(event, T), {key})
        self.sink.create.assert_not_called()

        self.assertEqual(self._processor().process_event(event, until), {key})
        self.sink.create.assert_called_once()

    def test_already_scheduled_reminder_is_not_rescheduled(self) -> None:
        event = _event()
        notification_id = notification_id_for(compute_key(event, 15))
        processor = self._processor(already_scheduled_ids={notification_id})
        keys = processor.process_event(event, T - timedelta(hours=1))
        self.assertEqual(keys, {compute_key(event, 15)})
        self.sink.create.assert_not_called()

    def test_storage_failure_delivers_anyway(self) -> None:
        failing_store = mock.Mock()
        failing_store.is_dismissed.side_effect = StorageError("disk gone")
        failing_store.get_snoozed_until.side_effect = StorageError("disk gone")
        processor = self._processor(dismissal_store=failing_store)
        processor.process_event(_event(), T)
        self.sink.create.assert_called_once()

    def test_each_reminder_gets_its_own_key_and_is_tracked(self) -> None:
        event = _event(reminder_minutes=(15, 60))
        keys = self._processor().process_event(event, T - timedelta(hours=2))
        self.assertEqual(keys, {compute_key(event, 15), compute_key(event, 60)})
        self.assertEqual(self.sink.create.call_count, 2)
        self.assertEqual(self.tracker.get_all(), keys)

    def test_lifecycle_is_logged(self) -> None:
        event = _event(reminder_minutes=(15, 60))
        self._processor().process_event(event, T - timedelta(minutes=30))
        types = sorted(entry["event_type"] for entry in self.state_store.recent_notification_events())
        self.assertEqual(types, ["scheduled", "shown"])


class NotificationBodyTests(unittest.TestCase):
    def test_same_day_shows_bare_time_range(self) -> None:
        start = datetime(2026, 2, 1, 10, 0, tzinfo=NEW_YORK)
        body = build_notification_body(
            start=start,
            end=start + timedelta(hours=1),
            reminder_time=start - timedelta(minutes=15),
            all_day=False,
            display_tz=NEW_YORK,
        )
        self.assertEqual(body, "10:00 AM – 11:00 AM")

    def test_previous_day_reminder_gets_tomorrow_prefix(self) -> None:
        start = datetime(2026, 2, 1, 9, 30, tzinfo=NEW_YORK)
        body = build_notification_body(
            start=start,
            end=start + timedelta(hours=1),
            reminder_time=start - timedelta(hours=12),
            all_day=False,
            location="Room A",
            display_tz=NEW_YORK,
        )
        self.assertEqual(body, "Tomorrow, 9:30 AM – 10:30 AM\nRoom A")

    def test_earlier_reminder_gets_month_day_prefix(self) -> None:
        start = datetime(2026, 2, 5, 14, 0, tzinfo=NEW_YORK)
        body = build_notification_body(
            start=start,
            end=start + timedelta(minutes=30),
            reminder_time=start - timedelta(days=3),
            all_day=False,
            display_tz=NEW_YORK,
        )
        self.assertEqual(body, "Feb 5, 2:00 PM – 2:30 PM")

    def test_day_difference_uses_display_timezone(self) -> None:
        # Reminder is 23:00 on Feb 1 in New York but already Feb 2 in UTC.
        start = datetime(2026, 2, 2, 6, 0, tzinfo=timezone.utc)
        reminder = datetime(2026, 2, 2, 4, 0, tzinfo=timezone.utc)
        body = build_notification_body(
            start=start,
            end=start + timedelta(hours=1),
            reminder_time=reminder,
            all_day=False,
            display_tz=NEW_YORK,
        )
        self.assertEqual(body, "Tomorrow, 1:00 AM – 2:00 AM")
        body_utc = build_notification_body(
            start=start,
            end=start + timedelta(hours=1),
            reminder_time=reminder,
            all_day=False,
        )
        self.assertEqual(body_utc, "6:00 AM – 7:00 AM")

    def test_all_day_variants(self) -> None:
        start = datetime(2026, 2, 1, 0, 0, tzinfo=timezone.utc)
        end = start + timedelta(days=1)
        self.assertEqual(
            build_notification_body(start=start, end=end, reminder_time=start, all_day=True),
            "All day",
        )
        self.assertEqual(
            build_notification_body(start=start, end=end, reminder_time=start - timedelta(hours=9), all_day=True),
            "Tomorrow, all day",
        )
        self.assertEqual(
            build_notification_body(start=start, end=end, reminder_time=start - timedelta(days=2), all_day=True),
            "Feb 1, all day",
        )


if __name__ == "__main__":
    unittest.main()
