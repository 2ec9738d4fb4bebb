import unittest
from datetime import datetime, timedelta, timezone

from tether.models import (
    AppConfig,
    DismissalEntry,
    RefreshConfig,
    from_epoch_millis,
    parse_iso_datetime,
    refresh_window,
    to_epoch_millis,
)


class ModelsTests(unittest.TestCase):
    def test_app_config_defaults(self) -> None:
        cfg = AppConfig.from_dict({})
        self.assertEqual(cfg.refresh.lookback_days, 1)
        self.assertEqual(cfg.refresh.lookahead_days, 7)
        self.assertEqual(cfg.refresh.stale_event_days, 1)
        self.assertEqual(cfg.refresh.timezone, "UTC")
        self.assertEqual(cfg.reminders.dismissal_retention_days, 30)
        self.assertEqual(cfg.reminders.max_dismissal_bytes, 500_000)

    def test_refresh_config_is_clamped(self) -> None:
        cfg = RefreshConfig.from_dict(
            {"lookback_days": -3, "lookahead_days": 0, "interval_seconds": 1, "timezone": "  "}
        )
        self.assertEqual(cfg.lookback_days, 0)
        self.assertEqual(cfg.lookahead_days, 1)
        self.assertEqual(cfg.interval_seconds, 30)
        self.assertEqual(cfg.timezone, "UTC")

    def test_dismissal_entry_json(self) -> None:
        end = datetime(2026, 2, 1, 16, 0, tzinfo=timezone.utc)
        entry = DismissalEntry(event_end=end)
        self.assertEqual(entry.to_json(), {"end": to_epoch_millis(end)})
        snoozed = DismissalEntry.from_json({"end": to_epoch_millis(end), "snooze": to_epoch_millis(end) - 60_000})
        self.assertEqual(snoozed.snoozed_until, end - timedelta(minutes=1))

    def test_epoch_millis(self) -> None:
        value = datetime(2026, 2, 1, 15, 0, 0, 123000, tzinfo=timezone.utc)
        self.assertEqual(from_epoch_millis(to_epoch_millis(value)), value)
        self.assertEqual(to_epoch_millis(datetime(1970, 1, 1, 0, 0, 1)), 1000)

    def test_parse_iso_datetime_accepts_zulu(self) -> None:
        self.assertEqual(
            parse_iso_datetime("2026-02-01T15:00:00Z"),
            datetime(2026, 2, 1, 15, 0, tzinfo=timezone.utc),
        )

    def test_refresh_window(self) -> None:
        now = datetime(2026, 2, 1, 15, 0, tzinfo=timezone.utc)
        start, end = refresh_window(now, 1, 7)
        self.assertEqual(start, now - timedelta(days=1))
        self.assertEqual(end, now + timedelta(days=7))


if __name__ == "__main__":
    unittest.main()
