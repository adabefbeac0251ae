import unittest
from datetime import datetime, timezone

from codemeter.date_utils import DAY_MS, day_key, hour_of_day, is_day_aligned_range, start_of_month_ms
from codemeter.errors import best_effort, best_effort_async
from codemeter.observability import confidence_tier


def _ms(*args) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp() * 1000)


class DateUtilsTests(unittest.TestCase):
    def test_day_key_is_utc(self) -> None:
        self.assertEqual(day_key(_ms(2026, 1, 31, 23, 59)), "2026-01-31")
        self.assertEqual(day_key(0), "1970-01-01")

    def test_start_of_month(self) -> None:
        self.assertEqual(start_of_month_ms(_ms(2026, 3, 15, 12)), _ms(2026, 3, 1))

    def test_day_aligned_range(self) -> None:
        self.assertTrue(is_day_aligned_range(DAY_MS, 3 * DAY_MS - 1))
        self.assertFalse(is_day_aligned_range(DAY_MS, 3 * DAY_MS))
        self.assertFalse(is_day_aligned_range(DAY_MS + 1, 3 * DAY_MS - 1))

    def test_hour_of_day_with_offset(self) -> None:
        ts = _ms(2026, 1, 1, 23, 30)
        self.assertEqual(hour_of_day(ts), 23)
        self.assertEqual(hour_of_day(ts, 60), 0)
        self.assertEqual(hour_of_day(ts, -120), 21)


class BestEffortTests(unittest.IsolatedAsyncioTestCase):
    def test_sync_failure_is_logged_and_swallowed(self) -> None:
        def boom():
            raise OSError("disk")

        with self.assertLogs("codemeter.errors", level="WARNING") as logs:
            self.assertIsNone(best_effort("close session", boom))
        self.assertIn("close session", logs.output[0])

    def test_sync_success_returns_value(self) -> None:
        self.assertEqual(best_effort("add", lambda a, b: a + b, 1, 2), 3)

    async def test_async_failure_is_swallowed(self) -> None:
        async def boom():
            raise RuntimeError("nope")

        self.assertIsNone(await best_effort_async("notify", boom))


class ConfidenceTierTests(unittest.TestCase):
    def test_tiers(self) -> None:
        self.assertEqual(confidence_tier(1.0), "high")
        self.assertEqual(confidence_tier(0.7), "medium")
        self.assertEqual(confidence_tier(0.25), "low")
        self.assertEqual(confidence_tier(0.0), "none")


if __name__ == "__main__":
    unittest.main()
