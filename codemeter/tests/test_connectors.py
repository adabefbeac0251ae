import unittest

from codemeter.connectors import extract_usage_items, normalize_usage_item, normalize_usage_payload
from codemeter.connectors.base import coerce_timestamp_ms


class NormalizeUsageItemTests(unittest.TestCase):
    def test_full_item(self) -> None:
        event = normalize_usage_item(
            {
                "eventId": "evt-1",
                "timestampMs": 1_700_000_000_123,
                "model": "claude-sonnet",
                "kind": "usage-based",
                "tokenUsage": {"inputTokens": 100, "outputTokens": 20, "cacheReadTokens": 5},
                "cost": {"modelCents": 40, "cursorFeeCents": 2, "totalCents": 42},
            },
            "dashboard",
        )

        self.assertEqual(event.eventId, "evt-1")
        self.assertEqual(event.timestampMs, 1_700_000_000_123)
        self.assertEqual(event.source, "dashboard")
        self.assertEqual(event.kind, "usage-based")
        self.assertEqual(event.tokenUsage.inputTokens, 100)
        self.assertEqual(event.tokenUsage.cacheReadTokens, 5)
        self.assertIsNone(event.tokenUsage.cacheWriteTokens)
        self.assertEqual(event.cost.totalCents, 42)
        self.assertEqual(event.cost.cursorFeeCents, 2)

    def test_flat_fallback_fields(self) -> None:
        event = normalize_usage_item(
            {
                "id": 77,
                "createdAt": "1700000000",
                "modelName": "gpt",
                "promptTokens": "12",
                "completionTokens": 3.6,
                "total_cents": "9",
                "model_cents": 8,
                "kind": "free",
            },
            "admin",
        )

        self.assertEqual(event.eventId, "77")
        self.assertEqual(event.timestampMs, 1_700_000_000_000)
        self.assertEqual(event.model, "gpt")
        self.assertEqual(event.tokenUsage.inputTokens, 12)
        self.assertEqual(event.tokenUsage.outputTokens, 4)
        self.assertEqual(event.cost.totalCents, 9)
        self.assertEqual(event.cost.modelCents, 8)
        self.assertIsNone(event.kind)

    def test_missing_values_default(self) -> None:
        event = normalize_usage_item({"time": 1_700_000_000_000, "tokenUsage": "garbage", "costCents": "n/a"}, "s")

        self.assertEqual(event.model, "unknown")
        self.assertEqual(event.tokenUsage.inputTokens, 0)
        self.assertEqual(event.cost.totalCents, 0)

    def test_content_hash_id_is_stable(self) -> None:
        item = {"timestamp": 1_700_000_000, "llm": "m", "inputTokens": 5, "totalCostCents": 3}

        first = normalize_usage_item(dict(item), "s")
        second = normalize_usage_item(dict(item), "s")

        self.assertEqual(first.eventId, second.eventId)
        self.assertEqual(len(first.eventId), 32)
        other = normalize_usage_item({**item, "totalCostCents": 4}, "s")
        self.assertNotEqual(first.eventId, other.eventId)

    def test_items_without_timestamp_are_rejected(self) -> None:
        self.assertIsNone(normalize_usage_item({"eventId": "x"}, "s"))
        self.assertIsNone(normalize_usage_item({"timestamp": 0}, "s"))
        self.assertIsNone(normalize_usage_item({"timestamp": "yesterday"}, "s"))
        self.assertIsNone(normalize_usage_item(["not", "a", "dict"], "s"))

    def test_timestamp_coercion(self) -> None:
        self.assertEqual(coerce_timestamp_ms(1_700_000_000), 1_700_000_000_000)
        self.assertEqual(coerce_timestamp_ms(1_700_000_000_000), 1_700_000_000_000)
        self.assertIsNone(coerce_timestamp_ms(-5))
        self.assertIsNone(coerce_timestamp_ms(True))


class ExtractUsageItemsTests(unittest.TestCase):
    def test_accepted_shapes(self) -> None:
        self.assertEqual(extract_usage_items([1, 2]), [1, 2])
        self.assertEqual(extract_usage_items({"usageEvents": [1]}), [1])
        self.assertEqual(extract_usage_items({"events": [2]}), [2])
        self.assertEqual(extract_usage_items({"data": [3]}), [])
        self.assertEqual(extract_usage_items(None), [])

    def test_payload_normalization_drops_bad_items(self) -> None:
        events = normalize_usage_payload(
            {"usageEvents": [{"id": "a", "timestamp": 1_700_000_000}, {"id": "b"}]},
            "s",
        )

        self.assertEqual([e.eventId for e in events], ["a"])


if __name__ == "__main__":
    unittest.main()
