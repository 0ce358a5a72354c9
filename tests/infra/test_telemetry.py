from __future__ import annotations

import unittest

from brainbits.observability.telemetry import (
    counter,
    get_counters,
    get_latency_stats,
    reset_telemetry,
    time_block,
)


class TelemetryTests(unittest.TestCase):
    def setUp(self):
        reset_telemetry()

    def test_time_block_records_a_sample(self):
        metric_name = "digest.send"

        with time_block(metric_name):
            pass

        stats = get_latency_stats(metric_name)
        self.assertEqual(stats["count"], 1)
        self.assertGreaterEqual(stats["min"], 0.0)
        self.assertEqual(stats["min"], stats["max"])

    def test_time_block_records_when_block_raises(self):
        with self.assertRaises(RuntimeError), time_block("ingest.batch"):
            raise RuntimeError("boom")

        self.assertEqual(get_latency_stats("ingest.batch")["count"], 1)

    def test_unknown_metric_has_empty_stats(self):
        self.assertEqual(
            get_latency_stats("never.recorded"), {"count": 0, "min": 0.0, "max": 0.0, "avg": 0.0}
        )

    def test_counter_increments(self):
        before = counter("test.counter", 0)
        counter("test.counter")
        after = counter("test.counter", 0)
        self.assertEqual(after, before + 1)

    def test_get_counters_filters_by_prefix(self):
        counter("digest.sent", 2)
        counter("sequence.sent")

        self.assertEqual(get_counters("digest."), {"digest.sent": 2})
        self.assertEqual(len(get_counters()), 2)

    def test_reset_clears_everything(self):
        counter("digest.sent")
        with time_block("digest.send"):
            pass

        reset_telemetry()

        self.assertEqual(get_counters(), {})
        self.assertEqual(get_latency_stats("digest.send")["count"], 0)


if __name__ == "__main__":
    unittest.main()
