#!/usr/bin/env python3
"""
Unit tests for VoiceDiagnostics metrics and health rules
"""

import json
import sys
import unittest
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from quizvoice.voice.diagnostics import VoiceDiagnostics


class TestVoiceDiagnostics(unittest.TestCase):
    """Test metrics derived from lifecycle events"""

    def setUp(self):
        self.diag = VoiceDiagnostics(max_entries=50)

    def _session(self, session_id, success, duration_ms=1000):
        self.diag.start_session(session_id)
        self.diag.end_session(session_id, success, duration_ms)

    def test_success_rate_without_sessions(self):
        self.assertEqual(self.diag.success_rate(), 100)
        self.assertEqual(self.diag.health_check().status, "healthy")

    def test_metrics_follow_session_events(self):
        self._session(1, True, 1000)
        self._session(2, False, 3000)

        metrics = self.diag.metrics
        self.assertEqual(metrics.total_sessions, 2)
        self.assertEqual(metrics.successful_sessions, 1)
        self.assertEqual(metrics.failed_sessions, 1)
        self.assertEqual(metrics.average_session_duration_ms, 2000.0)
        self.assertEqual(self.diag.success_rate(), 50)

    def test_failure_reason_tracked(self):
        self.diag.record_failure(3, "Speech recognition error: network", "offline")

        self.assertEqual(self.diag.metrics.last_failure_reason, "Speech recognition error: network")
        entry = self.diag.entries[-1]
        self.assertEqual(entry.data, {"reason": "Speech recognition error: network", "error": "offline"})

    def test_ring_buffer_is_bounded(self):
        diag = VoiceDiagnostics(max_entries=5)
        for i in range(12):
            diag.log(i, "TICK")

        entries = diag.entries
        self.assertEqual(len(entries), 5)
        self.assertEqual(entries[0].session_id, 7)

    def test_events_for_session(self):
        self.diag.log(1, "A")
        self.diag.log(2, "B")
        self.diag.log(1, "C")

        self.assertEqual(self.diag.events_for(1), ["A", "C"])

    def test_log_never_raises(self):
        self.diag.log(1, "BAD_DATA", {"value": object()})
        self.assertEqual(self.diag.events_for(1), ["BAD_DATA"])

    def test_summary_keeps_last_ten_events(self):
        for i in range(15):
            self.diag.log(1, f"E{i}")

        summary = self.diag.summary()
        self.assertEqual(len(summary["recent_events"]), 10)
        self.assertEqual(summary["recent_events"][-1]["event"], "E14")
        self.assertEqual(summary["success_rate"], 100)

    def test_export_logs_is_json(self):
        self._session(1, True)
        payload = json.loads(self.diag.export_logs())

        self.assertEqual(payload["metrics"]["total_sessions"], 1)
        self.assertEqual(len(payload["full_log"]), 2)

    def test_reset(self):
        self._session(1, False)
        self.diag.reset()

        self.assertEqual(self.diag.entries, [])
        self.assertEqual(self.diag.metrics.total_sessions, 0)


class TestDiagnosticsHealth(unittest.TestCase):
    """Test health classification rules"""

    def setUp(self):
        self.diag = VoiceDiagnostics()

    def test_low_success_rate_is_critical(self):
        self.diag.start_session(1)
        self.diag.end_session(1, False)

        health = self.diag.health_check()
        self.assertEqual(health.status, "critical")
        self.assertIn("Low success rate: 0%", health.issues)
        self.assertTrue(health.recommendations)

    def test_moderate_success_rate_is_warning(self):
        for i, success in enumerate([True, True, True, False], start=1):
            self.diag.start_session(i)
            self.diag.end_session(i, success)

        health = self.diag.health_check()
        self.assertEqual(health.status, "warning")
        self.assertIn("Moderate success rate: 75%", health.issues)

    def test_repeated_failures_are_warning(self):
        self.diag.record_failure(1, "Stop recording error")
        self.diag.record_failure(2, "Stop recording error")

        health = self.diag.health_check()
        self.assertEqual(health.status, "warning")
        self.assertIn("2 recent failures detected", health.issues)

    def test_timeout_reason_adds_issue(self):
        self.diag.record_failure(1, "Stop recording error: Stop operation timeout after 3.0s")

        health = self.diag.health_check()
        self.assertEqual(health.status, "healthy")
        self.assertIn("Timeout issues detected", health.issues)

    def test_to_dict(self):
        data = self.diag.health_check().to_dict()
        self.assertEqual(data, {"status": "healthy", "issues": [], "recommendations": []})


if __name__ == '__main__':
    unittest.main()
