#!/usr/bin/env python3
"""
Concurrency Stress Tests

Hammers the thread-safe facade from several threads and checks that
the session invariants still hold once everything settles.
"""

import collections
import logging
import os
import sys
import tempfile
import threading
import time
import unittest
from pathlib import Path

import yaml

# Add src and tests to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent.parent))

from quizvoice import logging_setup
from quizvoice.service import VoiceInputService
from quizvoice.voice import RecordingState
from voice_fakes import FakePermissionBackend


class TestToggleStress(unittest.TestCase):
    """Rapid toggles from several threads"""

    THREADS = 4
    TOGGLES_PER_THREAD = 15

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        tmp_path = Path(self.tmp.name)
        self._old_run_dir = os.environ.get("QUIZVOICE_RUN_DIR")
        os.environ["QUIZVOICE_RUN_DIR"] = str(tmp_path / "run")

        config = {
            'session': {'stop_grace_ms': 10, 'stop_timeout_ms': 200, 'auto_recover': False},
            'diagnostics': {'max_entries': 10000},
            'engine': {
                'type': 'scripted',
                'script': [{'type': 'result', 'after_ms': 5, 'transcript': 'rome', 'final': False}],
            },
            'logging': {'level': 'WARNING'},
        }
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.safe_dump(config), encoding="utf-8")

        self.service = VoiceInputService(str(config_path), permission_backend=FakePermissionBackend())
        self.errors = []
        self.lock = threading.Lock()

    def tearDown(self):
        self.service.shutdown()

        logging.shutdown()
        root = logging.getLogger()
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        logging_setup._CURRENT_STATE = None  # type: ignore[attr-defined]

        if self._old_run_dir is None:
            os.environ.pop("QUIZVOICE_RUN_DIR", None)
        else:
            os.environ["QUIZVOICE_RUN_DIR"] = self._old_run_dir
        self.tmp.cleanup()

    def _toggle_worker(self, worker_id: int):
        for i in range(self.TOGGLES_PER_THREAD):
            try:
                self.service.toggle().result(timeout=2)
            except Exception as e:
                with self.lock:
                    self.errors.append(f"worker {worker_id} toggle {i}: {e!r}")
            time.sleep(0.003 * (worker_id + 1))

    def _settle(self, timeout: float = 3.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            manager = self.service.session_manager
            if manager.is_recording_active:
                self.service.stop().result(timeout=2)
            elif manager.state == RecordingState.IDLE and not manager.has_pending_stop:
                time.sleep(0.05)
                if manager.state == RecordingState.IDLE and not manager.is_recording_active:
                    return True
            time.sleep(0.02)
        return False

    def test_rapid_toggles_keep_invariants(self):
        self.service.start_service()

        threads = [
            threading.Thread(target=self._toggle_worker, args=(n,), name=f"toggle-{n}")
            for n in range(self.THREADS)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        self.assertEqual(self.errors, [])
        self.assertTrue(self._settle(), "service did not settle back to idle")

        engine = self.service.engine
        events = collections.defaultdict(list)
        for entry in self.service.diagnostics.entries:
            events[entry.session_id].append(entry.event)

        started = [sid for sid, names in events.items() if "ENGINE_STARTED" in names]
        self.assertGreater(len(started), 0)

        # One engine start per session that reached recording
        self.assertEqual(len(engine.start_calls), len(started))

        # Exactly one outcome per session that reached recording
        for sid in started:
            outcomes = events[sid].count("SESSION_SUCCESS") + events[sid].count("SESSION_FAILURE")
            self.assertEqual(outcomes, 1, f"session {sid}: {events[sid]}")

        self.assertEqual(self.service.volume_level, 0.0)


if __name__ == '__main__':
    unittest.main()
