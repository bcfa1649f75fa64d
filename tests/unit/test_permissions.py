#!/usr/bin/env python3
"""
Unit tests for the microphone permission gate
"""

import sys
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

# Add src and tests to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent.parent))

from quizvoice.voice.diagnostics import VoiceDiagnostics
from quizvoice.voice.permissions import PermissionGate, PermissionStatus, SounddevicePermissionBackend
from voice_fakes import FakePermissionBackend


class TestPermissionGate(unittest.IsolatedAsyncioTestCase):

    async def test_granted_status_is_cached(self):
        backend = FakePermissionBackend(granted=True)
        gate = PermissionGate(backend)

        self.assertIsNone(gate.has_permission)
        self.assertTrue(await gate.ensure_granted())
        self.assertTrue(await gate.ensure_granted())

        self.assertEqual(backend.status_calls, 1)
        self.assertEqual(gate.status, PermissionStatus.GRANTED)
        self.assertTrue(gate.has_permission)

    async def test_force_refresh_bypasses_cache(self):
        backend = FakePermissionBackend(granted=True)
        gate = PermissionGate(backend)
        await gate.ensure_granted()

        backend.granted = False
        self.assertFalse(await gate.ensure_granted(force_refresh=True))
        self.assertEqual(gate.status, PermissionStatus.DENIED)

    async def test_requests_when_not_granted(self):
        backend = FakePermissionBackend(granted=False, grant_on_request=True)
        gate = PermissionGate(backend)

        self.assertTrue(await gate.ensure_granted())
        self.assertEqual(backend.request_calls, 1)

    async def test_denied_is_rechecked(self):
        backend = FakePermissionBackend(granted=False)
        gate = PermissionGate(backend)

        self.assertFalse(await gate.ensure_granted())
        self.assertFalse(gate.has_permission)

        backend.granted = True
        self.assertTrue(await gate.ensure_granted())
        self.assertEqual(backend.status_calls, 2)

    async def test_backend_failure_never_raises(self):
        diagnostics = VoiceDiagnostics()
        gate = PermissionGate(FakePermissionBackend(error=OSError("no audio service")), diagnostics)

        self.assertFalse(await gate.ensure_granted(session_id=9))
        self.assertEqual(gate.status, PermissionStatus.UNKNOWN)
        self.assertEqual(diagnostics.events_for(9), ["PERMISSION_CHECK_FAILED"])

    async def test_invalidate(self):
        backend = FakePermissionBackend(granted=True)
        gate = PermissionGate(backend)
        await gate.ensure_granted()

        gate.invalidate()
        self.assertIsNone(gate.has_permission)
        await gate.ensure_granted()
        self.assertEqual(backend.status_calls, 2)


class TestSounddevicePermissionBackend(unittest.IsolatedAsyncioTestCase):

    def _fake_sounddevice(self):
        sd = MagicMock()
        sd.PortAudioError = type("PortAudioError", (Exception,), {})
        return sd

    async def test_input_device_present(self):
        sd = self._fake_sounddevice()
        sd.query_devices.return_value = {'name': 'Built-in Mic', 'max_input_channels': 1}

        with patch.dict(sys.modules, {'sounddevice': sd}):
            self.assertTrue(await SounddevicePermissionBackend().get_status())
        sd.query_devices.assert_called_once_with(kind='input')

    async def test_no_input_device(self):
        sd = self._fake_sounddevice()
        sd.query_devices.side_effect = sd.PortAudioError("no default input")

        with patch.dict(sys.modules, {'sounddevice': sd}):
            self.assertFalse(await SounddevicePermissionBackend().get_status())

    async def test_request_opens_test_stream(self):
        sd = self._fake_sounddevice()

        with patch.dict(sys.modules, {'sounddevice': sd}):
            self.assertTrue(await SounddevicePermissionBackend(sample_rate=16000).request())
        sd.InputStream.assert_called_once()
        self.assertEqual(sd.InputStream.call_args.kwargs['samplerate'], 16000)

    async def test_request_denied(self):
        sd = self._fake_sounddevice()
        sd.InputStream.side_effect = sd.PortAudioError("access denied")

        with patch.dict(sys.modules, {'sounddevice': sd}):
            self.assertFalse(await SounddevicePermissionBackend().request())


if __name__ == '__main__':
    unittest.main()
