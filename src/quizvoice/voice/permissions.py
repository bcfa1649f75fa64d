"""
Microphone permission gate

Resolves and re-requests microphone authorization. A granted status is
cached; anything else is re-read from the system on the next check,
since the user can change it out-of-band in system settings.
"""

import asyncio
import logging
from enum import Enum
from typing import Optional

from ..logging_setup import session_logger
from .ports import DiagnosticsSink, PermissionBackend


class PermissionStatus(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    UNKNOWN = "unknown"


class PermissionGate:
    """Wraps a PermissionBackend with caching and failure containment."""

    def __init__(
        self,
        backend: PermissionBackend,
        diagnostics: Optional[DiagnosticsSink] = None,
    ):
        self.backend = backend
        self.diagnostics = diagnostics
        self.logger = logging.getLogger('quizvoice.permissions')
        self.status = PermissionStatus.UNKNOWN

    @property
    def has_permission(self) -> Optional[bool]:
        """True/False once resolved, None while unknown."""
        if self.status == PermissionStatus.UNKNOWN:
            return None
        return self.status == PermissionStatus.GRANTED

    def invalidate(self) -> None:
        """Drop the cached status so the next check reads the system again."""
        self.status = PermissionStatus.UNKNOWN

    async def ensure_granted(self, session_id: int = 0, force_refresh: bool = False) -> bool:
        """
        Return whether microphone access is granted, requesting it if needed.

        Never raises: I/O failures leave the status UNKNOWN and count as
        not granted.
        """
        if self.status == PermissionStatus.GRANTED and not force_refresh:
            return True

        log = session_logger(self.logger, session_id)
        try:
            log.info("Checking microphone permission...")
            granted = bool(await self.backend.get_status())

            if not granted:
                log.info("Permission not granted, requesting...")
                granted = bool(await self.backend.request())

            self.status = PermissionStatus.GRANTED if granted else PermissionStatus.DENIED
            log.info("Microphone permission: %s", self.status.value)
            return granted

        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.status = PermissionStatus.UNKNOWN
            log.error(f"Permission check failed: {e}")
            if self.diagnostics is not None:
                self.diagnostics.log(session_id, "PERMISSION_CHECK_FAILED", {"error": str(e)})
            return False


class SounddevicePermissionBackend:
    """
    Desktop permission backend

    There is no separate permission API on desktop platforms: access is
    granted when a default input device exists and an input stream can
    be opened (opening the stream is what triggers the OS prompt).
    """

    def __init__(self, sample_rate: int = 16000, channels: int = 1):
        self.sample_rate = sample_rate
        self.channels = channels
        self.logger = logging.getLogger('quizvoice.permissions')

    async def get_status(self) -> bool:
        return await asyncio.to_thread(self._query_input_device)

    async def request(self) -> bool:
        return await asyncio.to_thread(self._open_test_stream)

    def _query_input_device(self) -> bool:
        import sounddevice as sd

        try:
            device_info = sd.query_devices(kind='input')
        except sd.PortAudioError as e:
            self.logger.debug(f"No default input device: {e}")
            return False
        self.logger.debug(f"Default microphone: {device_info['name']}")
        return bool(device_info) and device_info.get('max_input_channels', 0) > 0

    def _open_test_stream(self) -> bool:
        import sounddevice as sd

        try:
            with sd.InputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                dtype='float32',
                blocksize=1024
            ):
                pass  # Just test if we can open
        except sd.PortAudioError as e:
            self.logger.warning(f"Cannot access microphone: {e}")
            return False
        return True
