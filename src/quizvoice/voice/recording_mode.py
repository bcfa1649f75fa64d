#!/usr/bin/env python3
"""
Recording mode coordinator

Tracks whether the device is in recording mode (audio ducked, haptics
muted) and notifies listeners on every transition.
"""

import logging
import threading
import time
from typing import Callable, List


class RecordingModeManager:
    """
    Default Recording-Mode Notifier

    Listeners may react to a mode change by calling back into the voice
    session manager (e.g. asking for a cleanup); exit() is therefore
    ignored while a force_exit() is running.
    """

    def __init__(self):
        self.logger = logging.getLogger('quizvoice.recording_mode')
        self._state_lock = threading.Lock()
        self._recording_active = False
        self._recording_start_time = 0.0
        self._force_exit_in_progress = False
        self.state_callbacks: List[Callable[[bool], None]] = []

    def register_state_callback(self, callback: Callable[[bool], None]) -> None:
        """Register a callback for mode changes: callback(recording_active)"""
        self.state_callbacks.append(callback)

    def _emit_state(self, active: bool) -> None:
        for callback in self.state_callbacks:
            try:
                callback(active)
            except Exception as e:
                self.logger.error(f"Error in recording mode callback: {e}")

    async def enter(self) -> None:
        self._set_recording(True)

    async def exit(self) -> None:
        with self._state_lock:
            if self._force_exit_in_progress:
                return
        self._set_recording(False)

    async def force_exit(self) -> None:
        """Leave recording mode unconditionally"""
        with self._state_lock:
            self._force_exit_in_progress = True
        try:
            self._set_recording(False, force=True)
        finally:
            with self._state_lock:
                self._force_exit_in_progress = False

    def _set_recording(self, active: bool, force: bool = False) -> None:
        with self._state_lock:
            changed = self._recording_active != active
            self._recording_active = active
            self._recording_start_time = time.monotonic() if active else 0.0

        if changed or force:
            self.logger.debug("Recording mode %s%s", "entered" if active else "exited",
                              " (forced)" if force else "")
            self._emit_state(active)

    @property
    def recording_active(self) -> bool:
        with self._state_lock:
            return self._recording_active

    def status(self) -> dict:
        """Current mode and how long it has been active"""
        with self._state_lock:
            active = self._recording_active
            started = self._recording_start_time

        duration_ms = (time.monotonic() - started) * 1000.0 if active and started else 0.0
        return {
            "recording_active": active,
            "recording_duration_ms": duration_ms,
        }
