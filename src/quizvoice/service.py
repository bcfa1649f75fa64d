#!/usr/bin/env python3
"""
QuizVoice Service - voice answer capture for the quiz client
Runs the voice session manager on its own event loop and exposes a
thread-safe facade to the UI thread.
"""

import asyncio
import json
import logging
import sys
import threading
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Callable, Coroutine, List, Optional

from . import logging_setup
from .config import VoiceSettings, load_config
from .voice import (
    CaptureEngineAdapter,
    EventPubSub,
    PermissionGate,
    RecordingModeManager,
    RecordingState,
    ScriptedCaptureEngine,
    SounddevicePermissionBackend,
    VoiceDiagnostics,
    VoiceSessionManager,
)
from .voice.ports import CaptureEngine, PermissionBackend


class VoiceInputService:
    """Main service class for QuizVoice"""

    def __init__(
        self,
        config_path: Optional[str] = None,
        engine: Optional[CaptureEngine] = None,
        permission_backend: Optional[PermissionBackend] = None,
    ):
        """
        Initialize the service

        Args:
            config_path: YAML config file (defaults when missing)
            engine: Capture engine override (default: from the engine config section)
            permission_backend: Permission backend override (default: sounddevice)
        """
        self.config_path = config_path
        self.config = load_config(config_path)
        self.logging_state: Optional[logging_setup.LoggingState] = None
        self.run_dir: Optional[Path] = None
        self.setup_logging()

        self.logger.info("QuizVoice Service initializing...")

        self.settings = VoiceSettings.from_config(self.config)

        # Components
        self.pubsub = EventPubSub()
        self.diagnostics = VoiceDiagnostics(max_entries=self.settings.diagnostics_max_entries)
        self.recording_mode = RecordingModeManager()
        self.engine = engine or self._build_engine()
        self.permission_gate = PermissionGate(
            permission_backend or SounddevicePermissionBackend(),
            diagnostics=self.diagnostics,
        )
        self.session_manager = VoiceSessionManager(
            adapter=CaptureEngineAdapter(self.engine, self.pubsub),
            permission_gate=self.permission_gate,
            on_result=self._emit_result,
            notifier=self.recording_mode,
            diagnostics=self.diagnostics,
            settings=self.settings,
        )
        self.session_manager.register_state_callback(self._emit_state)

        # State change callbacks
        self.state_callbacks: List[Callable[[str], None]] = []
        self.result_callbacks: List[Callable[[str], None]] = []

        # Event loop thread
        self.voice_session_loop: Optional[asyncio.AbstractEventLoop] = None
        self.voice_session_thread: Optional[threading.Thread] = None
        self._loop_ready = threading.Event()
        self.running = False

    def setup_logging(self) -> None:
        """Bootstrap logging configuration."""
        state = logging_setup.bootstrap_logging(self.config)
        self.logging_state = state
        self.run_dir = state.run_dir

        self.logger = logging.getLogger('quizvoice.service')
        self.logger.info(
            "Logging initialized (run_dir=%s, structured=%s)",
            state.run_dir,
            state.structured,
        )

    def _build_engine(self) -> CaptureEngine:
        engine_cfg = self.config.get('engine', {}) or {}
        engine_type = str(engine_cfg.get('type', 'scripted')).lower()

        if engine_type == 'scripted':
            engine = ScriptedCaptureEngine.from_config(engine_cfg)
            self.logger.info("Using scripted capture engine (%d steps)", len(engine.script))
            return engine

        raise ValueError(f"Unknown capture engine type: {engine_type}")

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------
    def register_state_callback(self, callback: Callable[[str], None]) -> None:
        """Register a callback for state changes: callback(state: str)"""
        self.state_callbacks.append(callback)

    def register_result_callback(self, callback: Callable[[str], None]) -> None:
        """Register a callback for finalized transcripts: callback(text: str)"""
        self.result_callbacks.append(callback)

    def _emit_state(self, state: RecordingState) -> None:
        """Emit state change to all callbacks"""
        for callback in self.state_callbacks:
            try:
                callback(state.value)
            except Exception as e:
                self.logger.error(f"Error in state callback: {e}")

    def _emit_result(self, text: str) -> None:
        for callback in self.result_callbacks:
            try:
                callback(text)
            except Exception as e:
                self.logger.error(f"Error in result callback: {e}")

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------
    @property
    def state(self) -> RecordingState:
        return self.session_manager.state

    @property
    def volume_level(self) -> float:
        return self.session_manager.volume_level

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start_service(self, timeout: float = 5.0) -> None:
        """Start the voice session loop in a background thread"""
        if self.running:
            return

        def run_voice_session():
            """Run the session manager in a dedicated asyncio loop"""
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
            self.voice_session_loop = loop

            try:
                loop.run_until_complete(self.session_manager.open())
                loop.call_soon(self._loop_ready.set)
                loop.run_forever()
            except Exception as e:
                self.logger.error(f"Voice session loop crashed: {e}", exc_info=True)
            finally:
                self.voice_session_loop = None
                loop.close()
                self._loop_ready.set()
                self.logger.info("Voice session loop closed")

        self._loop_ready.clear()
        self.voice_session_thread = threading.Thread(
            target=run_voice_session,
            daemon=True,
            name="VoiceSessionThread"
        )
        self.voice_session_thread.start()

        if not self._loop_ready.wait(timeout):
            raise RuntimeError("Voice session loop did not start in time")
        if self.voice_session_loop is None:
            raise RuntimeError("Voice session loop failed to start")
        self.running = True
        self.logger.info("QuizVoice Service started")

    def shutdown(self, timeout: float = 5.0) -> None:
        """Tear down the session manager and stop the loop thread"""
        if not self.running:
            return

        self.logger.info("QuizVoice Service stopping...")
        self.running = False
        loop = self.voice_session_loop

        if loop and loop.is_running():
            future = asyncio.run_coroutine_threadsafe(self.session_manager.close(), loop)
            try:
                future.result(timeout)
            except Exception as e:
                self.logger.error(f"Error closing voice session: {e}")
            loop.call_soon_threadsafe(loop.stop)

        if self.voice_session_thread:
            self.voice_session_thread.join(timeout)
            self.voice_session_thread = None

        self._write_status_file()
        self.logger.info("QuizVoice Service stopped")

    def __enter__(self) -> "VoiceInputService":
        self.start_service()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    # ------------------------------------------------------------------
    # Thread-safe operations
    # ------------------------------------------------------------------
    def _submit(self, coro: Coroutine[Any, Any, Any]) -> Future:
        loop = self.voice_session_loop
        if not self.running or loop is None or not loop.is_running():
            coro.close()
            raise RuntimeError("Voice service is not running")
        return asyncio.run_coroutine_threadsafe(coro, loop)

    def start(self) -> Future:
        """Request a new capture session"""
        return self._submit(self.session_manager.start())

    def stop(self) -> Future:
        """Request a stop after the grace delay"""
        return self._submit(self._call(self.session_manager.stop))

    def toggle(self) -> Future:
        """Start when idle, stop while recording"""
        return self._submit(self._toggle())

    def force_error_reset(self) -> Future:
        return self._submit(self._call(self.session_manager.force_error_reset))

    async def _call(self, fn: Callable[[], None]) -> None:
        fn()

    async def _toggle(self) -> None:
        if self.session_manager.is_recording_active:
            self.logger.debug("Toggle: stopping")
            self.session_manager.stop()
        else:
            self.logger.debug("Toggle: starting")
            await self.session_manager.start()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    def status(self) -> dict:
        return {
            "state": self.state.value,
            "volume_level": self.volume_level,
            "recording_mode": self.recording_mode.status(),
            "permission": self.permission_gate.status.value,
            "health": self.diagnostics.health_check().to_dict(),
            "diagnostics": self.diagnostics.summary(),
        }

    def _write_status_file(self) -> None:
        """Write diagnostics health to JSON file"""
        if not self.run_dir:
            return

        try:
            status_file = self.run_dir / "status.json"

            with open(status_file, 'w', encoding='utf-8') as f:
                json.dump(self.status(), f, indent=2, default=str)

            self.logger.debug(f"Status file written: {status_file}")

        except Exception as e:
            self.logger.warning(f"Failed to write status file: {e}")


def run_console(service: VoiceInputService) -> None:
    """Interactive console loop"""
    print("QuizVoice console - ENTER: start/stop, r: reset, d: diagnostics, q: quit")

    service.register_state_callback(lambda state: print(f"[state] {state}"))
    service.register_result_callback(lambda text: print(f"[answer] {text}"))

    while True:
        try:
            command = input().strip().lower()
        except (EOFError, KeyboardInterrupt):
            break

        if command == 'q':
            break
        elif command == 'r':
            service.force_error_reset()
        elif command == 'd':
            print(json.dumps(service.diagnostics.summary(), indent=2, default=str))
        elif command == '':
            service.toggle()
        else:
            print(f"Unknown command: {command}")


def main():
    """Main entry point"""
    # Get config path from args or use default
    config_path = sys.argv[1] if len(sys.argv) > 1 else "config.yaml"

    service = VoiceInputService(config_path)
    service.start_service()
    try:
        run_console(service)
    finally:
        service.shutdown()


if __name__ == "__main__":
    main()
