"""
Voice Session Manager

Drives the speech-recognition engine through start/stop cycles and
reconciles everything that can end a capture: final results, engine
errors, engine completion, caller-initiated stop, timeouts and teardown.

Every start allocates a new session id. Engine events are tagged with the
id of the session they were produced for, and the single dispatcher loop
discards any event whose id is not the current one before it can touch
state. There are no locks: all mutation happens on the event loop thread,
the only hazard is async reordering.

Usage:
    manager = VoiceSessionManager(
        adapter=CaptureEngineAdapter(engine, pubsub),
        permission_gate=PermissionGate(backend),
        on_result=handle_transcript,
    )

    async with manager:
        await manager.start()
        ...
        manager.stop()
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Coroutine, List, Optional

from ..config import VoiceSettings
from ..logging_setup import SessionLoggerAdapter, is_event_tracing_enabled, session_logger
from .cleanup import CleanupCoordinator
from .engine import CaptureEngineAdapter, CaptureEngineError, EngineConfig, normalize_volume
from .events import Event, EventType
from .permissions import PermissionGate
from .ports import DiagnosticsSink, RecordingModeNotifier


class RecordingState(str, Enum):
    """
    Observable recording state

    State transitions:
    - IDLE → RECORDING (start() with permission and a clean slate)
    - RECORDING → IDLE (final result, or engine end)
    - RECORDING → ERROR (engine error, start failure, stop timeout)
    - IDLE → ERROR (permission denied on start)
    - ERROR → IDLE (force_error_reset(), or the one-shot automatic recovery)
    """
    IDLE = "idle"
    RECORDING = "recording"
    ERROR = "error"


@dataclass
class CaptureSession:
    """One start-to-stop capture attempt"""
    id: int
    started_at: float
    started_wall: datetime
    interim_transcript: str = ""
    reached_recording: bool = False
    finished: bool = False

    @property
    def duration_ms(self) -> float:
        return (time.monotonic() - self.started_at) * 1000.0


class VoiceSessionManager:
    """Session state machine for voice capture"""

    def __init__(
        self,
        adapter: CaptureEngineAdapter,
        permission_gate: PermissionGate,
        on_result: Optional[Callable[[str], None]] = None,
        notifier: Optional[RecordingModeNotifier] = None,
        diagnostics: Optional[DiagnosticsSink] = None,
        settings: Optional[VoiceSettings] = None,
    ):
        """
        Initialize the session manager

        Args:
            adapter: Capture engine adapter (owns the engine handle)
            permission_gate: Microphone permission gate
            on_result: Called with every finalized transcript
            notifier: Recording-mode coordinator (audio ducking)
            diagnostics: Structured lifecycle log
            settings: Timing and recognizer options
        """
        self.adapter = adapter
        self.pubsub = adapter.pubsub
        self.permission_gate = permission_gate
        self.notifier = notifier
        self.diagnostics = diagnostics
        self.settings = settings or VoiceSettings()
        self.logger = logging.getLogger('quizvoice.session')

        self.result_callbacks: List[Callable[[str], None]] = []
        if on_result is not None:
            self.result_callbacks.append(on_result)
        self.state_callbacks: List[Callable[[RecordingState], None]] = []
        self.volume_callbacks: List[Callable[[float], None]] = []

        self.cleanup_coordinator = CleanupCoordinator(self)

        # State (event loop thread only)
        self._state = RecordingState.IDLE
        self._session_counter = 0
        self._current: Optional[CaptureSession] = None
        self._recording_active = False
        self._start_pending = False
        self._pending_stop: Optional[asyncio.TimerHandle] = None
        self._volume_level = 0.0
        self._closed = False

        self._recovery_task: Optional[asyncio.Task] = None
        self._event_processor_task: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------
    @property
    def state(self) -> RecordingState:
        return self._state

    @property
    def volume_level(self) -> float:
        return self._volume_level

    @property
    def current_session(self) -> Optional[CaptureSession]:
        return self._current

    @property
    def current_session_id(self) -> int:
        return self._current.id if self._current else 0

    @property
    def is_recording_active(self) -> bool:
        return self._recording_active

    @property
    def interim_transcript(self) -> str:
        return self._current.interim_transcript if self._current else ""

    @property
    def has_pending_stop(self) -> bool:
        return self._pending_stop is not None

    def register_result_callback(self, callback: Callable[[str], None]) -> None:
        self.result_callbacks.append(callback)

    def register_state_callback(self, callback: Callable[[RecordingState], None]) -> None:
        """Register a callback for state changes: callback(state)"""
        self.state_callbacks.append(callback)

    def register_volume_callback(self, callback: Callable[[float], None]) -> None:
        self.volume_callbacks.append(callback)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def open(self) -> None:
        """Bind the pubsub to the running loop and start the dispatcher."""
        if self._event_processor_task is not None:
            return

        self._closed = False
        self.pubsub.set_event_loop(asyncio.get_running_loop())
        queue = self.pubsub.subscribe()
        self._event_processor_task = asyncio.create_task(
            self._event_processor(queue),
            name="voice_event_processor"
        )

    async def close(self) -> None:
        """Component teardown: clean up once and stop dispatching."""
        if self._closed:
            return

        self._log(self.current_session_id).info("Voice session manager closing")
        teardown = self.cleanup("component teardown")
        self._closed = True
        self._cancel_recovery()

        if self._state == RecordingState.RECORDING:
            self._set_state(RecordingState.IDLE)

        try:
            await teardown
        except Exception as e:
            self.logger.warning(f"Teardown cleanup failed: {e}")

        if self._event_processor_task:
            self._event_processor_task.cancel()
            try:
                await self._event_processor_task
            except asyncio.CancelledError:
                pass
            self._event_processor_task = None

        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self.pubsub.set_event_loop(None)

    async def __aenter__(self) -> "VoiceSessionManager":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Caller operations
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Start a new capture session (no-op unless idle)"""
        if self._closed:
            self.logger.warning("start() called after close, ignoring")
            return

        if self._state != RecordingState.IDLE or self._recording_active or self._start_pending:
            self._log(self.current_session_id).info(
                "Already recording or in %s state, ignoring start", self._state.value
            )
            return

        self._start_pending = True
        try:
            await self._start_session()
        finally:
            self._start_pending = False

    async def _start_session(self) -> None:
        self._session_counter += 1
        session = CaptureSession(
            id=self._session_counter,
            started_at=time.monotonic(),
            started_wall=datetime.now(),
        )
        self._current = session
        session_id = session.id

        self.log_diagnostics(session_id, "SESSION_START", {"started_at": session.started_wall.isoformat()})
        self.log_diagnostics(session_id, "START_RECORDING_CALLED", {
            "has_permission": self.permission_gate.has_permission,
            "recording_state": self._state.value,
        })

        # Permission
        if not self.permission_gate.has_permission:
            self.log_diagnostics(session_id, "PERMISSION_RECHECK_START")
        granted = await self.permission_gate.ensure_granted(session_id)
        if not self._is_current(session_id):
            self._log(session_id).info("Session superseded during permission check")
            return
        if not granted:
            self._log(session_id).warning("No microphone permission after recheck")
            self._record_failure(session_id, "No microphone permission after recheck")
            self._set_state(RecordingState.ERROR)
            return

        # Clean slate
        await self.cleanup(f"pre-recording cleanup for session {session_id}")
        if not self._is_current(session_id):
            self._log(session_id).info("Session superseded during pre-recording cleanup")
            return

        self._log(session_id).info("Setting recording state to recording")
        self._recording_active = True
        session.reached_recording = True
        session.interim_transcript = ""
        self._set_state(RecordingState.RECORDING)
        if self.notifier is not None:
            self.spawn(self._enter_recording_mode(session_id), name=f"recording_mode_{session_id}")

        try:
            await self.adapter.start(session_id, self._engine_config())
        except CaptureEngineError as e:
            self._log(session_id).error(f"Failed to start recording: {e}")
            if not self._is_current(session_id):
                return
            self._record_failure(session_id, f"Failed to start recording: {e}")
            self._finish_session(session, success=False)
            teardown = self.cleanup(f"start recording error for session {session_id}")
            self._set_state(RecordingState.ERROR)
            await teardown
            return

        if not self._is_current(session_id) or not self._recording_active:
            # Teardown ran while the start was in flight and found nothing to stop
            await self._release_orphaned_engine(session_id)
            return

        self.log_diagnostics(session_id, "ENGINE_STARTED")
        self._log(session_id).info("Speech recognition started successfully")

    async def _release_orphaned_engine(self, session_id: int) -> None:
        log = self._log(session_id)
        log.info("Session torn down while the engine was starting, stopping it")
        self.log_diagnostics(session_id, "ENGINE_STARTED_AFTER_TEARDOWN")
        try:
            await self.adapter.stop(session_id, self.settings.stop_timeout_s)
        except CaptureEngineError as e:
            log.warning(f"Failed to stop orphaned speech recognition: {e}")

    def stop(self) -> None:
        """
        Request a stop after the grace delay

        Repeated calls within the grace window re-arm the timer from the
        latest call instead of stacking stop attempts.
        """
        session_id = self.current_session_id
        if not self._recording_active:
            self._log(session_id).info("Not currently recording, ignoring stop call")
            return

        self.cancel_pending_stop()

        loop = asyncio.get_running_loop()
        self._log(session_id).info(
            "Stopping in %dms to capture final words", self.settings.stop_grace_ms
        )
        self._pending_stop = loop.call_later(
            self.settings.stop_grace_s, self._fire_pending_stop, session_id
        )

    def force_error_reset(self) -> None:
        """Caller-invoked ERROR → IDLE transition"""
        if self._state != RecordingState.ERROR:
            return
        self._log(self.current_session_id).info("Manual reset from error state")
        self.cleanup("force error reset")
        self._set_state(RecordingState.IDLE)

    def cleanup(self, reason: str):
        """Run the cleanup coordinator; returns an awaitable for completion."""
        return self.cleanup_coordinator.run(reason)

    # ------------------------------------------------------------------
    # Delayed stop
    # ------------------------------------------------------------------
    def _fire_pending_stop(self, session_id: int) -> None:
        self.spawn(
            self._run_pending_stop(session_id, self._pending_stop),
            name=f"pending_stop_{session_id}",
        )

    async def _run_pending_stop(self, session_id: int, handle: Optional[asyncio.TimerHandle]) -> None:
        try:
            self._log(session_id).info("Stopping speech recognition after delay")
            await self.adapter.stop(session_id, self.settings.stop_timeout_s)
        except CaptureEngineError as e:
            self._log(session_id).error(f"Failed to stop recording after delay: {e}")
            if not self._is_current(session_id):
                self._log(session_id).debug("Stop failure belongs to a stale session, ignoring")
                return
            self._record_failure(session_id, f"Stop recording error: {e}")
            if self._current is not None:
                self._finish_session(self._current, success=False)
            self.cleanup(f"stop recording error for session {session_id}")
            self._set_state(RecordingState.ERROR)
        else:
            self.log_diagnostics(session_id, "ENGINE_STOPPED")
            self._log(session_id).info("Recording stopped successfully")
        finally:
            if self._pending_stop is handle:
                self._pending_stop = None

    def cancel_pending_stop(self) -> bool:
        """Cancel the pending stop timer; True if one was armed."""
        handle = self._pending_stop
        if handle is None:
            return False
        handle.cancel()
        self._pending_stop = None
        return True

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------
    async def _event_processor(self, queue: "asyncio.Queue[Event]") -> None:
        """Single consumer of engine events"""
        self.logger.debug("Event processor started")

        async for event in self.pubsub.poll(queue):
            if is_event_tracing_enabled():
                self._log(event.session_id).info("Event received: %s %s", event.type.value, event.data)
            try:
                self.process_event(event)
            except Exception as e:
                self._log(event.session_id).exception(f"Error handling event {event.type.value}: {e}")

    def process_event(self, event: Event) -> bool:
        """
        Apply one engine event

        Returns:
            False if the event was discarded as stale
        """
        session = self._current
        if self._closed or session is None or event.session_id != session.id:
            self._log(event.session_id).debug(
                "Discarding stale %s event (current session: %s)", event.type.value, self.current_session_id
            )
            self.log_diagnostics(event.session_id, "STALE_EVENT_DISCARDED", {
                "event_type": event.type.value,
                "current_session": self.current_session_id,
            })
            return False

        if event.type == EventType.RESULT:
            self._handle_result(session, event.data.get("transcript", ""), bool(event.data.get("is_final")))
        elif event.type == EventType.ERROR:
            self._handle_error(session, event.data.get("code", "unknown"), event.data.get("message", ""))
        elif event.type == EventType.END:
            self._handle_end(session)
        elif event.type == EventType.VOLUME:
            self._handle_volume(event.data.get("level", 0.0))
        return True

    def _handle_result(self, session: CaptureSession, transcript: str, is_final: bool) -> None:
        if not self._recording_active:
            self._log(session.id).debug("Result after teardown ignored: %r", transcript)
            return

        if not transcript.strip():
            return

        if is_final:
            self._log(session.id).info("Final result received, processing: %s", transcript)
            session.interim_transcript = ""
            self._deliver_result(session, transcript)
            self._finish_session(session, success=True)
            self.cleanup("result processed")
            self._set_state(RecordingState.IDLE)
        else:
            self._log(session.id).debug("Interim result: %s", transcript)
            session.interim_transcript = transcript

    def _handle_error(self, session: CaptureSession, code: str, message: str) -> None:
        if not self._recording_active and self._state != RecordingState.RECORDING:
            self._log(session.id).info("Engine error after teardown ignored: %s", code)
            return

        self._log(session.id).error(f"Speech recognition error: {code} {message}".rstrip())
        self._record_failure(session.id, f"Speech recognition error: {code}", message or None)
        self._finish_session(session, success=False)
        self._set_state(RecordingState.ERROR)
        self.cleanup("speech recognition error")

    def _handle_end(self, session: CaptureSession) -> None:
        was_recording = self._state == RecordingState.RECORDING
        self.log_diagnostics(session.id, "SPEECH_RECOGNITION_ENDED", {
            "last_interim_result": session.interim_transcript,
            "was_recording": was_recording,
            "duration_ms": round(session.duration_ms),
        })

        if not was_recording:
            self._log(session.id).debug("Speech recognition ended (already %s)", self._state.value)
            return

        self._log(session.id).info("Speech recognition ended")
        success = False
        interim = session.interim_transcript
        if interim.strip():
            self._log(session.id).info("Using interim result as final: %s", interim)
            session.interim_transcript = ""
            self._deliver_result(session, interim)
            success = True

        self._finish_session(session, success=success)
        self._set_state(RecordingState.IDLE)
        self.cleanup("speech recognition ended")

    def _handle_volume(self, level: Any) -> None:
        if not self._recording_active:
            return
        self._set_volume(normalize_volume(level))

    # ------------------------------------------------------------------
    # Cleanup hooks
    # ------------------------------------------------------------------
    def release_recording_guard(self) -> bool:
        """Clear the recording guard; True if it was set."""
        was_recording = self._recording_active
        self._recording_active = False
        return was_recording

    def reset_capture_buffers(self, session: Optional[CaptureSession]) -> None:
        if session is not None:
            session.interim_transcript = ""
        if not self._recording_active:
            self._set_volume(0.0)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
        """Run a coroutine in the background, keeping a reference until done."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.logger.error(f"Background task {task.get_name()} failed: {exc!r}")

    def log_diagnostics(self, session_id: int, event: str, data: Optional[dict] = None) -> None:
        if self.diagnostics is None:
            return
        try:
            self.diagnostics.log(session_id, event, data)
        except Exception as e:
            self.logger.warning(f"Diagnostics sink failed for {event}: {e}")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _log(self, session_id: int) -> SessionLoggerAdapter:
        return session_logger(self.logger, session_id)

    def _is_current(self, session_id: int) -> bool:
        return not self._closed and self._current is not None and self._current.id == session_id

    def _engine_config(self) -> EngineConfig:
        return EngineConfig(
            language=self.settings.language,
            interim_results=self.settings.interim_results,
            continuous=self.settings.continuous,
            max_results=self.settings.max_results,
            timeout_ms=self.settings.speech_timeout_ms,
        )

    async def _enter_recording_mode(self, session_id: int) -> None:
        try:
            await self.notifier.enter()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log(session_id).warning(f"Failed to enter recording mode: {e}")

    def _deliver_result(self, session: CaptureSession, transcript: str) -> None:
        self.log_diagnostics(session.id, "VOICE_RESULT_PROCESSED", {
            "transcript": transcript,
            "word_count": len(transcript.split()),
        })
        for callback in self.result_callbacks:
            try:
                callback(transcript)
            except Exception as e:
                self._log(session.id).error(f"Error in result callback: {e}")

    def _finish_session(self, session: CaptureSession, success: bool) -> None:
        if session.finished or not session.reached_recording:
            return
        session.finished = True
        self.log_diagnostics(
            session.id,
            "SESSION_SUCCESS" if success else "SESSION_FAILURE",
            {"duration_ms": round(session.duration_ms)},
        )

    def _record_failure(self, session_id: int, reason: str, error: Any = None) -> None:
        data = {"reason": reason}
        if error is not None:
            data["error"] = str(error)
        self.log_diagnostics(session_id, "FAILURE", data)

    def _set_state(self, state: RecordingState) -> None:
        if state == self._state:
            return

        old_state = self._state
        self._state = state
        self._log(self.current_session_id).debug("State transition: %s -> %s", old_state.value, state.value)

        if state == RecordingState.ERROR:
            self._schedule_recovery()
        elif old_state == RecordingState.ERROR:
            self._cancel_recovery()

        for callback in self.state_callbacks:
            try:
                callback(state)
            except Exception as e:
                self.logger.error(f"Error in state callback: {e}")

    def _set_volume(self, level: float) -> None:
        if level == self._volume_level:
            return
        self._volume_level = level
        for callback in self.volume_callbacks:
            try:
                callback(level)
            except Exception as e:
                self.logger.error(f"Error in volume callback: {e}")

    # ------------------------------------------------------------------
    # Error recovery
    # ------------------------------------------------------------------
    def _schedule_recovery(self) -> None:
        if not self.settings.auto_recover or self._closed:
            return
        self._cancel_recovery()
        self._recovery_task = self.spawn(
            self._recover_from_error(self.current_session_id),
            name=f"error_recovery_{self.current_session_id}",
        )

    def _cancel_recovery(self) -> None:
        task = self._recovery_task
        self._recovery_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _recover_from_error(self, session_id: int) -> None:
        """Single-shot self-heal: re-check permission, then leave ERROR"""
        await asyncio.sleep(self.settings.recovery_delay_s)
        self._log(session_id).info("Attempting automatic recovery from error...")

        granted = await self.permission_gate.ensure_granted(session_id, force_refresh=True)
        if self._recovery_task is asyncio.current_task():
            self._recovery_task = None

        if self._state != RecordingState.ERROR:
            return
        if granted:
            self._log(session_id).info("Automatic recovery successful")
            self._set_state(RecordingState.IDLE)
        else:
            self._log(session_id).warning("Automatic recovery failed: microphone permission unavailable")
