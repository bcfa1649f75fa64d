"""
Cleanup Coordinator

Single teardown routine shared by every terminal trigger: explicit stop,
engine error, engine end and component teardown. Reentrant calls while a
teardown is running are no-ops that hand back the running teardown.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Optional

from ..logging_setup import session_logger
from .engine import CaptureEngineError

if TYPE_CHECKING:
    from .session_manager import CaptureSession, VoiceSessionManager


class CleanupCoordinator:
    """
    Idempotent, reentrancy-guarded teardown

    Steps 1-2 (cancel the pending stop timer, clear the recording guard)
    run synchronously inside ``run()``; engine stop, recording-mode exit,
    buffer reset and the completion log finish in a background task.
    Every step is fault tolerant: failures are logged, never raised.
    """

    def __init__(self, owner: "VoiceSessionManager"):
        self.owner = owner
        self.logger = logging.getLogger('quizvoice.cleanup')
        self._in_progress = False
        self._current: Optional[asyncio.Task] = None
        self.completed_count = 0

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    def run(self, reason: str) -> Awaitable[None]:
        """
        Start a teardown and return an awaitable for its completion

        If a teardown is already running this returns immediately with
        that teardown's task. Code running inside the teardown itself
        (e.g. a recording-mode listener) must not await the result.
        """
        if self._in_progress and self._current is not None:
            self.logger.debug("Cleanup already in progress, skipping (reason: %s)", reason)
            return self._current

        self._in_progress = True
        session = self.owner.current_session
        session_id = session.id if session else 0
        log = session_logger(self.logger, session_id)
        log.info("Starting full cleanup - reason: %s", reason)

        was_recording = False
        try:
            # 1. Pending delayed stop
            if self.owner.cancel_pending_stop():
                log.debug("Cleared pending stop timer")
            # 2. Recording guard
            was_recording = self.owner.release_recording_guard()
        except Exception as e:
            log.error(f"Cleanup error while resetting guards: {e}")

        self._current = self.owner.spawn(
            self._finish(session, reason, was_recording),
            name=f"cleanup_{session_id}",
        )
        return self._current

    async def _finish(self, session: Optional["CaptureSession"], reason: str, was_recording: bool) -> None:
        session_id = session.id if session else 0
        log = session_logger(self.logger, session_id)
        engine_stopped = False

        try:
            # 3. Engine (skipped once a stop has been issued)
            if was_recording and self.owner.adapter.started_session_id is not None:
                log.info("Force stopping ongoing recording")
                try:
                    await self.owner.adapter.stop(session_id, self.owner.settings.stop_timeout_s)
                    engine_stopped = True
                except CaptureEngineError as e:
                    log.warning(f"Failed to stop speech recognition gracefully: {e}")

            # 4. Recording mode
            await self._reset_recording_mode(log)

            # 5. Buffers
            try:
                self.owner.reset_capture_buffers(session)
            except Exception as e:
                log.warning(f"Failed to reset capture buffers: {e}")

            # 6. Diagnostics
            self.owner.log_diagnostics(session_id, "CLEANUP_COMPLETE", {
                "reason": reason,
                "was_recording": was_recording,
                "engine_stopped": engine_stopped,
            })
            self.completed_count += 1
            log.info("Cleanup complete (%s)", reason)

        finally:
            self._in_progress = False
            self._current = None

    async def _reset_recording_mode(self, log: logging.LoggerAdapter) -> None:
        """Prefer the notifier's force variant, fall back to a plain exit."""
        notifier = self.owner.notifier
        if notifier is None:
            return

        force_exit = getattr(notifier, 'force_exit', None)
        if callable(force_exit):
            try:
                await force_exit()
                log.debug("Force reset recording mode")
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning(f"Failed to force reset recording mode: {e}")

        try:
            await notifier.exit()
            log.debug("Reset recording mode (fallback)")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(f"Failed to reset recording mode: {e}")
