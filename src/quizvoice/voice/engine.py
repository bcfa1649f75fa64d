"""
Capture Engine Adapter

Local wrapper around the platform speech-recognition engine. Issues
start/stop commands with failure containment and turns engine callbacks
into session-tagged events on the pubsub channel.
"""

import asyncio
import logging
from dataclasses import dataclass, asdict
from typing import Optional

import numpy as np

from ..logging_setup import TimingContext, session_logger
from .events import Event, EventPubSub
from .ports import CaptureEngine


class CaptureEngineError(Exception):
    """Base class for capture engine failures"""


class EngineStartFailure(CaptureEngineError):
    """The engine refused or failed to start"""


class EngineStopTimeout(CaptureEngineError):
    """The engine did not acknowledge stop in time and is presumed wedged"""


@dataclass(frozen=True)
class EngineConfig:
    """Recognizer options passed to the engine on start"""
    language: str = 'en-US'
    interim_results: bool = True
    continuous: bool = False
    max_results: int = 1
    timeout_ms: int = 30000

    def to_dict(self) -> dict:
        return asdict(self)


def normalize_volume(level: float) -> float:
    """Map the engine's volume scale (about -2..10) onto 0..1"""
    try:
        value = float(level)
    except (TypeError, ValueError):
        return 0.0
    if not np.isfinite(value):
        return 0.0
    return float(np.clip((value + 2.0) / 12.0, 0.0, 1.0))


class EngineEventSink:
    """
    Per-session receiver for engine callbacks

    One sink is created for every engine start, so callbacks that arrive
    late from an earlier run still carry that run's session id. Safe to
    call from any thread.
    """

    def __init__(self, session_id: int, pubsub: EventPubSub):
        self.session_id = session_id
        self._pubsub = pubsub

    def on_result(self, transcript: str, is_final: bool) -> None:
        self._pubsub.publish_nowait(Event.result(self.session_id, transcript or "", bool(is_final)))

    def on_error(self, code: str, message: str = "") -> None:
        self._pubsub.publish_nowait(Event.error(self.session_id, str(code), message))

    def on_end(self) -> None:
        self._pubsub.publish_nowait(Event.end(self.session_id))

    def on_volume(self, level: float) -> None:
        self._pubsub.publish_nowait(Event.volume(self.session_id, level))


class CaptureEngineAdapter:
    """Issues start/stop to the engine and wires its callbacks to the pubsub."""

    def __init__(self, engine: CaptureEngine, pubsub: EventPubSub, slow_call_ms: float = 500.0):
        self.engine = engine
        self.pubsub = pubsub
        self.slow_call_ms = slow_call_ms
        self.logger = logging.getLogger('quizvoice.engine')
        self.started_session_id: Optional[int] = None

    async def start(self, session_id: int, config: EngineConfig) -> None:
        """
        Start the engine for ``session_id``

        Raises:
            EngineStartFailure: wrapping whatever the engine raised
        """
        sink = EngineEventSink(session_id, self.pubsub)
        log = session_logger(self.logger, session_id)
        log.info("Starting speech recognition (%s)", config.language)

        try:
            with TimingContext(log, "engine start", warn_threshold_ms=self.slow_call_ms, log_level=logging.WARNING):
                await self.engine.start(config, sink)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise EngineStartFailure(f"Failed to start speech recognition: {e}") from e

        self.started_session_id = session_id

    async def stop(self, session_id: int, timeout_s: float) -> None:
        """
        Stop the engine, giving up after ``timeout_s``

        Raises:
            EngineStopTimeout: the engine did not answer in time
            CaptureEngineError: the engine raised while stopping
        """
        log = session_logger(self.logger, session_id)
        log.info("Stopping speech recognition (timeout %.1fs)", timeout_s)
        if self.started_session_id == session_id:
            self.started_session_id = None

        try:
            with TimingContext(log, "engine stop", warn_threshold_ms=self.slow_call_ms, log_level=logging.WARNING):
                await asyncio.wait_for(self.engine.stop(), timeout=timeout_s)
        except asyncio.TimeoutError as e:
            raise EngineStopTimeout(f"Stop operation timeout after {timeout_s:.1f}s") from e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise CaptureEngineError(f"Failed to stop speech recognition: {e}") from e
