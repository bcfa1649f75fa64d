"""
Scripted capture engine

Replays a fixed list of recognition events after start(). Used by the
console demo and as a deterministic engine in tests.

Script format (one dict per step, delays relative to the previous step):
    - {type: volume, after_ms: 50, level: 4}
    - {type: result, after_ms: 200, transcript: "what is the", final: false}
    - {type: result, after_ms: 200, transcript: "what is the capital", final: true}
    - {type: error, after_ms: 100, code: "network", message: "offline"}
    - {type: end, after_ms: 100}
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional

from ..logging_setup import session_logger
from .engine import EngineConfig, EngineEventSink
from .events import EventType


@dataclass(frozen=True)
class ScriptStep:
    """One scripted engine callback"""
    type: EventType
    after_ms: int = 0
    transcript: str = ""
    final: bool = False
    code: str = "unknown"
    message: str = ""
    level: float = 0.0

    @classmethod
    def from_dict(cls, data: dict) -> "ScriptStep":
        return cls(
            type=EventType(str(data.get('type', 'end')).lower()),
            after_ms=int(data.get('after_ms', 0)),
            transcript=str(data.get('transcript', '')),
            final=bool(data.get('final', False)),
            code=str(data.get('code', 'unknown')),
            message=str(data.get('message', '')),
            level=float(data.get('level', 0.0)),
        )


class ScriptedCaptureEngine:
    """
    In-process CaptureEngine implementation

    Behaves like a single device-wide recognizer: starting again while a
    script is playing abandons the old playback. Callbacks always go to the
    sink passed to the start() that produced them.
    """

    def __init__(
        self,
        script: Optional[Iterable[Any]] = None,
        end_delay_ms: int = 0,
        hang_on_stop: bool = False,
        fail_on_start: bool = False,
    ):
        self.script: List[ScriptStep] = [
            step if isinstance(step, ScriptStep) else ScriptStep.from_dict(step)
            for step in (script or [])
        ]
        self.end_delay_ms = end_delay_ms
        self.hang_on_stop = hang_on_stop
        self.fail_on_start = fail_on_start
        self.logger = logging.getLogger('quizvoice.engine.scripted')

        self.start_calls: List[EngineConfig] = []
        self.stop_calls = 0
        self._sink: Optional[EngineEventSink] = None
        self._playback: Optional[asyncio.Task] = None
        self._ended = True

    @classmethod
    def from_config(cls, engine_config: Optional[dict]) -> "ScriptedCaptureEngine":
        engine_config = engine_config or {}
        return cls(
            script=engine_config.get('script') or [],
            end_delay_ms=int(engine_config.get('end_delay_ms', 0)),
            hang_on_stop=bool(engine_config.get('hang_on_stop', False)),
            fail_on_start=bool(engine_config.get('fail_on_start', False)),
        )

    @property
    def is_running(self) -> bool:
        return not self._ended

    async def start(self, config: EngineConfig, sink: EngineEventSink) -> None:
        self.start_calls.append(config)
        if self.fail_on_start:
            raise RuntimeError("scripted engine configured to fail on start")

        self._cancel_playback()
        self._sink = sink
        self._ended = False
        self._playback = asyncio.create_task(
            self._play(sink), name=f"scripted_engine_{sink.session_id}"
        )

    async def stop(self) -> None:
        self.stop_calls += 1
        if self.hang_on_stop:
            # Never acknowledges; the caller's timeout has to win
            await asyncio.Event().wait()

        self._cancel_playback()
        if self._ended or self._sink is None:
            return

        sink = self._sink
        self._ended = True
        if self.end_delay_ms:
            asyncio.get_running_loop().call_later(self.end_delay_ms / 1000.0, sink.on_end)
        else:
            sink.on_end()

    async def _play(self, sink: EngineEventSink) -> None:
        for step in self.script:
            if step.after_ms:
                await asyncio.sleep(step.after_ms / 1000.0)

            session_logger(self.logger, sink.session_id).debug("Scripted %s", step.type.value)
            if step.type == EventType.RESULT:
                sink.on_result(step.transcript, step.final)
            elif step.type == EventType.ERROR:
                sink.on_error(step.code, step.message)
            elif step.type == EventType.VOLUME:
                sink.on_volume(step.level)
            elif step.type == EventType.END:
                if sink is self._sink:
                    self._ended = True
                sink.on_end()
                return

    def _cancel_playback(self) -> None:
        if self._playback is not None and not self._playback.done():
            self._playback.cancel()
        self._playback = None
