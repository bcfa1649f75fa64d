"""
Logging bootstrap for the voice service.

Every run writes into its own directory (``logs/run-<timestamp>`` unless
``QUIZVOICE_RUN_DIR`` points elsewhere). Records emitted through a
``SessionLoggerAdapter`` carry the capture session id both as a ``[id]``
message prefix and as a ``session_id`` attribute, which the JSON-lines
handler writes as its own field.
"""

from __future__ import annotations

import json
import logging
import logging.config
import os
import shutil
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, MutableMapping, Optional, Union


_RUN_DIR_ENV = "QUIZVOICE_RUN_DIR"
_TRACE_EVENTS_ENV = "QUIZVOICE_TRACE_EVENTS"

_PLAIN_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_JSON_LOG_NAME = "quizvoice.jsonl"

_CURRENT_STATE: Optional["LoggingState"] = None

LoggerLike = Union[logging.Logger, logging.LoggerAdapter]


@dataclass(slots=True)
class LoggingState:
    """Options resolved by the last ``bootstrap_logging`` call."""

    run_dir: Path
    structured: bool
    trace_events: bool

    @property
    def json_log_path(self) -> Optional[Path]:
        return self.run_dir / _JSON_LOG_NAME if self.structured else None


class SessionLoggerAdapter(logging.LoggerAdapter):
    """Tags every record with the capture session it belongs to."""

    def __init__(self, logger: logging.Logger, session_id: int):
        super().__init__(logger, {"session_id": session_id})

    @property
    def session_id(self) -> int:
        return self.extra["session_id"]

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]):
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return f"[{self.session_id}] {msg}", kwargs


def session_logger(logger: logging.Logger, session_id: int) -> SessionLoggerAdapter:
    return SessionLoggerAdapter(logger, session_id)


class JsonFormatter(logging.Formatter):
    """One JSON object per record; ``session_id`` is included when tagged."""

    def format(self, record: logging.LogRecord) -> str:
        data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "name": record.name,
            "session_id": getattr(record, "session_id", None),
            "message": record.getMessage(),
        }
        if data["session_id"] is None:
            del data["session_id"]

        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            data["stack"] = self.formatStack(record.stack_info)

        return json.dumps(data, ensure_ascii=True)


class TimingContext:
    """
    Times a block and logs how long it took

    With ``warn_threshold_ms`` set, only blocks at least that slow are
    logged. The measurement is kept on ``elapsed_ms`` either way.
    """

    def __init__(
        self,
        logger: LoggerLike,
        label: str,
        *,
        enabled: bool = True,
        warn_threshold_ms: float | None = None,
        log_level: int = logging.INFO,
    ) -> None:
        self._logger = logger
        self._label = label
        self._enabled = enabled
        self._threshold_ms = warn_threshold_ms
        self._level = log_level
        self._started = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "TimingContext":
        if self._enabled:
            self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, exc_tb) -> None:
        if not self._enabled:
            return None

        self.elapsed_ms = (time.perf_counter() - self._started) * 1000.0
        if self._threshold_ms is not None and self.elapsed_ms < self._threshold_ms:
            return None

        outcome = "failed" if exc_type else "completed"
        self._logger.log(self._level, "%s %s in %.2f ms", self._label, outcome, self.elapsed_ms)
        return None


def bootstrap_logging(config: dict[str, Any]) -> LoggingState:
    """Configure root logging from the ``logging`` config section."""

    logging_cfg = config.get("logging", {}) or {}

    level_name = str(logging_cfg.get("level") or "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    state = LoggingState(
        run_dir=ensure_run_directory(int(logging_cfg.get("run_retention", 5))),
        structured=bool(logging_cfg.get("structured", False)),
        trace_events=_env_flag(_TRACE_EVENTS_ENV, logging_cfg.get("trace_events", False)),
    )

    log_file = state.run_dir / Path(logging_cfg.get("log_file") or "quizvoice.log").name
    handlers = _build_handlers(level, log_file, state.json_log_path)

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "plain": {"format": _PLAIN_FORMAT},
            "json": {"()": JsonFormatter},
        },
        "handlers": handlers,
        "root": {"level": level, "handlers": sorted(handlers)},
    })

    global _CURRENT_STATE
    _CURRENT_STATE = state

    logging.getLogger(__name__).debug("Logging initialized in %s", state.run_dir)
    return state


def _build_handlers(level: int, log_file: Path, json_path: Optional[Path]) -> dict[str, Any]:
    handlers: dict[str, Any] = {
        "console": {
            "class": "logging.StreamHandler",
            "level": level,
            "formatter": "plain",
            "stream": "ext://sys.stdout",
        },
        "file": {
            "class": "logging.FileHandler",
            "level": level,
            "formatter": "plain",
            "filename": str(log_file),
            "encoding": "utf-8",
        },
    }
    # The JSON file keeps debug records regardless of the configured level
    if json_path is not None:
        handlers["json"] = {
            "class": "logging.FileHandler",
            "level": "DEBUG",
            "formatter": "json",
            "filename": str(json_path),
            "encoding": "utf-8",
        }
    return handlers


def ensure_run_directory(retention: int) -> Path:
    """Return the directory for this run, creating it and pruning old runs."""

    override = os.environ.get(_RUN_DIR_ENV)
    if override:
        run_dir = Path(override).expanduser().resolve()
        run_dir.mkdir(parents=True, exist_ok=True)
        return run_dir

    base = Path("logs")
    run_dir = base / datetime.now().strftime("run-%Y%m%d-%H%M%S")
    run_dir.mkdir(parents=True, exist_ok=True)
    _prune_runs(base, retention)
    return run_dir


def _prune_runs(base: Path, retention: int) -> None:
    if retention <= 0:
        return
    runs = sorted(p for p in base.glob("run-*") if p.is_dir())
    for stale in runs[:-retention]:
        shutil.rmtree(stale, ignore_errors=True)


def get_current_run_dir() -> Optional[Path]:
    return _CURRENT_STATE.run_dir if _CURRENT_STATE else None


def is_event_tracing_enabled() -> bool:
    """True when every dispatched engine event should be logged."""

    return bool(_CURRENT_STATE and _CURRENT_STATE.trace_events)


def _env_flag(name: str, default: Any) -> bool:
    value = os.environ.get(name)
    if value is None:
        return bool(default)
    return value.strip().lower() in {"1", "true", "yes", "on"}
