"""
Voice Diagnostics

Structured lifecycle log for voice capture sessions. Keeps a bounded
ring of recent events, derives success/failure metrics from them and
produces a health summary with actionable recommendations.
"""

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

__all__ = ['VoiceDiagnostics', 'DiagnosticsHealth', 'DiagnosticsEntry']


# Event names with a metrics side effect
SESSION_START = "SESSION_START"
SESSION_SUCCESS = "SESSION_SUCCESS"
SESSION_FAILURE = "SESSION_FAILURE"
FAILURE = "FAILURE"


@dataclass
class DiagnosticsEntry:
    """One logged lifecycle event"""
    timestamp: float
    session_id: int
    event: str
    data: Optional[Dict[str, Any]] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class DiagnosticsHealth:
    """Health verdict derived from recent sessions"""
    status: str  # "healthy", "warning", "critical"
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SessionMetrics:
    total_sessions: int = 0
    successful_sessions: int = 0
    failed_sessions: int = 0
    average_session_duration_ms: float = 0.0
    last_failure_reason: Optional[str] = None


class VoiceDiagnostics:
    """
    Diagnostics sink for the voice session manager

    ``log()`` is the only call the session manager depends on; the
    metrics are derived from the event names it receives.
    """

    def __init__(self, max_entries: int = 50):
        self.logger = logging.getLogger('quizvoice.diagnostics')
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._entries: deque[DiagnosticsEntry] = deque(maxlen=max_entries)
        self._metrics = SessionMetrics()

    def log(self, session_id: int, event: str, data: Optional[Dict[str, Any]] = None) -> None:
        """Record a lifecycle event (never raises)"""
        try:
            entry = DiagnosticsEntry(time.time(), session_id, event, dict(data) if data else None)
            with self._lock:
                self._entries.append(entry)
                self._update_metrics(entry)

            if data:
                self.logger.debug("[DIAG-%s] %s %s", session_id, event, json.dumps(data, default=str))
            else:
                self.logger.debug("[DIAG-%s] %s", session_id, event)
        except Exception as e:
            self.logger.warning(f"Diagnostics log failed for {event}: {e}")

    def _update_metrics(self, entry: DiagnosticsEntry) -> None:
        """Apply metrics side effects (lock must be held)"""
        metrics = self._metrics
        data = entry.data or {}

        if entry.event == SESSION_START:
            metrics.total_sessions += 1
        elif entry.event in (SESSION_SUCCESS, SESSION_FAILURE):
            if entry.event == SESSION_SUCCESS:
                metrics.successful_sessions += 1
            else:
                metrics.failed_sessions += 1

            duration = data.get('duration_ms')
            if duration:
                if metrics.average_session_duration_ms:
                    metrics.average_session_duration_ms = (
                        metrics.average_session_duration_ms + float(duration)
                    ) / 2
                else:
                    metrics.average_session_duration_ms = float(duration)
        elif entry.event == FAILURE:
            metrics.last_failure_reason = data.get('reason')

    # Convenience wrappers

    def start_session(self, session_id: int) -> None:
        self.log(session_id, SESSION_START, {"started_at": datetime.now().isoformat()})

    def end_session(self, session_id: int, success: bool, duration_ms: Optional[float] = None) -> None:
        self.log(
            session_id,
            SESSION_SUCCESS if success else SESSION_FAILURE,
            {"duration_ms": duration_ms, "success_rate": self._projected_success_rate(success)},
        )

    def record_failure(self, session_id: int, reason: str, error: Any = None) -> None:
        data: Dict[str, Any] = {"reason": reason}
        if error is not None:
            data["error"] = str(error)
        self.log(session_id, FAILURE, data)

    # Queries

    def success_rate(self) -> int:
        """Percentage of started sessions that delivered a transcript"""
        with self._lock:
            return self._success_rate_locked()

    def _success_rate_locked(self) -> int:
        if self._metrics.total_sessions == 0:
            return 100
        return round(self._metrics.successful_sessions * 100 / self._metrics.total_sessions)

    def _projected_success_rate(self, success: bool) -> int:
        with self._lock:
            total = self._metrics.total_sessions
            successful = self._metrics.successful_sessions + (1 if success else 0)
        if total == 0:
            return 100
        return round(successful * 100 / total)

    @property
    def metrics(self) -> SessionMetrics:
        with self._lock:
            return SessionMetrics(**asdict(self._metrics))

    @property
    def entries(self) -> List[DiagnosticsEntry]:
        with self._lock:
            return list(self._entries)

    def events_for(self, session_id: int) -> List[str]:
        """Event names recorded for one session, oldest first"""
        return [e.event for e in self.entries if e.session_id == session_id]

    def summary(self) -> dict:
        """Metrics plus the ten most recent events"""
        with self._lock:
            recent = list(self._entries)[-10:]
            result = asdict(self._metrics)
            result["success_rate"] = self._success_rate_locked()

        result["recent_events"] = [
            {
                "event": entry.event,
                "session_id": entry.session_id,
                "timestamp": datetime.fromtimestamp(entry.timestamp).strftime('%H:%M:%S'),
                "data": entry.data,
            }
            for entry in recent
        ]
        return result

    def export_logs(self) -> str:
        """Full log dump as a JSON document"""
        with self._lock:
            payload = {
                "metrics": asdict(self._metrics),
                "success_rate": self._success_rate_locked(),
                "full_log": [entry.to_dict() for entry in self._entries],
            }
        return json.dumps(payload, indent=2, default=str)

    def health_check(self) -> DiagnosticsHealth:
        """Classify recent behaviour and suggest remedies"""
        with self._lock:
            success_rate = self._success_rate_locked()
            failures = [e for e in self._entries if e.event == FAILURE]

        health = DiagnosticsHealth(status="healthy")

        if success_rate < 50:
            health.status = "critical"
            health.issues.append(f"Low success rate: {success_rate}%")
            health.recommendations.append("Restart the app to reset voice module state")
            health.recommendations.append("Check microphone permissions in system settings")
        elif success_rate < 80:
            health.status = "warning"
            health.issues.append(f"Moderate success rate: {success_rate}%")
            health.recommendations.append("Try restarting the voice recording service")

        recent_failures = failures[-3:]
        if len(recent_failures) >= 2:
            if health.status != "critical":
                health.status = "warning"
            health.issues.append(f"{len(recent_failures)} recent failures detected")
            health.recommendations.append("Clear app cache or restart to resolve persistent issues")

        if any('timeout' in str((e.data or {}).get('reason', '')).lower() for e in failures):
            health.issues.append("Timeout issues detected")
            health.recommendations.append("Check system performance and the speech engine state")

        return health

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()
            self._metrics = SessionMetrics()
        self.logger.info("Voice diagnostics reset")
