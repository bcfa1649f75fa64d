"""Ports (interfaces) for the collaborators of the voice session manager.

The session manager only talks to these protocols, so platform engines,
permission APIs and UI-side coordinators can be swapped for test doubles.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol, TYPE_CHECKING, runtime_checkable

if TYPE_CHECKING:
    from .engine import EngineConfig, EngineEventSink


@runtime_checkable
class CaptureEngine(Protocol):
    """Platform speech-recognition engine (device-wide singleton)."""

    async def start(self, config: "EngineConfig", sink: "EngineEventSink") -> None:
        """Begin recognition; events for this run go to ``sink``."""

    async def stop(self) -> None:
        """Ask the engine to finish; it normally answers with an ``end`` event."""


@runtime_checkable
class PermissionBackend(Protocol):
    """System microphone permission API."""

    async def get_status(self) -> bool:
        """Return True when microphone access is currently granted."""

    async def request(self) -> bool:
        """Prompt for access and return whether it was granted."""


@runtime_checkable
class RecordingModeNotifier(Protocol):
    """Audio ducking / recording-mode coordinator."""

    async def enter(self) -> None:
        """Switch the device into recording mode."""

    async def exit(self) -> None:
        """Leave recording mode."""


@runtime_checkable
class DiagnosticsSink(Protocol):
    """Fire-and-forget structured lifecycle log."""

    def log(self, session_id: int, event: str, data: Optional[dict[str, Any]] = None) -> None:
        """Record one lifecycle event."""
