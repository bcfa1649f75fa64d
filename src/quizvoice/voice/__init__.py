"""
QuizVoice Voice Capture Module

Session-tagged, event-driven speech capture with idempotent teardown.
"""

from .events import Event, EventType, EventPubSub
from .engine import (
    CaptureEngineAdapter,
    CaptureEngineError,
    EngineConfig,
    EngineEventSink,
    EngineStartFailure,
    EngineStopTimeout,
)
from .permissions import PermissionGate, PermissionStatus, SounddevicePermissionBackend
from .cleanup import CleanupCoordinator
from .session_manager import CaptureSession, RecordingState, VoiceSessionManager
from .recording_mode import RecordingModeManager
from .diagnostics import DiagnosticsHealth, VoiceDiagnostics
from .scripted_engine import ScriptedCaptureEngine, ScriptStep

__all__ = [
    'Event',
    'EventType',
    'EventPubSub',
    'CaptureEngineAdapter',
    'CaptureEngineError',
    'EngineConfig',
    'EngineEventSink',
    'EngineStartFailure',
    'EngineStopTimeout',
    'PermissionGate',
    'PermissionStatus',
    'SounddevicePermissionBackend',
    'CleanupCoordinator',
    'CaptureSession',
    'RecordingState',
    'VoiceSessionManager',
    'RecordingModeManager',
    'DiagnosticsHealth',
    'VoiceDiagnostics',
    'ScriptedCaptureEngine',
    'ScriptStep',
]
