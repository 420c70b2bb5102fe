"""
ride_response/__init__.py

Public interface for the response module.

Usage
-----
    from ride_response import ResponseCoordinator, TimeoutPolicy
    from ride_response import AlertConfig, EmergencyContact, ContactAlerter
    from ride_response import VoiceNotifier, classify_transcript

The microphone engine needs the `voice` extra and is imported on its own:
    from ride_response.listening import WhisperListeningEngine
"""

from ride_response.pipeline import ResponseCoordinator, TimeoutPolicy
from ride_response.confirmation import ConfirmationResult, ConfirmationSession, classify_transcript
from ride_response.voice_assistant import VoiceNotifier
from ride_response.emergency_alert import (
    AlertConfig,
    AlertResult,
    ContactAlerter,
    EmergencyContact,
    EmergencyEscalation,
    TriggerType,
)

__all__ = [
    # Primary entry point, RideMonitor hands every scored event to this
    "ResponseCoordinator",
    "TimeoutPolicy",
    # Config types needed to alert contacts
    "AlertConfig",
    "EmergencyContact",
    # Lower-level classes (available if needed directly)
    "ConfirmationSession",
    "ConfirmationResult",
    "classify_transcript",
    "VoiceNotifier",
    "EmergencyEscalation",
    "ContactAlerter",
    "AlertResult",
    "TriggerType",
]
