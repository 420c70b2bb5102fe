"""
ride_monitor/config.py

Fixed algorithm constants plus per-deployment settings.

Constants are plain module attributes so every component reads the same
numbers. Deployment settings (device id, language, storage, remote sync,
Twilio) are read from the environment or a .env file by Settings.from_env().
"""

from __future__ import annotations

import logging
import math
import os
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# =============================================================================
# Risk event detection
# =============================================================================

SPEED_WARNING_KMH = 60.0          # instantaneous speed above this = speed_warning
SUDDEN_STOP_FROM_KMH = 20.0       # previous speed must exceed this
SUDDEN_STOP_TO_KMH = 2.0          # ... and current speed must drop below this
SUDDEN_STOP_DROP_KMH = 20.0       # ... by more than this in one sample
FALL_DELTA_THRESHOLD = 25.0       # norm of consecutive accel-vector delta
MOVING_SPEED_KMH = 2.0            # above this the idle accumulator resets
IDLE_WARNING_SECONDS = 5 * 60
IDLE_CHECK_INTERVAL_SECONDS = 30
DEBOUNCE_SECONDS = 60
FALL_GRACE_SECONDS = 10           # auto-escalation delay after fall_detected
HISTORY_WINDOW_SECONDS = 30 * 60  # rolling risk-event history kept per ride

# =============================================================================
# Fatigue / panic estimation
# =============================================================================

MOTION_BUFFER_SIZE = 60           # accel + orientation ring buffers
SPEED_BUFFER_SIZE = 30
MIN_MOTION_SAMPLES = 10           # before variance is trusted
MIN_SPEED_SAMPLES = 5
FATIGUE_TICK_SECONDS = 30
NUDGE_COOLDOWN_SECONDS = 5 * 60

FATIGUE_MILD = 30
FATIGUE_MODERATE = 50
FATIGUE_SEVERE = 70
PANIC_THRESHOLD = 60
HEAT_FATIGUE_FEELS_LIKE_C = 35.0
EXTREME_HEAT_C = 40.0

# =============================================================================
# Confidence scoring
# =============================================================================

CONFIDENCE_SUPPRESS = 40          # below: silent log only
CONFIDENCE_ALERT = 70             # 40..69 confirm, 70.. alert
CONFIDENCE_EMERGENCY = 85         # 85.. emergency without confirmation
CONFIDENCE_CRITICAL_AUTO = 90     # critical severity auto-trigger
PATTERN_WINDOW_SECONDS = 30

# =============================================================================
# Confirmation + emergency state machines
# =============================================================================

CONFIRMATION_TIMEOUT_SECONDS = 5.0
CONFIRMATION_LISTEN_DELAY_SECONDS = 0.5
EMERGENCY_COUNTDOWN_SECONDS = 10

# =============================================================================
# Location memory + persistence
# =============================================================================

CELL_PRECISION = 4                # ~11 m; memory keys are not precision-portable
MEMORY_RETENTION_DAYS = 30
RECORD_RETENTION_DAYS = 30
SIGNATURE_MAX_EVENT_TYPES = 10

# =============================================================================
# Weather
# =============================================================================

WEATHER_FETCH_INTERVAL_SECONDS = 15 * 60
WEATHER_CACHE_SLACK_SECONDS = 30    # a poll landing just short of the interval still refetches
WEATHER_REFRESH_DISTANCE_KM = 5.0
WEATHER_STALE_SECONDS = 60 * 60
WEATHER_HTTP_TIMEOUT_SECONDS = 5

# =============================================================================
# Notification
# =============================================================================


class VibrationPattern(Enum):
    """On/off haptic pattern in milliseconds."""
    CONFIRM = (100,)
    ALERT = (200, 100, 200, 100, 200)
    EMERGENCY = (500, 200, 500, 200, 500, 200, 500)


DEFAULT_LANGUAGE = "en-IN"
SUPPORTED_LANGUAGES = ("en-IN", "hi-IN", "ta-IN")


@dataclass
class Settings:
    """
    Deployment settings.

    device_id       : stable id used as the remote key for location memory
    language        : rider language for prompts and nudges
    data_dir        : where the local JSON stores live
    cell_precision  : decimal places used to quantize lat/lng into cells
    sync_url        : base URL of the remote REST store (None = offline only)
    sync_key        : API key sent with every remote request
    twilio_*        : contact alert credentials (optional)
    """
    device_id: str
    language: str = DEFAULT_LANGUAGE
    data_dir: Path = Path("storage")
    cell_precision: int = CELL_PRECISION
    sync_url: str | None = None
    sync_key: str | None = None
    twilio_account_sid: str | None = None
    twilio_auth_token: str | None = None
    twilio_from_number: str | None = None

    @classmethod
    def from_env(cls, dotenv_path: str | None = None) -> "Settings":
        load_dotenv(dotenv_path=dotenv_path)

        data_dir = Path(os.environ.get("KAVACH_DATA_DIR", "storage"))
        language = os.environ.get("KAVACH_LANGUAGE", DEFAULT_LANGUAGE)
        if language not in SUPPORTED_LANGUAGES:
            logger.warning("Unsupported language %s, using %s", language, DEFAULT_LANGUAGE)
            language = DEFAULT_LANGUAGE

        return cls(
            device_id=os.environ.get("KAVACH_DEVICE_ID") or load_device_id(data_dir),
            language=language,
            data_dir=data_dir,
            cell_precision=int(os.environ.get("KAVACH_CELL_PRECISION", CELL_PRECISION)),
            sync_url=os.environ.get("KAVACH_SYNC_URL") or None,
            sync_key=os.environ.get("KAVACH_SYNC_KEY") or None,
            twilio_account_sid=os.environ.get("TWILIO_ACCOUNT_SID") or None,
            twilio_auth_token=os.environ.get("TWILIO_AUTH_TOKEN") or None,
            twilio_from_number=os.environ.get("TWILIO_FROM_NUMBER") or None,
        )


def load_device_id(data_dir: Path) -> str:
    """Return the persisted device id, creating one on first use."""
    path = Path(data_dir) / "device_id"
    if path.exists():
        device_id = path.read_text().strip()
        if device_id:
            return device_id

    device_id = str(uuid.uuid4())
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(device_id)
    logger.info("Generated new device id %s", device_id)
    return device_id


def round_half_up(value: float) -> int:
    """Nearest integer with .5 going up (2.5 -> 3, -2.5 -> -2), unlike round()."""
    return int(math.floor(value + 0.5))
