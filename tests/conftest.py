import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ride_monitor.clock import VirtualClock
from ride_monitor.config import Settings
from ride_monitor.event_logger import EventStore
from ride_monitor.location_memory import LocationMemoryStore

# 2023-11-14 22:13:20 UTC
NIGHT_TS = 1_700_000_000.0
# 2023-11-15 10:00:00 UTC
DAY_TS = 1_700_042_400.0


class RecordingNotifier:
    """Collects every speak / vibrate call instead of producing sound."""

    def __init__(self):
        self.spoken = []
        self.texts = []
        self.vibrations = []

    def speak(self, key, language=None):
        self.spoken.append(key)
        return key

    def speak_text(self, text, language=None):
        self.texts.append(text)

    def vibrate(self, pattern):
        self.vibrations.append(pattern)


class ScriptedEngine:
    """ListeningEngine fake; tests drive the callbacks by hand."""

    def __init__(self, fail_on_start=False):
        self.fail_on_start = fail_on_start
        self.starts = 0
        self.stops = 0
        self.language = None
        self.on_transcript = None
        self.on_end = None
        self.on_error = None

    def start(self, language, on_transcript, on_end, on_error):
        self.starts += 1
        if self.fail_on_start:
            raise RuntimeError("microphone unavailable")
        self.language = language
        self.on_transcript = on_transcript
        self.on_end = on_end
        self.on_error = on_error

    def stop(self):
        self.stops += 1


@pytest.fixture
def clock():
    return VirtualClock(start=DAY_TS)


@pytest.fixture
def night_clock():
    return VirtualClock(start=NIGHT_TS)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def engine():
    return ScriptedEngine()


@pytest.fixture
def memory(tmp_path, clock):
    return LocationMemoryStore(tmp_path / "location_memory.json", "device-1",
                               clock=clock, background=False)


@pytest.fixture
def store(tmp_path, clock):
    return EventStore(tmp_path / "events.json", clock=clock, background=False)


@pytest.fixture
def settings(tmp_path):
    return Settings(device_id="device-1", data_dir=tmp_path)
