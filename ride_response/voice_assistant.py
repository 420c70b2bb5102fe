"""
Spoken prompts and haptic feedback for the ride monitor.

Flow:
    1. A component calls speak(key) / speak_text(text) / vibrate(pattern)
    2. The key is looked up in the rider's language (en-IN fallback)
    3. pyttsx3 speaks it offline, with a fresh engine per utterance
    4. Haptic patterns go to an injected bridge (phone vibration motor,
       wearable, ...) or are only logged when no bridge is attached

Nothing here ever raises into the caller: a missing TTS backend or a broken
haptics bridge degrades to a logged no-op.

Dependencies:
    pip install pyttsx3
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Callable

import pyttsx3

from ride_monitor.config import DEFAULT_LANGUAGE, VibrationPattern

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Message catalogue
# ---------------------------------------------------------------------------

VOICE_MESSAGES: dict[str, dict[str, str]] = {
    "en-IN": {
        "ride_started": "Ride started. I am watching over you.",
        "ride_ended": "Ride ended. Stay safe.",
        "are_you_okay": "Are you okay? Say okay, or say help.",
        "speed_warning": "Slow down. Risky road ahead.",
        "heat_warning": "Too hot. Stop for 5 minutes. Find shade.",
        "unsafe_zone": "Unsafe area ahead. Stay alert.",
        "sudden_stop": "Sudden stop detected. Are you okay?",
        "fall_detected": "Fall detected. Getting help now.",
        "long_idle": "No movement detected. Are you okay?",
        "wellness_check": "How are you feeling? Take a break if tired.",
        "rain_warning": "Rain ahead. Roads are slippery. Slow down.",
        "high_wind": "Strong winds. Hold steady.",
        "extreme_weather": "Extreme weather. Stop and find shelter.",
        "poor_air_quality": "Poor air quality. Cover your face and take breaks.",
        "emergency_triggered": "Emergency activated. Sharing your location.",
        "emergency_cancelled": "Emergency cancelled. Stay safe.",
        "help_coming": "Help is on the way. Stay where you are.",
    },
    "hi-IN": {
        "ride_started": "राइड शुरू। मैं आपकी निगरानी कर रहा हूं।",
        "ride_ended": "राइड समाप्त। सुरक्षित रहें।",
        "are_you_okay": "क्या आप ठीक हैं? ठीक या मदद बोलें।",
        "speed_warning": "धीमा करें। आगे खतरनाक सड़क।",
        "heat_warning": "बहुत गर्मी। 5 मिनट रुकें। छाया खोजें।",
        "unsafe_zone": "आगे असुरक्षित क्षेत्र। सतर्क रहें।",
        "sudden_stop": "अचानक रुकावट। क्या आप ठीक हैं?",
        "fall_detected": "गिरावट का पता चला। मदद बुला रहा हूं।",
        "long_idle": "कोई हलचल नहीं। क्या आप ठीक हैं?",
        "wellness_check": "आप कैसा महसूस कर रहे हैं? थके हों तो आराम करें।",
        "rain_warning": "बारिश हो रही है। सड़क फिसलन भरी है। धीरे चलें।",
        "high_wind": "तेज़ हवा। संभलकर चलें।",
        "extreme_weather": "खराब मौसम। रुकें और सुरक्षित जगह जाएं।",
        "poor_air_quality": "हवा खराब है। चेहरा ढकें और आराम करें।",
        "emergency_triggered": "इमरजेंसी चालू। आपकी लोकेशन शेयर कर रहा हूं।",
        "emergency_cancelled": "इमरजेंसी रद्द। सुरक्षित रहें।",
        "help_coming": "मदद आ रही है। वहीं रहें।",
    },
    "ta-IN": {
        "ride_started": "பயணம் தொடங்கியது. நான் உங்களை கவனித்துக்கொள்கிறேன்.",
        "ride_ended": "பயணம் முடிந்தது. பாதுகாப்பாக இருங்கள்.",
        "are_you_okay": "நீங்கள் நலமா? சரி அல்லது உதவி என்று சொல்லுங்கள்.",
        "speed_warning": "வேகத்தை குறையுங்கள். ஆபத்தான சாலை.",
        "heat_warning": "மிகவும் வெப்பம். 5 நிமிடம் நிறுத்துங்கள்.",
        "unsafe_zone": "முன்னால் பாதுகாப்பற்ற பகுதி. எச்சரிக்கையாக இருங்கள்.",
        "sudden_stop": "நீங்கள் நன்றாக இருக்கிறீர்களா?",
        "fall_detected": "விழுந்தது கண்டறியப்பட்டது. உதவி வருகிறது.",
        "long_idle": "இயக்கம் இல்லை. நீங்கள் நன்றாக இருக்கிறீர்களா?",
        "wellness_check": "எப்படி உணர்கிறீர்கள்?",
        "rain_warning": "மழை பெய்கிறது. சாலை வழுக்கும். மெதுவாக செல்லுங்கள்.",
        "high_wind": "பலத்த காற்று. கவனமாக ஓட்டுங்கள்.",
        "extreme_weather": "கடுமையான வானிலை. பாதுகாப்பான இடம் செல்லுங்கள்.",
        "poor_air_quality": "காற்று மாசு அதிகம். முகத்தை மூடுங்கள்.",
        "emergency_triggered": "அவசர நிலை செயல்படுத்தப்பட்டது.",
        "emergency_cancelled": "அவசர நிலை ரத்து.",
        "help_coming": "உதவி வருகிறது.",
    },
}


def message_for(key: str, language: str | None = None) -> str | None:
    """Text for a message key; unknown languages fall back to en-IN."""
    messages = VOICE_MESSAGES.get(language or DEFAULT_LANGUAGE, VOICE_MESSAGES[DEFAULT_LANGUAGE])
    return messages.get(key) or VOICE_MESSAGES[DEFAULT_LANGUAGE].get(key)


# ---------------------------------------------------------------------------
# Notifier
# ---------------------------------------------------------------------------

class VoiceNotifier:
    """
    Voice + haptic notification collaborator.

    Parameters
    ----------
    language : str
        Default language for speak(); each call may override it.
    haptics : Callable[[tuple[int, ...]], None] | None
        Receives the on/off pattern in milliseconds. None = log only.
    background : bool
        If True, utterances are queued and spoken by one daemon thread so the
        caller never waits on runAndWait(). If False, speech blocks.
    tts_rate : int
        Speech rate in words-per-minute. Slightly slow for road noise.
    tts_volume : float
        0.0 to 1.0.
    enabled : bool
        False turns speech into a logged no-op (headless runs, replays).
    """

    def __init__(
        self,
        language: str = DEFAULT_LANGUAGE,
        haptics: Callable[[tuple[int, ...]], None] | None = None,
        background: bool = False,
        tts_rate: int = 150,
        tts_volume: float = 1.0,
        enabled: bool = True,
    ):
        self.language = language
        self.haptics = haptics
        self.enabled = enabled
        self._tts_rate = tts_rate
        self._tts_volume = tts_volume
        self._voice_ids: dict[str, str | None] = {}

        self._queue: queue.Queue | None = None
        if background:
            self._queue = queue.Queue()
            threading.Thread(target=self._drain, daemon=True).start()

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    def speak(self, message_key: str, language: str | None = None) -> str | None:
        """Speak a catalogue message. Returns the text, or None for an unknown key."""
        lang = language or self.language
        text = message_for(message_key, lang)
        if text is None:
            logger.warning("No voice message for key: %s", message_key)
            return None
        self.speak_text(text, lang)
        return text

    def speak_text(self, text: str, language: str | None = None) -> None:
        lang = language or self.language
        logger.info("Speaking | lang=%s | text=%s", lang, text)
        if not self.enabled:
            return
        if self._queue is not None:
            self._queue.put((text, lang))
        else:
            self._say(text, lang)

    def vibrate(self, pattern: VibrationPattern) -> None:
        logger.debug("Vibrate | pattern=%s", pattern.name)
        if self.haptics is None:
            return
        try:
            self.haptics(pattern.value)
        except Exception as exc:
            logger.error("Haptics bridge failed: %s", exc, exc_info=True)

    # -----------------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------------

    def _drain(self) -> None:
        while True:
            text, lang = self._queue.get()
            self._say(text, lang)

    def _say(self, text: str, language: str) -> None:
        """
        One utterance on a fresh engine. Reusing an engine makes later
        runAndWait() calls silently fail on some platforms.
        """
        try:
            engine = pyttsx3.init()
            engine.setProperty("rate", self._tts_rate)
            engine.setProperty("volume", self._tts_volume)
            voice_id = self._voice_for(engine, language)
            if voice_id:
                engine.setProperty("voice", voice_id)
            engine.say(text)
            engine.runAndWait()
            engine.stop()
        except Exception as exc:
            logger.error("TTS failed: %s", exc, exc_info=True)

    def _voice_for(self, engine, language: str) -> str | None:
        """Installed voice matching the language, probed once per language."""
        if language in self._voice_ids:
            return self._voice_ids[language]

        prefix = language.split("-")[0].lower()
        names = {"en": "english", "hi": "hindi", "ta": "tamil"}
        found = None
        try:
            for voice in engine.getProperty("voices") or []:
                langs = " ".join(
                    l.decode(errors="ignore") if isinstance(l, bytes) else str(l)
                    for l in (getattr(voice, "languages", None) or [])
                ).lower()
                label = f"{voice.id} {voice.name}".lower()
                if prefix in langs or names.get(prefix, prefix) in label:
                    found = voice.id
                    logger.debug("TTS voice for %s: %s", language, voice.name)
                    break
        except Exception as exc:
            logger.debug("Could not probe TTS voices: %s", exc)

        self._voice_ids[language] = found
        return found
