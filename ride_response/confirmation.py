"""
ride_response/confirmation.py

"Are you okay?" challenge with a hard deadline.

    idle ──start()──► listening ──┬─ transcript classified ──► ok | danger
                                  ├─ deadline / fatal engine error ──► timeout
                                  └─ cancel() ──► cancelled

The first classification wins and tears the session down; later transcripts,
engine events and timer callbacks are ignored. stop() tears down without
producing an outcome and is safe to call any number of times.

Usage
-----
    session = ConfirmationSession(notifier, engine, clock, on_result=handle)
    session.start()
    ...
    session.feed_transcript("i'm fine")    # -> handle(ConfirmationOutcome(OK, ...))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Protocol

from ride_monitor import config
from ride_monitor.config import VibrationPattern

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Keyword lexicons
# ---------------------------------------------------------------------------

OK_KEYWORDS: dict[str, list[str]] = {
    "en-IN": ["okay", "ok", "fine", "good", "safe", "alright", "i'm fine", "im fine",
              "all good", "no problem", "yes"],
    "hi-IN": ["theek", "theek hai", "sahi", "accha", "acha", "mast", "okay", "thik", "haan", "ha"],
    "ta-IN": ["nalla", "sari", "paravala", "okay", "nandraga", "nallam", "aamaa", "aama"],
}

DANGER_KEYWORDS: dict[str, list[str]] = {
    "en-IN": ["help", "danger", "emergency", "accident", "stop", "call", "hurt", "injured",
              "no", "not okay", "bad"],
    "hi-IN": ["madad", "bachao", "khatara", "khatre", "emergency", "durghatna", "ruko", "nahi", "na"],
    "ta-IN": ["udavi", "aabathu", "apatthu", "emergency", "accident", "nillu", "illa", "vendam"],
}

FALLBACK_LANGUAGES = ("en-IN", "hi-IN", "ta-IN")
SHORT_KEYWORD_LEN = 4

# engine errors that just mean "nothing heard yet"
RECOVERABLE_ERRORS = frozenset({"no-speech", "aborted"})


def levenshtein(a: str, b: str) -> int:
    if not a:
        return len(b)
    if not b:
        return len(a)
    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        cur = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            cur.append(min(prev[j] + 1, cur[j - 1] + 1, prev[j - 1] + cost))
        prev = cur
    return prev[-1]


def fuzzy_match(text: str, keywords: list[str]) -> bool:
    """
    Match rules, per keyword:
      exact match of the whole utterance
      substring match for short keywords (<= 4 chars)
      edit distance <= 1 against the whole utterance for longer keywords
      any word equal to the keyword, or within edit distance 1 of a longer one

    Short keywords never match by edit distance; 'ha' or 'no' are one edit
    away from too many ordinary words.
    """
    normalized = text.lower().strip()
    if not normalized:
        return False
    words = normalized.split()

    for keyword in keywords:
        if normalized == keyword:
            return True
        if len(keyword) <= SHORT_KEYWORD_LEN:
            if keyword in normalized:
                return True
            continue
        if levenshtein(normalized, keyword) <= 1:
            return True
        if any(w == keyword or levenshtein(w, keyword) <= 1 for w in words):
            return True
    return False


class ConfirmationResult(str, Enum):
    OK        = "ok"
    DANGER    = "danger"
    TIMEOUT   = "timeout"
    CANCELLED = "cancelled"


def classify_transcript(text: str, language: str = config.DEFAULT_LANGUAGE) -> ConfirmationResult | None:
    """
    OK / DANGER / None. The rider's language is tried first, then English,
    Hindi and Tamil. Danger wins over ok within a language.
    """
    order = [language] + [l for l in FALLBACK_LANGUAGES if l != language]
    for lang in order:
        if fuzzy_match(text, DANGER_KEYWORDS.get(lang, [])):
            return ConfirmationResult.DANGER
        if fuzzy_match(text, OK_KEYWORDS.get(lang, [])):
            return ConfirmationResult.OK
    return None


# ---------------------------------------------------------------------------
# Listening engine contract
# ---------------------------------------------------------------------------

class ListeningEngine(Protocol):
    """
    Speech-to-text source. Callbacks may be invoked repeatedly until stop().

    on_transcript(text)  partial or final transcript
    on_end()             the engine stopped listening on its own
    on_error(code)       'no-speech' / 'aborted' are recoverable, anything else is not
    """

    def start(self, language: str,
              on_transcript: Callable[[str], None],
              on_end: Callable[[], None],
              on_error: Callable[[str], None]) -> None: ...

    def stop(self) -> None: ...


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class _State(Enum):
    IDLE      = auto()
    LISTENING = auto()
    DONE      = auto()


@dataclass
class ConfirmationOutcome:
    result: ConfirmationResult
    response_time_s: float
    transcript: str | None = None


class ConfirmationSession:
    """
    Parameters
    ----------
    notifier :
        speak(key, language) / vibrate(pattern) collaborator.
    engine : ListeningEngine | None
        None means no speech input; only the deadline or cancel() can end it.
    clock :
        Provides now() and call_later().
    on_result : Callable[[ConfirmationOutcome], None]
        Called exactly once, unless the session is stopped first.
    timeout_s : float
        Hard deadline measured from start(). Must be positive.
    listen_delay_s : float
        Gap between the spoken prompt and opening the microphone.
    """

    def __init__(
        self,
        notifier,
        engine: ListeningEngine | None,
        clock,
        on_result: Callable[[ConfirmationOutcome], None],
        language: str = config.DEFAULT_LANGUAGE,
        timeout_s: float = config.CONFIRMATION_TIMEOUT_SECONDS,
        listen_delay_s: float = config.CONFIRMATION_LISTEN_DELAY_SECONDS,
    ):
        if timeout_s <= 0:
            raise ValueError("timeout_s must be positive")
        self._notifier = notifier
        self._engine = engine
        self._clock = clock
        self._on_result = on_result
        self.language = language
        self.timeout_s = timeout_s
        self.listen_delay_s = listen_delay_s

        self._state = _State.IDLE
        self._engine_running = False
        self._start_time: float | None = None
        self._deadline = None
        self._listen_handle = None
        self.outcome: ConfirmationOutcome | None = None

    @property
    def active(self) -> bool:
        return self._state is _State.LISTENING

    # ── Public API ────────────────────────────────────────────────────────

    def start(self) -> None:
        if self._state is not _State.IDLE:
            raise RuntimeError("confirmation session already started")
        self._state = _State.LISTENING
        self._start_time = self._clock.now()
        self._deadline = self._clock.call_later(self.timeout_s, self._on_deadline)

        logger.info("Confirmation started | lang=%s | timeout=%.1fs", self.language, self.timeout_s)
        self._safe_notify("speak", "are_you_okay", self.language)
        self._listen_handle = self._clock.call_later(self.listen_delay_s, self._start_engine)

    def feed_transcript(self, text: str) -> None:
        if not self.active:
            return
        logger.debug("Transcript: %r", text)
        result = classify_transcript(text, self.language)
        if result is not None:
            self._finish(result, transcript=text)

    def cancel(self) -> None:
        self._finish(ConfirmationResult.CANCELLED)

    def stop(self) -> None:
        """Tear down without an outcome. Idempotent."""
        if self._state is _State.DONE:
            return
        self._state = _State.DONE
        self._teardown()
        logger.debug("Confirmation stopped without outcome")

    # ── Engine callbacks ──────────────────────────────────────────────────

    def _start_engine(self) -> None:
        if not self.active or self._engine is None:
            return
        self._engine_running = True
        try:
            self._engine.start(
                self.language,
                on_transcript=self.feed_transcript,
                on_end=self._on_engine_end,
                on_error=self._on_engine_error,
            )
        except Exception as exc:
            # deadline still runs; the session ends as timeout
            self._engine_running = False
            logger.warning("Listening engine failed to start: %s", exc)

    def _on_engine_end(self) -> None:
        self._engine_running = False
        if not self.active:
            return
        logger.debug("Listening ended without a match, restarting")
        self._start_engine()

    def _on_engine_error(self, code: str) -> None:
        if not self.active:
            return
        if code in RECOVERABLE_ERRORS:
            logger.debug("Recoverable listening error: %s", code)
            return
        logger.warning("Listening engine error: %s", code)
        self._finish(ConfirmationResult.TIMEOUT)

    def _on_deadline(self) -> None:
        self._finish(ConfirmationResult.TIMEOUT)

    # ── Internal helpers ──────────────────────────────────────────────────

    def _finish(self, result: ConfirmationResult, transcript: str | None = None) -> None:
        if self._state is not _State.LISTENING:
            return
        self._state = _State.DONE
        self._teardown()

        elapsed = self._clock.now() - self._start_time
        self.outcome = ConfirmationOutcome(result=result, response_time_s=elapsed, transcript=transcript)

        if result is ConfirmationResult.OK:
            self._safe_notify("vibrate", VibrationPattern.CONFIRM)
        elif result is ConfirmationResult.DANGER:
            self._safe_notify("vibrate", VibrationPattern.ALERT)

        logger.info("Confirmation outcome | result=%s | elapsed=%.2fs", result.value, elapsed)
        self._on_result(self.outcome)

    def _teardown(self) -> None:
        for handle in (self._deadline, self._listen_handle):
            if handle is not None:
                handle.cancel()
        self._deadline = None
        self._listen_handle = None
        if self._engine is not None and self._engine_running:
            self._engine_running = False
            try:
                self._engine.stop()
            except Exception as exc:
                logger.warning("Listening engine stop failed: %s", exc)

    def _safe_notify(self, method: str, *args) -> None:
        if self._notifier is None:
            return
        try:
            getattr(self._notifier, method)(*args)
        except Exception as exc:
            logger.error("Notifier %s failed: %s", method, exc, exc_info=True)
