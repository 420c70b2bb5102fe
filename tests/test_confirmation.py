import pytest

from conftest import ScriptedEngine
from ride_monitor.config import VibrationPattern
from ride_response.confirmation import (
    ConfirmationResult,
    ConfirmationSession,
    classify_transcript,
    fuzzy_match,
    levenshtein,
)


class TestMatching:

    def test_levenshtein(self):
        assert levenshtein("", "abc") == 3
        assert levenshtein("kitten", "sitting") == 3
        assert levenshtein("help", "help") == 0

    def test_one_edit_away_matches_long_keyword(self):
        assert fuzzy_match("emergancy", ["emergency"])
        assert not fuzzy_match("emxrgancy", ["emergency"])

    def test_short_keywords_need_substring(self):
        assert fuzzy_match("okay then", ["okay"])
        assert not fuzzy_match("hela", ["help"])

    def test_empty_text(self):
        assert not fuzzy_match("   ", ["okay"])

    @pytest.mark.parametrize("text,language,expected", [
        ("I'm fine", "en-IN", ConfirmationResult.OK),
        ("all good thanks", "en-IN", ConfirmationResult.OK),
        ("help me", "en-IN", ConfirmationResult.DANGER),
        ("i'm okay but need help", "en-IN", ConfirmationResult.DANGER),
        ("emergancy", "en-IN", ConfirmationResult.DANGER),
        ("mujhe madad chahiye", "hi-IN", ConfirmationResult.DANGER),
        ("theek hai", "hi-IN", ConfirmationResult.OK),
        ("naan nalla irukken", "ta-IN", ConfirmationResult.OK),
        ("udavi", "ta-IN", ConfirmationResult.DANGER),
        ("bachao", "en-IN", ConfirmationResult.DANGER),
        ("emxrgancy", "en-IN", None),
    ])
    def test_classify(self, text, language, expected):
        assert classify_transcript(text, language) is expected


class TestSession:

    def make(self, notifier, engine, clock, **kwargs):
        outcomes = []
        session = ConfirmationSession(notifier, engine, clock, on_result=outcomes.append, **kwargs)
        return session, outcomes

    def test_prompt_then_listen(self, notifier, engine, clock):
        session, _ = self.make(notifier, engine, clock)
        session.start()

        assert notifier.spoken == ["are_you_okay"]
        assert engine.starts == 0
        clock.advance(0.5)
        assert engine.starts == 1
        assert engine.language == "en-IN"

    def test_ok_transcript(self, notifier, engine, clock):
        session, outcomes = self.make(notifier, engine, clock)
        session.start()
        clock.advance(1)

        engine.on_transcript("yeah i'm fine")

        assert len(outcomes) == 1
        assert outcomes[0].result is ConfirmationResult.OK
        assert outcomes[0].response_time_s == pytest.approx(1.0)
        assert outcomes[0].transcript == "yeah i'm fine"
        assert notifier.vibrations == [VibrationPattern.CONFIRM]
        assert engine.stops == 1
        assert not session.active

    def test_danger_transcript_vibrates_alert(self, notifier, engine, clock):
        session, outcomes = self.make(notifier, engine, clock)
        session.start()
        clock.advance(1)
        engine.on_transcript("help")
        assert outcomes[0].result is ConfirmationResult.DANGER
        assert notifier.vibrations == [VibrationPattern.ALERT]

    def test_unrecognized_transcript_keeps_listening(self, notifier, engine, clock):
        session, outcomes = self.make(notifier, engine, clock)
        session.start()
        clock.advance(1)
        engine.on_transcript("the weather is nice")
        assert outcomes == []
        assert session.active

    def test_timeout_at_deadline_exactly_once(self, notifier, engine, clock):
        session, outcomes = self.make(notifier, engine, clock)
        session.start()

        clock.advance(4)
        assert outcomes == []
        clock.advance(1)

        assert [o.result for o in outcomes] == [ConfirmationResult.TIMEOUT]
        assert outcomes[0].response_time_s == pytest.approx(5.0)

        engine.on_transcript("help")
        session.stop()
        clock.advance(10)
        assert len(outcomes) == 1

    def test_engine_end_restarts_listening(self, notifier, engine, clock):
        session, _ = self.make(notifier, engine, clock)
        session.start()
        clock.advance(1)
        engine.on_end()
        assert engine.starts == 2

    def test_recoverable_error_is_ignored(self, notifier, engine, clock):
        session, outcomes = self.make(notifier, engine, clock)
        session.start()
        clock.advance(1)
        engine.on_error("no-speech")
        assert outcomes == []
        assert session.active

    def test_fatal_error_is_timeout(self, notifier, engine, clock):
        session, outcomes = self.make(notifier, engine, clock)
        session.start()
        clock.advance(1)
        engine.on_error("not-allowed")
        assert outcomes[0].result is ConfirmationResult.TIMEOUT
        assert outcomes[0].response_time_s == pytest.approx(1.0)

    def test_engine_start_failure_waits_for_deadline(self, notifier, clock):
        engine = ScriptedEngine(fail_on_start=True)
        session, outcomes = self.make(notifier, engine, clock)
        session.start()
        clock.advance(1)
        assert engine.starts == 1
        assert outcomes == []
        clock.advance(4)
        assert outcomes[0].result is ConfirmationResult.TIMEOUT
        assert engine.stops == 0

    def test_no_engine_waits_for_deadline(self, notifier, clock):
        session, outcomes = self.make(notifier, None, clock)
        session.start()
        clock.advance(5)
        assert outcomes[0].result is ConfirmationResult.TIMEOUT

    def test_cancel(self, notifier, engine, clock):
        session, outcomes = self.make(notifier, engine, clock)
        session.start()
        session.cancel()
        clock.advance(10)
        assert [o.result for o in outcomes] == [ConfirmationResult.CANCELLED]
        assert engine.starts == 0

    def test_stop_produces_no_outcome(self, notifier, engine, clock):
        session, outcomes = self.make(notifier, engine, clock)
        session.start()
        clock.advance(1)
        session.stop()
        session.stop()
        clock.advance(10)
        assert outcomes == []
        assert engine.stops == 1

    def test_language_passed_to_prompt_and_engine(self, notifier, engine, clock):
        session, outcomes = self.make(notifier, engine, clock, language="hi-IN")
        session.start()
        clock.advance(1)
        assert engine.language == "hi-IN"
        engine.on_transcript("theek hai")
        assert outcomes[0].result is ConfirmationResult.OK

    def test_invalid_timeout(self, notifier, engine, clock):
        with pytest.raises(ValueError):
            ConfirmationSession(notifier, engine, clock, on_result=print, timeout_s=0)

    def test_start_twice(self, notifier, engine, clock):
        session, _ = self.make(notifier, engine, clock)
        session.start()
        with pytest.raises(RuntimeError):
            session.start()
