"""
Microphone listening engine for the confirmation dialogue.

Records short mono 16 kHz chunks with sounddevice, writes each chunk to a
temporary wav via soundfile and transcribes it in-process with pywhispercpp
(fully offline). Each chunk produces at most one transcript followed by
on_end(); the confirmation session restarts the engine while it is still
waiting, so listening continues chunk after chunk until a keyword matches or
the deadline passes.

Dependencies (the `voice` extra):
    pip install sounddevice soundfile pywhispercpp
"""

from __future__ import annotations

import logging
import tempfile
import threading
from pathlib import Path
from typing import Callable

import sounddevice as sd
import soundfile as sf
from pywhispercpp.model import Model

logger = logging.getLogger(__name__)

BLANK_MARKERS = ("[blank_audio]", "[silence]", "(silence)")


class WhisperListeningEngine:
    """
    Parameters
    ----------
    whisper_model : str
        Model name (e.g. "base", "tiny") or path to a local ggml file. A
        multilingual model is needed for Hindi and Tamil.
    whisper_models_dir : str | None
        Where pywhispercpp stores/looks for model files.
    n_threads : int
        CPU threads for inference.
    chunk_seconds : float
        Length of each recorded chunk.
    sample_rate : int
        Whisper expects 16000 Hz.
    dispatch : Callable[[Callable[[], None]], None] | None
        Callbacks are handed to this (normally RideMonitor.post_call) so they
        run on the monitor thread. None calls them from the worker thread.
    model : Model | None
        Pre-loaded model, mostly for tests.
    """

    def __init__(
        self,
        whisper_model: str = "base",
        whisper_models_dir: str | None = None,
        n_threads: int = 4,
        chunk_seconds: float = 2.0,
        sample_rate: int = 16000,
        dispatch: Callable[[Callable[[], None]], None] | None = None,
        model: Model | None = None,
    ):
        self.chunk_seconds = chunk_seconds
        self.sample_rate = sample_rate
        self.dispatch = dispatch
        self._stop = threading.Event()
        self._worker: threading.Thread | None = None

        if model is None:
            # loaded once and reused; avoids cold-start cost on each prompt
            logger.info("Loading whisper model '%s' (this may take a moment)...", whisper_model)
            model = Model(
                model=whisper_model,
                models_dir=whisper_models_dir,
                print_realtime=False,
                print_progress=False,
                n_threads=n_threads,
            )
            logger.info("Whisper model loaded.")
        self._whisper = model

    # -----------------------------------------------------------------------
    # ListeningEngine API
    # -----------------------------------------------------------------------

    def start(self, language, on_transcript, on_end, on_error) -> None:
        self._stop.clear()
        self._worker = threading.Thread(
            target=self._listen_once,
            args=(language, on_transcript, on_end, on_error),
            daemon=True,
        )
        self._worker.start()

    def stop(self) -> None:
        self._stop.set()
        try:
            sd.stop()
        except Exception as exc:
            logger.debug("sounddevice stop failed: %s", exc)

    # -----------------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------------

    def _listen_once(self, language, on_transcript, on_end, on_error) -> None:
        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile(suffix=".wav", delete=False) as f:
                tmp_path = f.name

            self._record(tmp_path)
            if self._stop.is_set():
                self._emit(on_error, "aborted")
                return

            transcript = self.transcribe(tmp_path, language)
            if self._stop.is_set():
                return
            if transcript:
                self._emit(on_transcript, transcript)
            else:
                logger.debug("No speech in chunk")
            self._emit(on_end)

        except Exception as exc:
            logger.error("Listening failed: %s", exc, exc_info=True)
            self._emit(on_error, "audio-capture")

        finally:
            if tmp_path:
                Path(tmp_path).unlink(missing_ok=True)

    def _record(self, filepath: str) -> None:
        audio = sd.rec(
            frames=int(self.chunk_seconds * self.sample_rate),
            samplerate=self.sample_rate,
            channels=1,
            dtype="int16",
        )
        sd.wait()
        sf.write(filepath, audio, self.sample_rate)

    def transcribe(self, audio_path: str, language: str) -> str:
        """Lowercased transcript, or '' for silence."""
        segments = self._whisper.transcribe(audio_path, language=language.split("-")[0])
        transcript = " ".join(seg.text for seg in segments).strip().lower()
        if not transcript or transcript in BLANK_MARKERS:
            return ""
        return transcript

    def _emit(self, callback, *args) -> None:
        if self.dispatch is not None:
            self.dispatch(lambda: callback(*args))
        else:
            callback(*args)
