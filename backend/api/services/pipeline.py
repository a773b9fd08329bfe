import logging
import os
from typing import Callable, Optional, Tuple

from .config import AnalysisConfig
from .lexical import TranscriptLexicalAnalyzer
from .models import AnalysisCancelled, AudioFeatures, ComprehensiveResult, Transcript, TranscriptionError
from .report import ReportWriter
from .sampler import CancellationToken, LandmarkFrameSampler
from .scoring import MultimodalScoringEngine
from .transcription import (
    SpeechKitTranscriber,
    audio_features,
    extract_audio,
    fallback_transcript,
    load_audio,
)

logger = logging.getLogger(__name__)

# Share of overall progress spent sampling frames
SAMPLING_SHARE = 80.0


class LessonAnalyzer:
    """Video in, ComprehensiveResult out: sampling, transcription, lexical analysis, scoring."""

    def __init__(
        self,
        config: Optional[AnalysisConfig] = None,
        sampler: Optional[LandmarkFrameSampler] = None,
        lexical: Optional[TranscriptLexicalAnalyzer] = None,
        engine: Optional[MultimodalScoringEngine] = None,
        transcriber: Optional[SpeechKitTranscriber] = None,
        report_writer: Optional[ReportWriter] = None,
    ) -> None:
        self.config = config or AnalysisConfig()
        self.sampler = sampler or LandmarkFrameSampler(self.config.sampler, detector_config=self.config.detectors)
        self.lexical = lexical or TranscriptLexicalAnalyzer(self.config.lexical)
        self.engine = engine or MultimodalScoringEngine(self.config.sampler)
        self.transcriber = transcriber or SpeechKitTranscriber(self.config.transcription)
        self.report_writer = report_writer or ReportWriter(self.config.report)

    def close(self) -> None:
        self.sampler.close()

    def _fallback(self, duration: float) -> Transcript:
        return fallback_transcript(duration, self.config.lexical.default_language)

    def transcribe(self, video_path: str, duration: float) -> Tuple[Transcript, Optional[AudioFeatures]]:
        """Real transcript when the speech service answers, labeled fallback otherwise."""
        cfg = self.config.transcription
        wav_path = None
        try:
            wav_path = extract_audio(video_path, cfg)
            samples = load_audio(wav_path, cfg.sample_rate)
        except TranscriptionError:
            logger.warning("Audio extraction failed; using fallback transcript", exc_info=True)
            return self._fallback(duration), None
        finally:
            if wav_path and os.path.exists(wav_path):
                os.remove(wav_path)

        audio = audio_features(samples, cfg.sample_rate)
        try:
            transcript = self.transcriber.transcribe(samples, cfg.sample_rate)
        except TranscriptionError:
            logger.warning("Transcription failed; using fallback transcript", exc_info=True)
            return self._fallback(duration), audio
        return transcript, audio

    def analyze(
        self,
        video_path: str,
        on_progress: Optional[Callable[[float], None]] = None,
        cancel_token: Optional[CancellationToken] = None,
        transcript: Optional[Transcript] = None,
    ) -> ComprehensiveResult:
        def report(value: float) -> None:
            if on_progress is not None:
                on_progress(value)

        sampling = self.sampler.sample(
            video_path,
            on_progress=lambda p: report(p * SAMPLING_SHARE / 100.0),
            cancel_token=cancel_token,
        )

        if cancel_token is not None and cancel_token.cancelled:
            raise AnalysisCancelled("Analysis cancelled after sampling")
        audio = None
        if transcript is None:
            transcript, audio = self.transcribe(video_path, sampling.duration)
        report(90.0)

        duration = sampling.duration or max((w.end_time for w in transcript.words), default=0.0)
        lexical = self.lexical.analyze(transcript.words, duration)
        result = self.engine.score(
            sampling.pose_frames,
            sampling.gesture_frames,
            sampling.face_frames,
            lexical,
            duration,
            audio=audio,
            quality=sampling.quality,
            transcript_source=transcript.source,
        )
        report(95.0)
        result = self.report_writer.enrich(result, transcript)
        report(100.0)
        return result
