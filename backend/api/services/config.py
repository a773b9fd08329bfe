import os
from typing import List, Optional

from pydantic import BaseModel, Field


SUPPORTED_LANGUAGES = ("ru-RU", "kk-KZ", "en-US")
MODELS_DIR = os.path.join(os.path.dirname(__file__), "model_assets")

# MediaPipe Tasks model bundles (download on first use)
POSE_MODEL_URL = "https://storage.googleapis.com/mediapipe-models/pose_landmarker/pose_landmarker_full/float16/1/pose_landmarker_full.task"
GESTURE_MODEL_URL = "https://storage.googleapis.com/mediapipe-models/gesture_recognizer/gesture_recognizer/float16/1/gesture_recognizer.task"
FACE_MODEL_URL = "https://storage.googleapis.com/mediapipe-models/face_landmarker/face_landmarker/float16/1/face_landmarker.task"


# -------- Env helpers --------
def _str_env(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


# -------- Config models --------
class DetectorConfig(BaseModel):
    """Model locations and thresholds for the three MediaPipe detectors."""

    pose_model_url: str = POSE_MODEL_URL
    gesture_model_url: str = GESTURE_MODEL_URL
    face_model_url: str = FACE_MODEL_URL
    models_dir: str = MODELS_DIR
    num_hands: int = 2
    min_detection_confidence: float = Field(0.5, ge=0.0, le=1.0)
    min_presence_confidence: float = Field(0.5, ge=0.0, le=1.0)
    min_tracking_confidence: float = Field(0.5, ge=0.0, le=1.0)

    def model_path(self, url: str) -> str:
        return os.path.join(self.models_dir, os.path.basename(url))


class SamplerConfig(BaseModel):
    max_width: int = 640
    max_height: int = 480
    # Wall-clock budget for producing the first frame
    timeout_seconds: float = 90.0
    long_video_seconds: float = 300.0
    medium_video_seconds: float = 120.0
    long_interval: float = 1.0
    medium_interval: float = 0.5
    short_interval: float = 0.2
    detector_workers: int = 3


class LexicalConfig(BaseModel):
    default_language: str = "ru-RU"
    segment_size: int = 20
    multilingual_threshold: float = 0.15
    pause_min_seconds: float = 0.5
    pause_appropriate_max_seconds: float = 2.0
    pause_long_seconds: float = 3.0
    rate_window_seconds: float = 10.0


class TranscriptionConfig(BaseModel):
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    languages: List[str] = Field(default_factory=lambda: list(SUPPORTED_LANGUAGES))
    chunk_seconds: float = 30.0
    sample_rate: int = 16000
    timeout_seconds: float = 120.0
    ffmpeg_binary: str = "ffmpeg"


class ReportConfig(BaseModel):
    enabled: bool = False
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    language: str = "ru"
    timeout_seconds: float = 60.0


class AnalysisConfig(BaseModel):
    """Everything one analysis run needs, passed explicitly to each stage."""

    detectors: DetectorConfig = Field(default_factory=DetectorConfig)
    sampler: SamplerConfig = Field(default_factory=SamplerConfig)
    lexical: LexicalConfig = Field(default_factory=LexicalConfig)
    transcription: TranscriptionConfig = Field(default_factory=TranscriptionConfig)
    report: ReportConfig = Field(default_factory=ReportConfig)

    @classmethod
    def from_env(cls) -> "AnalysisConfig":
        languages = _str_env("LESSON_LANGUAGES")
        language_list = [s.strip() for s in languages.split(",") if s.strip()] if languages else None
        lexical = LexicalConfig(
            default_language=_str_env("LESSON_DEFAULT_LANGUAGE", "ru-RU"),
            segment_size=_int_env("LESSON_SEGMENT_SIZE", 20),
            multilingual_threshold=_float_env("LESSON_MULTILINGUAL_THRESHOLD", 0.15),
        )
        transcription = TranscriptionConfig(
            endpoint=_str_env("LESSON_TRANSCRIBE_URL"),
            api_key=_str_env("LESSON_TRANSCRIBE_API_KEY"),
            chunk_seconds=_float_env("LESSON_CHUNK_SECONDS", 30.0),
            ffmpeg_binary=_str_env("LESSON_FFMPEG", "ffmpeg"),
        )
        if language_list:
            transcription.languages = language_list
        return cls(
            detectors=DetectorConfig(
                models_dir=_str_env("LESSON_MODELS_DIR", MODELS_DIR),
                min_detection_confidence=_float_env("LESSON_MIN_DETECTION_CONFIDENCE", 0.5),
            ),
            sampler=SamplerConfig(
                max_width=_int_env("LESSON_MAX_WIDTH", 640),
                max_height=_int_env("LESSON_MAX_HEIGHT", 480),
                timeout_seconds=_float_env("LESSON_SAMPLER_TIMEOUT", 90.0),
            ),
            lexical=lexical,
            transcription=transcription,
            report=ReportConfig(
                enabled=_bool_env("LESSON_REPORT_ENABLED", False),
                endpoint=_str_env("LESSON_REPORT_URL"),
                api_key=_str_env("LESSON_REPORT_API_KEY"),
                language=_str_env("LESSON_REPORT_LANGUAGE", "ru"),
            ),
        )
