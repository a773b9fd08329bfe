import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


POSE_LANDMARK_COUNT = 33
HAND_LANDMARK_COUNT = 21
FACE_LANDMARK_COUNT = 468

SUB_COMPONENT_MAX = 40
CATEGORY_MAX = 200


# -------- Errors --------
class AnalysisError(Exception):
    """Base class for failures surfaced to the caller of an analysis run."""


class VideoOpenError(AnalysisError):
    pass


class DetectorInitError(AnalysisError):
    pass


class SamplerTimeoutError(AnalysisError):
    """No frame was produced within the sampler's wall-clock budget."""


class AnalysisCancelled(AnalysisError):
    pass


class TranscriptionError(AnalysisError):
    pass


class ReportError(AnalysisError):
    pass


# -------- Landmarks --------
@dataclass(frozen=True)
class Landmark:
    x: float
    y: float
    z: float = 0.0
    visibility: float = 1.0
    presence: float = 1.0

    def is_finite(self) -> bool:
        return all(math.isfinite(v) for v in (self.x, self.y, self.z))


@dataclass(frozen=True)
class LandmarkSet:
    points: Tuple[Landmark, ...]

    def __len__(self) -> int:
        return len(self.points)

    def __getitem__(self, index: int) -> Landmark:
        return self.points[index]

    def __iter__(self) -> Iterator[Landmark]:
        return iter(self.points)

    @classmethod
    def complete(cls, points: Sequence[Landmark], expected: int) -> Optional["LandmarkSet"]:
        """Return a set only when all expected key points are present and finite."""
        if len(points) < expected:
            return None
        if not all(p.is_finite() for p in points):
            return None
        return cls(tuple(points))


@dataclass(frozen=True)
class Category:
    name: str
    score: float


@dataclass(frozen=True)
class BoundingBox:
    x: float
    y: float
    width: float
    height: float


# -------- Per-modality detections (tagged union) --------
@dataclass(frozen=True)
class NoDetection:
    modality: str
    # Set when the detector raised instead of returning an empty result
    error: Optional[str] = None


@dataclass(frozen=True)
class PoseDetection:
    landmarks: LandmarkSet


@dataclass(frozen=True)
class HandDetection:
    landmarks: LandmarkSet
    handedness: Optional[Category] = None
    gestures: Tuple[Category, ...] = ()

    @property
    def top_gesture(self) -> Optional[Category]:
        if not self.gestures:
            return None
        return max(self.gestures, key=lambda c: c.score)


@dataclass(frozen=True)
class GestureDetection:
    hands: Tuple[HandDetection, ...]


@dataclass(frozen=True)
class FaceDetection:
    landmarks: LandmarkSet
    blendshapes: Tuple[Category, ...] = ()


PoseResult = Union[PoseDetection, NoDetection]
GestureResult = Union[GestureDetection, NoDetection]
FaceResult = Union[FaceDetection, NoDetection]


@dataclass(frozen=True)
class Frame:
    """One sampling tick: a timestamp and whatever each detector returned."""

    timestamp: float
    pose: PoseResult
    gesture: GestureResult
    face: FaceResult


@dataclass(frozen=True)
class PoseFrame:
    timestamp: float
    landmarks: LandmarkSet
    confidence: float
    visibility: float
    presence: float


@dataclass(frozen=True)
class GestureFrame:
    timestamp: float
    hands: Tuple[HandDetection, ...]
    confidence: float

    @property
    def hand_count(self) -> int:
        return len(self.hands)


@dataclass(frozen=True)
class FaceFrame:
    timestamp: float
    landmarks: LandmarkSet
    blendshapes: Tuple[Category, ...]
    confidence: float
    bounding_box: Optional[BoundingBox] = None

    def blendshape_map(self) -> Dict[str, float]:
        return {c.name: float(c.score) for c in self.blendshapes}


# -------- Sampling output --------
class QualityLevel(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class DetectionQuality(BaseModel):
    model_config = ConfigDict(frozen=True)

    detection_rate: Dict[str, float]
    overall_quality: QualityLevel
    message: str = ""


class ProcessingStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_frames_processed: int = 0
    average_processing_time_ms: float = 0.0
    error_count: int = 0
    skipped_frames: int = 0
    detector_errors: Dict[str, int] = Field(default_factory=dict)


@dataclass(frozen=True)
class SamplingResult:
    pose_frames: Tuple[PoseFrame, ...]
    gesture_frames: Tuple[GestureFrame, ...]
    face_frames: Tuple[FaceFrame, ...]
    duration: float
    frame_count: int
    interval: float
    quality: DetectionQuality
    processing_stats: ProcessingStats = field(default_factory=ProcessingStats)


# -------- Transcript --------
class WordClass(str, Enum):
    WORD = "word"
    FILLER = "filler"
    PAUSE = "pause"
    NOISE = "noise"


class TranscriptSource(str, Enum):
    SPEECHKIT = "speechkit"
    FALLBACK = "fallback"
    PROVIDED = "provided"


class RawWord(BaseModel):
    """A word as handed over by the transcription collaborator."""

    text: str
    start_time: float = Field(0.0, ge=0.0)
    end_time: float = Field(0.0, ge=0.0)
    confidence: float = Field(1.0, ge=0.0, le=1.0)
    language_tag: Optional[str] = None


class TranscriptWord(RawWord):
    model_config = ConfigDict(frozen=True)

    is_filler_word: bool = False
    word_class: WordClass = WordClass.WORD


class Transcript(BaseModel):
    words: List[RawWord] = Field(default_factory=list)
    source: TranscriptSource = TranscriptSource.PROVIDED
    language: Optional[str] = None

    @property
    def text(self) -> str:
        return " ".join(w.text for w in self.words)


class AudioFeatures(BaseModel):
    model_config = ConfigDict(frozen=True)

    mean_dbfs: float
    # Coefficient of variation of frame RMS energy
    loudness_variability: float
    duration: float


# -------- Lexical output --------
class FillerWordCount(BaseModel):
    word: str
    count: int
    timestamps: List[float]


class FillerWordStat(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_count: int = 0
    ratio: float = 0.0
    per_word_counts: List[FillerWordCount] = Field(default_factory=list)
    per_language_counts: Dict[str, int] = Field(default_factory=dict)
    pause_count: int = 0
    noise_count: int = 0

    @property
    def most_common(self) -> Optional[FillerWordCount]:
        return self.per_word_counts[0] if self.per_word_counts else None


class VocabularyStats(BaseModel):
    total_words: int = 0
    unique_words: int = 0
    richness: float = 0.0
    average_word_length: float = 0.0
    complex_words: int = 0
    lexical_density: float = 0.0


class PauseStats(BaseModel):
    total_pauses: int = 0
    average_pause_length: float = 0.0
    appropriate_pauses: int = 0
    long_pauses: int = 0


class SentenceStats(BaseModel):
    count: int = 0
    average_length: float = 0.0
    complexity: float = 0.0


class LanguageMixing(BaseModel):
    is_multilingual: bool = False
    switch_points: int = 0
    dominant_language: str
    language_distribution: Dict[str, float] = Field(default_factory=dict)


class LexicalResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    words: List[TranscriptWord] = Field(default_factory=list)
    duration: float = 0.0
    speaking_rate: float = 0.0
    vocabulary: VocabularyStats = Field(default_factory=VocabularyStats)
    filler_words: FillerWordStat = Field(default_factory=FillerWordStat)
    pauses: PauseStats = Field(default_factory=PauseStats)
    sentences: SentenceStats = Field(default_factory=SentenceStats)
    language_mixing: Optional[LanguageMixing] = None
    rate_variability: float = 0.0


# -------- Scores --------
class CategoryMetric(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    score: int = Field(ge=0)
    max_score: int = CATEGORY_MAX
    sub_components: Dict[str, int]
    issues: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    details: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_sum(self) -> "CategoryMetric":
        for key, value in self.sub_components.items():
            if not 0 <= value <= SUB_COMPONENT_MAX:
                raise ValueError(f"sub-component {key}={value} outside [0, {SUB_COMPONENT_MAX}]")
        expected = max(0, min(self.max_score, sum(self.sub_components.values())))
        if self.score != expected:
            raise ValueError(f"score {self.score} does not match clamped sum {expected}")
        return self


class AIReport(BaseModel):
    executive_summary: str = ""
    strengths: List[str] = Field(default_factory=list)
    areas_for_improvement: List[str] = Field(default_factory=list)
    recommendations: Dict[str, List[str]] = Field(default_factory=dict)
    action_plan: Dict[str, List[str]] = Field(default_factory=dict)
    motivational_message: Optional[str] = None


class ComprehensiveResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_score: int = Field(ge=0, le=5 * CATEGORY_MAX)
    max_total_score: int = 5 * CATEGORY_MAX
    percentage: float
    grade: str
    categories: Dict[str, CategoryMetric]
    strengths: List[str]
    priority_areas: List[str]
    improvement_plan: List[str]
    overall_feedback: str
    quality: Optional[DetectionQuality] = None
    transcript_source: Optional[TranscriptSource] = None
    ai_report: Optional[AIReport] = None

    @model_validator(mode="after")
    def _check_total(self) -> "ComprehensiveResult":
        if self.total_score != sum(m.score for m in self.categories.values()):
            raise ValueError("total_score must equal the sum of category scores")
        return self
