import logging
import os
import threading
from typing import Any, Dict, List, Optional, Sequence

import mediapipe as mp
import requests
from mediapipe.tasks import python as mp_python
from mediapipe.tasks.python import vision as mp_vision

from .config import DetectorConfig
from .models import (
    FACE_LANDMARK_COUNT,
    HAND_LANDMARK_COUNT,
    POSE_LANDMARK_COUNT,
    Category,
    DetectorInitError,
    FaceDetection,
    GestureDetection,
    HandDetection,
    Landmark,
    LandmarkSet,
    NoDetection,
    PoseDetection,
)

logger = logging.getLogger(__name__)


# -------- Utilities --------
def ensure_model_from(url: str, path: str) -> str:
    """Download a model once and cache it locally."""
    if os.path.exists(path):
        return path
    os.makedirs(os.path.dirname(path), exist_ok=True)
    logger.info("Downloading model %s", url)
    r = requests.get(url, timeout=120)
    r.raise_for_status()
    with open(path, "wb") as f:
        f.write(r.content)
    return path


def _opt(value: Optional[float], default: float) -> float:
    return float(value) if value is not None else default


def to_landmarks(points: Sequence[Any]) -> List[Landmark]:
    return [
        Landmark(
            x=float(p.x),
            y=float(p.y),
            z=_opt(getattr(p, "z", None), 0.0),
            visibility=_opt(getattr(p, "visibility", None), 1.0),
            presence=_opt(getattr(p, "presence", None), 1.0),
        )
        for p in points
    ]


def to_categories(categories: Optional[Sequence[Any]]) -> List[Category]:
    if not categories:
        return []
    return [Category(name=c.category_name, score=float(c.score)) for c in categories]


# -------- Detector interface --------
class LandmarkDetector:
    """One MediaPipe task in VIDEO mode, created once and reused frame by frame.

    MediaPipe requires strictly increasing timestamps per task instance, so
    each run is shifted past the last timestamp the instance has seen.
    """

    modality: str = "base"

    def __init__(self, config: DetectorConfig) -> None:
        self.config = config
        self._task = None
        self._lock = threading.Lock()
        self._last_ts = -1
        self._run_offset = 0

    @property
    def ready(self) -> bool:
        return self._task is not None

    def initialize(self) -> None:
        with self._lock:
            if self._task is not None:
                return
            try:
                self._task = self._create()
            except Exception as exc:
                raise DetectorInitError(f"{self.modality} detector failed to initialize: {exc}") from exc
            logger.info("%s detector ready", self.modality)

    def begin_run(self) -> None:
        self._run_offset = self._last_ts + 1000

    def detect(self, frame_rgb, timestamp_ms: int):
        if self._task is None:
            raise DetectorInitError(f"{self.modality} detector used before initialize()")
        ts = max(self._run_offset + int(timestamp_ms), self._last_ts + 1)
        self._last_ts = ts
        mp_image = mp.Image(image_format=mp.ImageFormat.SRGB, data=frame_rgb)
        return self._convert(self._run(mp_image, ts))

    def close(self) -> None:
        with self._lock:
            if self._task is not None:
                self._task.close()
                self._task = None

    def _base_options(self, url: str):
        path = ensure_model_from(url, self.config.model_path(url))
        return mp_python.BaseOptions(model_asset_path=path)

    def _create(self):
        raise NotImplementedError

    def _run(self, mp_image, timestamp_ms: int):
        raise NotImplementedError

    def _convert(self, result):
        raise NotImplementedError


# -------- Pose (MediaPipe Tasks) --------
class PoseDetector(LandmarkDetector):
    modality = "pose"

    def _create(self):
        options = mp_vision.PoseLandmarkerOptions(
            base_options=self._base_options(self.config.pose_model_url),
            running_mode=mp_vision.RunningMode.VIDEO,
            output_segmentation_masks=False,
            min_pose_detection_confidence=self.config.min_detection_confidence,
            min_pose_presence_confidence=self.config.min_presence_confidence,
            min_tracking_confidence=self.config.min_tracking_confidence,
        )
        return mp_vision.PoseLandmarker.create_from_options(options)

    def _run(self, mp_image, timestamp_ms: int):
        return self._task.detect_for_video(mp_image, timestamp_ms)

    def _convert(self, result):
        if not result or not getattr(result, "pose_landmarks", None):
            return NoDetection("pose")
        # Use the first detected pose
        landmarks = LandmarkSet.complete(to_landmarks(result.pose_landmarks[0]), POSE_LANDMARK_COUNT)
        if landmarks is None:
            return NoDetection("pose")
        return PoseDetection(landmarks=landmarks)


# -------- Gesture (MediaPipe Tasks) --------
class GestureDetector(LandmarkDetector):
    modality = "gesture"

    def _create(self):
        options = mp_vision.GestureRecognizerOptions(
            base_options=self._base_options(self.config.gesture_model_url),
            running_mode=mp_vision.RunningMode.VIDEO,
            num_hands=self.config.num_hands,
            min_hand_detection_confidence=self.config.min_detection_confidence,
            min_hand_presence_confidence=self.config.min_presence_confidence,
            min_tracking_confidence=self.config.min_tracking_confidence,
        )
        return mp_vision.GestureRecognizer.create_from_options(options)

    def _run(self, mp_image, timestamp_ms: int):
        return self._task.recognize_for_video(mp_image, timestamp_ms)

    def _convert(self, result):
        if not result or not getattr(result, "hand_landmarks", None):
            return NoDetection("gesture")
        gestures = getattr(result, "gestures", None) or []
        handedness = getattr(result, "handedness", None) or []
        hands: List[HandDetection] = []
        for i, lms in enumerate(result.hand_landmarks):
            landmarks = LandmarkSet.complete(to_landmarks(lms), HAND_LANDMARK_COUNT)
            if landmarks is None:
                continue
            side = to_categories(handedness[i]) if i < len(handedness) else []
            hands.append(HandDetection(
                landmarks=landmarks,
                handedness=side[0] if side else None,
                gestures=tuple(to_categories(gestures[i]) if i < len(gestures) else []),
            ))
        if not hands:
            return NoDetection("gesture")
        return GestureDetection(hands=tuple(hands))


# -------- Face (MediaPipe Tasks) --------
class FaceDetector(LandmarkDetector):
    modality = "face"

    def _create(self):
        options = mp_vision.FaceLandmarkerOptions(
            base_options=self._base_options(self.config.face_model_url),
            running_mode=mp_vision.RunningMode.VIDEO,
            output_face_blendshapes=True,
            output_facial_transformation_matrixes=False,
            num_faces=1,
            min_face_detection_confidence=self.config.min_detection_confidence,
            min_face_presence_confidence=self.config.min_presence_confidence,
            min_tracking_confidence=self.config.min_tracking_confidence,
        )
        return mp_vision.FaceLandmarker.create_from_options(options)

    def _run(self, mp_image, timestamp_ms: int):
        return self._task.detect_for_video(mp_image, timestamp_ms)

    def _convert(self, result):
        if not result or not getattr(result, "face_landmarks", None):
            return NoDetection("face")
        landmarks = LandmarkSet.complete(to_landmarks(result.face_landmarks[0]), FACE_LANDMARK_COUNT)
        if landmarks is None:
            return NoDetection("face")
        blendshapes: List[Category] = []
        if getattr(result, "face_blendshapes", None):
            blendshapes = [c for c in to_categories(result.face_blendshapes[0]) if c.name != "_neutral"]
        return FaceDetection(landmarks=landmarks, blendshapes=tuple(blendshapes))


def build_detectors(config: DetectorConfig) -> Dict[str, LandmarkDetector]:
    return {
        "pose": PoseDetector(config),
        "gesture": GestureDetector(config),
        "face": FaceDetector(config),
    }
