from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pytest
import requests

from backend.api.services.models import (
    FACE_LANDMARK_COUNT,
    HAND_LANDMARK_COUNT,
    POSE_LANDMARK_COUNT,
    Category,
    DetectorInitError,
    FaceDetection,
    FaceFrame,
    GestureDetection,
    GestureFrame,
    HandDetection,
    Landmark,
    LandmarkSet,
    NoDetection,
    PoseDetection,
    PoseFrame,
    RawWord,
)
from backend.api.services.sampler import FrameSource


# -------- Synthetic landmarks --------
def make_pose_landmarks(
    nose: Tuple[float, float] = (0.5, 0.3),
    left_shoulder: Tuple[float, float] = (0.6, 0.5),
    right_shoulder: Tuple[float, float] = (0.4, 0.5),
    visibility: float = 0.9,
    presence: float = 0.9,
    count: int = POSE_LANDMARK_COUNT,
) -> List[Landmark]:
    points = [Landmark(x=0.5, y=0.6, visibility=visibility, presence=presence) for _ in range(count)]
    if count > 12:
        points[0] = Landmark(x=nose[0], y=nose[1], visibility=visibility, presence=presence)
        points[11] = Landmark(x=left_shoulder[0], y=left_shoulder[1], visibility=visibility, presence=presence)
        points[12] = Landmark(x=right_shoulder[0], y=right_shoulder[1], visibility=visibility, presence=presence)
    return points


def make_pose_frame(timestamp: float, **kwargs) -> PoseFrame:
    landmarks = LandmarkSet(tuple(make_pose_landmarks(**kwargs)))
    return PoseFrame(timestamp=timestamp, landmarks=landmarks, confidence=0.9, visibility=0.9, presence=0.9)


def make_hand(gesture: Optional[str] = "Open_Palm", score: float = 0.9) -> HandDetection:
    landmarks = LandmarkSet(tuple(Landmark(x=0.5, y=0.5) for _ in range(HAND_LANDMARK_COUNT)))
    gestures = (Category(gesture, score),) if gesture else ()
    return HandDetection(landmarks=landmarks, handedness=Category("Right", 0.95), gestures=gestures)


def make_gesture_frame(timestamp: float, gestures: Sequence[Tuple[str, float]] = (("Open_Palm", 0.9),)) -> GestureFrame:
    hands = tuple(make_hand(name, score) for name, score in gestures)
    return GestureFrame(timestamp=timestamp, hands=hands, confidence=0.8)


def make_face_landmarks(count: int = FACE_LANDMARK_COUNT) -> LandmarkSet:
    return LandmarkSet(tuple(Landmark(x=0.4 + (i % 10) * 0.02, y=0.2 + (i // 50) * 0.02) for i in range(count)))


def make_face_frame(timestamp: float, blendshapes: Optional[Dict[str, float]] = None) -> FaceFrame:
    shapes = blendshapes if blendshapes is not None else {"mouthSmileLeft": 0.5, "mouthSmileRight": 0.5}
    return FaceFrame(
        timestamp=timestamp,
        landmarks=make_face_landmarks(),
        blendshapes=tuple(Category(k, v) for k, v in shapes.items()),
        confidence=0.8,
    )


def make_words(texts: Iterable[str], step: float = 0.5, language: Optional[str] = None) -> List[RawWord]:
    return [
        RawWord(text=t, start_time=i * step, end_time=i * step + step * 0.8, language_tag=language)
        for i, t in enumerate(texts)
    ]


# -------- Fakes for the sampler --------
class FakeFrameSource(FrameSource):
    """Fixed-duration source returning a tiny RGB frame, or None at listed timestamps."""

    def __init__(self, duration: float, unreadable: Sequence[float] = ()) -> None:
        self.duration = duration
        self.unreadable = {round(t, 3) for t in unreadable}
        self.reads: List[float] = []
        self.closed = False

    def read_at(self, seconds: float) -> Optional[np.ndarray]:
        self.reads.append(seconds)
        if round(seconds, 3) in self.unreadable:
            return None
        return np.zeros((4, 4, 3), dtype=np.uint8)

    def close(self) -> None:
        self.closed = True


class FakeDetector:
    """Stands in for a MediaPipe-backed detector; ``respond`` maps a timestamp to a detection."""

    def __init__(self, modality: str, respond=None, fail_init: bool = False) -> None:
        self.modality = modality
        self.respond = respond
        self.fail_init = fail_init
        self.ready = False
        self.init_calls = 0
        self.runs = 0
        self.calls: List[int] = []
        self.closed = False

    def initialize(self) -> None:
        self.init_calls += 1
        if self.fail_init:
            raise DetectorInitError(f"{self.modality} model missing")
        self.ready = True

    def begin_run(self) -> None:
        self.runs += 1

    def detect(self, frame_rgb, timestamp_ms: int):
        self.calls.append(timestamp_ms)
        if self.respond is not None:
            return self.respond(timestamp_ms)
        return default_detection(self.modality)

    def close(self) -> None:
        self.closed = True
        self.ready = False


def default_detection(modality: str):
    if modality == "pose":
        return PoseDetection(landmarks=LandmarkSet(tuple(make_pose_landmarks())))
    if modality == "gesture":
        return GestureDetection(hands=(make_hand(),))
    if modality == "face":
        return FaceDetection(
            landmarks=make_face_landmarks(),
            blendshapes=(Category("mouthSmileLeft", 0.4), Category("browInnerUp", 0.3)),
        )
    return NoDetection(modality)


# -------- Fakes for HTTP collaborators --------
class FakeResponse:
    def __init__(self, payload, status: int = 200) -> None:
        self.payload = payload
        self.status = status

    def raise_for_status(self) -> None:
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def json(self):
        return self.payload


class FakeSession:
    """Answers each POST with the next queued response, raising queued exceptions."""

    def __init__(self, responses) -> None:
        self.responses = list(responses)
        self.bodies: List[dict] = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.bodies.append(json)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def fake_detectors() -> Dict[str, FakeDetector]:
    return {m: FakeDetector(m) for m in ("pose", "gesture", "face")}
