"""Per-frame confidence values and run-level detection quality."""

from typing import Dict, Iterable, Mapping, Optional, Sequence

from .models import (
    FACE_LANDMARK_COUNT,
    BoundingBox,
    Category,
    DetectionQuality,
    GestureDetection,
    LandmarkSet,
    QualityLevel,
)


# nose, shoulders, elbows, wrists, hips
POSE_KEY_POINTS = (0, 11, 12, 13, 14, 15, 16, 23, 24)
MODALITIES = ("pose", "gesture", "face")

BLENDSHAPE_NOISE_FLOOR = 0.05
UNCLASSIFIED_HANDS_CONFIDENCE = 0.6

QUALITY_EDGES = (
    (0.8, QualityLevel.EXCELLENT),
    (0.6, QualityLevel.GOOD),
    (0.4, QualityLevel.FAIR),
)

QUALITY_MESSAGES = {
    QualityLevel.EXCELLENT: "Excellent detection quality; results are highly reliable.",
    QualityLevel.GOOD: "Good detection quality; results are reliable.",
    QualityLevel.FAIR: "Fair detection quality; some results may be approximate.",
    QualityLevel.POOR: "Poor detection quality; check lighting and camera framing.",
}


def _mean(values: Iterable[float]) -> float:
    vals = list(values)
    return sum(vals) / len(vals) if vals else 0.0


class SignalQualityEstimator:
    """Turns raw detections into scalar confidence and detection-rate quality."""

    def pose_confidence(self, landmarks: LandmarkSet) -> float:
        scores = [
            landmarks[i].visibility * 0.6 + landmarks[i].presence * 0.4
            for i in POSE_KEY_POINTS
            if i < len(landmarks)
        ]
        return _mean(scores)

    def pose_visibility(self, landmarks: LandmarkSet) -> float:
        return _mean(p.visibility for p in landmarks)

    def pose_presence(self, landmarks: LandmarkSet) -> float:
        return _mean(p.presence for p in landmarks)

    def gesture_confidence(self, detection: GestureDetection) -> float:
        if not detection.hands:
            return 0.0
        top_scores = [h.top_gesture.score for h in detection.hands if h.top_gesture is not None]
        if not top_scores:
            # Hands were found but no gesture was classified
            return UNCLASSIFIED_HANDS_CONFIDENCE
        hands_normalized = min(1.0, len(detection.hands) / 2.0)
        return 0.7 * _mean(top_scores) + 0.3 * hands_normalized

    def face_confidence(self, landmarks: LandmarkSet, blendshapes: Sequence[Category]) -> float:
        landmark_ratio = min(1.0, len(landmarks) / float(FACE_LANDMARK_COUNT))
        active = [c.score for c in blendshapes if c.score > BLENDSHAPE_NOISE_FLOOR]
        return landmark_ratio * 0.6 + _mean(active) * 0.4

    def face_bounding_box(self, landmarks: LandmarkSet) -> Optional[BoundingBox]:
        if len(landmarks) == 0:
            return None
        xs = [p.x for p in landmarks]
        ys = [p.y for p in landmarks]
        return BoundingBox(x=min(xs), y=min(ys), width=max(xs) - min(xs), height=max(ys) - min(ys))

    def classify(self, mean_rate: float) -> QualityLevel:
        for edge, level in QUALITY_EDGES:
            if mean_rate >= edge:
                return level
        return QualityLevel.POOR

    def detection_quality(self, frame_count: int, detected: Mapping[str, int]) -> DetectionQuality:
        rates: Dict[str, float] = {}
        for modality in MODALITIES:
            count = detected.get(modality, 0)
            rates[modality] = count / frame_count if frame_count > 0 else 0.0
        level = self.classify(_mean(rates.values()))
        return DetectionQuality(
            detection_rate=rates,
            overall_quality=level,
            message=QUALITY_MESSAGES[level],
        )
