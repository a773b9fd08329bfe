"""
Unit tests for per-frame confidence values and run-level detection quality.

Run with: pytest tests/test_quality.py -v
"""

import pytest

from backend.api.services.models import Category, GestureDetection, LandmarkSet, QualityLevel
from backend.api.services.quality import SignalQualityEstimator

from conftest import make_face_landmarks, make_hand, make_pose_landmarks


@pytest.fixture
def estimator():
    return SignalQualityEstimator()


class TestPoseConfidence:
    """Pose confidence, visibility and presence."""

    def test_fully_visible_pose_scores_one(self, estimator):
        """All key points visible and present give confidence 1."""
        lms = LandmarkSet(tuple(make_pose_landmarks(visibility=1.0, presence=1.0)))
        assert estimator.pose_confidence(lms) == pytest.approx(1.0)

    def test_weights_visibility_over_presence(self, estimator):
        """Key point score is visibility*0.6 + presence*0.4."""
        lms = LandmarkSet(tuple(make_pose_landmarks(visibility=0.5, presence=1.0)))
        assert estimator.pose_confidence(lms) == pytest.approx(0.7)
        assert estimator.pose_visibility(lms) == pytest.approx(0.5)
        assert estimator.pose_presence(lms) == pytest.approx(1.0)


class TestGestureConfidence:
    """Gesture confidence from hand count and top gesture scores."""

    def test_no_hands_is_zero(self, estimator):
        """Nothing detected gives 0."""
        assert estimator.gesture_confidence(GestureDetection(hands=())) == 0.0

    def test_unclassified_hands_give_fixed_value(self, estimator):
        """Hands without gesture categories give 0.6."""
        detection = GestureDetection(hands=(make_hand(gesture=None),))
        assert estimator.gesture_confidence(detection) == pytest.approx(0.6)

    def test_blends_top_score_and_hand_count(self, estimator):
        """One hand at 0.9 gives 0.7*0.9 + 0.3*0.5."""
        detection = GestureDetection(hands=(make_hand("Thumb_Up", 0.9),))
        assert estimator.gesture_confidence(detection) == pytest.approx(0.78)

    def test_two_hands_saturate_hand_term(self, estimator):
        """Two hands fill the hand-count term."""
        detection = GestureDetection(hands=(make_hand("Victory", 1.0), make_hand("Open_Palm", 1.0)))
        assert estimator.gesture_confidence(detection) == pytest.approx(1.0)


class TestFaceConfidence:
    """Face confidence and bounding box."""

    def test_full_mesh_and_active_blendshapes(self, estimator):
        """Blendshapes at or below 0.05 are ignored in the mean."""
        lms = make_face_landmarks()
        shapes = [Category("jawOpen", 0.5), Category("eyeBlinkLeft", 0.01)]
        assert estimator.face_confidence(lms, shapes) == pytest.approx(0.8)

    def test_no_active_blendshapes(self, estimator):
        """Only the landmark term contributes when no blendshape qualifies."""
        lms = make_face_landmarks()
        assert estimator.face_confidence(lms, []) == pytest.approx(0.6)

    def test_bounding_box_spans_landmarks(self, estimator):
        """Bounding box comes from landmark min/max."""
        box = estimator.face_bounding_box(make_face_landmarks())
        assert box is not None
        assert box.x == pytest.approx(0.4)
        assert box.width == pytest.approx(0.18)

    def test_empty_landmarks_have_no_box(self, estimator):
        """No points, no box."""
        assert estimator.face_bounding_box(LandmarkSet(())) is None


class TestDetectionQuality:
    """Detection rates and quality classification."""

    def test_classification_edges(self, estimator):
        """Edges at 0.8, 0.6 and 0.4 are inclusive."""
        assert estimator.classify(0.8) == QualityLevel.EXCELLENT
        assert estimator.classify(0.79) == QualityLevel.GOOD
        assert estimator.classify(0.6) == QualityLevel.GOOD
        assert estimator.classify(0.4) == QualityLevel.FAIR
        assert estimator.classify(0.39) == QualityLevel.POOR

    def test_zero_frames_is_poor(self, estimator):
        """No processed frames gives zero rates and poor quality."""
        quality = estimator.detection_quality(0, {})
        assert quality.overall_quality == QualityLevel.POOR
        assert quality.detection_rate == {"pose": 0.0, "gesture": 0.0, "face": 0.0}

    def test_rates_per_modality(self, estimator):
        """Rates divide detected frames by processed frames."""
        quality = estimator.detection_quality(100, {"pose": 80, "gesture": 100, "face": 90})
        assert quality.detection_rate["pose"] == pytest.approx(0.8)
        assert quality.overall_quality == QualityLevel.EXCELLENT
        assert quality.message
