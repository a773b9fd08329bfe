"""
Unit tests for adaptive frame sampling and detector orchestration.

Detectors and the video source are faked so no model files or codecs are needed.

Run with: pytest tests/test_sampler.py -v
"""

from types import SimpleNamespace

import pytest

from backend.api.services.config import DetectorConfig, SamplerConfig
from backend.api.services.detectors import FaceDetector, GestureDetector, PoseDetector
from backend.api.services.models import (
    AnalysisCancelled,
    DetectorInitError,
    Landmark,
    LandmarkSet,
    NoDetection,
    PoseDetection,
    QualityLevel,
    SamplerTimeoutError,
)
from backend.api.services.sampler import (
    CancellationToken,
    LandmarkFrameSampler,
    choose_interval,
    expected_ticks,
    fit_canvas,
)

from conftest import FakeDetector, FakeFrameSource, make_pose_landmarks


class StepClock:
    """Monotonic clock that advances a fixed step on every read."""

    def __init__(self, step: float) -> None:
        self.step = step
        self.now = 0.0

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value


class TestSamplingPolicy:
    """Interval selection and canvas fitting."""

    def test_interval_by_duration(self):
        """Longer videos are sampled more coarsely."""
        config = SamplerConfig()
        assert choose_interval(600.0, config) == 1.0
        assert choose_interval(300.0, config) == 0.5
        assert choose_interval(200.0, config) == 0.5
        assert choose_interval(120.0, config) == 0.2
        assert choose_interval(10.0, config) == 0.2

    def test_expected_ticks(self):
        """Tick count follows the interval for the duration."""
        config = SamplerConfig()
        assert expected_ticks(600.0, config) == 600
        assert expected_ticks(20.0, config) == 100
        assert expected_ticks(0.0, config) == 0

    def test_downscales_preserving_aspect(self):
        """1920x1080 fits into 640x480 at 16:9."""
        assert fit_canvas(1920, 1080, 640, 480) == (640, 360)

    def test_never_upscales(self):
        """Small frames keep their size."""
        assert fit_canvas(320, 240, 640, 480) == (320, 240)


class TestSample:
    """Sampling runs against fake detectors."""

    def test_counts_ticks_and_collects_frames(self, fake_detectors):
        """A 2-second clip at 0.2s yields ten ticks, each modality detected."""
        sampler = LandmarkFrameSampler(detectors=fake_detectors)
        result = sampler.sample(FakeFrameSource(2.0))
        assert result.frame_count == 10
        assert result.interval == 0.2
        assert len(result.pose_frames) == 10
        assert len(result.gesture_frames) == 10
        assert len(result.face_frames) == 10
        assert result.quality.overall_quality == QualityLevel.EXCELLENT
        assert [f.timestamp for f in result.pose_frames] == sorted(f.timestamp for f in result.pose_frames)

    def test_zero_duration_is_poor(self, fake_detectors):
        """No ticks gives frame_count 0 and poor quality."""
        sampler = LandmarkFrameSampler(detectors=fake_detectors)
        result = sampler.sample(FakeFrameSource(0.0))
        assert result.frame_count == 0
        assert result.quality.overall_quality == QualityLevel.POOR
        assert result.pose_frames == ()

    def test_pose_detection_rate(self, fake_detectors):
        """Pose missing on every fifth tick of 100 gives a 0.8 detection rate."""
        def pose(ts_ms):
            if (ts_ms // 200) % 5 == 0:
                return NoDetection("pose")
            return PoseDetection(landmarks=LandmarkSet(tuple(make_pose_landmarks())))

        fake_detectors["pose"] = FakeDetector("pose", respond=pose)
        sampler = LandmarkFrameSampler(detectors=fake_detectors)
        result = sampler.sample(FakeFrameSource(20.0))
        assert result.frame_count == 100
        assert result.quality.detection_rate["pose"] == pytest.approx(0.8)
        assert result.quality.overall_quality in (QualityLevel.GOOD, QualityLevel.EXCELLENT)
        # A miss is not an error
        assert result.processing_stats.error_count == 0

    def test_detector_exception_is_soft(self, fake_detectors):
        """A raising detector becomes NoDetection and is counted, the run continues."""
        def boom(ts_ms):
            raise RuntimeError("graph failure")

        fake_detectors["face"] = FakeDetector("face", respond=boom)
        sampler = LandmarkFrameSampler(detectors=fake_detectors)
        result = sampler.sample(FakeFrameSource(1.0))
        assert result.frame_count == 5
        assert result.face_frames == ()
        assert len(result.pose_frames) == 5
        assert result.processing_stats.detector_errors == {"face": 5}
        assert result.processing_stats.error_count == 5

    def test_unreadable_frame_is_skipped(self, fake_detectors):
        """A frame that cannot be read is counted and skipped."""
        sampler = LandmarkFrameSampler(detectors=fake_detectors)
        result = sampler.sample(FakeFrameSource(1.0, unreadable=[0.4]))
        assert result.frame_count == 4
        assert result.processing_stats.skipped_frames == 1
        assert result.processing_stats.error_count == 1

    def test_progress_is_monotonic_and_ends_at_100(self, fake_detectors):
        """Progress never decreases, stays below 100 until the end."""
        seen = []
        sampler = LandmarkFrameSampler(detectors=fake_detectors)
        sampler.sample(FakeFrameSource(3.0), on_progress=seen.append)
        assert seen == sorted(seen)
        assert seen[-1] == 100.0
        assert all(0.0 <= p <= 99.0 for p in seen[:-1])

    def test_timeout_without_frames(self, fake_detectors):
        """No frame within the wall-clock budget is fatal."""
        sampler = LandmarkFrameSampler(
            SamplerConfig(timeout_seconds=90.0),
            detectors=fake_detectors,
            clock=StepClock(50.0),
        )
        source = FakeFrameSource(10.0, unreadable=[round(i * 0.2, 1) for i in range(50)])
        with pytest.raises(SamplerTimeoutError):
            sampler.sample(source)

    def test_slow_run_with_frames_does_not_time_out(self, fake_detectors):
        """The budget only applies until the first frame arrives."""
        sampler = LandmarkFrameSampler(detectors=fake_detectors, clock=StepClock(50.0))
        result = sampler.sample(FakeFrameSource(1.0))
        assert result.frame_count == 5

    def test_cancellation(self, fake_detectors):
        """Cancelling mid-run raises at the next tick."""
        token = CancellationToken()
        sampler = LandmarkFrameSampler(detectors=fake_detectors)
        source = FakeFrameSource(10.0)

        def cancel_after_first(progress):
            token.cancel()

        with pytest.raises(AnalysisCancelled):
            sampler.sample(source, on_progress=cancel_after_first, cancel_token=token)
        assert len(source.reads) == 1

    def test_frame_source_left_open_for_caller(self, fake_detectors):
        """A caller-supplied source is not closed by the sampler."""
        source = FakeFrameSource(0.4)
        LandmarkFrameSampler(detectors=fake_detectors).sample(source)
        assert source.closed is False


class TestDetectorLifecycle:
    """Initialization, reuse and release of detectors."""

    def test_initialize_is_idempotent(self, fake_detectors):
        """Detectors initialize once across runs and see one begin_run per run."""
        sampler = LandmarkFrameSampler(detectors=fake_detectors)
        sampler.sample(FakeFrameSource(0.4))
        sampler.sample(FakeFrameSource(0.4))
        assert all(d.init_calls == 1 for d in fake_detectors.values())
        assert all(d.runs == 2 for d in fake_detectors.values())

    def test_partial_initialization(self, fake_detectors):
        """A detector that fails to load is reported and its modality is empty."""
        fake_detectors["gesture"] = FakeDetector("gesture", fail_init=True)
        sampler = LandmarkFrameSampler(detectors=fake_detectors)
        result = sampler.sample(FakeFrameSource(1.0))
        assert sampler.available_components == ["pose", "face"]
        assert "gesture" in sampler.init_errors
        assert result.gesture_frames == ()
        assert len(result.pose_frames) == 5
        assert result.processing_stats.detector_errors == {}

    def test_no_detector_available(self):
        """Initialization fails when nothing loads."""
        detectors = {m: FakeDetector(m, fail_init=True) for m in ("pose", "gesture", "face")}
        sampler = LandmarkFrameSampler(detectors=detectors)
        with pytest.raises(DetectorInitError):
            sampler.initialize()

    def test_close_releases_detectors(self, fake_detectors):
        """close() releases every detector."""
        sampler = LandmarkFrameSampler(detectors=fake_detectors)
        sampler.initialize()
        sampler.close()
        assert all(d.closed for d in fake_detectors.values())
        assert sampler.available_components == []


def _points(count):
    return [SimpleNamespace(x=0.5, y=0.5, z=0.0, visibility=0.9, presence=0.9) for _ in range(count)]


class TestDetectorConversion:
    """Vendor results are converted to the tagged detection types."""

    def test_partial_pose_is_rejected(self):
        """A pose with fewer than 33 points is reported as NoDetection."""
        detector = PoseDetector(DetectorConfig())
        result = detector._convert(SimpleNamespace(pose_landmarks=[_points(20)]))
        assert isinstance(result, NoDetection)

    def test_full_pose_is_kept(self):
        """A complete pose converts to PoseDetection."""
        detector = PoseDetector(DetectorConfig())
        result = detector._convert(SimpleNamespace(pose_landmarks=[_points(33)]))
        assert isinstance(result, PoseDetection)
        assert len(result.landmarks) == 33

    def test_non_finite_points_rejected(self):
        """NaN coordinates make the set incomplete."""
        points = make_pose_landmarks()
        points[5] = Landmark(x=float("nan"), y=0.5)
        assert LandmarkSet.complete(points, 33) is None

    def test_empty_pose_result(self):
        """No landmarks means no detection."""
        detector = PoseDetector(DetectorConfig())
        assert isinstance(detector._convert(SimpleNamespace(pose_landmarks=[])), NoDetection)

    def test_gesture_hands_keep_top_category(self):
        """Gesture categories and handedness are carried per hand."""
        detector = GestureDetector(DetectorConfig())
        raw = SimpleNamespace(
            hand_landmarks=[_points(21)],
            handedness=[[SimpleNamespace(category_name="Left", score=0.9)]],
            gestures=[[
                SimpleNamespace(category_name="Pointing_Up", score=0.85),
                SimpleNamespace(category_name="None", score=0.1),
            ]],
        )
        result = detector._convert(raw)
        assert len(result.hands) == 1
        assert result.hands[0].top_gesture.name == "Pointing_Up"
        assert result.hands[0].handedness.name == "Left"

    def test_face_drops_neutral_blendshape(self):
        """The _neutral blendshape is not carried."""
        detector = FaceDetector(DetectorConfig())
        raw = SimpleNamespace(
            face_landmarks=[_points(478)],
            face_blendshapes=[[
                SimpleNamespace(category_name="_neutral", score=0.9),
                SimpleNamespace(category_name="jawOpen", score=0.4),
            ]],
        )
        result = detector._convert(raw)
        assert [c.name for c in result.blendshapes] == ["jawOpen"]

    def test_detect_before_initialize(self):
        """Detecting with an uninitialized detector is an init error."""
        detector = FaceDetector(DetectorConfig())
        with pytest.raises(DetectorInitError):
            detector.detect(None, 0)
