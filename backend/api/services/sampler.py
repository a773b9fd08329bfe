import logging
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Tuple, Union

import cv2
import numpy as np

from .config import DetectorConfig, SamplerConfig
from .detectors import LandmarkDetector, build_detectors
from .models import (
    AnalysisCancelled,
    DetectorInitError,
    FaceDetection,
    FaceFrame,
    Frame,
    GestureDetection,
    GestureFrame,
    NoDetection,
    PoseDetection,
    PoseFrame,
    ProcessingStats,
    SamplerTimeoutError,
    SamplingResult,
    VideoOpenError,
)
from .quality import MODALITIES, SignalQualityEstimator

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


# -------- Sampling policy --------
def choose_interval(duration: float, config: SamplerConfig) -> float:
    """Seconds between sampling ticks, coarser for longer videos."""
    if duration > config.long_video_seconds:
        return config.long_interval
    if duration > config.medium_video_seconds:
        return config.medium_interval
    return config.short_interval


def expected_ticks(duration: float, config: SamplerConfig) -> int:
    if duration <= 0:
        return 0
    interval = choose_interval(duration, config)
    return int(np.ceil(duration / interval - 1e-9))


def fit_canvas(width: int, height: int, max_width: int, max_height: int) -> Tuple[int, int]:
    """Downscale (never upscale) into max_width x max_height keeping aspect ratio."""
    if width <= 0 or height <= 0:
        return max(0, width), max(0, height)
    scale = min(1.0, max_width / float(width), max_height / float(height))
    return max(1, int(round(width * scale))), max(1, int(round(height * scale)))


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


# -------- Frame sources --------
class FrameSource:
    """Random-access view over a video: its duration and an RGB frame at a time."""

    duration: float = 0.0

    def read_at(self, seconds: float) -> Optional[np.ndarray]:
        raise NotImplementedError

    def close(self) -> None:
        pass


class VideoFrameSource(FrameSource):
    """Decodes forward with grab() and only retrieves the frames that are sampled."""

    def __init__(self, path: str, max_width: int = 640, max_height: int = 480) -> None:
        self.cap = cv2.VideoCapture(path)
        if not self.cap.isOpened():
            raise VideoOpenError(f"Failed to open video: {path}")
        self.max_width = max_width
        self.max_height = max_height
        self.fps = self.cap.get(cv2.CAP_PROP_FPS) or 30.0
        frame_total = self.cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0.0
        self.duration = frame_total / self.fps if self.fps > 0 and frame_total > 0 else 0.0
        self._position = 0

    def read_at(self, seconds: float) -> Optional[np.ndarray]:
        target = int(round(seconds * self.fps))
        if target < self._position:
            self.cap.set(cv2.CAP_PROP_POS_FRAMES, target)
            self._position = target
        while self._position < target:
            if not self.cap.grab():
                return None
            self._position += 1
        ok, frame_bgr = self.cap.read()
        if not ok or frame_bgr is None:
            return None
        self._position += 1
        height, width = frame_bgr.shape[:2]
        new_w, new_h = fit_canvas(width, height, self.max_width, self.max_height)
        if (new_w, new_h) != (width, height):
            frame_bgr = cv2.resize(frame_bgr, (new_w, new_h), interpolation=cv2.INTER_AREA)
        return cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)

    def close(self) -> None:
        self.cap.release()


class _Progress:
    def __init__(self, callback: Optional[ProgressCallback]) -> None:
        self.callback = callback
        self.value = 0.0

    def report(self, value: float) -> None:
        value = max(self.value, min(100.0, max(0.0, value)))
        self.value = value
        if self.callback is not None:
            self.callback(value)


# -------- Sampler --------
class LandmarkFrameSampler:
    """Walks a video at an adaptive interval and fans each frame out to the detectors."""

    def __init__(
        self,
        config: Optional[SamplerConfig] = None,
        detectors: Optional[Dict[str, LandmarkDetector]] = None,
        detector_config: Optional[DetectorConfig] = None,
        estimator: Optional[SignalQualityEstimator] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or SamplerConfig()
        self.detectors = detectors if detectors is not None else build_detectors(detector_config or DetectorConfig())
        self.estimator = estimator or SignalQualityEstimator()
        self.clock = clock
        self.init_errors: Dict[str, str] = {}
        self._initialized = False
        self._init_lock = threading.Lock()

    def initialize(self) -> None:
        with self._init_lock:
            if self._initialized:
                return
            for name, detector in self.detectors.items():
                try:
                    detector.initialize()
                except DetectorInitError as exc:
                    logger.warning("Detector %s unavailable: %s", name, exc)
                    self.init_errors[name] = str(exc)
            if not self.available_components:
                raise DetectorInitError("No landmark detector could be initialized")
            self._initialized = True

    @property
    def available_components(self) -> List[str]:
        return [name for name, d in self.detectors.items() if d.ready]

    def close(self) -> None:
        for detector in self.detectors.values():
            detector.close()
        self._initialized = False

    def _detect_one(self, modality: str, frame_rgb: np.ndarray, timestamp_ms: int):
        detector = self.detectors.get(modality)
        if detector is None or not detector.ready:
            return NoDetection(modality, error="unavailable")
        try:
            return detector.detect(frame_rgb, timestamp_ms)
        except Exception as exc:
            logger.warning("%s detector failed at %d ms", modality, timestamp_ms, exc_info=True)
            return NoDetection(modality, error=str(exc) or type(exc).__name__)

    def _detect_all(self, pool: ThreadPoolExecutor, frame_rgb: np.ndarray, seconds: float) -> Frame:
        ts_ms = int(round(seconds * 1000))
        futures = {m: pool.submit(self._detect_one, m, frame_rgb, ts_ms) for m in MODALITIES}
        results = {m: f.result() for m, f in futures.items()}
        return Frame(timestamp=seconds, pose=results["pose"], gesture=results["gesture"], face=results["face"])

    def sample(
        self,
        video: Union[str, FrameSource],
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> SamplingResult:
        owns_source = not isinstance(video, FrameSource)
        source = VideoFrameSource(video, self.config.max_width, self.config.max_height) if owns_source else video
        try:
            self.initialize()
            for detector in self.detectors.values():
                if detector.ready:
                    detector.begin_run()
            return self._sample_source(source, on_progress, cancel_token)
        finally:
            if owns_source:
                source.close()

    def _sample_source(
        self,
        source: FrameSource,
        on_progress: Optional[ProgressCallback],
        cancel_token: Optional[CancellationToken],
    ) -> SamplingResult:
        duration = max(0.0, float(source.duration or 0.0))
        interval = choose_interval(duration, self.config)
        progress = _Progress(on_progress)
        started = self.clock()

        pose_frames: List[PoseFrame] = []
        gesture_frames: List[GestureFrame] = []
        face_frames: List[FaceFrame] = []
        frame_count = 0
        error_count = 0
        skipped = 0
        detector_errors: Counter = Counter()
        processing_ms: List[float] = []

        with ThreadPoolExecutor(max_workers=self.config.detector_workers, thread_name_prefix="detector") as pool:
            tick = 0
            t = 0.0
            while t < duration:
                if cancel_token is not None and cancel_token.cancelled:
                    raise AnalysisCancelled("Sampling cancelled")
                if frame_count == 0 and self.clock() - started > self.config.timeout_seconds:
                    raise SamplerTimeoutError(
                        f"No frames produced within {self.config.timeout_seconds:.0f}s"
                    )
                tick_started = self.clock()
                try:
                    frame_rgb = source.read_at(t)
                except Exception:
                    logger.warning("Failed to read frame at %.2fs", t, exc_info=True)
                    frame_rgb = None

                if frame_rgb is None:
                    error_count += 1
                    skipped += 1
                else:
                    frame = self._detect_all(pool, frame_rgb, t)
                    frame_count += 1
                    for result in (frame.pose, frame.gesture, frame.face):
                        if isinstance(result, NoDetection) and result.error and result.error != "unavailable":
                            detector_errors[result.modality] += 1
                    self._collect(frame, pose_frames, gesture_frames, face_frames)
                    processing_ms.append((self.clock() - tick_started) * 1000.0)

                progress.report(min(99.0, (t + interval) / duration * 100.0))
                tick += 1
                t = tick * interval

        progress.report(100.0)

        quality = self.estimator.detection_quality(
            frame_count,
            {"pose": len(pose_frames), "gesture": len(gesture_frames), "face": len(face_frames)},
        )
        stats = ProcessingStats(
            total_frames_processed=frame_count,
            average_processing_time_ms=float(np.mean(processing_ms)) if processing_ms else 0.0,
            error_count=error_count + sum(detector_errors.values()),
            skipped_frames=skipped,
            detector_errors=dict(detector_errors),
        )
        logger.info(
            "Sampled %d frames over %.1fs (interval %.1fs): pose=%d gesture=%d face=%d quality=%s",
            frame_count, duration, interval,
            len(pose_frames), len(gesture_frames), len(face_frames),
            quality.overall_quality.value,
        )
        return SamplingResult(
            pose_frames=tuple(pose_frames),
            gesture_frames=tuple(gesture_frames),
            face_frames=tuple(face_frames),
            duration=duration,
            frame_count=frame_count,
            interval=interval,
            quality=quality,
            processing_stats=stats,
        )

    def _collect(
        self,
        frame: Frame,
        pose_frames: List[PoseFrame],
        gesture_frames: List[GestureFrame],
        face_frames: List[FaceFrame],
    ) -> None:
        est = self.estimator
        if isinstance(frame.pose, PoseDetection):
            lms = frame.pose.landmarks
            pose_frames.append(PoseFrame(
                timestamp=frame.timestamp,
                landmarks=lms,
                confidence=est.pose_confidence(lms),
                visibility=est.pose_visibility(lms),
                presence=est.pose_presence(lms),
            ))
        if isinstance(frame.gesture, GestureDetection):
            gesture_frames.append(GestureFrame(
                timestamp=frame.timestamp,
                hands=frame.gesture.hands,
                confidence=est.gesture_confidence(frame.gesture),
            ))
        if isinstance(frame.face, FaceDetection):
            lms = frame.face.landmarks
            face_frames.append(FaceFrame(
                timestamp=frame.timestamp,
                landmarks=lms,
                blendshapes=frame.face.blendshapes,
                confidence=est.face_confidence(lms, frame.face.blendshapes),
                bounding_box=est.face_bounding_box(lms),
            ))
