import logging
import math
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .config import SamplerConfig
from .models import (
    CATEGORY_MAX,
    SUB_COMPONENT_MAX,
    AudioFeatures,
    CategoryMetric,
    ComprehensiveResult,
    DetectionQuality,
    FaceFrame,
    GestureFrame,
    LandmarkSet,
    LexicalResult,
    PoseFrame,
    TranscriptSource,
)
from .sampler import expected_ticks

logger = logging.getLogger(__name__)


CATEGORY_ORDER = ("posture", "gesticulation", "facial", "speech", "engagement")
CATEGORY_NAMES = {
    "posture": "Posture",
    "gesticulation": "Gesticulation",
    "facial": "Facial expression",
    "speech": "Speech",
    "engagement": "Engagement",
}

GRADE_EDGES = [
    (90, "A+"), (85, "A"), (80, "A-"),
    (75, "B+"), (70, "B"), (65, "B-"),
    (60, "C+"), (55, "C"), (50, "C-"),
]

STRENGTH_THRESHOLD = 160
PLAN_THRESHOLD = 140
LOW_SCORE = 120


# -------- Scoring helpers (0-40) --------
def _clamp(v: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))


def _finite(v: float, default: float = 0.0) -> float:
    try:
        v = float(v)
    except (TypeError, ValueError):
        return default
    return v if math.isfinite(v) else default


def penalty_score(ratio: float) -> float:
    """40 when nothing is wrong, falling linearly to 0 at ratio 1."""
    return _clamp(SUB_COMPONENT_MAX - _finite(ratio) * SUB_COMPONENT_MAX, 0.0, SUB_COMPONENT_MAX)


def achievement_score(ratio: float) -> float:
    return _clamp(_finite(ratio) * SUB_COMPONENT_MAX, 0.0, SUB_COMPONENT_MAX)


def trapezoid_ratio(x: float, low: float, plateau_lo: float, plateau_hi: float, high: float) -> float:
    """1.0 on [plateau_lo, plateau_hi], linear down to 0.0 at low/high."""
    x = _finite(x, low)
    if x <= low or x >= high:
        return 0.0
    if plateau_lo <= x <= plateau_hi:
        return 1.0
    if x < plateau_lo:
        return _clamp((x - low) / max(1e-9, plateau_lo - low), 0.0, 1.0)
    return _clamp((high - x) / max(1e-9, high - plateau_hi), 0.0, 1.0)


def _mean(values: Iterable[float]) -> float:
    vals = list(values)
    return sum(vals) / len(vals) if vals else 0.0


def build_metric(
    name: str,
    sub_scores: Dict[str, float],
    issues: Optional[List[str]] = None,
    recommendations: Optional[List[str]] = None,
    details: Optional[Dict] = None,
) -> CategoryMetric:
    components = {k: int(round(_clamp(_finite(v), 0.0, SUB_COMPONENT_MAX))) for k, v in sub_scores.items()}
    score = int(_clamp(sum(components.values()), 0, CATEGORY_MAX))
    return CategoryMetric(
        name=name,
        score=score,
        sub_components=components,
        issues=issues or [],
        recommendations=recommendations or [],
        details=details or {},
    )


def grade_for(percentage: float) -> str:
    for edge, grade in GRADE_EDGES:
        if percentage >= edge:
            return grade
    return "D"


def rank_priority(scores: Dict[str, int], limit: int = 3) -> List[str]:
    """Lowest-scoring categories first; ties keep declaration order."""
    ordered = [k for k in CATEGORY_ORDER if k in scores]
    return sorted(ordered, key=lambda k: scores[k])[:limit]


# -------- Posture --------
POSTURE_KEYS = ("spine_alignment", "shoulder_symmetry", "head_position", "stability", "confidence")
POSTURE_MIN_POINTS = 25
REQUIRED_POSE_POINTS = (0, 11, 12)
FORWARD_LEAN_OFFSET = 0.08
SHOULDER_ASYMMETRY = 0.04
HEAD_TILT_OFFSET = 0.06
MOVEMENT_PENALTY_SCALE = 5.0

POSTURE_ISSUES = {
    "forward_lean": (0.3, "Frequent forward lean"),
    "shoulder_asymmetry": (0.2, "Uneven shoulders"),
    "head_tilt": (0.25, "Frequent head tilt"),
    "movement": (0.02, "Excessive body movement"),
}
POSTURE_RECOMMENDATIONS = {
    "forward_lean": [
        "Keep your back straight; imagine a thread pulling you upward.",
        "Pause every five minutes to check your posture.",
    ],
    "shoulder_asymmetry": [
        "Do shoulder-levelling exercises before class.",
        "Check your shoulder symmetry in a mirror before the lesson.",
    ],
    "head_tilt": ["Keep your head level and centred over your shoulders."],
    "movement": ["Plant your feet and move with purpose instead of swaying."],
    "low_score": [
        "Practise standing against a wall to build a neutral posture.",
        "Consider yoga or pilates to strengthen posture muscles.",
    ],
}


def _valid_pose(landmarks: LandmarkSet) -> bool:
    if len(landmarks) < POSTURE_MIN_POINTS:
        return False
    return all(landmarks[i].is_finite() for i in REQUIRED_POSE_POINTS)


def nose_movements(pose_frames: Sequence[PoseFrame]) -> List[float]:
    valid = [f.landmarks for f in pose_frames if _valid_pose(f.landmarks)]
    return [
        math.hypot(cur[0].x - prev[0].x, cur[0].y - prev[0].y)
        for prev, cur in zip(valid, valid[1:])
    ]


# -------- Gesticulation --------
GESTICULATION_KEYS = ("variety", "frequency", "appropriateness", "expressiveness", "coordination")
GESTURE_MIN_SCORE = 0.6
EXPRESSIVE_GESTURE_SCORE = 0.8
PEDAGOGICAL_GESTURES = frozenset(["Open_Palm", "Pointing_Up", "Thumb_Up", "Victory"])
VARIETY_CAP = 5
OPTIMAL_GESTURE_RATE = 1.0
MAX_GESTURE_RATE = 3.0

GESTICULATION_RECOMMENDATIONS = {
    "variety": [
        "Learn and practise a wider range of teaching gestures.",
        "Use pointing gestures to direct attention to key material.",
    ],
    "too_few": ["Gesture more often to make explanations more expressive."],
    "too_many": ["Gesture less often and make each gesture deliberate."],
    "appropriateness": ["Favour open-palm and pointing gestures that support the explanation."],
    "low_score": [
        "Rehearse your gestures in front of a mirror.",
        "Study the body language of experienced teachers.",
    ],
}


# -------- Facial --------
FACIAL_KEYS = ("smile_frequency", "eye_contact", "expressiveness", "emotional_range", "authenticity")
SMILE_THRESHOLD = 0.3
GAZE_THRESHOLD = 0.3
BROW_THRESHOLD = 0.2
EXPRESSION_THRESHOLD = 0.3
RANGE_MIN_SHARE = 0.05
RANGE_FULL_GROUPS = 5
AUTHENTIC_LOW = 0.1
AUTHENTIC_HIGH = 0.8

EXPRESSION_GROUPS = {
    "smile": ("mouthSmileLeft", "mouthSmileRight"),
    "brow_raise": ("browInnerUp", "browOuterUpLeft", "browOuterUpRight"),
    "brow_furrow": ("browDownLeft", "browDownRight"),
    "jaw_open": ("jawOpen",),
    "eye_squint": ("eyeSquintLeft", "eyeSquintRight"),
    "mouth_shape": ("mouthPucker", "mouthFunnel"),
    "cheek": ("cheekPuff", "cheekSquintLeft", "cheekSquintRight"),
}

FACIAL_RECOMMENDATIONS = {
    "smile": [
        "Smile more often to create a positive atmosphere.",
        "Practise a natural smile in front of a mirror.",
    ],
    "eye_contact": [
        "Keep eye contact with different parts of the class.",
        "Use the lighthouse technique: focus on individual students in turn.",
    ],
    "expressiveness": ["Let your eyebrows and face react to what students say."],
    "exaggerated": ["Soften your expressions so they read as natural."],
    "low_score": [
        "Work on facial expressiveness during explanations.",
        "Record yourself to review your facial expressions.",
    ],
}


def smile_intensity(blendshapes: Dict[str, float]) -> float:
    return max(blendshapes.get("mouthSmileLeft", 0.0), blendshapes.get("mouthSmileRight", 0.0))


def brow_activity(blendshapes: Dict[str, float]) -> float:
    return max((v for k, v in blendshapes.items() if k.startswith("brow")), default=0.0)


def gaze_deviation(blendshapes: Dict[str, float]) -> float:
    """How far both eyes look away from the camera in a single direction."""
    def pair(a: str, b: str) -> float:
        return (blendshapes.get(a, 0.0) + blendshapes.get(b, 0.0)) / 2.0

    down = pair("eyeLookDownLeft", "eyeLookDownRight")
    up = pair("eyeLookUpLeft", "eyeLookUpRight")
    horizontal = max(pair("eyeLookOutLeft", "eyeLookInRight"), pair("eyeLookInLeft", "eyeLookOutRight"))
    return max(down, up, horizontal)


def active_groups(blendshapes: Dict[str, float]) -> List[str]:
    return [
        group for group, names in EXPRESSION_GROUPS.items()
        if max(blendshapes.get(n, 0.0) for n in names) > EXPRESSION_THRESHOLD
    ]


# -------- Speech --------
SPEECH_KEYS = ("clarity", "pace", "volume", "vocabulary", "grammar")
FILLER_PENALTY_SCALE = 2.0
PACE_MIN_WPM = 120.0
PACE_MAX_WPM = 180.0
VOLUME_PLACEHOLDER = 35.0
LOUDNESS_BAND = (-50.0, -30.0, -12.0, 0.0)
QUIET_DBFS = -35.0
IDEAL_WORD_LENGTH = 7.0
FILLER_RATIO_LIMIT = 0.05
RICHNESS_TARGET = 0.6
SWITCH_POINT_LIMIT = 5

SPEECH_RECOMMENDATIONS = {
    "fillers": [
        "Work on removing filler words from your speech.",
        "Pause silently instead of saying \"um\" or \"uh\".",
    ],
    "slow": ["Speed up your delivery to keep the lesson dynamic."],
    "fast": ["Slow down so students can follow the explanation."],
    "vocabulary": ["Broaden your vocabulary and avoid repeating the same words."],
    "mixing": ["Stay in one language within an explanation and switch deliberately."],
    "long_pauses": ["Shorten long silences or fill them with a question to the class."],
    "quiet": ["Project your voice so the whole classroom can hear you."],
    "low_score": [
        "Read aloud daily to improve diction.",
        "Record your speech and review it after class.",
    ],
}


# -------- Engagement --------
ENGAGEMENT_KEYS = ("attention", "interaction", "energy", "presence", "charisma")
STABILITY_MOVEMENT_SCALE = 50.0
DYNAMICS_MOVEMENT_SCALE = 100.0
NEUTRAL_SIGNAL = 0.5

ENGAGEMENT_RECOMMENDATIONS = {
    "low": [
        "Deliver the material with more energy.",
        "Add more interactive elements to the lesson.",
        "Vary your tone of voice and pace.",
        "Move around the classroom more.",
    ],
    "medium": [
        "Build your stage presence through regular practice.",
        "Work on emotional expressiveness.",
    ],
    "attention": ["Hold a steady stance and look at the class to keep attention."],
    "interaction": ["Invite responses with gestures and visible reactions."],
}

STRENGTHS = {
    "posture": "Excellent posture and confident stance",
    "gesticulation": "Expressive and varied gestures",
    "facial": "Lively facial expression and good eye contact",
    "speech": "Clear speech and rich vocabulary",
    "engagement": "High level of audience engagement",
}
FALLBACK_STRENGTH = "Basic pedagogical skills"

IMPROVEMENT_PLAN = {
    "posture": "Weeks 1-2: daily posture exercises (10 min/day)",
    "speech": "Weeks 2-3: diction and pacing practice (15 min/day)",
    "gesticulation": "Weeks 3-4: gesture rehearsal in front of a mirror (10 min/day)",
    "facial": "Weeks 4-5: facial expression and eye contact exercises",
    "engagement": "Weeks 5-6: practise interactive teaching techniques",
}
PLAN_ORDER = ("posture", "speech", "gesticulation", "facial", "engagement")
WEEKLY_PLAN_ITEM = "Weekly: record and review a 10-minute lesson to track progress"

OVERALL_FEEDBACK = [
    (85, "Outstanding teaching skill across every aspect of delivery."),
    (70, "Good teaching skills with room to grow; focus on the priority areas."),
    (55, "Basic teaching skills are in place, but delivery needs significant work."),
]
FALLBACK_FEEDBACK = "Intensive practice is recommended; start with posture, speech and interaction with the class."


class MultimodalScoringEngine:
    """Fuses landmark, lexical and audio signals into five 200-point categories."""

    def __init__(self, sampler_config: Optional[SamplerConfig] = None) -> None:
        self.sampler_config = sampler_config or SamplerConfig()

    def score(
        self,
        pose_frames: Sequence[PoseFrame],
        gesture_frames: Sequence[GestureFrame],
        face_frames: Sequence[FaceFrame],
        lexical_result: LexicalResult,
        duration_seconds: float,
        audio: Optional[AudioFeatures] = None,
        quality: Optional[DetectionQuality] = None,
        transcript_source: Optional[TranscriptSource] = None,
    ) -> ComprehensiveResult:
        duration = max(0.0, _finite(duration_seconds))
        categories = {
            "posture": self.score_posture(pose_frames),
            "gesticulation": self.score_gesticulation(gesture_frames, duration),
            "facial": self.score_facial(face_frames),
            "speech": self.score_speech(lexical_result, audio),
            "engagement": self.score_engagement(
                pose_frames, gesture_frames, face_frames, lexical_result, duration, audio
            ),
        }
        scores = {k: m.score for k, m in categories.items()}
        total = sum(scores.values())
        percentage = round(total / float(len(CATEGORY_ORDER) * CATEGORY_MAX) * 100.0, 1)

        strengths = [STRENGTHS[k] for k in CATEGORY_ORDER if scores[k] >= STRENGTH_THRESHOLD]
        plan = [IMPROVEMENT_PLAN[k] for k in PLAN_ORDER if scores[k] < PLAN_THRESHOLD]
        plan.append(WEEKLY_PLAN_ITEM)

        result = ComprehensiveResult(
            total_score=total,
            percentage=percentage,
            grade=grade_for(percentage),
            categories=categories,
            strengths=strengths or [FALLBACK_STRENGTH],
            priority_areas=[CATEGORY_NAMES[k] for k in rank_priority(scores)],
            improvement_plan=plan,
            overall_feedback=self.overall_feedback(percentage),
            quality=quality,
            transcript_source=transcript_source,
        )
        logger.info("Scored lesson: total=%d (%s) %s", total, result.grade, scores)
        return result

    def overall_feedback(self, percentage: float) -> str:
        for edge, text in OVERALL_FEEDBACK:
            if percentage >= edge:
                return text
        return FALLBACK_FEEDBACK

    def _default(self, category: str, keys: Tuple[str, ...], value: float, issue: str) -> CategoryMetric:
        return build_metric(category, {k: value for k in keys}, issues=[issue])

    # -------- Posture --------
    def score_posture(self, pose_frames: Sequence[PoseFrame]) -> CategoryMetric:
        valid = [f.landmarks for f in pose_frames if _valid_pose(f.landmarks)]
        if not valid:
            return self._default("posture", POSTURE_KEYS, 10, "Posture could not be detected")

        lean = asymmetry = tilt = 0
        for lm in valid:
            nose, left, right = lm[0], lm[11], lm[12]
            center_x = (left.x + right.x) / 2.0
            if nose.x < center_x - FORWARD_LEAN_OFFSET:
                lean += 1
            if abs(left.y - right.y) > SHOULDER_ASYMMETRY:
                asymmetry += 1
            if abs(nose.x - center_x) > HEAD_TILT_OFFSET:
                tilt += 1
        n = float(len(valid))
        ratios = {
            "forward_lean": lean / n,
            "shoulder_asymmetry": asymmetry / n,
            "head_tilt": tilt / n,
            "movement": _mean(nose_movements(pose_frames)),
        }

        spine = penalty_score(ratios["forward_lean"])
        symmetry = penalty_score(ratios["shoulder_asymmetry"])
        subs = {
            "spine_alignment": spine,
            "shoulder_symmetry": symmetry,
            "head_position": penalty_score(ratios["head_tilt"]),
            "stability": penalty_score(ratios["movement"] * MOVEMENT_PENALTY_SCALE),
            "confidence": (spine + symmetry) / 2.0,
        }

        issues: List[str] = []
        recommendations: List[str] = []
        for key, (limit, text) in POSTURE_ISSUES.items():
            if ratios[key] > limit:
                issues.append(text)
                recommendations.extend(POSTURE_RECOMMENDATIONS[key])
        metric = build_metric("posture", subs, issues, recommendations, {
            "valid_frames": len(valid),
            **{f"{k}_ratio": round(v, 4) for k, v in ratios.items()},
        })
        if metric.score < LOW_SCORE:
            metric = metric.model_copy(update={
                "recommendations": metric.recommendations + POSTURE_RECOMMENDATIONS["low_score"],
            })
        return metric

    # -------- Gesticulation --------
    def gesture_events(self, gesture_frames: Sequence[GestureFrame]) -> List[Tuple[float, str, float]]:
        events = []
        for frame in gesture_frames:
            for hand in frame.hands:
                top = hand.top_gesture
                if top is None or top.name == "None" or top.score <= GESTURE_MIN_SCORE:
                    continue
                events.append((frame.timestamp, top.name, top.score))
        return events

    def score_gesticulation(self, gesture_frames: Sequence[GestureFrame], duration: float) -> CategoryMetric:
        if not gesture_frames:
            return self._default("gesticulation", GESTICULATION_KEYS, 12, "Hands were not visible")

        events = self.gesture_events(gesture_frames)
        n = len(events)
        labels = {name for _, name, _ in events}
        rate = n / max(duration, 1.0)
        if rate <= OPTIMAL_GESTURE_RATE:
            frequency = rate / OPTIMAL_GESTURE_RATE
        else:
            frequency = 1.0 - (rate - OPTIMAL_GESTURE_RATE) / (MAX_GESTURE_RATE - OPTIMAL_GESTURE_RATE)
        appropriate = sum(1 for _, name, _ in events if name in PEDAGOGICAL_GESTURES) / n if n else 0.0
        expressive = sum(1 for _, _, s in events if s > EXPRESSIVE_GESTURE_SCORE) / n if n else 0.0

        if n == 0:
            coordination = 0.0
        elif n == 1:
            coordination = SUB_COMPONENT_MAX / 2.0
        else:
            times = sorted(t for t, _, _ in events)
            intervals = [b - a for a, b in zip(times, times[1:])]
            mean_interval = _mean(intervals)
            variance = _mean([(i - mean_interval) ** 2 for i in intervals])
            coordination = SUB_COMPONENT_MAX - variance * 10.0

        subs = {
            "variety": achievement_score(min(VARIETY_CAP, len(labels)) / float(VARIETY_CAP)),
            "frequency": achievement_score(frequency),
            "appropriateness": achievement_score(appropriate),
            "expressiveness": achievement_score(expressive),
            "coordination": coordination,
        }

        issues: List[str] = []
        recommendations: List[str] = []
        if len(labels) < 3:
            issues.append("Limited gesture variety")
            recommendations.extend(GESTICULATION_RECOMMENDATIONS["variety"])
        if rate < 0.5:
            issues.append("Infrequent gestures")
            recommendations.extend(GESTICULATION_RECOMMENDATIONS["too_few"])
        elif rate > 2.0:
            issues.append("Excessive gesturing")
            recommendations.extend(GESTICULATION_RECOMMENDATIONS["too_many"])
        if n and appropriate < 0.3:
            issues.append("Few pedagogical gestures")
            recommendations.extend(GESTICULATION_RECOMMENDATIONS["appropriateness"])
        details = {
            "gesture_count": n,
            "gesture_types": sorted(labels),
            "gestures_per_second": round(rate, 3),
        }
        metric = build_metric("gesticulation", subs, issues, recommendations, details)
        if metric.score < LOW_SCORE:
            metric = metric.model_copy(update={
                "recommendations": metric.recommendations + GESTICULATION_RECOMMENDATIONS["low_score"],
            })
        return metric

    # -------- Facial --------
    def eye_contact_ratio(self, face_frames: Sequence[FaceFrame]) -> float:
        maps = [f.blendshape_map() for f in face_frames if f.blendshapes]
        if not maps:
            return 0.0
        return sum(1 for bs in maps if gaze_deviation(bs) < GAZE_THRESHOLD) / float(len(maps))

    def score_facial(self, face_frames: Sequence[FaceFrame]) -> CategoryMetric:
        maps = [f.blendshape_map() for f in face_frames if f.blendshapes]
        if not maps:
            return self._default("facial", FACIAL_KEYS, 10, "Face could not be detected")

        n = float(len(maps))
        smile = sum(1 for bs in maps if smile_intensity(bs) > SMILE_THRESHOLD) / n
        eye = sum(1 for bs in maps if gaze_deviation(bs) < GAZE_THRESHOLD) / n
        brow = sum(1 for bs in maps if brow_activity(bs) > BROW_THRESHOLD) / n
        group_counts: Dict[str, int] = {}
        for bs in maps:
            for group in active_groups(bs):
                group_counts[group] = group_counts.get(group, 0) + 1
        expressions = sorted(g for g, c in group_counts.items() if c / n >= RANGE_MIN_SHARE)
        activity = [smile_intensity(bs) + brow_activity(bs) + gaze_deviation(bs) for bs in maps]
        natural = sum(1 for a in activity if AUTHENTIC_LOW < a < AUTHENTIC_HIGH) / n

        subs = {
            "smile_frequency": achievement_score(smile * 1.5),
            "eye_contact": achievement_score(eye),
            "expressiveness": achievement_score(brow * 2.0),
            "emotional_range": achievement_score(len(expressions) / float(RANGE_FULL_GROUPS)),
            "authenticity": achievement_score(natural),
        }

        issues: List[str] = []
        recommendations: List[str] = []
        if smile < 0.3:
            issues.append("Rare smiling")
            recommendations.extend(FACIAL_RECOMMENDATIONS["smile"])
        if eye < 0.6:
            issues.append("Limited eye contact")
            recommendations.extend(FACIAL_RECOMMENDATIONS["eye_contact"])
        if brow < 0.2:
            issues.append("Low facial expressiveness")
            recommendations.extend(FACIAL_RECOMMENDATIONS["expressiveness"])
        if natural < 0.5 and _mean(activity) >= AUTHENTIC_HIGH:
            issues.append("Expressions appear exaggerated")
            recommendations.extend(FACIAL_RECOMMENDATIONS["exaggerated"])
        details = {
            "frames": len(maps),
            "smile_ratio": round(smile, 4),
            "eye_contact_ratio": round(eye, 4),
            "expressive_ratio": round(brow, 4),
            "expressions": expressions,
        }
        metric = build_metric("facial", subs, issues, recommendations, details)
        if metric.score < LOW_SCORE:
            metric = metric.model_copy(update={
                "recommendations": metric.recommendations + FACIAL_RECOMMENDATIONS["low_score"],
            })
        return metric

    # -------- Speech --------
    def pace_ratio(self, wpm: float) -> float:
        if wpm < PACE_MIN_WPM:
            return wpm / PACE_MIN_WPM
        if wpm > PACE_MAX_WPM:
            return 1.0 - (wpm - PACE_MAX_WPM) / 60.0 * 0.5
        return 1.0

    def score_speech(self, lexical: LexicalResult, audio: Optional[AudioFeatures] = None) -> CategoryMetric:
        vocab = lexical.vocabulary
        if vocab.total_words == 0:
            return self._default("speech", SPEECH_KEYS, 10, "No speech detected")

        fillers = lexical.filler_words
        wpm = lexical.speaking_rate
        if audio is not None:
            volume = achievement_score(trapezoid_ratio(audio.mean_dbfs, *LOUDNESS_BAND))
        else:
            volume = VOLUME_PLACEHOLDER
        subs = {
            "clarity": penalty_score(fillers.ratio * FILLER_PENALTY_SCALE),
            "pace": achievement_score(self.pace_ratio(wpm)),
            "volume": volume,
            "vocabulary": achievement_score(
                0.7 * vocab.richness + 0.3 * min(1.0, vocab.average_word_length / IDEAL_WORD_LENGTH)
            ),
            "grammar": achievement_score(lexical.sentences.average_length * 3.0 / SUB_COMPONENT_MAX),
        }

        issues: List[str] = []
        recommendations: List[str] = []
        if fillers.ratio > FILLER_RATIO_LIMIT:
            issues.append(f"Filler words make up {fillers.ratio:.0%} of speech")
            recommendations.extend(SPEECH_RECOMMENDATIONS["fillers"])
            top = fillers.most_common
            if top is not None:
                recommendations.append(f"Watch for \"{top.word}\", used {top.count} times.")
        if wpm < PACE_MIN_WPM:
            issues.append("Speaking pace is slow")
            recommendations.extend(SPEECH_RECOMMENDATIONS["slow"])
        elif wpm > PACE_MAX_WPM:
            issues.append("Speaking pace is fast")
            recommendations.extend(SPEECH_RECOMMENDATIONS["fast"])
        if vocab.richness < RICHNESS_TARGET:
            issues.append("Repetitive vocabulary")
            recommendations.extend(SPEECH_RECOMMENDATIONS["vocabulary"])
        mixing = lexical.language_mixing
        if mixing is not None and mixing.is_multilingual and mixing.switch_points > SWITCH_POINT_LIMIT:
            issues.append("Frequent language switching")
            recommendations.extend(SPEECH_RECOMMENDATIONS["mixing"])
        if lexical.pauses.long_pauses > 0:
            issues.append("Long silences")
            recommendations.extend(SPEECH_RECOMMENDATIONS["long_pauses"])
        if audio is not None and audio.mean_dbfs < QUIET_DBFS:
            issues.append("Quiet voice")
            recommendations.extend(SPEECH_RECOMMENDATIONS["quiet"])

        details = {
            "words": vocab.total_words,
            "words_per_minute": round(wpm, 1),
            "filler_count": fillers.total_count,
            "filler_ratio": round(fillers.ratio, 4),
            "most_common_filler": fillers.most_common.word if fillers.most_common else None,
            "vocabulary_richness": round(vocab.richness, 4),
            "volume_measured": audio is not None,
        }
        if mixing is not None:
            details["dominant_language"] = mixing.dominant_language
            details["is_multilingual"] = mixing.is_multilingual
        metric = build_metric("speech", subs, issues, recommendations, details)
        if metric.score < LOW_SCORE:
            metric = metric.model_copy(update={
                "recommendations": metric.recommendations + SPEECH_RECOMMENDATIONS["low_score"],
            })
        return metric

    # -------- Engagement --------
    def score_engagement(
        self,
        pose_frames: Sequence[PoseFrame],
        gesture_frames: Sequence[GestureFrame],
        face_frames: Sequence[FaceFrame],
        lexical: LexicalResult,
        duration: float,
        audio: Optional[AudioFeatures] = None,
    ) -> CategoryMetric:
        has_words = lexical.vocabulary.total_words > 0
        if not (pose_frames or gesture_frames or face_frames or has_words):
            return self._default("engagement", ENGAGEMENT_KEYS, 10, "No engagement signal detected")

        expected = float(max(1, expected_ticks(duration, self.sampler_config)))
        movements = nose_movements(pose_frames)
        if movements:
            avg_move = _mean(movements)
            pose_stability = max(0.0, 1.0 - avg_move * STABILITY_MOVEMENT_SCALE)
            movement_dynamics = min(1.0, avg_move * DYNAMICS_MOVEMENT_SCALE)
        else:
            pose_stability = movement_dynamics = NEUTRAL_SIGNAL
        eye = self.eye_contact_ratio(face_frames)

        maps = [f.blendshape_map() for f in face_frames if f.blendshapes]
        active_faces = sum(1 for bs in maps if active_groups(bs))
        gesture_density = min(1.0, len(gesture_frames) / expected)
        facial_activity = min(1.0, active_faces / expected)

        speech_signals = []
        if has_words:
            speech_signals.append(min(1.0, NEUTRAL_SIGNAL + lexical.rate_variability))
        if audio is not None:
            speech_signals.append(min(1.0, audio.loudness_variability))
        speech_dynamics = _mean(speech_signals) if speech_signals else NEUTRAL_SIGNAL

        attention = (pose_stability + eye) * 20.0
        interaction = (gesture_density + facial_activity) * 20.0
        energy = (speech_dynamics + movement_dynamics) * 20.0
        base = _mean([attention, interaction, energy])

        # On-camera presence and expressive signals back the two derived scores
        if pose_frames or face_frames:
            on_camera = (min(1.0, len(pose_frames) / expected) + min(1.0, len(face_frames) / expected)) / 2.0
            presence = _mean([base, on_camera * SUB_COMPONENT_MAX])
        else:
            presence = base
        expressive = []
        if maps:
            expressive.append(sum(1 for bs in maps if smile_intensity(bs) > SMILE_THRESHOLD) / float(len(maps)))
        events = self.gesture_events(gesture_frames)
        if events:
            expressive.append(sum(1 for _, _, s in events if s > EXPRESSIVE_GESTURE_SCORE) / float(len(events)))
        if speech_signals:
            expressive.append(speech_dynamics)
        charisma_base = _mean([attention, interaction, energy, presence])
        charisma = _mean([charisma_base, _mean(expressive) * SUB_COMPONENT_MAX]) if expressive else charisma_base

        subs = {
            "attention": attention,
            "interaction": interaction,
            "energy": energy,
            "presence": min(SUB_COMPONENT_MAX, presence),
            "charisma": min(SUB_COMPONENT_MAX, charisma),
        }
        issues: List[str] = []
        recommendations: List[str] = []
        if attention < SUB_COMPONENT_MAX / 2.0:
            issues.append("Attention signals are weak")
            recommendations.extend(ENGAGEMENT_RECOMMENDATIONS["attention"])
        if interaction < SUB_COMPONENT_MAX / 2.0:
            issues.append("Little visible interaction")
            recommendations.extend(ENGAGEMENT_RECOMMENDATIONS["interaction"])
        details = {
            "pose_stability": round(pose_stability, 4),
            "eye_contact_ratio": round(eye, 4),
            "gesture_density": round(gesture_density, 4),
            "facial_activity": round(facial_activity, 4),
            "speech_dynamics": round(speech_dynamics, 4),
            "movement_dynamics": round(movement_dynamics, 4),
        }
        metric = build_metric("engagement", subs, issues, recommendations, details)
        if metric.score < LOW_SCORE:
            extra = ENGAGEMENT_RECOMMENDATIONS["low"]
        elif metric.score < STRENGTH_THRESHOLD:
            extra = ENGAGEMENT_RECOMMENDATIONS["medium"]
        else:
            extra = []
        if extra:
            metric = metric.model_copy(update={"recommendations": metric.recommendations + extra})
        return metric
