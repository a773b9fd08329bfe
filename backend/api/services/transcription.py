import base64
import logging
import os
import shutil
import subprocess
import tempfile
from functools import lru_cache
from typing import Any, Dict, List, Optional, Sequence

import librosa
import numpy as np
import requests
import spacy
from pydantic import ValidationError

from .config import TranscriptionConfig
from .models import AudioFeatures, RawWord, Transcript, TranscriptionError, TranscriptSource

logger = logging.getLogger(__name__)

SILENCE_DBFS = -50.0
FALLBACK_WORDS_PER_MINUTE = 130
SYNTHETIC_WORD_SECONDS = 0.4

# Deterministic lesson text used when no real transcript can be obtained
FALLBACK_TEXTS = {
    "ru-RU": (
        "Добрый день, ребята. Сегодня мы изучаем новую тему. "
        "Откройте тетради и запишите определение. "
        "Давайте разберём пример на доске. "
        "Кто может объяснить, почему ответ именно такой? "
        "Хорошо, теперь попробуйте решить задачу самостоятельно."
    ),
    "kk-KZ": (
        "Қайырлы күн, балалар. Бүгін біз жаңа тақырыпты оқимыз. "
        "Дәптерлеріңізді ашып, анықтаманы жазыңыздар. "
        "Тақтадағы мысалды талдайық. "
        "Жауаптың неге осындай екенін кім түсіндіре алады? "
        "Жақсы, енді есепті өздеріңіз шығарып көріңіздер."
    ),
    "en-US": (
        "Good afternoon, everyone. Today we are starting a new topic. "
        "Open your notebooks and write down the definition. "
        "Let us work through an example on the board. "
        "Who can explain why the answer is correct? "
        "Good, now try to solve the next problem on your own."
    ),
}


# -------- Audio --------
def extract_audio(video_path: str, config: TranscriptionConfig) -> str:
    """Extract 16-bit mono PCM audio with ffmpeg and return the wav path."""
    ffmpeg = shutil.which(config.ffmpeg_binary)
    if not ffmpeg:
        raise TranscriptionError("ffmpeg not on PATH; cannot extract audio")
    fd, wav_path = tempfile.mkstemp(prefix="lesson_audio_", suffix=".wav")
    os.close(fd)
    cmd = [
        ffmpeg,
        "-y",
        "-i", str(video_path),
        "-vn",
        "-acodec", "pcm_s16le",
        "-ar", str(config.sample_rate),
        "-ac", "1",
        wav_path,
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=config.timeout_seconds)
    except subprocess.TimeoutExpired as exc:
        os.remove(wav_path)
        raise TranscriptionError("ffmpeg audio extraction timed out") from exc
    if result.returncode != 0 or os.path.getsize(wav_path) == 0:
        stderr_tail = (result.stderr or "").strip().splitlines()[-3:]
        os.remove(wav_path)
        raise TranscriptionError(f"ffmpeg audio extraction failed (rc={result.returncode}): {' | '.join(stderr_tail)}")
    return wav_path


def load_audio(path: str, sample_rate: int) -> np.ndarray:
    try:
        samples, _ = librosa.load(path, sr=sample_rate, mono=True)
    except Exception as exc:
        raise TranscriptionError(f"could not decode audio {path}: {exc}") from exc
    return samples


def audio_features(samples: np.ndarray, sample_rate: int) -> Optional[AudioFeatures]:
    """Mean loudness (dBFS) and loudness variability over non-silent frames."""
    if samples is None or len(samples) == 0:
        return None
    rms = librosa.feature.rms(y=samples)[0]
    db = librosa.amplitude_to_db(rms, ref=1.0)
    voiced = rms[db > SILENCE_DBFS]
    duration = len(samples) / float(sample_rate)
    if len(voiced) == 0:
        return AudioFeatures(mean_dbfs=SILENCE_DBFS * 2, loudness_variability=0.0, duration=duration)
    mean_rms = float(np.mean(voiced))
    return AudioFeatures(
        mean_dbfs=float(20.0 * np.log10(max(mean_rms, 1e-10))),
        loudness_variability=float(np.std(voiced) / mean_rms) if mean_rms > 0 else 0.0,
        duration=duration,
    )


def chunk_audio(samples: np.ndarray, sample_rate: int, chunk_seconds: float) -> List[np.ndarray]:
    size = max(1, int(sample_rate * chunk_seconds))
    return [samples[i:i + size] for i in range(0, len(samples), size)]


def to_lpcm(samples: np.ndarray) -> bytes:
    clipped = np.clip(samples, -1.0, 1.0)
    return (clipped * 32767.0).astype("<i2").tobytes()


def offset_chunk_words(chunks: Sequence[Sequence[RawWord]], chunk_seconds: float) -> List[RawWord]:
    """Shift each chunk's word timings by the chunk's start in the full audio."""
    words: List[RawWord] = []
    for index, chunk in enumerate(chunks):
        offset = index * chunk_seconds
        for w in chunk:
            words.append(w.model_copy(update={
                "start_time": w.start_time + offset,
                "end_time": w.end_time + offset,
            }))
    return words


# -------- Text tokenization --------
@lru_cache(maxsize=1)
def _tokenizer():
    # Multi-language blank pipeline: tokenizer only, no model download
    return spacy.blank("xx")


def words_from_text(
    text: str,
    duration: Optional[float] = None,
    language: Optional[str] = None,
) -> List[RawWord]:
    """Tokenize plain text into timed words; punctuation stays on the preceding word."""
    pieces: List[str] = []
    for token in _tokenizer()(text):
        if token.is_space:
            continue
        if token.is_punct and pieces:
            pieces[-1] += token.text
        elif not token.is_punct:
            pieces.append(token.text)
    if not pieces:
        return []
    step = duration / len(pieces) if duration and duration > 0 else SYNTHETIC_WORD_SECONDS
    return [
        RawWord(
            text=piece,
            start_time=round(i * step, 3),
            end_time=round(i * step + step * 0.9, 3),
            language_tag=language,
        )
        for i, piece in enumerate(pieces)
    ]


def fallback_transcript(duration: float, language: str = "ru-RU") -> Transcript:
    """Synthetic, clearly labeled transcript so scoring can proceed without speech."""
    base = FALLBACK_TEXTS.get(language, FALLBACK_TEXTS["ru-RU"])
    base_words = base.split()
    target = max(len(base_words), int(round(max(duration, 0.0) / 60.0 * FALLBACK_WORDS_PER_MINUTE)))
    repeats = -(-target // len(base_words))
    text = " ".join((base_words * repeats)[:target])
    words = words_from_text(text, duration if duration > 0 else None, language)
    return Transcript(words=words, source=TranscriptSource.FALLBACK, language=language)


# -------- Speech collaborator --------
def _seconds(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, str):
        value = value.strip().rstrip("s")
    return float(value)


def parse_words(payload: Dict[str, Any]) -> List[RawWord]:
    """Read ``result.words`` from a transcription proxy response."""
    if not payload.get("success", True):
        raise TranscriptionError(payload.get("error") or "transcription service reported failure")
    result = payload.get("result") or {}
    words: List[RawWord] = []
    for item in result.get("words") or []:
        text = item.get("word") or item.get("text") or ""
        if not text.strip():
            continue
        words.append(RawWord(
            text=text,
            start_time=_seconds(item.get("startTime", item.get("start_time"))),
            end_time=_seconds(item.get("endTime", item.get("end_time"))),
            confidence=float(item.get("confidence", 1.0) or 0.0),
            language_tag=item.get("languageCode") or item.get("language"),
        ))
    return words


class SpeechKitTranscriber:
    """Client for the transcription proxy in front of the speech-to-text vendor."""

    def __init__(self, config: TranscriptionConfig, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    def transcribe_chunk(self, pcm: bytes) -> List[RawWord]:
        if not self.config.endpoint:
            raise TranscriptionError("transcription endpoint not configured")
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Api-Key {self.config.api_key}"
        body = {
            "action": "transcribe",
            "audioData": base64.b64encode(pcm).decode("ascii"),
            "config": {
                "languages": self.config.languages,
                "format": "lpcm",
                "sampleRateHertz": self.config.sample_rate,
            },
        }
        try:
            r = self.session.post(self.config.endpoint, json=body, headers=headers, timeout=self.config.timeout_seconds)
            r.raise_for_status()
            payload = r.json()
        except (requests.RequestException, ValueError) as exc:
            raise TranscriptionError(f"transcription request failed: {exc}") from exc
        try:
            return parse_words(payload)
        except (ValueError, TypeError, AttributeError, ValidationError) as exc:
            raise TranscriptionError(f"malformed transcription response: {exc}") from exc

    def transcribe(self, samples: np.ndarray, sample_rate: int) -> Transcript:
        chunks = chunk_audio(samples, sample_rate, self.config.chunk_seconds)
        per_chunk = []
        for index, chunk in enumerate(chunks):
            words = self.transcribe_chunk(to_lpcm(chunk))
            logger.info("Chunk %d/%d: %d words", index + 1, len(chunks), len(words))
            per_chunk.append(words)
        words = offset_chunk_words(per_chunk, self.config.chunk_seconds)
        return Transcript(words=words, source=TranscriptSource.SPEECHKIT)
