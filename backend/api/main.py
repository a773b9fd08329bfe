import argparse
import json
import logging
import os
import tempfile
import threading
from functools import lru_cache
from typing import List, Optional

import requests
from anyio import to_thread
from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel

from .services.config import AnalysisConfig
from .services.lexical import TranscriptLexicalAnalyzer
from .services.models import (
    AnalysisCancelled,
    AnalysisError,
    RawWord,
    SamplerTimeoutError,
    Transcript,
    TranscriptSource,
    VideoOpenError,
)
from .services.pipeline import LessonAnalyzer
from .services.transcription import words_from_text

logger = logging.getLogger(__name__)

app = FastAPI(title="Lesson analyzer")

# Detector instances are shared, so runs go one at a time
_run_lock = threading.Lock()


# -------- Request schema --------
class AnalyzeRequest(BaseModel):
    videoUrl: str                          # http(s) URL or local path
    transcriptText: Optional[str] = None   # skip transcription when provided
    language: Optional[str] = None


class VerbalRequest(BaseModel):
    cleansedText: Optional[str] = None
    words: Optional[List[RawWord]] = None
    durationSeconds: Optional[float] = None
    language: Optional[str] = None


# -------- Dependencies --------
@lru_cache(maxsize=1)
def get_config() -> AnalysisConfig:
    return AnalysisConfig.from_env()


@lru_cache(maxsize=1)
def get_analyzer() -> LessonAnalyzer:
    return LessonAnalyzer(get_config())


@lru_cache(maxsize=1)
def get_lexical_analyzer() -> TranscriptLexicalAnalyzer:
    return TranscriptLexicalAnalyzer(get_config().lexical)


# -------- Utilities --------
def to_local_file(path_or_url: str) -> str:
    """If http(s), download to a temp file and return local path; else return input."""
    if path_or_url.lower().startswith(("http://", "https://")):
        tmp = tempfile.NamedTemporaryFile(delete=False, suffix=".mp4")
        try:
            with requests.get(path_or_url, stream=True, timeout=600) as r:
                r.raise_for_status()
                for chunk in r.iter_content(chunk_size=1024 * 1024):
                    if chunk:
                        tmp.write(chunk)
        except requests.RequestException as exc:
            tmp.close()
            os.remove(tmp.name)
            raise VideoOpenError(f"Failed to download video: {exc}") from exc
        tmp.close()
        return tmp.name
    return path_or_url


def cleanup_download(local_path: str, original: str) -> None:
    if local_path == original:
        return
    try:
        os.remove(local_path)
    except OSError:
        logger.warning("Could not remove temp file %s", local_path)


def transcript_from_text(text: Optional[str], language: Optional[str]) -> Optional[Transcript]:
    if not text:
        return None
    return Transcript(words=words_from_text(text, None, language), source=TranscriptSource.PROVIDED, language=language)


def run_analysis(analyzer: LessonAnalyzer, video_path: str, transcript: Optional[Transcript] = None):
    with _run_lock:
        return analyzer.analyze(video_path, transcript=transcript)


# -------- Routes --------
@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/")
async def analyze_lesson(req: AnalyzeRequest, analyzer: LessonAnalyzer = Depends(get_analyzer)):
    try:
        local_video = to_local_file(req.videoUrl)
    except VideoOpenError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    try:
        # Run the CPU-bound pipeline in a worker thread to avoid blocking the event loop
        result = await to_thread.run_sync(
            run_analysis,
            analyzer,
            local_video,
            transcript_from_text(req.transcriptText, req.language),
        )
        return result.model_dump(mode="json")
    except VideoOpenError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except SamplerTimeoutError as exc:
        raise HTTPException(status_code=504, detail=str(exc))
    except AnalysisCancelled as exc:
        raise HTTPException(status_code=499, detail=str(exc))
    except AnalysisError as exc:
        logger.error("Analysis failed: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc))
    finally:
        cleanup_download(local_video, req.videoUrl)


@app.post("/vocab-fillers")
async def analyze_vocab_fillers(
    req: VerbalRequest,
    lexical: TranscriptLexicalAnalyzer = Depends(get_lexical_analyzer),
):
    if req.words:
        words = req.words
    elif req.cleansedText:
        words = words_from_text(req.cleansedText, req.durationSeconds, req.language)
    else:
        raise HTTPException(status_code=422, detail="Provide cleansedText or words")
    duration = req.durationSeconds
    if duration is None:
        duration = max((w.end_time for w in words), default=0.0)
    result = lexical.analyze(words, duration)
    return result.model_dump(mode="json")


# -------------- Local CLI runner (does not affect server) --------------
def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Score a recorded lesson video")
    parser.add_argument("--path", dest="path", required=True, help="Local video path or HTTPS URL")
    parser.add_argument("--transcript", dest="transcript", default=None, help="Text file with the lesson transcript")
    parser.add_argument("--language", dest="language", default=None, help="Transcript language tag, e.g. ru-RU")
    parser.add_argument("--no-report", dest="no_report", action="store_true", help="Skip the report-writing service")
    parser.add_argument("--log-level", dest="log_level", default="INFO")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = AnalysisConfig.from_env()
    if args.no_report:
        config.report.enabled = False
    transcript = None
    if args.transcript:
        with open(args.transcript, encoding="utf-8") as f:
            transcript = transcript_from_text(f.read(), args.language)

    analyzer = LessonAnalyzer(config)
    local_video = to_local_file(args.path)
    try:
        result = analyzer.analyze(
            local_video,
            on_progress=lambda p: logger.debug("progress %.0f%%", p),
            transcript=transcript,
        )
        print(json.dumps(result.model_dump(mode="json"), ensure_ascii=False, indent=2))
    finally:
        analyzer.close()
        cleanup_download(local_video, args.path)


if __name__ == "__main__":
    main()
