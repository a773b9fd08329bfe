import logging
from typing import Any, Dict, List, Optional

import requests
from pydantic import ValidationError

from .config import ReportConfig
from .models import AIReport, ComprehensiveResult, ReportError, Transcript

logger = logging.getLogger(__name__)


def build_payload(result: ComprehensiveResult, transcript: Optional[Transcript], language: str) -> Dict[str, Any]:
    return {
        "action": "generate-professional-report",
        "language": language,
        "analysisData": {
            "transcription": transcript.text if transcript is not None else "",
            "transcriptSource": transcript.source.value if transcript is not None else None,
            "scoringResults": result.model_dump(mode="json", exclude={"ai_report"}),
        },
    }


def _strings(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value]
    if not isinstance(value, (list, tuple)):
        raise TypeError(f"expected a list of strings, got {type(value).__name__}")
    return [str(v) for v in value]


def _sections(value: Any) -> Dict[str, List[str]]:
    if isinstance(value, (list, tuple, str)):
        return {"general": _strings(value)}
    return {str(k): _strings(v) for k, v in value.items()}


def parse_report(payload: Any) -> AIReport:
    if not isinstance(payload, dict):
        raise ReportError(f"unexpected report response: {type(payload).__name__}")
    if not payload.get("success", False):
        raise ReportError(payload.get("error") or "report service reported failure")
    try:
        body = payload.get("result") or {}
        professional = body.get("professionalReport") or {}
        detailed = professional.get("detailedAnalysis") or {}
        return AIReport(
            executive_summary=professional.get("executiveSummary") or "",
            strengths=_strings(detailed.get("strengths") or []),
            areas_for_improvement=_strings(detailed.get("areasForImprovement") or []),
            recommendations=_sections(professional.get("recommendations") or {}),
            action_plan=_sections(professional.get("actionPlan") or {}),
            motivational_message=body.get("motivationalMessage"),
        )
    except (AttributeError, TypeError, ValidationError) as exc:
        raise ReportError(f"malformed report response: {exc}") from exc


class ReportWriter:
    """Optional narrative enrichment from the report-writing service."""

    def __init__(self, config: ReportConfig, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    @property
    def enabled(self) -> bool:
        return self.config.enabled and bool(self.config.endpoint)

    def write(self, result: ComprehensiveResult, transcript: Optional[Transcript] = None) -> AIReport:
        if not self.config.endpoint:
            raise ReportError("report endpoint not configured")
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        try:
            r = self.session.post(
                self.config.endpoint,
                json=build_payload(result, transcript, self.config.language),
                headers=headers,
                timeout=self.config.timeout_seconds,
            )
            r.raise_for_status()
            payload = r.json()
        except (requests.RequestException, ValueError) as exc:
            raise ReportError(f"report request failed: {exc}") from exc
        return parse_report(payload)

    def enrich(self, result: ComprehensiveResult, transcript: Optional[Transcript] = None) -> ComprehensiveResult:
        """Attach a report when the service answers; otherwise return the result unchanged."""
        if not self.enabled:
            return result
        try:
            report = self.write(result, transcript)
        except ReportError:
            logger.warning("Report generation failed; returning result without report", exc_info=True)
            return result
        return result.model_copy(update={"ai_report": report})
