"""
Tests for environment-driven configuration.

Run with: pytest tests/test_config.py -v
"""

from backend.api.services.config import SUPPORTED_LANGUAGES, AnalysisConfig, LexicalConfig


class TestFromEnv:
    """AnalysisConfig.from_env reads LESSON_* variables."""

    def test_defaults(self, monkeypatch):
        """Without variables every section keeps its defaults."""
        for name in ("LESSON_LANGUAGES", "LESSON_SEGMENT_SIZE", "LESSON_REPORT_ENABLED"):
            monkeypatch.delenv(name, raising=False)
        config = AnalysisConfig.from_env()
        assert config.transcription.languages == list(SUPPORTED_LANGUAGES)
        assert config.lexical.segment_size == 20
        assert config.report.enabled is False

    def test_languages_go_to_transcription(self, monkeypatch):
        """LESSON_LANGUAGES selects the recognition languages."""
        monkeypatch.setenv("LESSON_LANGUAGES", "ru-RU, kk-KZ")
        config = AnalysisConfig.from_env()
        assert config.transcription.languages == ["ru-RU", "kk-KZ"]
        assert "languages" not in LexicalConfig.model_fields

    def test_bad_numbers_fall_back(self, monkeypatch):
        """Unparseable numbers keep the default."""
        monkeypatch.setenv("LESSON_SEGMENT_SIZE", "twenty")
        monkeypatch.setenv("LESSON_MULTILINGUAL_THRESHOLD", "high")
        config = AnalysisConfig.from_env()
        assert config.lexical.segment_size == 20
        assert config.lexical.multilingual_threshold == 0.15
