"""
Tests for YAML + environment configuration loading.
"""

from adapt.shared.config import AdaptSettings, LLMConfig


def test_load_from_yaml_reads_sections(tmp_path, monkeypatch):
    """YAML values land in the nested sections."""
    monkeypatch.delenv("LLM_TIMEOUT_SECONDS", raising=False)
    monkeypatch.delenv("GROUNDING_MAX_FRAGMENTS", raising=False)
    config_path = tmp_path / "adapt.yaml"
    config_path.write_text(
        "adapt:\n"
        "  llm:\n"
        "    timeout_seconds: 45\n"
        "  grounding:\n"
        "    max_fragments: 3\n"
        "  api:\n"
        "    rate_limit:\n"
        "      requests_per_minute: 10\n"
    )

    loaded = AdaptSettings.load_from_yaml(config_path)

    assert loaded.llm.timeout_seconds == 45
    assert loaded.grounding.max_fragments == 3
    assert loaded.api.rate_limit_requests_per_minute == 10


def test_environment_wins_over_yaml(tmp_path, monkeypatch):
    config_path = tmp_path / "adapt.yaml"
    config_path.write_text("adapt:\n  grounding:\n    max_fragments: 3\n")
    monkeypatch.setenv("GROUNDING_MAX_FRAGMENTS", "7")

    loaded = AdaptSettings.load_from_yaml(config_path)

    assert loaded.grounding.max_fragments == 7


def test_missing_yaml_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("SESSION_IDLE_TIMEOUT_MINUTES", raising=False)
    monkeypatch.delenv("MASTERY_PROBLEM_TOPIC_MIN_ATTEMPTS", raising=False)
    loaded = AdaptSettings.load_from_yaml(tmp_path / "missing.yaml")

    assert loaded.session.idle_timeout_minutes == 30
    assert loaded.mastery.problem_topic_min_attempts == 3


def test_retries_are_capped_at_one():
    assert LLMConfig(max_retries=5).max_retries == 1
    assert LLMConfig(max_retries=-2).max_retries == 0
