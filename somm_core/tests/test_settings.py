import pytest
from pydantic import ValidationError

from somm_core.config.settings import Settings, _flatten_sections, _load_config_from_yaml


def test_flatten_grouped_yaml():
    flat = _flatten_sections(
        {
            "openai": {"api_key": "sk-test-0123456789"},
            "speech": {"voice": "Daniel", "rate": 160},
            "context": {"max_messages": 12, "keep_recent": 4},
            "enable_streaming": False,
        }
    )
    assert flat == {
        "openai_api_key": "sk-test-0123456789",
        "speech_voice": "Daniel",
        "speech_rate": 160,
        "max_context_messages": 12,
        "context_keep_recent": 4,
        "enable_streaming": False,
    }


def test_yaml_file_is_loaded(tmp_path, monkeypatch):
    cfg = tmp_path / "somm.yaml"
    cfg.write_text("speech:\n  rate: 150\nprimary_model: gpt-4.1\n", encoding="utf-8")
    monkeypatch.setenv("SOMM_CONFIG_FILE", str(cfg))
    assert _load_config_from_yaml() == {"speech_rate": 150, "primary_model": "gpt-4.1"}
    s = Settings()
    assert s.speech_rate == 150
    assert s.primary_model == "gpt-4.1"


def test_env_overrides_yaml(tmp_path, monkeypatch):
    cfg = tmp_path / "somm.yaml"
    cfg.write_text("max_tokens: 300\n", encoding="utf-8")
    monkeypatch.setenv("SOMM_CONFIG_FILE", str(cfg))
    monkeypatch.setenv("MAX_TOKENS", "250")
    assert Settings().max_tokens == 250


def test_short_api_key_rejected():
    with pytest.raises(ValidationError):
        Settings(openai_api_key="short")
