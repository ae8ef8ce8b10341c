"""Tests for configuration loading."""

import pydantic
import pytest
import yaml

from docpilot.config import DocpilotConfig, RetryConfig, load_config


def _write(path, data) -> str:
    path.write_text(yaml.dump(data))
    return str(path)


class TestDefaults:
    def test_deepseek_keyless_by_default(self):
        deepseek = DocpilotConfig().provider("deepseek")
        assert deepseek.allow_keyless
        assert not deepseek.commercial_use
        assert deepseek.free_tier_url == "https://api-free.deepseek.com/v1"

    def test_generation_defaults(self):
        generation = DocpilotConfig().generation
        assert generation.temperature == 0.7
        assert generation.max_tokens == 2048
        assert generation.top_p == 1.0

    def test_unknown_provider_gets_defaults(self):
        assert DocpilotConfig().provider("acme").api_key is None

    def test_retry_context(self):
        ctx = RetryConfig(max_attempts=5, base_delay=0.5).to_context()
        assert ctx.max_attempts == 5
        assert ctx.base_delay == 0.5
        assert ctx.attempt == 0


class TestLoadConfig:
    def test_explicit_file(self, tmp_path):
        path = _write(tmp_path / "custom.yaml", {
            "shared_api_key": "sk-shared",
            "generation": {"model": "deepseek-chat", "temperature": 0.2},
            "providers": {"openai": {"api_key": "sk-openai"}},
            "retry": {"max_attempts": 5},
        })
        config, resolved = load_config(path)

        assert resolved == (tmp_path / "custom.yaml").resolve()
        assert config.shared_api_key == "sk-shared"
        assert config.generation.model == "deepseek-chat"
        assert config.generation.max_tokens == 2048
        assert config.provider("openai").api_key == "sk-openai"
        assert config.retry.max_attempts == 5

    def test_file_providers_merge_with_defaults(self, tmp_path):
        path = _write(tmp_path / "docpilot.yaml", {
            "providers": {
                "deepseek": {"api_key": "ds-key"},
                "groq": {"models": ["mixtral-8x7b-32768"]},
            },
        })
        config, _ = load_config(path)

        deepseek = config.provider("deepseek")
        assert deepseek.api_key == "ds-key"
        assert deepseek.allow_keyless
        assert config.provider("groq").models == ["mixtral-8x7b-32768"]
        assert "ollama" in config.providers

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.yaml")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        config, resolved = load_config(path)
        assert resolved is not None
        assert config.timeout == 60

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("invalid: yaml: content: [[[")
        with pytest.raises(yaml.YAMLError):
            load_config(path)

    def test_invalid_values(self, tmp_path):
        path = _write(tmp_path / "bad.yaml", {"generation": {"temperature": "hot"}})
        with pytest.raises(pydantic.ValidationError):
            load_config(path)

    def test_search_order(self, tmp_path, monkeypatch):
        home = tmp_path / "home"
        (home / ".docpilot").mkdir(parents=True)
        _write(home / ".docpilot" / "docpilot.yaml", {"app_id": "from-home"})
        project = tmp_path / "project"
        project.mkdir()
        monkeypatch.setenv("HOME", str(home))
        monkeypatch.chdir(project)

        config, resolved = load_config()
        assert config.app_id == "from-home"

        _write(project / "docpilot.yaml", {"app_id": "from-cwd"})
        config, resolved = load_config()
        assert config.app_id == "from-cwd"
        assert resolved == (project / "docpilot.yaml").resolve()

    def test_defaults_when_nothing_found(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path))
        monkeypatch.chdir(tmp_path)
        config, resolved = load_config()
        assert resolved is None
        assert isinstance(config, DocpilotConfig)
