"""Tests for chat-tui configuration loading."""

import os
import tempfile
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from chat_tui.config import (
    CONFIG_FILENAME,
    ChatConfig,
    PricingConfig,
    find_config,
    load_config,
    save_config,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in list(os.environ):
        if name.startswith("CHAT_TUI_") or name == "OPENAI_API_KEY":
            monkeypatch.delenv(name)


@pytest.fixture
def isolated(tmp_path, monkeypatch):
    """Run with empty cwd and home directories."""
    home = tmp_path / "home"
    work = tmp_path / "work"
    home.mkdir()
    work.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(work)
    return work, home


class TestChatConfig:
    def test_defaults(self):
        cfg = ChatConfig()
        assert cfg.api_key == "not_needed"
        assert cfg.base_url == "https://api.openai.com/v1"
        assert cfg.model == "gpt-4"
        assert cfg.temperature == 0.7
        assert cfg.max_tokens == 4096
        assert cfg.system_prompt == "You are a helpful assistant"
        assert cfg.ui.show_stats is True
        assert cfg.debug.log_file == ".chat-tui.log"
        assert cfg.pricing.configured is False

    def test_temperature_validated(self):
        with pytest.raises(ValidationError):
            ChatConfig(temperature=2.5)
        with pytest.raises(ValidationError):
            ChatConfig(max_tokens=0)


class TestPricing:
    def test_estimate(self):
        p = PricingConfig(input_per_million=3.0, output_per_million=15.0)
        assert p.estimate(1000, 2000) == pytest.approx(0.033)

    def test_unconfigured(self):
        assert PricingConfig().estimate(1000, 1000) is None


class TestLoadConfig:
    def test_defaults_when_no_file(self, isolated):
        cfg, path = load_config()
        assert path is None
        assert cfg.model == "gpt-4"

    def test_explicit_path(self):
        data = {
            "model": "llama3",
            "base_url": "http://localhost:11434/v1",
            "temperature": 0.2,
            "ui": {"show_stats": False},
            "pricing": {"input_per_million": 1.5},
        }
        with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
            yaml.dump(data, f)
            f.flush()
            cfg, path = load_config(f.name)

        assert path == Path(f.name).resolve()
        assert cfg.model == "llama3"
        assert cfg.temperature == 0.2
        assert cfg.ui.show_stats is False
        assert cfg.pricing.input_per_million == 1.5
        assert cfg.max_tokens == 4096
        Path(f.name).unlink()

    def test_missing_explicit_path(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "missing.yaml")

    def test_empty_file(self, tmp_path):
        p = tmp_path / "empty.yaml"
        p.write_text("")
        cfg, _ = load_config(p)
        assert cfg.model == "gpt-4"

    def test_not_a_mapping(self, tmp_path):
        p = tmp_path / "list.yaml"
        p.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="mapping"):
            load_config(p)

    def test_invalid_value(self, tmp_path):
        p = tmp_path / "bad.yaml"
        p.write_text("temperature: 9\n")
        with pytest.raises(ValidationError):
            load_config(p)

    def test_cwd_before_home(self, isolated):
        work, home = isolated
        (home / CONFIG_FILENAME).write_text("model: from-home\n")
        cfg, path = load_config()
        assert cfg.model == "from-home"

        (work / CONFIG_FILENAME).write_text("model: from-cwd\n")
        cfg, path = load_config()
        assert cfg.model == "from-cwd"
        assert path == (work / CONFIG_FILENAME).resolve()

    def test_find_config(self, isolated):
        work, _ = isolated
        assert find_config() is None
        (work / CONFIG_FILENAME).write_text("{}\n")
        assert find_config() == work / CONFIG_FILENAME


class TestEnvOverrides:
    def test_prefixed_vars(self, isolated, monkeypatch):
        work, _ = isolated
        (work / CONFIG_FILENAME).write_text("model: file-model\n")
        monkeypatch.setenv("CHAT_TUI_MODEL", "env-model")
        monkeypatch.setenv("CHAT_TUI_TEMPERATURE", "1.1")
        cfg, _ = load_config()
        assert cfg.model == "env-model"
        assert cfg.temperature == 1.1

    def test_openai_api_key_wins(self, isolated, monkeypatch):
        monkeypatch.setenv("CHAT_TUI_API_KEY", "prefixed")
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        cfg, _ = load_config()
        assert cfg.api_key == "sk-test"


class TestSaveConfig:
    def test_round_trip(self, tmp_path):
        cfg = ChatConfig(model="saved-model", temperature=1.0)
        out = save_config(cfg, tmp_path / "sub" / CONFIG_FILENAME)

        assert out.read_text().startswith("# chat-tui configuration")
        loaded, _ = load_config(out)
        assert loaded == cfg
