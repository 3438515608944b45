"""Configuration management for chat-tui."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

_logger = logging.getLogger(__name__)


class UIConfig(BaseModel):
    theme: str = "dark"  # "dark" or "light"
    show_stats: bool = True
    syntax_highlight: bool = True


class DebugConfig(BaseModel):
    verbose: bool = False
    log_file: str = ".chat-tui.log"


class PricingConfig(BaseModel):
    # USD per million tokens; 0 means unknown (no cost estimate)
    input_per_million: float = Field(default=0.0, ge=0)
    output_per_million: float = Field(default=0.0, ge=0)

    @property
    def configured(self) -> bool:
        return self.input_per_million > 0 or self.output_per_million > 0

    def estimate(self, input_tokens: int, output_tokens: int) -> float | None:
        if not self.configured:
            return None
        return (
            input_tokens * self.input_per_million
            + output_tokens * self.output_per_million
        ) / 1_000_000


class ChatConfig(BaseModel):
    api_key: str = "not_needed"
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4"
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int = Field(default=4096, gt=0)
    system_prompt: str = "You are a helpful assistant"
    ui: UIConfig = Field(default_factory=UIConfig)
    debug: DebugConfig = Field(default_factory=DebugConfig)
    pricing: PricingConfig = Field(default_factory=PricingConfig)


CONFIG_FILENAME = ".chat-tui.yaml"

ENV_PREFIX = "CHAT_TUI_"

# Top-level scalar fields that may be overridden from the environment
_ENV_FIELDS = (
    "api_key", "base_url", "model", "temperature", "max_tokens", "system_prompt",
)


def _apply_env(raw: dict[str, Any]) -> dict[str, Any]:
    """Overlay ``CHAT_TUI_*`` variables, then ``OPENAI_API_KEY``."""
    merged = dict(raw)
    for name in _ENV_FIELDS:
        value = os.environ.get(ENV_PREFIX + name.upper())
        if value:
            merged[name] = value
    api_key = os.environ.get("OPENAI_API_KEY")
    if api_key:
        merged["api_key"] = api_key
    return merged


def find_config() -> Path | None:
    """Return the first config file on the search path, if any."""
    for d in (Path.cwd(), Path.home()):
        p = d / CONFIG_FILENAME
        if p.exists():
            return p
    return None


def load_config(
    config_path: str | Path | None = None,
) -> tuple[ChatConfig, Path | None]:
    """Load configuration from a YAML file and the environment.

    Returns (config, resolved_path).  *resolved_path* is ``None`` when
    no file was found and built-in defaults are used.

    Search order (first match wins):
      1. Explicit ``--config`` path
      2. Current working directory: ``./.chat-tui.yaml``
      3. Home directory: ``~/.chat-tui.yaml``
    """
    if config_path is not None:
        resolved: Path | None = Path(config_path)
        if not resolved.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        resolved = find_config()

    raw: dict[str, Any] = {}
    if resolved is not None:
        _logger.info("Loading config from %s", resolved)
        with open(resolved) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"Config file {resolved} must contain a mapping")
    else:
        _logger.info("No config file found, using defaults")

    config = ChatConfig.model_validate(_apply_env(raw))
    return config, resolved.resolve() if resolved else None


def save_config(config: ChatConfig, path: str | Path) -> Path:
    """Write *config* as YAML and return the written path."""
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    with open(out, "w") as f:
        f.write("# chat-tui configuration\n")
        yaml.safe_dump(config.model_dump(), f, sort_keys=False)
    _logger.info("Config written to %s", out)
    return out
