"""Interactive setup wizard for generating .chat-tui.yaml."""

from __future__ import annotations

from pathlib import Path

import click
import httpx
from rich.console import Console
from rich.panel import Panel

from chat_tui.config import CONFIG_FILENAME, ChatConfig, save_config

console = Console()

# Endpoint presets
_PROVIDERS = {
    "openai": {
        "label": "OpenAI",
        "base_url": "https://api.openai.com/v1",
        "api_key": "",
    },
    "ollama": {
        "label": "Ollama (OpenAI-compatible /v1)",
        "base_url": "http://localhost:11434/v1",
        "api_key": "ollama",
    },
    "lm_studio": {
        "label": "LM Studio",
        "base_url": "http://localhost:1234/v1",
        "api_key": "lm-studio",
    },
    "other": {
        "label": "Other (OpenAI-compatible)",
        "base_url": "",
        "api_key": "",
    },
}


def fetch_models(base_url: str, api_key: str, timeout: float = 3.0) -> list[str]:
    """Try to list model ids from ``{base_url}/models``."""
    headers = {}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    try:
        resp = httpx.get(f"{base_url.rstrip('/')}/models", headers=headers, timeout=timeout)
        resp.raise_for_status()
        data = resp.json()
    except (httpx.HTTPError, ValueError):
        return []
    return [m["id"] for m in data.get("data", []) if isinstance(m, dict) and "id" in m]


def _choose_model(base_url: str, api_key: str, default: str) -> str:
    """Let user pick a model from the server or type one."""
    console.print("\n[dim]Checking server for available models...[/dim]")
    models = fetch_models(base_url, api_key)

    if models:
        console.print(f"[green]Found {len(models)} model(s):[/green]")
        for i, m in enumerate(models, 1):
            console.print(f"  {i}. {m}")
        console.print(f"  {len(models) + 1}. Enter manually")

        choice = click.prompt(
            "Select model",
            type=click.IntRange(1, len(models) + 1),
            default=1,
        )
        if choice <= len(models):
            return models[choice - 1]
    else:
        console.print("[yellow]Could not fetch models from server.[/yellow]")

    return click.prompt("Model name", default=default)


def run_setup_wizard(config_dir: Path | None = None) -> Path:
    """Ask for connection settings and write ``.chat-tui.yaml``.

    Args:
        config_dir: Directory to write the config file to.
                    Defaults to current working directory.

    Returns:
        Path to the generated config file.
    """
    output_dir = config_dir or Path.cwd()
    defaults = ChatConfig()

    console.print(Panel(
        "[bold]Welcome to chat-tui![/bold]\n"
        "No configuration file found. Let's set one up.",
        border_style="cyan",
    ))

    # Step 1: endpoint
    console.print("\n[bold]Step 1:[/bold] Endpoint")
    provider_keys = list(_PROVIDERS.keys())
    for i, key in enumerate(provider_keys, 1):
        default_mark = " (default)" if i == 1 else ""
        console.print(f"  {i}. {_PROVIDERS[key]['label']}{default_mark}")
    idx = click.prompt(
        "Select endpoint",
        type=click.IntRange(1, len(provider_keys)),
        default=1,
    )
    preset = _PROVIDERS[provider_keys[idx - 1]]

    if preset["base_url"]:
        base_url = click.prompt("Base URL", default=preset["base_url"])
    else:
        base_url = click.prompt("Base URL (e.g. http://localhost:8080/v1)")

    # Step 2: credentials
    console.print("\n[bold]Step 2:[/bold] API Key")
    api_key = click.prompt(
        "API key (or set OPENAI_API_KEY later)",
        default=preset["api_key"] or defaults.api_key,
    )

    # Step 3: model and sampling
    console.print("\n[bold]Step 3:[/bold] Model")
    model = _choose_model(base_url, api_key, defaults.model)
    temperature = click.prompt(
        "Temperature (0.0-2.0)",
        type=click.FloatRange(0, 2),
        default=defaults.temperature,
    )
    max_tokens = click.prompt(
        "Max tokens", type=click.IntRange(min=1), default=defaults.max_tokens,
    )
    system_prompt = click.prompt("System prompt", default=defaults.system_prompt)

    config = ChatConfig(
        api_key=api_key,
        base_url=base_url,
        model=model,
        temperature=temperature,
        max_tokens=max_tokens,
        system_prompt=system_prompt,
    )

    output_path = output_dir / CONFIG_FILENAME
    console.print(f"\nConfig will be written to: [bold]{output_path}[/bold]")
    if not click.confirm("Write config?", default=True):
        console.print("[yellow]Aborted. No file written.[/yellow]")
        raise SystemExit(0)

    save_config(config, output_path)
    console.print(f"[green]Configuration saved to {output_path}[/green]")
    return output_path
