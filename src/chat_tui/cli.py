"""CLI interface for chat-tui: REPL with live streaming and request stats."""

from __future__ import annotations

import asyncio
import base64
import logging
import os
import shutil
import signal
from pathlib import Path

import click
from prompt_toolkit import PromptSession
from prompt_toolkit.filters import Condition
from prompt_toolkit.formatted_text import HTML
from prompt_toolkit.history import FileHistory
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.styles import Style
from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from chat_tui import __version__
from chat_tui.commands import UIFlags
from chat_tui.completer import SlashCommandCompleter
from chat_tui.config import ChatConfig, find_config, load_config
from chat_tui.controller import ControllerState, InteractionController
from chat_tui.setup_wizard import run_setup_wizard
from chat_tui.types import ChatEvent, EventType, RequestStats

console = Console()

_logger = logging.getLogger(__name__)

_HISTORY_PATH = Path(os.path.expanduser("~/.chat-tui/history"))


def stats_table(stats: RequestStats) -> Table:
    """Full stats panel for one request."""
    table = Table(title="Request Statistics", show_header=False, border_style="dim")
    table.add_column("Metric", style="dim", width=20)
    table.add_column("Value", style="bold cyan")

    table.add_row("Model", stats.model)
    table.add_row("HTTP Status", str(stats.http_status))
    table.add_row("Input Tokens", str(stats.input_tokens))
    table.add_row("Output Tokens", str(stats.output_tokens))
    table.add_row("Total Tokens", str(stats.total_tokens))
    table.add_row("Total Latency", f"{stats.total_latency:.2f}s")
    if stats.time_to_first_token is not None:
        table.add_row("Time to 1st Token", f"{stats.time_to_first_token:.2f}s")
    if stats.generation_time is not None:
        table.add_row("Generation Time", f"{stats.generation_time:.2f}s")
    if stats.avg_tokens_per_sec is not None:
        table.add_row("Avg Speed", f"{stats.avg_tokens_per_sec:.2f} tok/s")
    if stats.post_first_token_tokens_per_sec is not None:
        table.add_row("Gen Speed", f"{stats.post_first_token_tokens_per_sec:.2f} tok/s")
    if stats.cost_estimate is not None:
        table.add_row("Cost Estimate", f"${stats.cost_estimate:.6f}")
    return table


class StreamingDisplay:
    """Renders controller events to the terminal in real time."""

    def __init__(self, con: Console, flags: UIFlags):
        self.con = con
        self.flags = flags
        self._streaming = False

    def handle(self, event: ChatEvent):
        if event.type == EventType.TURN_STARTED:
            self.con.print(f"[dim]{event.data.get('model', '')} is typing...[/dim]", end="\r")

        elif event.type == EventType.STREAM_FRAGMENT:
            if not self._streaming:
                self._streaming = True
                self.con.print()
            self.con.print(event.data["text"], end="", highlight=False, markup=False)

        elif event.type == EventType.STREAM_DONE:
            if self._streaming:
                self.con.print()
                self._streaming = False
            elif event.data.get("content"):
                self.con.print(Markdown(event.data["content"]))
            stats: RequestStats = event.data["stats"]
            if self.flags.debug:
                self.con.print(stats_table(stats))
            elif self.flags.show_stats:
                self.con.print(f"[dim]({stats.compact_summary()})[/dim]")

        elif event.type == EventType.STREAM_CANCELLED:
            self._flush()
            self.con.print(f"[yellow]{event.data.get('message', 'cancelled')}[/yellow]")

        elif event.type == EventType.ERROR:
            self._flush()
            self.con.print(f"[red]Error: {escape(event.data.get('message', ''))}[/red]")

        elif event.type == EventType.NOTICE:
            self.con.print(f"[dim]{escape(event.data.get('message', ''))}[/dim]", highlight=False)

        elif event.type == EventType.CONFIG_RELOADED:
            self.con.print(
                f"[green]Config reloaded:[/green] [dim]{event.data.get('model')} "
                f"@ {event.data.get('base_url')}[/dim]"
            )

    def _flush(self):
        if self._streaming:
            self.con.print()
            self._streaming = False


def copy_to_clipboard(text: str) -> None:
    """Put *text* on the system clipboard using the OSC 52 escape sequence."""
    # Terminals without OSC 52 support ignore this, so the copy can silently do nothing
    payload = base64.b64encode(text.encode("utf-8")).decode("ascii")
    console.file.write(f"\x1b]52;c;{payload}\a")
    console.file.flush()


def _configure_logging(config: ChatConfig, verbose: bool) -> None:
    level = logging.DEBUG if verbose or config.debug.verbose else logging.WARNING
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if level == logging.DEBUG and config.debug.log_file:
        handlers.append(logging.FileHandler(config.debug.log_file))
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )


def _print_banner(config: ChatConfig) -> None:
    console.print(Panel(
        f"[bold bright_cyan]chat-tui[/bold bright_cyan] [bold]v{__version__}[/bold]\n"
        f"[dim]Terminal chat for OpenAI-compatible APIs[/dim]\n"
        f"[dim]Model: {config.model} @ {config.base_url}[/dim]",
        border_style="blue",
        expand=False,
    ))
    console.print("[dim]Type /help for commands. Ctrl+C cancels a streaming reply.[/dim]\n")


async def _submit_with_interrupt(controller: InteractionController, text: str) -> None:
    """Submit *text*; SIGINT cancels the streaming turn instead of exiting."""
    loop = asyncio.get_running_loop()
    installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, controller.cancel)
        installed = True
    except (NotImplementedError, RuntimeError):
        _logger.debug("SIGINT handler not supported by this event loop")
    try:
        await controller.submit(text)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


async def _repl(controller: InteractionController) -> None:
    flags = controller.flags

    def _get_prompt():
        cols = shutil.get_terminal_size().columns
        line = "─" * cols
        color = "ansired" if controller.status == ControllerState.ERROR else "ansigreen"
        return HTML(f"<dim>{line}</dim>\n<{color}><b>❯ </b></{color}>")

    def _get_toolbar():
        mode = "multiline (Esc+Enter to send)" if flags.multiline else "single line"
        stats = ""
        if flags.show_stats and controller.last_stats is not None:
            stats = f"  {controller.last_stats.compact_summary()}"
        return HTML(
            f"  <b>{controller.backend.model}</b>"
            f"  <dim>temp={controller.backend.temperature:.2f}  {mode}"
            f"  (shift+tab to toggle){stats}</dim>"
        )

    kb = KeyBindings()

    @kb.add("s-tab")
    def _toggle_multiline(event):
        flags.multiline = not flags.multiline

    _HISTORY_PATH.parent.mkdir(parents=True, exist_ok=True)
    session: PromptSession[str] = PromptSession(
        completer=SlashCommandCompleter(),
        complete_while_typing=True,
        key_bindings=kb,
        bottom_toolbar=_get_toolbar,
        style=Style.from_dict({"bottom-toolbar": "noreverse"}),
        history=FileHistory(str(_HISTORY_PATH)),
    )

    while not controller.exit_requested:
        default = controller.pending_edit
        controller.pending_edit = ""
        try:
            user_input = await session.prompt_async(
                _get_prompt, multiline=Condition(lambda: flags.multiline), default=default,
            )
        except (EOFError, KeyboardInterrupt):
            break
        if not user_input.strip():
            continue
        await _submit_with_interrupt(controller, user_input)

    console.print("[dim]Goodbye![/dim]")


async def _run(
    config: ChatConfig,
    config_path: str | None,
    prompt_text: str | None,
    stream: bool,
) -> int:
    def _reload() -> ChatConfig:
        cfg, _ = load_config(config_path)
        return cfg

    controller = InteractionController(
        config,
        config_loader=_reload,
        clipboard=copy_to_clipboard,
    )
    display = StreamingDisplay(console, controller.flags)
    controller.events.subscribe("*", display.handle)

    try:
        if prompt_text is not None:
            if stream:
                await _submit_with_interrupt(controller, prompt_text)
            else:
                await controller.submit(prompt_text, stream=False)
            return 1 if controller.status == ControllerState.ERROR else 0

        _print_banner(config)
        await _repl(controller)
        return 0
    finally:
        await controller.aclose()


@click.command()
@click.option("--config", "-c", "config_path", default=None,
              help="Config file (default: ./.chat-tui.yaml or ~/.chat-tui.yaml)")
@click.option("--model", "-m", default=None, help="Model to use")
@click.option("--temperature", "-t", type=click.FloatRange(0, 2), default=None,
              help="Sampling temperature (0-2)")
@click.option("--base-url", "-u", default=None, help="Base URL of the API")
@click.option("--no-stats", "-n", is_flag=True, help="Hide request stats")
@click.option("--prompt", "-p", "prompt_text", default=None,
              help="Send one message non-interactively and exit")
@click.option("--no-stream", is_flag=True, help="Use a non-streaming request with --prompt")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.version_option(__version__, prog_name="chat-tui")
def main(config_path: str | None, model: str | None, temperature: float | None,
         base_url: str | None, no_stats: bool, prompt_text: str | None,
         no_stream: bool, verbose: bool):
    """A terminal chat interface for OpenAI-compatible LLM APIs."""
    if config_path is None and prompt_text is None and find_config() is None:
        if click.confirm("No .chat-tui.yaml found. Run setup now?", default=True):
            config_path = str(run_setup_wizard())

    try:
        config, _ = load_config(config_path)
    except (OSError, ValueError) as e:
        raise click.ClickException(f"failed to load config: {e}") from e

    # Command-line flags override the file
    updates: dict[str, object] = {}
    if model:
        updates["model"] = model
    if temperature is not None:
        updates["temperature"] = temperature
    if base_url:
        updates["base_url"] = base_url
    if updates:
        config = config.model_copy(update=updates)
    if no_stats:
        config.ui.show_stats = False

    _configure_logging(config, verbose)

    exit_code = asyncio.run(_run(config, config_path, prompt_text, not no_stream))
    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
