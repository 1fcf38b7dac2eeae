"""
Command-line interface for Glasses Assistant.
"""

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from glasses_assistant.assistant.transport import GlassesSession, PhotoData, SpeakResult
from glasses_assistant.core.errors import CaptureFailed

app = typer.Typer(
    name="glasses-assistant",
    help="Voice assistant server for camera-equipped smart glasses",
    no_args_is_help=True,
)

console = Console()

IMAGE_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
}


class FileGlassesSession(GlassesSession):
    """Stand-in glasses for ``ask``: the camera returns a file, speech is a no-op."""

    def __init__(self, photo: Optional[PhotoData] = None):
        super().__init__("cli", "cli")
        self.photo = photo

    async def request_photo(self) -> PhotoData:
        if self.photo is None:
            raise CaptureFailed("no image given")
        return self.photo

    async def speak(self, text: str) -> SpeakResult:
        return SpeakResult(False, "no speaker attached")

    def _show_text(self, text: str, duration_ms: int) -> None:
        pass


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load(config_file: Optional[Path], **overrides):
    from glasses_assistant.config import Config, load_config, set_config

    if config_file is not None:
        if not config_file.exists():
            console.print(f"[red]Error: Config file not found: {config_file}[/red]")
            raise typer.Exit(1)
        config = load_config(config_file, **overrides)
    else:
        config = Config(**{k: v for k, v in overrides.items() if v is not None})

    set_config(config)
    return config


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", "-h", help="Host to bind to"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Port to bind to"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config file"),
    mode: Optional[str] = typer.Option(None, "--mode", "-m", help="standard or live"),
    step_tracking: Optional[bool] = typer.Option(
        None, "--step-tracking/--no-step-tracking", help="Enable step-by-step project tracking"
    ),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Start the glasses bridge and dashboard server."""
    _setup_logging(verbose)
    config = _load(config_file, mode=mode, step_tracking=step_tracking)

    if not config.inference.api_key:
        console.print("[red]Error: GEMINI_API_KEY is not set[/red]")
        raise typer.Exit(1)

    from glasses_assistant.server.app import run_server

    bind_host = host or config.server.host
    bind_port = port or config.server.port
    console.print(f"[green]Starting server on {bind_host}:{bind_port}[/green]")
    console.print(
        f"[dim]Mode: {config.mode}, step tracking: "
        f"{'on' if config.step_tracking else 'off'}, "
        f"memory: {'on' if config.memory.enabled else 'off'}[/dim]"
    )

    run_server(host=bind_host, port=bind_port, reload=reload)


@app.command()
def ask(
    question: str = typer.Argument(..., help="Question to ask"),
    image: Optional[Path] = typer.Option(None, "--image", "-i", help="Photo to ask about"),
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Ask a single question (optionally about a photo) and print the answer."""
    import asyncio

    from glasses_assistant.assistant.conversations import ConversationStore
    from glasses_assistant.assistant.llm import create_backend
    from glasses_assistant.assistant.orchestrator import Orchestrator
    from glasses_assistant.assistant.prompts import PromptPolicy
    from glasses_assistant.assistant.session import UserContext

    _setup_logging(verbose)
    config = _load(config_file)

    photo = None
    if image is not None:
        if not image.exists():
            console.print(f"[red]Error: File not found: {image}[/red]")
            raise typer.Exit(1)
        mime_type = IMAGE_TYPES.get(image.suffix.lower())
        if mime_type is None:
            console.print(f"[red]Error: Unsupported image type: {image.suffix}[/red]")
            raise typer.Exit(1)
        photo = PhotoData(mime_type=mime_type, data=image.read_bytes())

    try:
        backend = create_backend(config.inference)
    except (ImportError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    orchestrator = Orchestrator(backend, config, PromptPolicy(config, ConversationStore()))
    ctx = UserContext(user_id="cli", session=FileGlassesSession(photo))
    answer = asyncio.run(orchestrator.answer(ctx, question))

    console.print(answer.text)
    console.print(f"[dim]Answered from the {answer.tier.value} tier[/dim]")


@app.command()
def config(
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config file"),
):
    """Show the effective configuration."""
    cfg = _load(config_file)

    table = Table(title="Glasses Assistant Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("mode", cfg.mode)
    table.add_row("step_tracking", str(cfg.step_tracking))
    table.add_row("api_key", "set" if cfg.inference.api_key else "[red]missing[/red]")

    for section in ("server", "listening", "scheduler", "capture", "inference",
                    "speech", "conversations", "live", "memory"):
        values = getattr(cfg, section).model_dump()
        for key, value in values.items():
            if key in ("api_key", "wake_phrases", "stop_phrases"):
                continue
            table.add_row(f"{section}.{key}", str(value))

    table.add_row("listening.wake_phrases", f"{len(cfg.listening.wake_phrases)} phrases")
    console.print(table)


def main():
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
