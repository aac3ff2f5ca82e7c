"""
Command-line interface for BlindVision.
"""

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

app = typer.Typer(
    name="blindvision",
    help="Hands-free scene assistant for blind and low-vision users",
    no_args_is_help=True,
)

console = Console()

DEFAULT_CONFIG = "configs/default.yaml"

_STATUS = {
    "idle": "[dim]Idle[/dim]",
    "listening": "[green]Listening...[/green]",
    "processing": "[yellow]Analyzing your question...[/yellow]",
    "speaking": "[blue]Speaking...[/blue]",
}


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
    )


def _show_state(old_state, new_state) -> None:
    console.print(_STATUS.get(new_state.value, new_state.value))


@app.command()
def run(
    config_file: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config preset (e.g., configs/mobile.yaml)"),
    stt_backend: Optional[str] = typer.Option(None, "--stt", help="Speech input backend (console or microphone)"),
    tts_backend: Optional[str] = typer.Option(None, "--tts", help="Speech output backend (console or elevenlabs)"),
    camera_device: Optional[int] = typer.Option(None, "--camera-device", help="Camera device index"),
    no_camera: bool = typer.Option(False, "--no-camera", help="Run without a camera"),
    continuous: Optional[bool] = typer.Option(None, "--continuous/--no-continuous", help="Keep listening after every answer"),
    no_greeting: bool = typer.Option(False, "--no-greeting", help="Start listening without the spoken greeting"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """
    Run the assistant: listen, look, answer, repeat.

    Example (desktop, type your questions):
        blindvision run --no-camera

    Example (microphone and ElevenLabs voice):
        blindvision run --stt microphone --tts elevenlabs
    """
    from blindvision.assistant.core import AssistantConfig, VoiceAssistant

    console.print("[bold]BlindVision Assistant[/bold]\n")

    yaml_config: dict = {}
    config_path = config_file or Path(DEFAULT_CONFIG)
    if config_path.exists():
        yaml_config = AssistantConfig.from_yaml(str(config_path))
        console.print(f"[dim]Loaded config: {config_path}[/dim]")
    elif config_file is not None:
        console.print(f"[red]Error: Config file not found: {config_file}[/red]")
        raise typer.Exit(1)

    # CLI args override YAML, YAML overrides defaults
    cli_overrides = {
        "stt_backend": stt_backend,
        "tts_backend": tts_backend,
        "camera_device": camera_device,
        "continuous": continuous,
        "camera_enabled": False if no_camera else None,
        "greeting": "" if no_greeting else None,
        "verbose": True if verbose else None,
    }
    values = {**yaml_config, **{k: v for k, v in cli_overrides.items() if v is not None}}
    config = AssistantConfig(**values, on_state_change=_show_state)

    _setup_logging(config.verbose)

    try:
        assistant_instance = VoiceAssistant(config)
    except (ImportError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"STT: {config.stt_backend}")
    console.print(f"TTS: {config.tts_backend}")
    console.print(f"Camera: {'device ' + str(config.camera_device) if config.camera_enabled else 'disabled'}")
    console.print(f"Mode: {'continuous' if config.continuous else 'single question'}")
    console.print("\n[dim]Ctrl+C while speaking stops the answer; Ctrl+C while listening quits[/dim]\n")

    try:
        assistant_instance.run()
    except KeyboardInterrupt:
        pass
    console.print("\n[yellow]Stopped.[/yellow]")


@app.command()
def ask(
    image: Path = typer.Argument(..., help="Image file (JPEG)"),
    question: Optional[str] = typer.Argument(None, help="Question about the image (describe the scene if omitted)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Ask one question about an image file and print the answer."""
    from blindvision.assistant.commands import CommandKind, parse_command
    from blindvision.assistant.scene import OpenAIVisionService
    from blindvision.assistant.vision import ImageFile
    from blindvision.config import get_config

    _setup_logging(verbose)

    if not image.exists():
        console.print(f"[red]Error: Image not found: {image}[/red]")
        raise typer.Exit(1)

    frame = ImageFile(image).capture_current_frame()
    settings = get_config().scene

    try:
        service = OpenAIVisionService(
            model=settings.model,
            api_key=settings.api_key,
            base_url=settings.base_url,
            max_tokens=settings.max_tokens,
        )
        command = parse_command(question) if question else None
        with console.status("Analyzing..."):
            if command is None or command.kind is CommandKind.DESCRIBE:
                answer = service.describe_scene(frame)
            else:
                answer = service.answer_question(frame, command.text)
    except (ImportError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)
    except Exception as e:
        console.print(f"[red]Scene query failed: {e}[/red]")
        raise typer.Exit(1)

    console.print(answer)


@app.command()
def info():
    """Show version, backends and service settings."""
    from blindvision import __version__
    from blindvision.config import get_config, mask_secret
    from blindvision.stt.registry import list_stt_backends
    from blindvision.tts.registry import list_tts_backends

    console.print(f"\n[bold]BlindVision v{__version__}[/bold]\n")

    settings = get_config()
    table = Table(title="Services")
    table.add_column("Setting")
    table.add_column("Value")
    table.add_row("Scene model", settings.scene.model)
    table.add_row("Scene endpoint", settings.scene.base_url or "OpenAI")
    table.add_row("Scene API key", mask_secret(settings.scene.api_key))
    table.add_row("Voice", settings.voice.voice_id)
    table.add_row("ElevenLabs API key", mask_secret(settings.voice.api_key))
    table.add_row("Transcription", f"{settings.transcription.host} ({settings.transcription.model})")
    console.print(table)

    console.print("\n[bold]Speech Input Backends[/bold]")
    for b in list_stt_backends():
        console.print(f"  - {b['name']}")

    console.print("\n[bold]Speech Output Backends[/bold]")
    for b in list_tts_backends():
        console.print(f"  - {b['name']}")


def main():
    """Entry point."""
    app()


if __name__ == "__main__":
    main()
