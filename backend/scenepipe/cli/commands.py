"""CLI commands for scenepipe using Typer and Rich.

Commands:
- generate: Run a batch of scene units from a screenplay JSON file
- draft: Plan a screenplay from a prompt (optionally guided by an image)
- chat: Run the command loop for one message
- extract: Recover the command from a saved model reply
"""

import asyncio
import base64
import json
import logging
import signal
from pathlib import Path
from typing import Callable, List, Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from scenepipe import configure_logging
from scenepipe.config import Settings, get_settings
from scenepipe.orchestrator.command_loop import LoopEvent, LoopOutcome
from scenepipe.orchestrator.pipeline import Director
from scenepipe.orchestrator.state import CancelToken
from scenepipe.pipeline.screenplay import ScreenplayParseError
from scenepipe.schemas.command import command_to_json
from scenepipe.schemas.run import ProgressEvent, RunStatus
from scenepipe.schemas.screenplay import Screenplay, UnitStatus
from scenepipe.services.command_extractor import ExtractionError, extract_command
from scenepipe.services.job_poller import JobCancelled

app = typer.Typer(name="scenepipe", help="Script to per-scene image to per-scene video orchestrator")
console = Console()


def _settings(mock: bool) -> Settings:
    settings = get_settings()
    if mock:
        generation = settings.generation.model_copy(update={"use_mock": True})
        settings = settings.model_copy(update={"generation": generation})
    return settings


def _on_interrupt(callback: Callable[[], None]) -> None:
    """Route Ctrl-C to a cooperative cancel instead of KeyboardInterrupt."""
    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, callback)
    except NotImplementedError:
        # Windows event loops keep the default KeyboardInterrupt behaviour
        pass


def _status_color(status: str) -> str:
    if status in (UnitStatus.COMPLETED.value, RunStatus.COMPLETED.value):
        return "green"
    if status in (UnitStatus.FAILED.value, RunStatus.FAILED.value):
        return "red"
    if status in (RunStatus.PARTIAL.value, RunStatus.CANCELLED.value):
        return "yellow"
    if status == UnitStatus.PENDING.value:
        return "dim"
    return "cyan"


@app.command()
def generate(
    screenplay_file: Path = typer.Argument(..., help="Screenplay JSON file"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-c", help="Units generated at once"),
    character_ref: Optional[List[str]] = typer.Option(None, "--character-ref", help="Character sheet URI (max 2)"),
    user_image: Optional[List[str]] = typer.Option(None, "--user-image", help="Reference image URI for the first scene"),
    mock: bool = typer.Option(False, "--mock", help="Use the mock generation service"),
):
    """Generate the image and video of every scene in a screenplay."""
    configure_logging(logging.WARNING)
    try:
        screenplay = Screenplay.model_validate(json.loads(screenplay_file.read_text(encoding="utf-8")))
    except (OSError, ValueError, ValidationError) as e:
        console.print(f"[red]Error:[/red] Could not load screenplay: {e}")
        raise typer.Exit(code=1)
    if concurrency is not None and concurrency <= 0:
        console.print("[red]Error:[/red] --concurrency must be positive")
        raise typer.Exit(code=1)

    asyncio.run(_generate_async(screenplay, concurrency, character_ref or [], user_image or [], mock))


async def _generate_async(
    screenplay: Screenplay,
    concurrency: Optional[int],
    character_refs: List[str],
    user_images: List[str],
    mock: bool,
) -> None:
    director = Director.from_settings(_settings(mock))
    run = director.create_run(screenplay.scenes, character_refs, user_images, concurrency)
    console.print(f"[green]Run:[/green] {run.run_id} ({len(run.store)} scenes)")
    _on_interrupt(run.cancel)

    try:
        with console.status("[bold green]Starting...") as status:
            def on_progress(event: ProgressEvent) -> None:
                status.update(
                    f"[bold green]{event.progress:.0%}[/bold green] "
                    f"images {event.images_done}/{event.total_units} "
                    f"videos {event.videos_done}/{event.total_units} {event.message}"
                )

            summary = await director.execute(run.run_id, on_progress)
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)
    finally:
        await director.aclose()

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Scene", style="dim")
    table.add_column("Status")
    table.add_column("Image")
    table.add_column("Video")
    table.add_column("Error")
    for unit in summary.units:
        color = _status_color(unit.status.value)
        table.add_row(
            str(unit.id),
            f"[{color}]{unit.status.value}[/{color}]",
            unit.image_artifact or "-",
            unit.video_artifact or "-",
            unit.error_message or "",
        )
    console.print(table)

    color = _status_color(summary.status.value)
    console.print(
        f"[{color}]Run {summary.status.value}[/{color}]: "
        f"{len(summary.succeeded)} succeeded, {len(summary.failed)} failed"
    )
    if summary.consistency_degraded:
        console.print("[yellow]Warning:[/yellow] some scenes were generated without character references")
    if summary.status in (RunStatus.FAILED, RunStatus.CANCELLED):
        raise typer.Exit(code=1)


@app.command()
def draft(
    prompt: str = typer.Argument(..., help="Creative idea for the video"),
    image: Optional[Path] = typer.Option(None, "--image", "-i", help="Character reference image"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the screenplay JSON here"),
    mock: bool = typer.Option(False, "--mock", help="Use the mock generation service"),
):
    """Plan a screenplay for a prompt."""
    configure_logging(logging.WARNING)
    images = []
    if image is not None:
        try:
            images.append(base64.b64encode(image.read_bytes()).decode("ascii"))
        except OSError as e:
            console.print(f"[red]Error:[/red] Could not read image: {e}")
            raise typer.Exit(code=1)

    asyncio.run(_draft_async(prompt, images, output, mock))


async def _draft_async(prompt: str, images: List[str], output: Optional[Path], mock: bool) -> None:
    director = Director.from_settings(_settings(mock))
    token = CancelToken()
    _on_interrupt(token.cancel)
    try:
        with console.status("[bold green]Planning screenplay..."):
            screenplay = await director.draft_screenplay(prompt, images, cancel_token=token)
    except ScreenplayParseError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)
    except JobCancelled:
        console.print("[yellow]Cancelled[/yellow]")
        raise typer.Exit(code=1)
    except Exception as e:
        console.print(f"[red]Error:[/red] Planner request failed: {e}")
        raise typer.Exit(code=1)
    finally:
        await director.aclose()

    text = screenplay.model_dump_json(indent=2)
    if output is not None:
        output.write_text(text, encoding="utf-8")
        console.print(f"[green]Saved:[/green] {output}")
    else:
        console.print_json(text)
    console.print(f"[bold]{screenplay.script_title}[/bold]: {len(screenplay.scenes)} scenes")


@app.command()
def chat(
    message: str = typer.Argument(..., help="What you want created"),
    mock: bool = typer.Option(False, "--mock", help="Use the mock generation service"),
    show_thinking: bool = typer.Option(False, "--thinking", help="Print the model's reasoning"),
):
    """Run the command loop for one message."""
    configure_logging(logging.WARNING)
    asyncio.run(_chat_async(message, mock, show_thinking))


async def _chat_async(message: str, mock: bool, show_thinking: bool) -> None:
    director = Director.from_settings(_settings(mock))
    _on_interrupt(director.cancel_command_loop)

    def on_event(event: LoopEvent) -> None:
        if event.kind == "thinking":
            if show_thinking:
                console.print(event.text, style="dim", end="")
        elif event.kind == "tool_call":
            console.print(f"\n[blue]→[/blue] {event.text}")
        elif event.kind == "tool_result":
            console.print(f"[green]✓[/green] {event.text}")
        elif event.kind == "error":
            console.print(f"[yellow]![/yellow] {event.text}")

    try:
        result = await director.run_command_loop(message, on_event=on_event)
    finally:
        await director.aclose()

    console.print()
    console.print(result.message)
    if result.image_url:
        console.print(f"[green]Image:[/green] {result.image_url}")
    if result.video_url:
        console.print(f"[green]Video:[/green] {result.video_url}")
    if result.outcome != LoopOutcome.COMPLETED:
        console.print(f"[yellow]Stopped:[/yellow] {result.outcome.value} after {result.iterations} iterations")
        raise typer.Exit(code=1)


@app.command()
def extract(
    file: Path = typer.Argument(..., help="File holding a raw model reply"),
):
    """Recover the command from a raw model reply."""
    try:
        command = extract_command(file.read_text(encoding="utf-8"))
    except OSError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)
    except ExtractionError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)
    console.print_json(command_to_json(command))
