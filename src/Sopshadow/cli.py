"""Command-line entrypoint for Sopshadow.

Implémenté avec Typer; chaque commande correspond à un événement qu'un éditeur
enverrait (ouverture, enregistrement, fermeture) ou à une opération explicite
(sync, status, edit).
"""

from __future__ import annotations

import asyncio
import os
import shlex
from functools import partial
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from .config import Settings, build_engine_options
from .logging_utils import configure_logging, get_logger
from .paths import get_decrypted_path, get_encrypted_path, is_decrypted_file, normalize_path
from .formats import FileFormat, ParseError
from .reconciler import Reconciler, SaveOutcome
from .session import SessionController
from .sops_manager import SopsError, SopsManager
from .storage import FileSystemError

logger = get_logger(__name__)

app = typer.Typer(help="Edit SOPS-encrypted files through decrypted shadow copies.")
console = Console()


class ConsoleNotifier:
    """Notifier pour le terminal; retient s'il y a eu une erreur pour le code de sortie."""

    def __init__(self) -> None:
        self.failed = False

    def show_error(self, message: str) -> None:
        self.failed = True
        console.print(f"[bold red]Error:[/bold red] {message}")

    def show_warning(self, message: str) -> None:
        console.print(f"[yellow]Warning:[/yellow] {message}")

    def show_progress(self, message: str) -> None:
        logger.info(message)

    def open_document(self, path: Path) -> None:
        console.print(str(path))

    def is_document_open(self, path: Path) -> bool:
        return False


def build_controller(settings: Settings, notifier: ConsoleNotifier | None = None) -> SessionController:
    engine = SopsManager(
        bin_path=settings.bin_path,
        options_provider=partial(build_engine_options, settings),
        timeout=settings.engine_timeout,
    )
    return SessionController(settings, Reconciler(engine), notifier=notifier or ConsoleNotifier())


def _controller() -> tuple[SessionController, ConsoleNotifier]:
    settings = Settings()  # type: ignore[call-arg]
    notifier = ConsoleNotifier()
    return build_controller(settings, notifier), notifier


def _exit_on_failure(notifier: ConsoleNotifier) -> None:
    if notifier.failed:
        raise typer.Exit(1)


@app.callback()
def _setup(log_level: Optional[str] = typer.Option(None, help="Log level (defaults to Sopshadow_LOG_LEVEL).")) -> None:
    configure_logging(log_level or Settings().log_level)  # type: ignore[call-arg]


@app.command("open")
def open_file(file: Path = typer.Argument(..., help="Encrypted file to open.")):
    """Decrypt FILE into its shadow if it is SOPS-encrypted and print the shadow path."""
    controller, notifier = _controller()
    asyncio.run(controller.on_focus(file))
    _exit_on_failure(notifier)


@app.command()
def save(file: Path = typer.Argument(..., help="Saved file (usually a .decrypted~ shadow).")):
    """Propagate a saved shadow back into its encrypted original."""
    controller, notifier = _controller()
    outcome = asyncio.run(controller.on_save(file))
    _exit_on_failure(notifier)
    if outcome is not None:
        console.print(outcome.value)


@app.command()
def close(file: Path = typer.Argument(..., help="Encrypted file or its shadow.")):
    """Delete the shadow of FILE."""
    controller, _ = _controller()
    path = normalize_path(file)
    shadow = path if is_decrypted_file(path) else get_decrypted_path(path)
    if controller.tracker.release(shadow):
        console.print(f"Deleted {shadow}")


@app.command()
def sync(file: Path = typer.Argument(..., help="Encrypted file.")):
    """Reconcile FILE with its shadow using content fingerprints and modification times."""
    controller, _ = _controller()
    path = normalize_path(file)
    encrypted = get_encrypted_path(path) or path
    fmt = controller.format_for(encrypted, None)
    if fmt is None:
        console.print(f"[bold red]Error:[/bold red] Unsupported file format: {encrypted}")
        raise typer.Exit(1)
    try:
        result = asyncio.run(controller.reconciler.ensure_shadow(encrypted, fmt))
    except (SopsError, FileSystemError) as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(1)
    console.print(f"{result.state.value}: {result.decision.value}")


def _is_encrypted(controller: SessionController, path: Path, fmt: FileFormat) -> bool:
    if not controller.fs.exists(path):
        return False
    try:
        return controller.reconciler.is_encrypted_file(path, fmt)
    except (ParseError, FileSystemError):
        return False


@app.command()
def status(file: Path = typer.Argument(..., help="File to inspect.")):
    """Show whether FILE is a shadow or an encrypted original, and the state of its pair."""
    controller, _ = _controller()
    path = normalize_path(file)
    if is_decrypted_file(path):
        original = get_encrypted_path(path)
        console.print(f"shadow of {original} ({'present' if controller.fs.exists(original) else 'missing'})")
        return

    shadow = get_decrypted_path(path)
    fmt = controller.format_for(path, None)
    encrypted = fmt is not None and _is_encrypted(controller, path, fmt)
    shadow_present = controller.fs.exists(shadow)
    console.print(f"{'encrypted' if encrypted else 'plain'} file, shadow {shadow} ({'present' if shadow_present else 'absent'})")

    if encrypted and shadow_present:
        try:
            result = asyncio.run(controller.reconciler.inspect(path, fmt))
        except (SopsError, FileSystemError) as exc:
            console.print(f"[bold red]Error:[/bold red] {exc}")
            raise typer.Exit(1)
        console.print(f"{result.state.value}: {result.decision.value}")


@app.command()
def toggle(file: Path = typer.Argument(..., help="Encrypted file or its shadow.")):
    """Print the counterpart of FILE (original <-> shadow) if it exists."""
    controller, _ = _controller()
    counterpart = controller.toggle(file)
    if counterpart is None:
        raise typer.Exit(1)
    console.print(str(counterpart))


_SAVED_OUTCOMES = (SaveOutcome.UNCHANGED, SaveOutcome.ORIGINAL_UPDATED, SaveOutcome.CREATED)


async def _edit(controller: SessionController, notifier: ConsoleNotifier, path: Path, editor: str) -> None:
    shadow = get_decrypted_path(path)
    fmt = controller.format_for(path, None)

    # Un shadow laissé par une session précédente peut être plus ancien que l'original
    if fmt is not None and controller.fs.exists(shadow) and _is_encrypted(controller, path, fmt):
        try:
            await controller.reconciler.ensure_shadow(path, fmt)
        except (SopsError, FileSystemError) as exc:
            notifier.show_error(f"Could not reconcile {path} with {shadow}: {exc}")
            return

    await controller.on_focus(path)
    if notifier.failed or not controller.fs.exists(shadow):
        return

    try:
        proc = await asyncio.create_subprocess_exec(*shlex.split(editor), str(shadow))
    except OSError as exc:
        notifier.show_error(f"Could not start editor {editor!r}: {exc}")
        return
    await proc.wait()

    outcome = await controller.on_save(shadow)
    if outcome in _SAVED_OUTCOMES and not notifier.failed:
        controller.tracker.release(shadow)
        return

    # Le shadow est la seule copie des modifications: on le garde
    logger.warning("Keeping decrypted file after failed save", extra={"path": str(shadow)})
    console.print(f"[yellow]Kept decrypted file[/yellow] {shadow}; run `sopshadow save` on it once fixed.")
    notifier.failed = True


@app.command()
def edit(file: Path = typer.Argument(..., help="Encrypted file to edit.")):
    """Open the shadow of FILE in $EDITOR, encrypt the changes on exit, then delete the shadow."""
    controller, notifier = _controller()
    editor = os.environ.get("VISUAL") or os.environ.get("EDITOR") or "vi"
    path = normalize_path(file)
    if is_decrypted_file(path):
        console.print(f"[bold red]Error:[/bold red] {path} is already a decrypted file")
        raise typer.Exit(1)
    asyncio.run(_edit(controller, notifier, path, editor))
    _exit_on_failure(notifier)


def main() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
