"""Contrôleur de session: traduit les événements de l'éditeur en synchronisations.

Responsabilités:
- Ouverture / focus: détecter les fichiers chiffrés et matérialiser leur shadow
- Enregistrement: propager les modifications du shadow vers l'original
- Fermeture / changement de focus: nettoyer les shadows qui ne servent plus
- Décider quelles erreurs sont silencieuses et lesquelles sont montrées

Tout l'état mutable vit dans un SessionContext explicite, pas dans le module.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable

from .config import Settings
from .formats import FileFormat, ParseError, get_supported_format, language_id_for
from .lifecycle import LifecycleTracker, OpenShadowSet
from .logging_utils import get_logger
from .notifications import LogNotifier, Notifier
from .paths import get_decrypted_path, get_encrypted_path, is_decrypted_file, normalize_path
from .reconciler import FileStore, Reconciler, SaveOutcome, is_secret_pair_member
from .sops_manager import NoMatchingRuleError, SopsError
from .storage import FileSystemError, LocalFileSystem

logger = get_logger(__name__)


@dataclass(slots=True)
class SessionContext:
    open_shadows: OpenShadowSet = field(default_factory=OpenShadowSet)
    last_focused: Path | None = None


class SessionController:
    """Point d'entrée des événements de l'éditeur hôte."""

    def __init__(
        self,
        settings: Settings,
        reconciler: Reconciler,
        fs: FileStore | None = None,
        notifier: Notifier | None = None,
        context: SessionContext | None = None,
    ) -> None:
        self.settings = settings
        self.reconciler = reconciler
        self.fs = fs or LocalFileSystem()
        self.notifier = notifier or LogNotifier()
        self.context = context or SessionContext()
        self.tracker = LifecycleTracker(self.context.open_shadows, fs=self.fs, notifier=self.notifier)

    def format_for(self, path: Path, language_id: str | None) -> FileFormat | None:
        return get_supported_format(
            language_id or language_id_for(path),
            path.name,
            self.settings.file_associations,
        )

    def is_secret_pair_member(self, path: str | Path) -> bool:
        return is_secret_pair_member(path, self.fs)

    async def handle_file(self, path: Path, fmt: FileFormat) -> Path | None:
        """Matérialise le shadow de `path` si c'est un fichier chiffré.

        Lève ParseError si le contenu n'est pas structuré.
        """

        if is_decrypted_file(path) or not self.reconciler.is_encrypted_file(path, fmt):
            return None

        self.notifier.show_progress(f'Decrypting "{path}" SOPS file')
        result = await self.reconciler.ensure_shadow(path, fmt)
        self.tracker.track(result.shadow_path)
        if not self.notifier.is_document_open(result.shadow_path):
            self.notifier.open_document(result.shadow_path)
        return result.shadow_path

    async def on_focus(self, path: str | Path, language_id: str | None = None) -> None:
        if not self.settings.enabled:
            return

        path = normalize_path(path)
        logger.debug("Focus changed", extra={"path": str(path)})
        if is_decrypted_file(path):
            self.tracker.track(path)

        if not self.is_secret_pair_member(path):
            self.tracker.sweep()

        try:
            fmt = self.format_for(path, language_id)
            if fmt and not is_decrypted_file(path) and not self.fs.exists(get_decrypted_path(path)):
                await self.handle_file(path, fmt)
        except ParseError as exc:
            logger.debug("Cannot parse file", extra={"path": str(path), "error": str(exc)})
        except NoMatchingRuleError:
            logger.debug("No matching creation rules found", extra={"path": str(path)})
        except (SopsError, FileSystemError) as exc:
            logger.error("Could not decrypt file", extra={"path": str(path), "error": str(exc)})
            self.notifier.show_error(f"Could not decrypt SOPS file {path}: {exc}")

        self.context.last_focused = path

    async def on_open(self, path: str | Path, language_id: str | None = None) -> None:
        if not self.settings.enabled:
            return
        self.tracker.opened(path)
        await self.on_focus(path, language_id)

    async def on_close(self, path: str | Path) -> None:
        if not self.settings.enabled:
            return
        self.tracker.closed(path)

    async def on_save(self, path: str | Path, language_id: str | None = None) -> SaveOutcome | None:
        if not self.settings.enabled:
            return None

        path = normalize_path(path)
        fmt = self.format_for(path, language_id)
        if fmt is None:
            return None

        try:
            self.notifier.show_progress(f'Encrypting "{path}" SOPS file')
            outcome = await self.reconciler.propagate_save(path, fmt, self.settings.creation_enabled)
            if outcome is SaveOutcome.CREATED:
                # Le nouveau fichier chiffré doit être reconnu et son shadow ouvert
                await self.handle_file(get_encrypted_path(path) or path, fmt)
            return outcome
        except ParseError as exc:
            logger.debug("Cannot parse file", extra={"path": str(path), "error": str(exc)})
        except NoMatchingRuleError:
            logger.debug("No matching creation rules found", extra={"path": str(path)})
            return SaveOutcome.NO_MATCHING_RULE
        except (SopsError, FileSystemError) as exc:
            logger.error("Could not encrypt file", extra={"path": str(path), "error": str(exc)})
            self.notifier.show_error(f"Could not encrypt SOPS file {path}: {exc}")
        return None

    def toggle(self, path: str | Path) -> Path | None:
        """Retourne le fichier jumeau de `path` (original <-> shadow) s'il existe."""

        if not self.settings.enabled:
            return None

        path = normalize_path(path)
        encrypted_path = get_encrypted_path(path)
        if encrypted_path is not None:
            return encrypted_path if self.fs.exists(encrypted_path) else None

        shadow_path = get_decrypted_path(path)
        return shadow_path if self.fs.exists(shadow_path) else None


class SessionEventQueue:
    """Exécute les événements un par un, chacun jusqu'à son terme.

    Destiné aux hôtes de longue durée (intégration éditeur) qui reçoivent des
    événements en rafale: deux synchronisations ne se chevauchent jamais. La
    CLI traite un seul événement par processus et n'en a pas besoin.
    """

    def __init__(self) -> None:
        self.queue: asyncio.Queue[tuple[Callable[[], Awaitable[object]], asyncio.Future]] = asyncio.Queue()
        self.worker_task: asyncio.Task | None = None
        self.running = False

    async def start(self) -> None:
        self.running = True
        self.worker_task = asyncio.create_task(self._worker())
        logger.debug("Session event worker started")

    async def stop(self) -> None:
        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except asyncio.CancelledError:
                pass
            self.worker_task = None

        # Les événements jamais exécutés ne doivent pas laisser leur appelant en attente
        while not self.queue.empty():
            _, future = self.queue.get_nowait()
            future.cancel()
            self.queue.task_done()

    async def submit(self, event: Callable[[], Awaitable[object]]) -> object:
        """Met `event` en file et attend son résultat."""

        if not self.running:
            raise RuntimeError("Session event queue is not running")
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        await self.queue.put((event, future))
        return await future

    async def _worker(self) -> None:
        while self.running:
            event, future = await self.queue.get()
            try:
                result = await event()
            except asyncio.CancelledError:
                future.cancel()
                raise
            except Exception as exc:
                logger.exception("Session event failed")
                if not future.done():
                    future.set_exception(exc)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                self.queue.task_done()
