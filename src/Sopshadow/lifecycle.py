"""Suivi des shadows présents sur disque et nettoyage.

Un shadow est suivi dès qu'une session le touche. Il est supprimé quand sa
dernière session se ferme, ou quand le focus passe sur un fichier hors de
toute paire alors qu'aucune session ne le référence plus. La suppression est
"best effort": un échec devient un avertissement.
"""

from __future__ import annotations

from collections import Counter
from pathlib import Path
from typing import Iterator

from .logging_utils import get_logger
from .notifications import LogNotifier, Notifier
from .paths import is_decrypted_file, normalize_path
from .reconciler import FileStore
from .storage import FileSystemError, LocalFileSystem

logger = get_logger(__name__)


class OpenShadowSet:
    """Ensemble des shadows matérialisés sur disque."""

    def __init__(self) -> None:
        self._paths: dict[Path, None] = {}

    def add(self, path: str | Path) -> None:
        self._paths[normalize_path(path)] = None

    def discard(self, path: str | Path) -> None:
        self._paths.pop(normalize_path(path), None)

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, (str, Path)):
            return False
        return normalize_path(path) in self._paths

    def __iter__(self) -> Iterator[Path]:
        return iter(list(self._paths))

    def __len__(self) -> int:
        return len(self._paths)


class LifecycleTracker:
    def __init__(
        self,
        open_shadows: OpenShadowSet | None = None,
        fs: FileStore | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self.open_shadows = open_shadows if open_shadows is not None else OpenShadowSet()
        self.fs = fs or LocalFileSystem()
        self.notifier = notifier or LogNotifier()
        self._references: Counter[Path] = Counter()

    def track(self, shadow_path: str | Path) -> None:
        self.open_shadows.add(shadow_path)

    def references(self, shadow_path: str | Path) -> int:
        return self._references[normalize_path(shadow_path)]

    def opened(self, path: str | Path) -> None:
        """Une session de l'hôte a ouvert `path`."""

        path = normalize_path(path)
        if is_decrypted_file(path):
            self._references[path] += 1
            self.track(path)

    def closed(self, path: str | Path) -> bool:
        """Une session de l'hôte a fermé `path`. Retourne True si le shadow a été supprimé."""

        path = normalize_path(path)
        if not is_decrypted_file(path) or self._references[path] == 0:
            return False
        self._references[path] -= 1
        if self._references[path] > 0 or path not in self.open_shadows:
            return False
        del self._references[path]
        return self.release(path)

    def sweep(self) -> list[Path]:
        """Supprime les shadows suivis qui ne sont plus référencés par aucune session."""

        deleted: list[Path] = []
        for shadow_path in self.open_shadows:
            if self._references[shadow_path] > 0:
                logger.debug("Keeping shadow still open elsewhere", extra={"path": str(shadow_path)})
                continue
            if self.release(shadow_path):
                deleted.append(shadow_path)
        return deleted

    def release(self, shadow_path: str | Path) -> bool:
        """Arrête le suivi de `shadow_path` et le supprime du disque."""

        shadow_path = normalize_path(shadow_path)
        self.open_shadows.discard(shadow_path)
        try:
            removed = self.fs.delete(shadow_path)
        except FileSystemError as exc:
            logger.warning("Could not delete decrypted file", extra={"path": str(shadow_path), "error": str(exc)})
            self.notifier.show_warning(f"Could not delete decrypted SOPS file {shadow_path}: {exc}")
            return False
        if removed:
            logger.info("Deleted decrypted file", extra={"path": str(shadow_path)})
        return removed
