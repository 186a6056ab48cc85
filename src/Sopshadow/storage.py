"""Accès disque pour les fichiers chiffrés et leurs shadows.

Toutes les erreurs OS sont converties en FileSystemError. Les écritures sont
atomiques (fichier temporaire dans le même dossier puis `os.replace`) pour
qu'une interruption ne tronque jamais ni l'original ni le shadow.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path


class FileSystemError(RuntimeError):
    """Erreur de lecture/écriture/suppression sur disque."""


class LocalFileSystem:
    """Implémentation sur le système de fichiers local."""

    @staticmethod
    def exists(path: str | Path) -> bool:
        return Path(path).is_file()

    @staticmethod
    def read_bytes(path: str | Path) -> bytes:
        try:
            return Path(path).read_bytes()
        except OSError as exc:
            raise FileSystemError(f"Could not read {path}: {exc}") from exc

    @staticmethod
    def mtime_ns(path: str | Path) -> int:
        try:
            return Path(path).stat().st_mtime_ns
        except OSError as exc:
            raise FileSystemError(f"Could not stat {path}: {exc}") from exc

    @staticmethod
    def write_bytes(path: str | Path, data: bytes, mode: int = 0o600) -> None:
        """Écrit `data` de façon atomique.

        Un fichier existant garde ses permissions; un nouveau fichier reçoit `mode`.
        """

        target = Path(path)
        try:
            if target.exists():
                mode = target.stat().st_mode & 0o7777
            fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
        except OSError as exc:
            raise FileSystemError(f"Could not write {path}: {exc}") from exc

        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.chmod(tmp_name, mode)
            os.replace(tmp_name, target)
        except OSError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise FileSystemError(f"Could not write {path}: {exc}") from exc

    @staticmethod
    def delete(path: str | Path) -> bool:
        """Supprime `path`. Retourne False si le fichier n'existait pas."""

        try:
            Path(path).unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise FileSystemError(f"Could not delete {path}: {exc}") from exc
        return True
