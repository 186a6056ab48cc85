"""User-facing notifications for Sopshadow.

Responsabilités:
- Décrire l'interface attendue de l'éditeur hôte (messages, ouverture de documents)
- Fournir une implémentation par défaut qui se contente de logger

Les erreurs de notification ne doivent jamais interrompre une synchronisation.
"""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from .logging_utils import get_logger

logger = get_logger(__name__)


class Notifier(Protocol):
    def show_error(self, message: str) -> None: ...

    def show_warning(self, message: str) -> None: ...

    def show_progress(self, message: str) -> None: ...

    def open_document(self, path: Path) -> None: ...

    def is_document_open(self, path: Path) -> bool: ...


class LogNotifier:
    """Notifier sans interface: tout part dans les logs, aucun document n'est ouvert."""

    def show_error(self, message: str) -> None:
        logger.error(message)

    def show_warning(self, message: str) -> None:
        logger.warning(message)

    def show_progress(self, message: str) -> None:
        logger.info(message)

    def open_document(self, path: Path) -> None:
        logger.info("Decrypted file ready", extra={"path": str(path)})

    def is_document_open(self, path: Path) -> bool:
        return False
