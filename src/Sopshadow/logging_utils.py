"""Logging utilities for Sopshadow.

Les messages sont des chaînes constantes; le contexte (chemin, erreur, code
de retour de sops...) passe par `extra={...}` et est rendu en `clé=valeur`
à la fin de la ligne. Le contenu déchiffré n'est jamais loggé.
"""

from __future__ import annotations

import logging
from typing import Optional

LOGGER_NAME = "Sopshadow"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Attributs présents sur tout LogRecord: tout le reste vient de `extra`
_RESERVED_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class ContextFormatter(logging.Formatter):
    """Ajoute les champs passés via `extra` au message formaté."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = {key: value for key, value in vars(record).items() if key not in _RESERVED_ATTRS}
        if not context:
            return line
        rendered = " ".join(f"{key}={value!r}" for key, value in sorted(context.items()))
        return f"{line} {rendered}"


def configure_logging(level: str = "INFO") -> None:
    """Configure la journalisation du processus.

    Appelé par la callback Typer de ``Sopshadow.cli`` avant chaque commande.
    Si un handler existe déjà (tests, hôte qui embarque le paquet), seul le
    niveau du namespace Sopshadow est ajusté.
    """

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()

    if root.handlers:
        logging.getLogger(LOGGER_NAME).setLevel(numeric_level)
        return

    handler = logging.StreamHandler()
    handler.setFormatter(ContextFormatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(numeric_level)

    # asyncio est trop bavard en DEBUG
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    if name is None:
        return logging.getLogger(LOGGER_NAME)
    # Modules du paquet (``Sopshadow.paths``): déjà dans le namespace
    if name == LOGGER_NAME or name.startswith(f"{LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{LOGGER_NAME}.{name}")
