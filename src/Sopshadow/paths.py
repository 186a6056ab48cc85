"""Correspondance entre fichiers chiffrés et fichiers "shadow" déchiffrés.

Responsabilités:
- Convention de nommage `.decrypted~<nom>` (contrat disque stable)
- Normalisation des séparateurs de chemin
- Recherche du fichier `.sops.yaml` le plus proche en remontant l'arborescence
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable

from .logging_utils import get_logger

DECRYPTED_PREFIX = ".decrypted~"
SOPS_CONFIG_FILENAME = ".sops.yaml"

logger = get_logger(__name__)


def normalize_path(path: str | Path) -> Path:
    """Normalise les séparateurs pour que deux constructions d'un même chemin soient égales."""

    return Path(str(path).replace("\\", "/"))


def is_decrypted_file(path: str | Path) -> bool:
    return normalize_path(path).name.startswith(DECRYPTED_PREFIX)


def get_decrypted_path(encrypted_path: str | Path) -> Path:
    """Retourne le chemin du shadow pour un fichier chiffré.

    Un nom portant déjà le préfixe n'a pas de shadow: ValueError.
    """

    path = normalize_path(encrypted_path)
    if is_decrypted_file(path):
        raise ValueError(f"{path} is already a decrypted shadow file")
    return path.with_name(DECRYPTED_PREFIX + path.name)


def get_encrypted_path(decrypted_path: str | Path) -> Path | None:
    """Retourne le chemin du fichier chiffré d'origine, ou None si ce n'est pas un shadow."""

    path = normalize_path(decrypted_path)
    if not is_decrypted_file(path):
        return None
    return path.with_name(path.name[len(DECRYPTED_PREFIX):])


def find_sops_config(
    start_dir: str | Path,
    exists: Callable[[Path], bool] = os.path.isfile,
    is_boundary: Callable[[Path], bool] = os.path.ismount,
) -> Path | None:
    """Cherche `.sops.yaml` depuis `start_dir` jusqu'à la racine.

    Parcours itératif: on s'arrête à la racine du système de fichiers ou après
    avoir examiné un point de montage. Le premier fichier trouvé gagne.
    """

    # Un chemin relatif s'arrêterait à "." sans remonter au-delà du répertoire courant
    current = normalize_path(os.path.abspath(start_dir))
    while True:
        candidate = current / SOPS_CONFIG_FILENAME
        if exists(candidate):
            logger.debug("Found sops config", extra={"path": str(candidate)})
            return candidate

        parent = current.parent
        if parent == current or is_boundary(current):
            return None
        current = parent
