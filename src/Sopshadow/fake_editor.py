"""Faux éditeur pour piloter `sops` sans interaction.

`sops <fichier>` déchiffre dans un fichier temporaire, lance `$EDITOR` dessus
puis rechiffre ce que l'éditeur a laissé. On fournit un "éditeur" qui copie
immédiatement le contenu déjà édité (désigné par une variable d'environnement)
à la place du fichier temporaire.
"""

from __future__ import annotations

import os
import sys
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .logging_utils import get_logger
from .paths import normalize_path

DECRYPTED_FILE_ENV_VAR = "SOPSHADOW_DECRYPTED_FILE_PATH"

FAKE_EDITOR_SHELL = f"""#!/bin/sh
cat "${DECRYPTED_FILE_ENV_VAR}" > "$1"
"""
FAKE_EDITOR_CMD = f"""@echo off\r
copy /Y "%{DECRYPTED_FILE_ENV_VAR}%" "%~1" >NUL\r
"""

logger = get_logger(__name__)


def _script_for(platform: str) -> tuple[str, str]:
    """Retourne (suffixe, contenu) du script pour la plateforme."""

    if platform == "win32":
        return ".cmd", FAKE_EDITOR_CMD
    return "", FAKE_EDITOR_SHELL


@contextmanager
def fake_editor(
    decrypted_path: str | Path,
    tmp_dir: str | Path | None = None,
    platform: str = sys.platform,
) -> Iterator[dict[str, str]]:
    """Installe le faux éditeur et fournit la surcharge d'environnement pour `sops`.

    Le script est supprimé à la sortie, que l'appel à `sops` ait réussi ou non.
    """

    suffix, body = _script_for(platform)
    fd, script_name = tempfile.mkstemp(prefix="sopshadow-editor-", suffix=suffix, dir=tmp_dir)
    script = Path(script_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(body)
        script.chmod(0o755)
        logger.debug("Installed fake editor", extra={"script": str(script)})
        yield {
            "EDITOR": str(normalize_path(script)),
            DECRYPTED_FILE_ENV_VAR: str(decrypted_path),
        }
    finally:
        script.unlink(missing_ok=True)
