"""Formats de fichiers supportés et détection des fichiers chiffrés SOPS.

Responsabilités:
- Énumération fermée des formats et table de dispatch (parseur + type SOPS)
- Prédicat "ces données sont chiffrées par SOPS"
- Choix du format à partir de l'identifiant de langage de l'éditeur
"""

from __future__ import annotations

import configparser
import io
import json
from dataclasses import dataclass
from enum import Enum
from fnmatch import fnmatch
from pathlib import Path
from typing import Any, Callable, Mapping

import yaml
from dotenv import dotenv_values

from .logging_utils import get_logger
from .paths import DECRYPTED_PREFIX

logger = get_logger(__name__)


class ParseError(ValueError):
    """Le contenu ne peut pas être interprété dans le format déclaré."""


class FileFormat(str, Enum):
    YAML = "yaml"
    JSON = "json"
    INI = "ini"
    DOTENV = "dotenv"
    PLAINTEXT = "plaintext"
    BINARY = "binary"


def _parse_yaml(content: str) -> list[Any]:
    # Tous les documents sont lus, seul le premier compte pour la détection
    return list(yaml.safe_load_all(content))


def _parse_ini(content: str) -> dict[str, dict[str, str]]:
    parser = configparser.ConfigParser(interpolation=None)
    parser.read_string(content)
    return {section: dict(parser.items(section)) for section in parser.sections()}


def _parse_dotenv(content: str) -> dict[str, str | None]:
    return dict(dotenv_values(stream=io.StringIO(content)))


@dataclass(frozen=True, slots=True)
class FormatSpec:
    """Stratégie associée à un format."""

    parse: Callable[[str], Any]
    # Valeur passée à `sops --input-type/--output-type`
    engine_type: str


FORMATS: dict[FileFormat, FormatSpec] = {
    FileFormat.YAML: FormatSpec(parse=_parse_yaml, engine_type="yaml"),
    FileFormat.JSON: FormatSpec(parse=json.loads, engine_type="json"),
    FileFormat.INI: FormatSpec(parse=_parse_ini, engine_type="ini"),
    FileFormat.DOTENV: FormatSpec(parse=_parse_dotenv, engine_type="dotenv"),
    # sops n'a pas de type "plaintext": l'enveloppe binaire est un JSON {data, sops}
    FileFormat.PLAINTEXT: FormatSpec(parse=json.loads, engine_type="binary"),
    FileFormat.BINARY: FormatSpec(parse=json.loads, engine_type="binary"),
}

_EXTENSION_LANGUAGE_IDS = {
    ".yaml": "yaml",
    ".yml": "yaml",
    ".json": "json",
    ".ini": "ini",
    ".env": "dotenv",
}


def engine_type(fmt: FileFormat) -> str:
    return FORMATS[fmt].engine_type


def parse_content(content: bytes | str, fmt: FileFormat) -> Any:
    """Parse `content` selon `fmt`.

    Toute erreur (décodage UTF-8 compris) devient une ParseError, que
    l'appelant peut ignorer silencieusement.
    """

    try:
        text = content.decode("utf-8") if isinstance(content, bytes) else content
        return FORMATS[fmt].parse(text)
    except Exception as exc:
        raise ParseError(f"Could not parse content as {fmt.value}: {exc}") from exc


def is_sops_encrypted_data(data: Any) -> bool:
    if not isinstance(data, Mapping):
        return False
    metadata = data.get("sops")
    if isinstance(metadata, Mapping) and isinstance(metadata.get("version"), str):
        return True
    return isinstance(data.get("sops_version"), str)


def looks_encrypted(content: bytes | str, fmt: FileFormat) -> bool:
    """Vrai si le premier document de `content` porte les métadonnées SOPS."""

    data = parse_content(content, fmt)
    if isinstance(data, list):
        data = data[0] if data else None
    return is_sops_encrypted_data(data)


def get_supported_format(
    language_id: str,
    file_name: str,
    associations: Mapping[str, str] | None = None,
) -> FileFormat | None:
    """Choisit le format à partir de l'identifiant de langage de l'éditeur.

    Si l'utilisateur a associé le nom de fichier à ce langage, le format
    d'origine est inconnu et le fichier est traité en `plaintext`.
    """

    try:
        return FileFormat(language_id)
    except ValueError:
        pass

    base_name = Path(file_name).name
    for pattern, associated in (associations or {}).items():
        if fnmatch(base_name, pattern) and associated == language_id:
            logger.debug(
                "File association matched, using plaintext",
                extra={"pattern": pattern, "language_id": language_id},
            )
            return FileFormat.PLAINTEXT

    return None


def language_id_for(path: str | Path) -> str:
    """Devine l'identifiant de langage d'un fichier d'après son nom."""

    name = Path(path).name.lower()
    if name.startswith(DECRYPTED_PREFIX):
        name = name[len(DECRYPTED_PREFIX):]
    # `.env`, `.env.production`
    if name == ".env" or name.startswith(".env."):
        return "dotenv"
    return _EXTENSION_LANGUAGE_IDS.get(Path(name).suffix, "plaintext")
