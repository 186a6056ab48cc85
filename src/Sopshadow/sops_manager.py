"""SOPS integration for Sopshadow.

Responsabilités:
- Déchiffrer un contenu chiffré via la CLI `sops` (fichier temporaire privé)
- Rechiffrer en place un contenu édité via le faux éditeur (`sops <fichier>`)
- Chiffrer un nouveau fichier en respectant les creation rules de `.sops.yaml`
- Traduire les échecs de `sops` en erreurs typées

Chaque appel attend la fin du processus avant de lire le résultat. Tous les
fichiers temporaires ont un nom aléatoire et sont supprimés dans un `finally`.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator

from .config import EngineOptions
from .fake_editor import fake_editor
from .formats import FileFormat, engine_type
from .logging_utils import get_logger
from .paths import find_sops_config
from .storage import FileSystemError

logger = get_logger(__name__)

NO_MATCHING_RULES_MESSAGE = "no matching creation rules found"
# Code de sortie de `sops` en mode édition quand le fichier n'a pas changé
SOPS_FILE_NOT_MODIFIED_EXIT_CODE = 200


class SopsError(RuntimeError):
    """Erreur générique lors d'un appel à `sops`."""


class EngineExecutionError(SopsError):
    """Le processus `sops` n'a pas pu être lancé."""


class EngineOutputError(SopsError):
    """`sops` a échoué ou n'a produit que des erreurs."""


class EmptyResultError(SopsError):
    """`sops` n'a produit aucun contenu."""


class NoMatchingRuleError(SopsError):
    """Aucune creation rule de `.sops.yaml` ne couvre ce fichier."""


class EngineTimeoutError(SopsError):
    """`sops` n'a pas terminé dans le délai imparti."""


@dataclass(slots=True)
class EngineInvocation:
    """Description d'un appel à `sops` et de son résultat. Jamais persisté."""

    binary: str
    args: list[str]
    env: dict[str, str] = field(repr=False)
    cwd: Path
    returncode: int | None = None
    stdout: bytes = field(default=b"", repr=False)
    stderr: str = ""

    @property
    def no_matching_rule(self) -> bool:
        return NO_MATCHING_RULES_MESSAGE in self.stderr


def _write_private(path: Path, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)


class SopsManager:
    """Pilote la CLI `sops`.

    `options_provider` est appelé à chaque invocation pour relire le run
    control; il n'y a aucun cache entre deux appels.
    """

    def __init__(
        self,
        bin_path: str = "sops",
        options_provider: Callable[[], EngineOptions] | None = None,
        timeout: float | None = None,
        cwd: str | Path | None = None,
        tmp_dir: str | Path | None = None,
    ) -> None:
        self.bin_path = bin_path
        self.options_provider = options_provider or EngineOptions
        self.timeout = timeout
        self.cwd = Path(cwd) if cwd else Path.home()
        self.tmp_dir = Path(tmp_dir) if tmp_dir else None

    @contextmanager
    def _temp_file(self, data: bytes, suffix: str = "") -> Iterator[Path]:
        try:
            fd, name = tempfile.mkstemp(prefix="sopshadow-", suffix=suffix, dir=self.tmp_dir)
        except OSError as exc:
            raise FileSystemError(f"Could not create temporary file: {exc}") from exc
        path = Path(name)
        try:
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(data)
            except OSError as exc:
                raise FileSystemError(f"Could not write temporary file {path}: {exc}") from exc
            yield path
        finally:
            path.unlink(missing_ok=True)

    @staticmethod
    def _config_args(config: Path | None) -> list[str]:
        return ["--config", str(config)] if config else []

    @staticmethod
    def _type_args(fmt: FileFormat) -> list[str]:
        kind = engine_type(fmt)
        return ["--output-type", kind, "--input-type", kind]

    async def _run(self, args: list[str], extra_env: dict[str, str] | None = None) -> EngineInvocation:
        """Lance `sops` et attend sa fin. Lève EngineExecutionError / EngineTimeoutError."""

        options = self.options_provider()
        overlay = {**options.env, **(extra_env or {})}
        invocation = EngineInvocation(
            binary=self.bin_path,
            args=[*options.args, *args],
            env=overlay,
            cwd=self.cwd,
        )
        logger.debug("Running sops", extra={"sops_args": invocation.args, "cwd": str(self.cwd)})

        try:
            proc = await asyncio.create_subprocess_exec(
                invocation.binary,
                *invocation.args,
                cwd=str(invocation.cwd),
                env={**os.environ, **overlay},
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise EngineExecutionError(f"Could not run {self.bin_path}: {exc}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise EngineTimeoutError(f"{self.bin_path} did not finish within {self.timeout}s") from exc

        invocation.returncode = proc.returncode
        invocation.stdout = stdout or b""
        invocation.stderr = (stderr or b"").decode("utf-8", errors="replace").strip()

        if invocation.stderr:
            logger.warning(
                "sops wrote to stderr",
                extra={"returncode": invocation.returncode, "stderr": invocation.stderr},
            )
        return invocation

    @staticmethod
    def _check_output(invocation: EngineInvocation, output: bytes, what: str) -> bytes:
        if invocation.no_matching_rule:
            raise NoMatchingRuleError(invocation.stderr)
        if not output:
            if invocation.stderr:
                raise EngineOutputError(f"Could not {what}: {invocation.stderr}")
            raise EmptyResultError(f"Could not {what}: sops returned no content")
        return output

    async def decrypt(self, encrypted: bytes, fmt: FileFormat, target: str | Path) -> bytes:
        """Déchiffre `encrypted` (contenu du fichier `target`) et retourne le clair."""

        target = Path(target)
        config = find_sops_config(target.parent)
        with self._temp_file(encrypted, suffix=f".{engine_type(fmt)}") as tmp_encrypted:
            invocation = await self._run(
                [*self._config_args(config), *self._type_args(fmt), "--decrypt", str(tmp_encrypted)]
            )

        output = self._check_output(invocation, invocation.stdout, f"decrypt file {target}")
        if invocation.returncode != 0:
            raise EngineOutputError(
                f"Could not decrypt file {target}: sops exited with {invocation.returncode}: {invocation.stderr}"
            )
        return output

    async def encrypt_in_place(
        self,
        plaintext: bytes,
        original_encrypted: bytes,
        fmt: FileFormat,
        target: str | Path,
    ) -> bytes:
        """Rechiffre `plaintext` dans l'enveloppe de `original_encrypted`.

        `sops` ouvre la copie temporaire du fichier chiffré dans le faux
        éditeur, qui y recopie `plaintext`; on relit ensuite la copie.
        """

        target = Path(target)
        config = find_sops_config(target.parent)
        with self._temp_file(plaintext) as tmp_decrypted, self._temp_file(
            original_encrypted, suffix=f".{engine_type(fmt)}"
        ) as tmp_encrypted, fake_editor(tmp_decrypted, tmp_dir=self.tmp_dir) as editor_env:
            invocation = await self._run(
                [*self._config_args(config), *self._type_args(fmt), str(tmp_encrypted)],
                extra_env=editor_env,
            )
            if invocation.returncode not in (0, SOPS_FILE_NOT_MODIFIED_EXIT_CODE):
                if invocation.no_matching_rule:
                    raise NoMatchingRuleError(invocation.stderr)
                raise EngineOutputError(
                    f"Could not encrypt file {target}: sops exited with {invocation.returncode}: {invocation.stderr}"
                )
            try:
                encrypted = tmp_encrypted.read_bytes()
            except OSError as exc:
                raise FileSystemError(f"Could not read back {tmp_encrypted}: {exc}") from exc

        return self._check_output(invocation, encrypted, f"encrypt file {target}")

    async def encrypt_new(self, plaintext: bytes, target: str | Path, fmt: FileFormat) -> bytes:
        """Chiffre un fichier qui n'a pas encore d'original chiffré.

        Les creation rules de `sops` portent sur le chemin: le clair est écrit
        dans un dossier temporaire au même chemin relatif à `.sops.yaml` que
        `target` dans l'arborescence réelle, à côté d'une copie de la config.
        """

        target = Path(target)
        try:
            tmp_root = Path(tempfile.mkdtemp(prefix="sopshadow-", dir=self.tmp_dir))
        except OSError as exc:
            raise FileSystemError(f"Could not create temporary directory: {exc}") from exc
        try:
            config = find_sops_config(target.parent)
            config_args: list[str] = []
            if config:
                relative = Path(os.path.relpath(target, config.parent))
            else:
                relative = Path(target.name)
            tmp_plain = tmp_root / relative

            try:
                if config:
                    tmp_config = tmp_root / config.name
                    shutil.copyfile(config, tmp_config)
                    tmp_config.chmod(0o600)
                    config_args = self._config_args(tmp_config)
                tmp_plain.parent.mkdir(parents=True, exist_ok=True)
                _write_private(tmp_plain, plaintext)
            except OSError as exc:
                raise FileSystemError(f"Could not prepare {tmp_plain} for encryption: {exc}") from exc

            logger.debug("Encrypting new file", extra={"target": str(target), "relative": str(relative)})

            invocation = await self._run([*config_args, *self._type_args(fmt), "--encrypt", str(tmp_plain)])
        finally:
            shutil.rmtree(tmp_root, ignore_errors=True)

        output = self._check_output(invocation, invocation.stdout, f"encrypt new file {target}")
        if invocation.returncode != 0:
            raise EngineOutputError(
                f"Could not encrypt new file {target}: sops exited with {invocation.returncode}: {invocation.stderr}"
            )
        return output
