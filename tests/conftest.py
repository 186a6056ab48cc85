"""Pytest fixtures for Sopshadow tests."""

from __future__ import annotations

import base64
from pathlib import Path
from typing import Callable

import pytest
import yaml

from Sopshadow.config import Settings
from Sopshadow.formats import FileFormat
from Sopshadow.reconciler import Reconciler
from Sopshadow.session import SessionController
from Sopshadow.sops_manager import NoMatchingRuleError
from Sopshadow.storage import LocalFileSystem


class FakeEngine:
    """Moteur factice: le clair est encodé en base64 dans un YAML portant `sops.version`."""

    def __init__(self, creation_rule: Callable[[Path], bool] | None = None) -> None:
        self.calls: list[tuple[str, Path]] = []
        self.creation_rule = creation_rule or (lambda path: True)
        self.generation = 0

    def seal(self, plaintext: bytes) -> bytes:
        # Chaque chiffrement produit un texte différent, comme sops (IV aléatoires)
        self.generation += 1
        document = {
            "data": base64.b64encode(plaintext).decode("ascii"),
            "sops": {"version": "3.8.1", "generation": self.generation},
        }
        return yaml.safe_dump(document).encode("utf-8")

    @staticmethod
    def unseal(encrypted: bytes) -> bytes:
        return base64.b64decode(yaml.safe_load(encrypted)["data"])

    async def decrypt(self, encrypted: bytes, fmt: FileFormat, target: Path) -> bytes:
        self.calls.append(("decrypt", Path(target)))
        return self.unseal(encrypted)

    async def encrypt_in_place(
        self, plaintext: bytes, original_encrypted: bytes, fmt: FileFormat, target: Path
    ) -> bytes:
        self.calls.append(("encrypt_in_place", Path(target)))
        return self.seal(plaintext)

    async def encrypt_new(self, plaintext: bytes, target: Path, fmt: FileFormat) -> bytes:
        self.calls.append(("encrypt_new", Path(target)))
        if not self.creation_rule(Path(target)):
            raise NoMatchingRuleError("config file not found, or has no creation rules, and no keys provided "
                                      "through command line options: no matching creation rules found")
        return self.seal(plaintext)


class RecordingFileSystem(LocalFileSystem):
    """Système de fichiers local qui retient les écritures et suppressions."""

    def __init__(self) -> None:
        self.writes: list[Path] = []
        self.deletes: list[Path] = []

    def write_bytes(self, path, data, mode=0o600):  # type: ignore[override]
        self.writes.append(Path(path))
        super().write_bytes(path, data, mode)

    def delete(self, path):  # type: ignore[override]
        self.deletes.append(Path(path))
        return super().delete(path)


class RecordingNotifier:
    def __init__(self, open_documents: set[Path] | None = None) -> None:
        self.errors: list[str] = []
        self.warnings: list[str] = []
        self.progress: list[str] = []
        self.opened: list[Path] = []
        self.open_documents = open_documents if open_documents is not None else set()

    def show_error(self, message: str) -> None:
        self.errors.append(message)

    def show_warning(self, message: str) -> None:
        self.warnings.append(message)

    def show_progress(self, message: str) -> None:
        self.progress.append(message)

    def open_document(self, path: Path) -> None:
        self.opened.append(path)
        self.open_documents.add(path)

    def is_document_open(self, path: Path) -> bool:
        return path in self.open_documents


@pytest.fixture()
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture()
def fs() -> RecordingFileSystem:
    return RecordingFileSystem()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def reconciler(engine: FakeEngine, fs: RecordingFileSystem) -> Reconciler:
    return Reconciler(engine, fs=fs)


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(workspace_roots=[tmp_path])


@pytest.fixture()
def controller(
    settings: Settings,
    reconciler: Reconciler,
    fs: RecordingFileSystem,
    notifier: RecordingNotifier,
) -> SessionController:
    return SessionController(settings, reconciler, fs=fs, notifier=notifier)


@pytest.fixture()
def encrypted_file(tmp_path: Path, engine: FakeEngine) -> Path:
    path = tmp_path / "secret.yaml"
    path.write_bytes(engine.seal(b"password: hunter2\n"))
    return path


@pytest.fixture()
def make_engine() -> Callable[..., FakeEngine]:
    return FakeEngine
