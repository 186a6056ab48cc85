"""Synchronisation entre un fichier chiffré et son shadow déchiffré.

Responsabilités:
- Détecter si un fichier est chiffré par SOPS
- Calculer l'état de la paire (empreintes + dates de modification)
- Rafraîchir le shadow depuis l'original, ou l'original depuis le shadow
- Propager un enregistrement (rechiffrement ou création d'un fichier chiffré)

L'état n'est jamais mémorisé: le système de fichiers fait foi et il est
recalculé à chaque événement.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

from .fingerprint import fingerprint
from .formats import FileFormat, ParseError, looks_encrypted
from .logging_utils import get_logger
from .paths import get_decrypted_path, get_encrypted_path, is_decrypted_file, normalize_path
from .sops_manager import NoMatchingRuleError
from .storage import LocalFileSystem

logger = get_logger(__name__)


class SyncState(str, Enum):
    UNSYNCED = "unsynced"
    SHADOW_STALE = "shadow_stale"
    ORIGINAL_STALE = "original_stale"
    IN_SYNC = "in_sync"


class SyncDecision(str, Enum):
    NO_OP = "no_op"
    REFRESH_SHADOW = "refresh_shadow"
    REFRESH_ORIGINAL = "refresh_original"
    # Jamais produit: l'égalité des dates se résout en NO_OP
    CONFLICT = "conflict"


class SaveOutcome(str, Enum):
    NOT_APPLICABLE = "not_applicable"
    UNCHANGED = "unchanged"
    ORIGINAL_UPDATED = "original_updated"
    CREATED = "created"
    NO_MATCHING_RULE = "no_matching_rule"


class SecretsEngine(Protocol):
    async def decrypt(self, encrypted: bytes, fmt: FileFormat, target: Path) -> bytes: ...

    async def encrypt_in_place(
        self, plaintext: bytes, original_encrypted: bytes, fmt: FileFormat, target: Path
    ) -> bytes: ...

    async def encrypt_new(self, plaintext: bytes, target: Path, fmt: FileFormat) -> bytes: ...


class FileStore(Protocol):
    def exists(self, path: Path) -> bool: ...

    def read_bytes(self, path: Path) -> bytes: ...

    def mtime_ns(self, path: Path) -> int: ...

    def write_bytes(self, path: Path, data: bytes, mode: int = 0o600) -> None: ...

    def delete(self, path: Path) -> bool: ...


@dataclass(slots=True)
class ReconcileResult:
    encrypted_path: Path
    shadow_path: Path
    state: SyncState
    decision: SyncDecision


def decide(
    original_fingerprint: str,
    shadow_fingerprint: str,
    original_mtime_ns: int,
    shadow_mtime_ns: int,
) -> tuple[SyncState, SyncDecision]:
    """Décide de l'action à mener pour une paire dont le shadow existe."""

    if original_fingerprint == shadow_fingerprint:
        return SyncState.IN_SYNC, SyncDecision.NO_OP
    if original_mtime_ns > shadow_mtime_ns:
        return SyncState.SHADOW_STALE, SyncDecision.REFRESH_SHADOW
    if original_mtime_ns < shadow_mtime_ns:
        return SyncState.ORIGINAL_STALE, SyncDecision.REFRESH_ORIGINAL
    return SyncState.UNSYNCED, SyncDecision.NO_OP


class Reconciler:
    """Machine d'état de synchronisation original <-> shadow."""

    def __init__(self, engine: SecretsEngine, fs: FileStore | None = None) -> None:
        self.engine = engine
        self.fs = fs or LocalFileSystem()

    def is_encrypted_file(self, path: str | Path, fmt: FileFormat) -> bool:
        """Vrai si `path` est un fichier chiffré par SOPS. Lève ParseError si illisible."""

        content = self.fs.read_bytes(normalize_path(path))
        if not content:
            logger.debug("Skipping empty file", extra={"path": str(path)})
            return False
        return looks_encrypted(content, fmt)

    async def _plan(self, encrypted_path: Path, fmt: FileFormat) -> tuple[ReconcileResult, bytes, bytes]:
        shadow_path = get_decrypted_path(encrypted_path)
        original = self.fs.read_bytes(encrypted_path)
        decrypted = await self.engine.decrypt(original, fmt, encrypted_path)

        if not self.fs.exists(shadow_path):
            result = ReconcileResult(encrypted_path, shadow_path, SyncState.UNSYNCED, SyncDecision.REFRESH_SHADOW)
            return result, original, decrypted

        shadow = self.fs.read_bytes(shadow_path)
        state, decision = decide(
            fingerprint(decrypted),
            fingerprint(shadow),
            self.fs.mtime_ns(encrypted_path),
            self.fs.mtime_ns(shadow_path),
        )
        if state is SyncState.UNSYNCED:
            logger.warning(
                "Original and shadow differ but have the same modification time, leaving both untouched",
                extra={"path": str(encrypted_path)},
            )
        return ReconcileResult(encrypted_path, shadow_path, state, decision), original, decrypted

    async def inspect(self, encrypted_path: str | Path, fmt: FileFormat) -> ReconcileResult:
        """Calcule l'état de la paire sans rien écrire."""

        result, _, _ = await self._plan(normalize_path(encrypted_path), fmt)
        return result

    async def ensure_shadow(self, encrypted_path: str | Path, fmt: FileFormat) -> ReconcileResult:
        """Amène la paire à l'état IN_SYNC (ouverture / focus d'un fichier chiffré)."""

        encrypted_path = normalize_path(encrypted_path)
        result, original, decrypted = await self._plan(encrypted_path, fmt)
        logger.debug(
            "Reconciled pair",
            extra={"path": str(encrypted_path), "state": result.state.value, "decision": result.decision.value},
        )

        if result.decision is SyncDecision.REFRESH_SHADOW:
            logger.info("Updating decrypted file", extra={"path": str(result.shadow_path)})
            self.fs.write_bytes(result.shadow_path, decrypted)
        elif result.decision is SyncDecision.REFRESH_ORIGINAL:
            await self._encrypt_to_original(result.shadow_path, encrypted_path, original, fmt)
        return result

    async def _encrypt_to_original(
        self,
        shadow_path: Path,
        encrypted_path: Path,
        original: bytes,
        fmt: FileFormat,
        plaintext: bytes | None = None,
    ) -> None:
        if plaintext is None:
            plaintext = self.fs.read_bytes(shadow_path)
        logger.info("Updating encrypted file", extra={"path": str(encrypted_path)})
        ciphertext = await self.engine.encrypt_in_place(plaintext, original, fmt, shadow_path)
        self.fs.write_bytes(encrypted_path, ciphertext)

    async def propagate_save(
        self,
        saved_path: str | Path,
        fmt: FileFormat,
        creation_enabled: bool = False,
    ) -> SaveOutcome:
        """Propage l'enregistrement de `saved_path` vers le fichier chiffré."""

        saved_path = normalize_path(saved_path)
        encrypted_path = get_encrypted_path(saved_path)

        if encrypted_path is not None and self.fs.exists(encrypted_path):
            saved = self.fs.read_bytes(saved_path)
            original = self.fs.read_bytes(encrypted_path)
            decrypted = await self.engine.decrypt(original, fmt, encrypted_path)
            if fingerprint(decrypted) == fingerprint(saved):
                logger.debug("Shadow matches original, nothing to encrypt", extra={"path": str(saved_path)})
                return SaveOutcome.UNCHANGED
            await self._encrypt_to_original(saved_path, encrypted_path, original, fmt, plaintext=saved)
            return SaveOutcome.ORIGINAL_UPDATED

        if not creation_enabled:
            return SaveOutcome.NOT_APPLICABLE

        if encrypted_path is not None:
            # Shadow orphelin: on crée l'original à côté
            target = encrypted_path
        else:
            if self.fs.exists(get_decrypted_path(saved_path)) or self._already_encrypted(saved_path, fmt):
                return SaveOutcome.NOT_APPLICABLE
            target = saved_path

        return await self._create_encrypted(saved_path, target, fmt)

    def _already_encrypted(self, path: Path, fmt: FileFormat) -> bool:
        try:
            return self.is_encrypted_file(path, fmt)
        except ParseError:
            # Contenu non structuré: il ne peut pas porter de métadonnées SOPS
            return False

    async def _create_encrypted(self, source_path: Path, target: Path, fmt: FileFormat) -> SaveOutcome:
        plaintext = self.fs.read_bytes(source_path)
        if not plaintext:
            return SaveOutcome.NOT_APPLICABLE
        try:
            ciphertext = await self.engine.encrypt_new(plaintext, target, fmt)
        except NoMatchingRuleError:
            logger.debug("No matching creation rules found", extra={"path": str(target)})
            return SaveOutcome.NO_MATCHING_RULE

        logger.info("Created encrypted file", extra={"path": str(target)})
        self.fs.write_bytes(target, ciphertext)
        return SaveOutcome.CREATED


def is_secret_pair_member(path: str | Path, fs: FileStore) -> bool:
    """Vrai si `path` est un shadow, ou un original dont le shadow existe."""

    if is_decrypted_file(path):
        return True
    return fs.exists(get_decrypted_path(path))
