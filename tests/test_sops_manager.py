from __future__ import annotations

import asyncio
import logging
import subprocess
import sys
from pathlib import Path

import pytest

from Sopshadow.config import EngineOptions
from Sopshadow.fake_editor import DECRYPTED_FILE_ENV_VAR
from Sopshadow.formats import FileFormat
from Sopshadow.sops_manager import (
    EmptyResultError,
    EngineExecutionError,
    EngineOutputError,
    EngineTimeoutError,
    NoMatchingRuleError,
    SopsError,
    SopsManager,
)

NO_MATCH_STDERR = (
    b"error loading config: no matching creation rules found\n"
)


class FakeProcess:
    def __init__(self, returncode: int = 0, stdout: bytes = b"", stderr: bytes = b"", delay: float = 0.0) -> None:
        self.returncode = returncode
        self._stdout = stdout
        self._stderr = stderr
        self._delay = delay
        self.killed = False

    async def communicate(self):
        if self._delay:
            await asyncio.sleep(self._delay)
        return self._stdout, self._stderr

    def kill(self) -> None:
        self.killed = True

    async def wait(self) -> int:
        return self.returncode


def record_exec(monkeypatch, proc: FakeProcess, on_call=None) -> list[dict]:
    calls: list[dict] = []

    async def fake_exec(*args, **kwargs):
        calls.append({"args": list(args), **kwargs})
        if on_call is not None:
            on_call(list(args), kwargs)
        return proc

    monkeypatch.setattr("asyncio.create_subprocess_exec", fake_exec)
    return calls


@pytest.fixture()
def workdir(tmp_path: Path) -> Path:
    root = tmp_path / "repo"
    root.mkdir()
    (root / ".sops.yaml").write_text("creation_rules:\n  - path_regex: secrets/.*\n    age: age1xyz\n", encoding="utf-8")
    return root


@pytest.fixture()
def scratch(tmp_path: Path) -> Path:
    path = tmp_path / "scratch"
    path.mkdir()
    return path


def manager(scratch: Path, **kwargs) -> SopsManager:
    return SopsManager(tmp_dir=scratch, cwd=scratch, **kwargs)


async def test_decrypt_success(monkeypatch, workdir: Path, scratch: Path):
    seen: dict[str, bytes] = {}

    def capture(args, kwargs):
        seen["tmp"] = Path(args[-1]).read_bytes()

    calls = record_exec(monkeypatch, FakeProcess(stdout=b"password: hunter2\n"), capture)
    options = EngineOptions(args=["--aws-profile", "dev"], env={"AWS_PROFILE": "dev"})
    sops = manager(scratch, bin_path="/opt/sops", options_provider=lambda: options)

    out = await sops.decrypt(b"ENC", FileFormat.YAML, workdir / "secret.yaml")

    assert out == b"password: hunter2\n"
    assert seen["tmp"] == b"ENC"
    args = calls[0]["args"]
    assert args[0] == "/opt/sops"
    assert args[1:3] == ["--aws-profile", "dev"]
    assert args[args.index("--config") + 1] == str(workdir / ".sops.yaml")
    assert args[args.index("--input-type") + 1] == "yaml"
    assert args[args.index("--output-type") + 1] == "yaml"
    assert args[-2] == "--decrypt"
    assert calls[0]["env"]["AWS_PROFILE"] == "dev"
    assert calls[0]["cwd"] == str(scratch)
    # Le fichier temporaire ne survit pas à l'appel
    assert list(scratch.iterdir()) == []


async def test_decrypt_plaintext_uses_binary_type(monkeypatch, workdir: Path, scratch: Path):
    calls = record_exec(monkeypatch, FakeProcess(stdout=b"hello"))
    await manager(scratch).decrypt(b"ENC", FileFormat.PLAINTEXT, workdir / "notes.txt")
    args = calls[0]["args"]
    assert args[args.index("--input-type") + 1] == "binary"


async def test_decrypt_missing_binary(monkeypatch, workdir: Path, scratch: Path):
    async def fake_exec(*args, **kwargs):
        raise FileNotFoundError(2, "No such file or directory")

    monkeypatch.setattr("asyncio.create_subprocess_exec", fake_exec)
    with pytest.raises(EngineExecutionError):
        await manager(scratch).decrypt(b"ENC", FileFormat.YAML, workdir / "secret.yaml")
    assert list(scratch.iterdir()) == []


async def test_decrypt_stderr_only(monkeypatch, workdir: Path, scratch: Path):
    record_exec(monkeypatch, FakeProcess(returncode=128, stderr=b"Failed to get the data key"))
    with pytest.raises(EngineOutputError, match="data key"):
        await manager(scratch).decrypt(b"ENC", FileFormat.YAML, workdir / "secret.yaml")


async def test_decrypt_empty_output(monkeypatch, workdir: Path, scratch: Path):
    record_exec(monkeypatch, FakeProcess())
    with pytest.raises(EmptyResultError):
        await manager(scratch).decrypt(b"ENC", FileFormat.YAML, workdir / "secret.yaml")


async def test_decrypt_non_zero_exit(monkeypatch, workdir: Path, scratch: Path):
    record_exec(monkeypatch, FakeProcess(returncode=1, stdout=b"partial"))
    with pytest.raises(SopsError):
        await manager(scratch).decrypt(b"ENC", FileFormat.YAML, workdir / "secret.yaml")


async def test_decrypt_timeout_kills_process(monkeypatch, workdir: Path, scratch: Path):
    proc = FakeProcess(stdout=b"late", delay=5)
    record_exec(monkeypatch, proc)
    with pytest.raises(EngineTimeoutError):
        await manager(scratch, timeout=0.01).decrypt(b"ENC", FileFormat.YAML, workdir / "secret.yaml")
    assert proc.killed is True
    assert list(scratch.iterdir()) == []


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX fake editor")
async def test_encrypt_in_place_runs_fake_editor(monkeypatch, workdir: Path, scratch: Path):
    seen: dict[str, str] = {}

    def emulate_sops_edit(args, kwargs):
        # sops déchiffre dans son propre fichier, lance $EDITOR, puis rechiffre le résultat
        env = kwargs["env"]
        seen["decrypted_var"] = env[DECRYPTED_FILE_ENV_VAR]
        edited = scratch / "sops-edit-buffer"
        edited.write_bytes(b"password: old\n")
        subprocess.run([env["EDITOR"], str(edited)], env=env, check=True)
        encrypted = Path(args[-1])
        encrypted.write_bytes(b"ENC(" + edited.read_bytes() + b")")
        edited.unlink()

    record_exec(monkeypatch, FakeProcess(), emulate_sops_edit)
    out = await manager(scratch).encrypt_in_place(
        b"password: new\n", b"ENC(password: old\n)", FileFormat.YAML, workdir / ".decrypted~secret.yaml"
    )

    assert out == b"ENC(password: new\n)"
    assert not Path(seen["decrypted_var"]).exists()
    assert list(scratch.iterdir()) == []


async def test_encrypt_in_place_not_modified_exit_code(monkeypatch, workdir: Path, scratch: Path):
    record_exec(monkeypatch, FakeProcess(returncode=200))
    out = await manager(scratch).encrypt_in_place(b"a: 1\n", b"ENC", FileFormat.YAML, workdir / ".decrypted~s.yaml")
    # Le fichier temporaire chiffré n'a pas été touché
    assert out == b"ENC"


async def test_encrypt_in_place_failure(monkeypatch, workdir: Path, scratch: Path):
    record_exec(monkeypatch, FakeProcess(returncode=1, stderr=b"could not encrypt"))
    with pytest.raises(EngineOutputError):
        await manager(scratch).encrypt_in_place(b"a: 1\n", b"ENC", FileFormat.YAML, workdir / ".decrypted~s.yaml")
    assert list(scratch.iterdir()) == []


async def test_encrypt_new_mirrors_relative_layout(monkeypatch, workdir: Path, scratch: Path):
    seen: dict[str, object] = {}

    def capture(args, kwargs):
        plain = Path(args[-1])
        config = Path(args[args.index("--config") + 1])
        seen["plain"] = plain
        seen["relative"] = plain.relative_to(config.parent)
        seen["content"] = plain.read_bytes()
        seen["config"] = config.read_text(encoding="utf-8")
        seen["mode"] = plain.stat().st_mode & 0o777

    calls = record_exec(monkeypatch, FakeProcess(stdout=b"ENC"), capture)
    target = workdir / "secrets" / "dev" / "app.yaml"
    out = await manager(scratch).encrypt_new(b"token: abc\n", target, FileFormat.YAML)

    assert out == b"ENC"
    assert seen["relative"] == Path("secrets/dev/app.yaml")
    assert seen["content"] == b"token: abc\n"
    assert seen["config"] == (workdir / ".sops.yaml").read_text(encoding="utf-8")
    if sys.platform != "win32":
        assert seen["mode"] == 0o600
    assert calls[0]["args"][-2] == "--encrypt"
    assert list(scratch.iterdir()) == []


async def test_encrypt_new_no_matching_rule(monkeypatch, workdir: Path, scratch: Path):
    record_exec(monkeypatch, FakeProcess(returncode=128, stderr=NO_MATCH_STDERR))
    with pytest.raises(NoMatchingRuleError):
        await manager(scratch).encrypt_new(b"token: abc\n", workdir / "public" / "app.yaml", FileFormat.YAML)
    assert list(scratch.iterdir()) == []


async def test_run_control_is_read_for_every_call(monkeypatch, workdir: Path, scratch: Path):
    calls = record_exec(monkeypatch, FakeProcess(stdout=b"x"))
    profiles = iter(["dev", "prod"])

    def provider() -> EngineOptions:
        profile = next(profiles)
        return EngineOptions(args=["--aws-profile", profile], env={"AWS_PROFILE": profile})

    sops = manager(scratch, options_provider=provider)
    await sops.decrypt(b"ENC", FileFormat.JSON, workdir / "a.json")
    await sops.decrypt(b"ENC", FileFormat.JSON, workdir / "a.json")
    assert [c["env"]["AWS_PROFILE"] for c in calls] == ["dev", "prod"]


async def test_debug_logging_of_invocation(monkeypatch, caplog, workdir: Path, scratch: Path):
    record_exec(monkeypatch, FakeProcess(stdout=b"password: hunter2\n"))
    options = EngineOptions(args=["--aws-profile", "dev"], env={"AWS_PROFILE": "dev"})
    caplog.set_level(logging.DEBUG, logger="Sopshadow")

    out = await manager(scratch, options_provider=lambda: options).decrypt(
        b"ENC", FileFormat.YAML, workdir / "secret.yaml"
    )

    assert out == b"password: hunter2\n"
    running = [r for r in caplog.records if r.getMessage() == "Running sops"]
    assert running and running[0].sops_args[:2] == ["--aws-profile", "dev"]
