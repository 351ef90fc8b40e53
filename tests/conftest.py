"""Shared test fixtures for secrets-manager."""

from __future__ import annotations

from pathlib import Path

import pytest

from secrets_manager.cipher import AgeCipher, Passphrase
from secrets_manager.models import Direction, TransferPolicy
from secrets_manager.resolver import resolve
from secrets_manager.config import load_config

PASSPHRASE = "correct horse battery staple"

# scrypt at the production work factor takes about a second per file.
FAST_WORK_FACTOR = 10


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep the developer's own config, profile, and passphrase out of tests."""
    for name in (
        "SECRETS_MANAGER_CONFIG",
        "SECRETS_MANAGER_PROFILE",
        "SECRETS_MANAGER_PASSPHRASE",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))


@pytest.fixture
def cipher() -> AgeCipher:
    """A cipher bound to the test passphrase."""
    return AgeCipher(Passphrase(PASSPHRASE), work_factor=FAST_WORK_FACTOR)


@pytest.fixture
def fast_policy() -> TransferPolicy:
    return TransferPolicy(scrypt_work_factor=FAST_WORK_FACTOR)


@pytest.fixture
def secrets_home(tmp_path: Path) -> Path:
    """A directory of plaintext secrets shaped like the usage scenario.

    Layout:
        home/something/secret1, secret2   (mode 0640)
        home/shared/common                (mode 0600)
    """
    home = tmp_path / "home"
    (home / "something").mkdir(parents=True)
    (home / "shared").mkdir()

    for name, content in (("secret1", b"first secret\n"), ("secret2", b"second secret\n")):
        path = home / "something" / name
        path.write_bytes(content)
        path.chmod(0o640)

    common = home / "shared" / "common"
    common.write_bytes(b"shared by every machine\n")
    common.chmod(0o600)
    return home


@pytest.fixture
def config_file(tmp_path: Path, secrets_home: Path) -> Path:
    """A TOML config exporting and importing the ``secrets_home`` tree."""
    restored = tmp_path / "restored"
    links = tmp_path / "links"
    path = tmp_path / "secrets-manager.toml"
    path.write_text(
        f"""
[settings]
scrypt_work_factor = {FAST_WORK_FACTOR}

[[exports.shared]]
source = "{secrets_home}/shared"
endpoint = "shared"
files = ["common"]

[[exports.machine1]]
source = "{secrets_home}/something"
endpoint = "$profile/something"
files = ["secret1", "secret2"]

[[imports.shared]]
source = "shared"
endpoint = "{restored}/shared"
files = ["common"]

[[imports.machine1]]
source = "$profile/something"
endpoint = "{restored}/$profile"
files = ["secret1", "secret2"]
symlinks_to = "{links}"
""",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def export_ops(config_file: Path):
    return resolve(load_config(config_file), "machine1", Direction.EXPORT)


@pytest.fixture
def import_ops(config_file: Path):
    return resolve(load_config(config_file), "machine1", Direction.IMPORT)
