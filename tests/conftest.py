# SPDX-License-Identifier: LGPL-2.1-or-later

import importlib
import json
from collections.abc import Iterator
from pathlib import Path

import pytest

import looplab.log
from looplab.architecture import Architecture
from looplab.config import BuildConfig, BuildTarget
from looplab.util import GiB

from . import RUN_MODULES, FakeRun


@pytest.fixture
def fake_run(monkeypatch: pytest.MonkeyPatch) -> FakeRun:
    fake = FakeRun()
    for name in RUN_MODULES:
        monkeypatch.setattr(importlib.import_module(name), "run", fake)
    return fake


@pytest.fixture
def proc_mounts(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """An empty mount table the tests can append lines to."""
    p = tmp_path / "mounts"
    p.write_text("")
    monkeypatch.setattr("looplab.mounts.PROC_MOUNTS", p)
    return p


@pytest.fixture
def sysfs_block(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    p = tmp_path / "sys-block"
    p.mkdir()
    monkeypatch.setattr("looplab.loop.SYSFS_BLOCK", p)
    return p


@pytest.fixture(autouse=True)
def reset_log_level() -> Iterator[None]:
    yield
    looplab.log.LEVEL = 0


@pytest.fixture
def config(tmp_path: Path) -> BuildConfig:
    return BuildConfig(
        output_dir=tmp_path / "out",
        workspace=tmp_path / "workspace",
        partition_timeout=0.05,
        partition_poll_interval=0.01,
    )


def make_target(tmp_path: Path, config: BuildConfig, arch: Architecture) -> BuildTarget:
    rootfs = tmp_path / f"rootfs-{arch}.tar.xz"
    rootfs.write_bytes(b"rootfs")
    shell = tmp_path / f"Shell-{arch}.efi"
    shell.write_bytes(b"MZ shell")

    return BuildTarget.resolve(arch, config, size=1 * GiB, rootfs=rootfs, uefi_shell=shell)


@pytest.fixture
def x64(tmp_path: Path, config: BuildConfig) -> BuildTarget:
    return make_target(tmp_path, config, Architecture.x64)


@pytest.fixture
def aarch64(tmp_path: Path, config: BuildConfig) -> BuildTarget:
    return make_target(tmp_path, config, Architecture.aarch64)


def sfdisk_json(device: str, *, esp_size: int = 512 * 1024**2, disk_size: int = 1024**3) -> str:
    esp_sectors = esp_size // 512
    last_lba = disk_size // 512 - 34

    return json.dumps({
        "partitiontable": {
            "label": "gpt",
            "device": device,
            "unit": "sectors",
            "firstlba": 2048,
            "lastlba": last_lba,
            "sectorsize": 512,
            "partitions": [
                {
                    "node": f"{device}p1",
                    "start": 2048,
                    "size": esp_sectors,
                    "type": "C12A7328-F81F-11D2-BA4B-00A0C93EC93B",
                    "uuid": "11111111-1111-1111-1111-111111111111",
                    "name": "EFI",
                },
                {
                    "node": f"{device}p2",
                    "start": 2048 + esp_sectors,
                    "size": last_lba + 1 - 2048 - esp_sectors,
                    "type": "0FC63DAF-8483-4772-8E79-3D69D8477DE4",
                    "uuid": "22222222-2222-2222-2222-222222222222",
                    "name": "root",
                },
            ],
        }
    })  # fmt: skip
