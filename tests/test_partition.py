# SPDX-License-Identifier: LGPL-2.1-or-later

import dataclasses
import json
from pathlib import Path

import pytest

from looplab.config import BuildConfig, BuildTarget
from looplab.log import PreconditionViolation, ResourceExhaustion
from looplab.loop import LoopBinding
from looplab.partition import (
    DiskImage,
    Partition,
    allocate_image,
    check_layout,
    filesystem_uuid,
    partition_and_format,
    read_partition_table,
    write_gpt,
)
from looplab.util import GiB, MiB

from . import FakeRun
from .conftest import sfdisk_json


def layout(esp_size: int = 512 * MiB) -> tuple[list[Partition], int]:
    table = json.loads(sfdisk_json("/dev/loop0", esp_size=esp_size))["partitiontable"]
    partitions = [Partition.from_dict(p, 512) for p in table["partitions"]]
    return partitions, (table["lastlba"] + 1) * 512


def test_allocate_image_is_sparse(tmp_path: Path) -> None:
    image = tmp_path / "out/template-x64.img"

    allocate_image(image, 10 * GiB, esp_size=512 * MiB)

    assert image.stat().st_size == 10 * GiB
    assert image.stat().st_blocks * 512 < 1 * MiB


def test_allocate_image_truncates_previous_contents(tmp_path: Path) -> None:
    image = tmp_path / "template-x64.img"
    image.write_bytes(b"\xff" * 4096)

    allocate_image(image, 1 * GiB, esp_size=512 * MiB)

    with image.open("rb") as f:
        assert f.read(4096) == b"\0" * 4096


def test_allocate_image_too_small(tmp_path: Path) -> None:
    with pytest.raises(PreconditionViolation):
        allocate_image(tmp_path / "template-x64.img", 512 * MiB, esp_size=512 * MiB)

    assert not (tmp_path / "template-x64.img").exists()


def test_write_gpt(fake_run: FakeRun) -> None:
    write_gpt(LoopBinding(Path("/dev/loop0"), Path("/tmp/image")), 512 * MiB)

    assert fake_run.calls == [
        ["sgdisk", "--zap-all", "/dev/loop0"],
        ["sgdisk", "--new=1:0:+512M", "--typecode=1:EF00", "--change-name=1:EFI", "/dev/loop0"],
        ["sgdisk", "--new=2:0:0", "--typecode=2:8300", "--change-name=2:root", "/dev/loop0"],
        ["partx", "--update", "/dev/loop0"],
    ]


def test_read_partition_table(fake_run: FakeRun) -> None:
    fake_run.on("sfdisk", stdout=sfdisk_json("/dev/loop0"))

    partitions, last = read_partition_table(Path("/dev/loop0"))

    assert [p.partno for p in partitions] == [1, 2]
    assert partitions[0].size == 512 * MiB
    assert partitions[0].name == "EFI"
    assert partitions[1].end == last

    fake_run.on("sfdisk", stdout=json.dumps({"partitiontable": {"label": "dos", "partitions": []}}))
    with pytest.raises(PreconditionViolation):
        read_partition_table(Path("/dev/loop0"))


def test_check_layout() -> None:
    partitions, last = layout()
    check_layout(partitions, last, 512 * MiB, ["vfat", "ext4"])

    # End alignment may leave a little space behind the root partition.
    root = dataclasses.replace(partitions[1], size=partitions[1].size - 1 * MiB)
    check_layout([partitions[0], root], last, 512 * MiB, ["vfat", "ext4"])


@pytest.mark.parametrize(
    "mutate",
    [
        lambda ps, fs: (ps[:1], fs[:1]),
        lambda ps, fs: ([dataclasses.replace(ps[0], type=ps[1].type), ps[1]], fs),
        lambda ps, fs: ([dataclasses.replace(ps[0], size=256 * MiB), ps[1]], fs),
        lambda ps, fs: (ps, ["ext4", "ext4"]),
        lambda ps, fs: (ps, ["vfat", "xfs"]),
        lambda ps, fs: ([ps[0], dataclasses.replace(ps[1], start=ps[0].start)], fs),
        lambda ps, fs: ([ps[0], dataclasses.replace(ps[1], size=ps[1].size // 2)], fs),
    ],
)
def test_check_layout_rejects(mutate) -> None:  # type: ignore
    partitions, last = layout()
    partitions, fstypes = mutate(partitions, ["vfat", "ext4"])

    with pytest.raises(PreconditionViolation):
        check_layout(partitions, last, 512 * MiB, fstypes)


def test_filesystem_uuid(fake_run: FakeRun) -> None:
    fake_run.on("blkid", stdout="DEVNAME=/dev/loop0p2\nUUID=abcd-1234\nTYPE=ext4\nPARTUUID=2222\n")

    assert filesystem_uuid(Path("/dev/loop0p2")) == "abcd-1234"
    assert fake_run.calls == [["blkid", "--cache-file", "/dev/null", "--output", "export", "/dev/loop0p2"]]

    fake_run.on("blkid", stdout="DEVNAME=/dev/loop0p2\n")
    with pytest.raises(PreconditionViolation):
        filesystem_uuid(Path("/dev/loop0p2"))


def test_partition_and_format(
    tmp_path: Path,
    fake_run: FakeRun,
    sysfs_block: Path,
    config: BuildConfig,
    x64: BuildTarget,
) -> None:
    loop = sysfs_block / "loop0"
    (loop / "loop").mkdir(parents=True)
    (loop / "loop/backing_file").write_text(str(x64.image))

    dev = tmp_path / "loop0"
    (tmp_path / "loop0p1").touch()
    (tmp_path / "loop0p2").touch()

    fake_run.on("losetup", "--find", stdout=f"{dev}\n")
    fake_run.on("sfdisk", stdout=sfdisk_json(str(dev), disk_size=x64.size))
    fake_run.on("blkid", handler=lambda cmd: "TYPE=vfat\n" if cmd[-1].endswith("p1") else "TYPE=ext4\n")

    image = partition_and_format(x64, config)

    assert image == DiskImage(path=x64.image, size=x64.size, esp_size=config.esp_size)
    assert x64.image.stat().st_size == x64.size
    assert [c[0] for c in fake_run.calls] == [
        "losetup",
        "sgdisk",
        "sgdisk",
        "sgdisk",
        "partx",
        "mkfs.vfat",
        "mkfs.ext4",
        "sfdisk",
        "blkid",
        "blkid",
        "losetup",
    ]
    assert fake_run.calls[-1] == ["losetup", "--detach", str(dev)]


def test_partition_and_format_loop_exhaustion(fake_run: FakeRun, config: BuildConfig, x64: BuildTarget) -> None:
    fake_run.on("losetup", returncode=1, stderr="losetup: cannot find an unused loop device")

    with pytest.raises(ResourceExhaustion):
        partition_and_format(x64, config)

    # The image was allocated but never partitioned.
    assert x64.image.stat().st_size == x64.size
    assert fake_run.commands("sgdisk") == []
    assert fake_run.commands("mkfs.ext4") == []
