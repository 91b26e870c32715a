# SPDX-License-Identifier: LGPL-2.1-or-later

import dataclasses
import json
import logging
import re
import subprocess
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path
from typing import Any, Final

from looplab.config import BuildConfig, BuildTarget
from looplab.log import complete_step, die, log_stage
from looplab.loop import LoopBinding, loop_device, wait_for_partitions
from looplab.run import run
from looplab.util import MiB, dictify, format_bytes

EFI_SYSTEM_GUID: Final[str] = "C12A7328-F81F-11D2-BA4B-00A0C93EC93B"
LINUX_FILESYSTEM_GUID: Final[str] = "0FC63DAF-8483-4772-8E79-3D69D8477DE4"

# Smallest root partition we are willing to create next to the ESP.
MIN_ROOT_SIZE: Final[int] = 64 * MiB

# gdisk may align the end of the last partition down to the next 1 MiB boundary.
END_ALIGNMENT_SLACK: Final[int] = 2048


@dataclasses.dataclass(frozen=True)
class Partition:
    partno: int
    type: str
    uuid: str
    name: str
    start: int
    size: int

    @classmethod
    def from_dict(cls, dict: Mapping[str, Any], sector_size: int) -> "Partition":
        m = re.search(r"([0-9]+)$", dict["node"])
        if not m:
            die(f"Cannot determine partition number of {dict['node']}")

        return cls(
            partno=int(m.group(1)),
            type=dict["type"].upper(),
            uuid=dict.get("uuid", ""),
            name=dict.get("name", ""),
            start=int(dict["start"]) * sector_size,
            size=int(dict["size"]) * sector_size,
        )

    @property
    def end(self) -> int:
        return self.start + self.size


@dataclasses.dataclass(frozen=True)
class DiskImage:
    """A sparse image file that has been partitioned and formatted successfully."""

    path: Path
    size: int
    esp_size: int


@dictify
def probe_device(device: Path) -> Iterator[tuple[str, str]]:
    # Skip the blkid cache, it does not know about filesystems we just created.
    output = run(
        ["blkid", "--cache-file", "/dev/null", "--output", "export", device],
        stdout=subprocess.PIPE,
    ).stdout

    for line in output.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            yield key, value


def blkid_tag(device: Path, tag: str) -> str:
    value = probe_device(device).get(tag)
    if not value:
        die(f"blkid reports no {tag} for {device}")

    return value


def filesystem_uuid(device: Path) -> str:
    return blkid_tag(device, "UUID")


def partition_uuid(device: Path) -> str:
    return blkid_tag(device, "PARTUUID")


def filesystem_type(device: Path) -> str:
    return blkid_tag(device, "TYPE")


def read_partition_table(device: Path) -> tuple[list[Partition], int]:
    """Return the partitions of @device and the last usable byte offset of its table."""
    table = json.loads(run(["sfdisk", "--json", device], stdout=subprocess.PIPE).stdout)["partitiontable"]

    if table.get("label") != "gpt":
        die(f"{device} does not carry a GPT partition table")

    sector_size = int(table.get("sectorsize", 512))
    partitions = [Partition.from_dict(p, sector_size) for p in table.get("partitions", [])]

    return sorted(partitions, key=lambda p: p.partno), (int(table["lastlba"]) + 1) * sector_size


def allocate_image(path: Path, size: int, *, esp_size: int) -> None:
    if size < esp_size + MIN_ROOT_SIZE:
        die(
            f"Image size {format_bytes(size)} is too small",
            hint=f"The image needs at least {format_bytes(esp_size + MIN_ROOT_SIZE)}",
        )

    with complete_step(f"Allocating sparse image {path} ({format_bytes(size)})…"):
        path.parent.mkdir(parents=True, exist_ok=True)

        # Opening with "wb" drops whatever an earlier build left behind, truncate() then only extends the
        # file size without writing any data.
        with path.open("wb") as f:
            f.truncate(size)


def write_gpt(binding: LoopBinding, esp_size: int) -> None:
    with complete_step(f"Writing GPT to {binding.device}…"):
        run(["sgdisk", "--zap-all", binding.device])
        run([
            "sgdisk",
            f"--new=1:0:+{esp_size // MiB}M",
            "--typecode=1:EF00",
            "--change-name=1:EFI",
            binding.device,
        ])  # fmt: skip
        run([
            "sgdisk",
            "--new=2:0:0",
            "--typecode=2:8300",
            "--change-name=2:root",
            binding.device,
        ])  # fmt: skip
        run(["partx", "--update", binding.device])


def format_partitions(binding: LoopBinding) -> None:
    with complete_step("Formatting partitions…"):
        run(["mkfs.vfat", "-F", "32", "-n", "EFI", binding.partition(1)])
        run(["mkfs.ext4", "-F", "-q", "-L", "root", binding.partition(2)])


def check_layout(partitions: Sequence[Partition], last: int, esp_size: int, fstypes: Sequence[str]) -> None:
    if len(partitions) != 2:
        die(f"Expected exactly 2 partitions, found {len(partitions)}")

    esp, root = partitions

    if esp.partno != 1 or esp.type != EFI_SYSTEM_GUID:
        die(f"Partition 1 is not an EFI System Partition (type {esp.type})")
    if esp.size < esp_size:
        die(f"EFI System Partition is {format_bytes(esp.size)}, expected at least {format_bytes(esp_size)}")
    if fstypes[0] != "vfat":
        die(f"EFI System Partition is formatted as {fstypes[0]}, expected vfat")

    if root.partno != 2 or root.type != LINUX_FILESYSTEM_GUID:
        die(f"Partition 2 is not a Linux filesystem partition (type {root.type})")
    if root.start < esp.end:
        die("Root partition overlaps the EFI System Partition")
    if last - root.end > END_ALIGNMENT_SLACK * 512:
        die(f"Root partition ends {format_bytes(last - root.end)} before the end of the disk")
    if fstypes[1] != "ext4":
        die(f"Root partition is formatted as {fstypes[1]}, expected ext4")


def verify_layout(binding: LoopBinding, esp_size: int) -> list[Partition]:
    partitions, last = read_partition_table(binding.device)
    fstypes = [filesystem_type(binding.partition(p.partno)) for p in partitions]

    check_layout(partitions, last, esp_size, fstypes)
    logging.info(
        f"Verified layout of {binding.image}: ESP {format_bytes(partitions[0].size)} vfat, "
        f"root {format_bytes(partitions[1].size)} ext4"
    )

    return partitions


def partition_and_format(target: BuildTarget, config: BuildConfig) -> DiskImage:
    with log_stage(target.architecture, "partition"):
        allocate_image(target.image, target.size, esp_size=config.esp_size)

        with loop_device(target.image) as binding:
            write_gpt(binding, config.esp_size)
            wait_for_partitions(
                binding,
                2,
                timeout=config.partition_timeout,
                interval=config.partition_poll_interval,
            )
            format_partitions(binding)
            verify_layout(binding, config.esp_size)

        return DiskImage(path=target.image, size=target.size, esp_size=config.esp_size)
