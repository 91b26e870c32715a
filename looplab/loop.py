# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import dataclasses
import logging
import re
import subprocess
import time
from collections.abc import Iterator
from pathlib import Path
from typing import Optional

from looplab.log import ResourceExhaustion, TimingAnomaly, complete_step, die
from looplab.mounts import MountPoint, stale_mounts, umount
from looplab.run import log_process_failure, run

SYSFS_BLOCK = Path("/sys/block")


@dataclasses.dataclass(frozen=True)
class LoopBinding:
    device: Path
    image: Path

    def partition(self, partno: int) -> Path:
        return Path(f"{self.device}p{partno}")


def loop_backing_file(device: Path) -> Optional[Path]:
    try:
        backing = (SYSFS_BLOCK / device.name / "loop/backing_file").read_text().strip()
    except FileNotFoundError:
        return None

    return Path(backing.removesuffix(" (deleted)"))


def attach_loop(image: Path) -> LoopBinding:
    if not image.is_file():
        die(f"Cannot attach {image} to a loop device as it does not exist")

    result = run(
        ["losetup", "--find", "--show", "--partscan", image],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        check=False,
    )

    if result.returncode != 0:
        if re.search(r"(free|unused) loop device", result.stderr or ""):
            logging.error(f"No free loop device available for {image}")
            raise ResourceExhaustion(f"No free loop device available for {image}")

        logging.error((result.stderr or "").strip())
        log_process_failure(["losetup", "--find", "--show", "--partscan", str(image)], result.returncode)
        raise subprocess.CalledProcessError(result.returncode, result.args, result.stdout, result.stderr)

    binding = LoopBinding(device=Path(result.stdout.strip()), image=image)
    logging.info(f"Attached {image} to {binding.device}")
    return binding


def detach_loop(binding: LoopBinding) -> None:
    """Detach the loop device. Safe to call repeatedly and after the device was detached behind our back."""
    backing = loop_backing_file(binding.device)

    if backing is None:
        logging.debug(f"{binding.device} is already detached, nothing to do")
        return

    if backing != binding.image.resolve():
        logging.debug(f"{binding.device} is now backed by {backing}, not detaching it")
        return

    result = run(["losetup", "--detach", binding.device], check=False, log=False)
    if result.returncode != 0:
        logging.warning(f"Failed to detach {binding.device} (exit code {result.returncode})")
    else:
        logging.info(f"Detached {binding.device}")


def wait_for_partitions(
    binding: LoopBinding,
    count: int,
    *,
    timeout: float,
    interval: float,
) -> list[Path]:
    partitions = [binding.partition(n) for n in range(1, count + 1)]
    deadline = time.monotonic() + timeout

    while True:
        missing = [p for p in partitions if not p.exists()]
        if not missing:
            return partitions

        if time.monotonic() >= deadline:
            logging.error(
                f"Partition device nodes {', '.join(map(str, missing))} did not appear within {timeout}s"
            )
            raise TimingAnomaly(f"Partition device nodes of {binding.device} did not appear within {timeout}s")

        time.sleep(interval)


@contextlib.contextmanager
def loop_device(image: Path) -> Iterator[LoopBinding]:
    binding = attach_loop(image)
    try:
        yield binding
    finally:
        detach_loop(binding)


def find_loops(image: Path) -> list[Path]:
    if not image.exists():
        return []

    output = run(
        ["losetup", "--noheadings", "--output", "NAME", "--associated", image],
        stdout=subprocess.PIPE,
    ).stdout

    return [Path(line.strip()) for line in output.splitlines() if line.strip()]


def reclaim_stale_loops(image: Path) -> list[Path]:
    """Detach loop devices left behind by an earlier build of this exact image, and unmount their mounts."""
    devices = find_loops(image)
    if not devices:
        logging.debug(f"No stale loop devices for {image}")
        return []

    with complete_step(f"Reclaiming stale loop devices for {image}…", "Reclaimed {} stale loop device(s)") as output:
        for target in stale_mounts(devices):
            umount(MountPoint(source="", target=target))

        for device in devices:
            detach_loop(LoopBinding(device=device, image=image))

        output += [len(devices)]

    return devices
