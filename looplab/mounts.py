# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import dataclasses
import logging
import os
import re
import subprocess
from collections.abc import Iterable
from pathlib import Path
from types import TracebackType
from typing import Optional

from looplab.log import MountFailed
from looplab.run import run
from looplab.util import PathString, umask

PROC_MOUNTS = Path("/proc/self/mounts")

# Mounted into a tree, in this order, so that chrooted tools find a working /proc, /sys and /dev.
APIVFS = (Path("/proc"), Path("/sys"), Path("/dev"), Path("/dev/pts"))


@dataclasses.dataclass(frozen=True)
class MountPoint:
    source: PathString
    target: Path
    fstype: Optional[str] = None
    options: tuple[str, ...] = ()


def unescape_mount_field(s: str) -> str:
    # /proc/self/mounts escapes whitespace and backslashes as octal sequences.
    return re.sub(r"\\([0-7]{3})", lambda m: chr(int(m.group(1), 8)), s)


def read_mounts() -> list[tuple[str, Path]]:
    """Return (source, target) for every mount in the current mount namespace, in mount order."""
    mounts = []

    for line in PROC_MOUNTS.read_text().splitlines():
        fields = line.split()
        if len(fields) < 2:
            continue

        mounts += [(unescape_mount_field(fields[0]), Path(unescape_mount_field(fields[1])))]

    return mounts


def is_mounted(target: Path) -> bool:
    # The kernel records the canonical path, with every symlink resolved.
    target = target.resolve()
    return any(t == target for _, t in read_mounts())


def mount(
    source: PathString,
    target: Path,
    fstype: Optional[str] = None,
    options: Iterable[str] = (),
) -> MountPoint:
    options = tuple(options)

    with umask(~0o755):
        target.mkdir(parents=True, exist_ok=True)

    logging.info(f"Mounting {source} on {target}")

    try:
        run([
            "mount",
            *(["--types", fstype] if fstype else []),
            *(["--options", ",".join(options)] if options else []),
            source,
            target,
        ])  # fmt: skip
    except subprocess.CalledProcessError as e:
        logging.error(f"Failed to mount {source} on {target}")
        raise MountFailed(f"Failed to mount {source} on {target}") from e

    return MountPoint(source=source, target=target, fstype=fstype, options=options)


def umount(mountpoint: MountPoint) -> None:
    """Unmount, treating an already unmounted target as success. Never raises on teardown failure."""
    if not is_mounted(mountpoint.target):
        logging.debug(f"{mountpoint.target} is not mounted anymore, nothing to unmount")
        return

    logging.info(f"Unmounting {mountpoint.target}")

    result = run(["umount", mountpoint.target], check=False, log=False)
    if result.returncode != 0:
        logging.warning(f"Failed to unmount {mountpoint.target} (exit code {result.returncode}), leaving it behind")


def remove_mountpoint(path: Path) -> None:
    # rmdir and never rmtree: if the unmount failed, the directory still holds the filesystem contents.
    try:
        path.rmdir()
    except FileNotFoundError:
        pass
    except OSError as e:
        logging.warning(f"Could not remove mount point {path}: {e.strerror}")


class MountStack:
    """Nested mounts that are unmounted in exact reverse order, whichever way the block exits."""

    def __init__(self) -> None:
        self.stack = contextlib.ExitStack()
        self.mounts: list[MountPoint] = []

    def mount(
        self,
        source: PathString,
        target: Path,
        fstype: Optional[str] = None,
        options: Iterable[str] = (),
    ) -> MountPoint:
        mountpoint = mount(source, target, fstype, options)
        self.mounts.append(mountpoint)
        self.stack.callback(self.pop, mountpoint)
        return mountpoint

    def pop(self, mountpoint: MountPoint) -> None:
        umount(mountpoint)
        self.mounts.remove(mountpoint)

    def close(self) -> None:
        self.stack.close()

    def __enter__(self) -> "MountStack":
        return self

    def __exit__(
        self,
        type: Optional[type[BaseException]],
        value: Optional[BaseException],
        traceback: Optional[TracebackType],
    ) -> None:
        self.close()


def mount_apivfs(stack: MountStack, root: Path) -> None:
    for p in APIVFS:
        stack.mount(p, root / p.relative_to("/"), options=["bind"])


def stale_mounts(devices: Iterable[Path]) -> list[Path]:
    """Mount targets backed by any of the given loop devices, plus everything mounted beneath them.

    The result is in unmount order, i.e. the reverse of mount order.
    """
    devices = [os.fspath(d) for d in devices]
    mounts = read_mounts()

    roots = [
        target
        for source, target in mounts
        if any(source == d or re.fullmatch(rf"{re.escape(d)}p[0-9]+", source) for d in devices)
    ]

    return [
        target
        for _, target in reversed(mounts)
        if any(target == r or target.is_relative_to(r) for r in roots)
    ]
