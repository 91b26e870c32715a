# SPDX-License-Identifier: LGPL-2.1-or-later

import argparse
import dataclasses
import enum
import os
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Final, Optional

from looplab.architecture import ArchInfo, Architecture
from looplab.log import die
from looplab.util import GiB, MiB, StrEnum, parse_bytes, try_parse_boolean, unique

DEFAULT_PACKAGES: Final[tuple[str, ...]] = (
    "shim-signed",
    "linux-image-generic",
    "openssh-server",
    "sudo",
)

ISCSI_PACKAGES: Final[tuple[str, ...]] = (
    "open-iscsi",
    "initramfs-tools",
)


class Verb(StrEnum):
    build = enum.auto()
    clean = enum.auto()


@dataclasses.dataclass(frozen=True)
class BuildConfig:
    """Execution context shared by every architecture of one invocation.

    Everything the pipeline would otherwise have to sniff from its environment (running in CI, where to put
    mount points, how long to wait for partition nodes) is decided by the caller and passed in here.
    """

    ci: bool = False
    parallel: bool = True
    max_workers: Optional[int] = None
    output_dir: Path = Path(".")
    workspace: Path = Path("/var/tmp")
    cache_dir: Optional[Path] = None
    iscsi: bool = True
    partition_timeout: float = 3.0
    partition_poll_interval: float = 0.1
    esp_size: int = 512 * MiB
    packages: tuple[str, ...] = DEFAULT_PACKAGES
    user: str = "maintuser"
    password: str = "maintpass"
    debug: bool = False

    def effective_parallel(self) -> bool:
        # CI always builds serially, regardless of --parallel.
        return self.parallel and not self.ci

    def package_set(self) -> list[str]:
        return unique([*self.packages, *(ISCSI_PACKAGES if self.iscsi else ())])


@dataclasses.dataclass(frozen=True)
class BuildTarget:
    architecture: Architecture
    image: Path
    size: int
    rootfs: Path
    uefi_shell: Path

    @property
    def info(self) -> ArchInfo:
        return self.architecture.info()

    @classmethod
    def resolve(
        cls,
        architecture: Architecture,
        config: BuildConfig,
        *,
        size: int = 10 * GiB,
        image: Optional[Path] = None,
        rootfs: Optional[Path] = None,
        uefi_shell: Optional[Path] = None,
    ) -> "BuildTarget":
        info = architecture.info()

        return cls(
            architecture=architecture,
            image=(image or config.output_dir / f"template-{architecture}.img").absolute(),
            size=size,
            rootfs=rootfs or info.rootfs,
            uefi_shell=uefi_shell or info.uefi_shell,
        )


def parse_arch_paths(values: Sequence[str]) -> dict[Architecture, Path]:
    paths = {}

    for value in values:
        arch, sep, path = value.partition("=")
        if not sep or not path:
            die(f"Invalid architecture path {value!r}", hint="Use ARCH=PATH")

        paths[Architecture.from_str(arch)] = Path(path)

    return paths


def create_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="looplab",
        description="Assemble UEFI-bootable disk images for direct or iSCSI boot",
    )
    parser.add_argument(
        "verb",
        nargs="?",
        choices=Verb.values(),
        default=str(Verb.build),
        help="build the images or only reclaim stale loop devices",
    )
    parser.add_argument(
        "-a", "--arch",
        dest="architectures",
        action="append",
        choices=Architecture.values(),
        metavar="ARCH",
        help="architecture to build, may be repeated (default: all)",
    )
    parser.add_argument("-s", "--size", help="image size, e.g. 10G")
    parser.add_argument("-O", "--output-dir", type=Path, default=Path("."), help="where images are written")
    parser.add_argument("--workspace", type=Path, default=Path("/var/tmp"), help="where mount points are created")
    parser.add_argument("--cache-dir", type=Path, help="directory for configured rootfs tree caches")
    parser.add_argument("--rootfs", action="append", default=[], metavar="ARCH=PATH", help="rootfs tarball")
    parser.add_argument("--uefi-shell", action="append", default=[], metavar="ARCH=PATH", help="UEFI shell binary")
    parser.add_argument("--no-iscsi", dest="iscsi", action="store_false", help="skip iSCSI tooling")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--serial", dest="parallel", action="store_false", default=None)
    group.add_argument("--parallel", dest="parallel", action="store_true", default=None)
    parser.add_argument("-j", "--jobs", type=int, dest="max_workers", help="maximum concurrent builds")
    parser.add_argument("--partition-timeout", type=float, default=3.0, metavar="SECONDS")
    parser.add_argument("--partition-poll-interval", type=float, default=0.1, metavar="SECONDS")
    parser.add_argument("--debug", action="store_true", help="turn on debugging output")
    return parser  # fmt: skip


def parse_config(
    argv: Sequence[str],
    *,
    ci: bool = False,
    environ: Mapping[str, str] = os.environ,
) -> tuple[Verb, list[BuildTarget], BuildConfig]:
    args = create_argument_parser().parse_args(argv)

    if args.parallel is None:
        args.parallel = try_parse_boolean(environ.get("PARALLEL_BUILDS", "true"))
        if args.parallel is None:
            die(f"Invalid boolean literal in $PARALLEL_BUILDS: {environ['PARALLEL_BUILDS']!r}")

    if args.max_workers is not None and args.max_workers < 1:
        die("--jobs= must be at least 1")

    if args.partition_timeout <= 0 or args.partition_poll_interval <= 0:
        die("Partition timeout and poll interval must be positive")

    try:
        size = parse_bytes(args.size or environ.get("IMG_SIZE", "10G"))
    except ValueError as e:
        die(str(e))

    config = BuildConfig(
        ci=ci,
        parallel=args.parallel,
        max_workers=args.max_workers,
        output_dir=args.output_dir,
        workspace=args.workspace,
        cache_dir=args.cache_dir,
        iscsi=args.iscsi,
        partition_timeout=args.partition_timeout,
        partition_poll_interval=args.partition_poll_interval,
        debug=args.debug,
    )

    if args.architectures:
        names = args.architectures
    elif "ARCH" in environ:
        names = environ["ARCH"].split()
    else:
        names = Architecture.values()

    rootfs = parse_arch_paths(args.rootfs)
    shells = parse_arch_paths(args.uefi_shell)

    targets = [
        BuildTarget.resolve(
            arch,
            config,
            size=size,
            rootfs=rootfs.get(arch),
            uefi_shell=shells.get(arch),
        )
        for arch in unique([Architecture.from_str(n) for n in names])
    ]

    return Verb(args.verb), targets, config
