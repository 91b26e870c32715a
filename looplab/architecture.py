# SPDX-License-Identifier: LGPL-2.1-or-later

import dataclasses
import enum
import types
from collections.abc import Mapping
from pathlib import Path
from typing import Final

from looplab.log import die
from looplab.util import StrEnum


class StubFixup(StrEnum):
    # The copied kernel is already an EFI-bootable bzImage.
    none   = enum.auto()
    # The copied kernel is a gzip-compressed Image that must be decompressed before UEFI can load it.
    gunzip = enum.auto()


class Architecture(StrEnum):
    x64     = enum.auto()
    aarch64 = enum.auto()

    @staticmethod
    def from_str(s: str) -> "Architecture":
        try:
            return Architecture(s)
        except ValueError:
            die(
                f"Architecture {s!r} is not supported",
                hint=f"Supported architectures are {', '.join(Architecture.values())}",
            )

    def info(self) -> "ArchInfo":
        return ARCHITECTURES[self]

    def to_efi(self) -> str:
        return self.info().uefi_id

    def default_serial_tty(self) -> str:
        return self.info().console


@dataclasses.dataclass(frozen=True)
class ArchInfo:
    uefi_id: str
    debian: str
    grub_target: str
    console: str
    baud: int
    stub_fixup: StubFixup
    rootfs: Path
    uefi_shell: Path

    def console_flags(self) -> list[str]:
        return [
            f"console={self.console},{self.baud}",
            f"earlycon={self.console},{self.baud}",
        ]


ARCHITECTURES: Final[Mapping[Architecture, ArchInfo]] = types.MappingProxyType({
    Architecture.x64: ArchInfo(
        uefi_id="X64",
        debian="amd64",
        grub_target="x86_64-efi",
        # First 16550 UART exposed by QEMU/OVMF and most PCs.
        console="ttyS0",
        baud=115200,
        stub_fixup=StubFixup.none,
        rootfs=Path("/rootfs-cache/amd64/rootfs.tar.xz"),
        uefi_shell=Path("/usr/local/share/uefi-shell/x64/Shell.efi"),
    ),
    Architecture.aarch64: ArchInfo(
        uefi_id="AA64",
        debian="arm64",
        grub_target="arm64-efi",
        # First PL011 on the QEMU virt board.
        console="ttyAMA0",
        baud=115200,
        stub_fixup=StubFixup.gunzip,
        rootfs=Path("/rootfs-cache/arm64/rootfs.tar.xz"),
        uefi_shell=Path("/usr/local/share/uefi-shell/aarch64/Shell.efi"),
    ),
})  # fmt: skip

assert set(ARCHITECTURES) == set(Architecture), "Every architecture needs an ArchInfo entry"
