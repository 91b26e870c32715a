# SPDX-License-Identifier: LGPL-2.1-or-later

import dataclasses
import logging
import shutil
import textwrap
from pathlib import Path

from looplab.architecture import Architecture, StubFixup
from looplab.config import BuildConfig, BuildTarget
from looplab.log import complete_step, die, log_stage
from looplab.partition import partition_uuid
from looplab.run import find_binary, run
from looplab.util import umask

GZIP_MAGIC = b"\x1f\x8b"

# Flags that make early boot as chatty as possible on every console we configure.
DEBUG_CMDLINE = (
    "console=tty0",
    "earlyprintk=efi,keep",
    "ignore_loglevel",
    "loglevel=8",
    "debug",
    "initcall_debug",
    "efi=debug",
    "systemd.log_level=debug",
    "systemd.log_target=console",
)


@dataclasses.dataclass(frozen=True)
class BootAssets:
    kernel: Path
    initrd: Path
    cmdline: str
    uefi_id: str


def esp_boot_dir(root: Path) -> Path:
    return root / "boot/efi/EFI/BOOT"


def install_uefi_shell(target: BuildTarget, root: Path) -> Path:
    if not target.uefi_shell.is_file():
        die(
            f"UEFI shell {target.uefi_shell} does not exist",
            hint=f"Pass --uefi-shell={target.architecture}=PATH",
        )

    dst = esp_boot_dir(root) / f"BOOT{target.architecture.to_efi()}.EFI"

    with umask(~0o755):
        dst.parent.mkdir(parents=True, exist_ok=True)
        (root / "boot/efi/EFI/UBUNTU").mkdir(exist_ok=True)

    shutil.copyfile(target.uefi_shell, dst)
    return dst


def find_boot_asset(root: Path, pattern: str) -> Path:
    matches = sorted(p for p in root.glob(f"boot/{pattern}") if p.is_file() and not p.is_symlink())

    if not matches:
        die(f"No /boot/{pattern} found in the root filesystem")
    if len(matches) > 1:
        die(
            f"Found {len(matches)} /boot/{pattern} files, refusing to guess which one to boot",
            hint=", ".join(p.name for p in matches),
        )

    return matches[0]


def find_boot_assets(root: Path) -> tuple[Path, Path]:
    """Return the single kernel and the single initrd of the tree, in that order."""
    return find_boot_asset(root, "vmlinuz-*"), find_boot_asset(root, "initrd.img-*")


def gzip_binary() -> str:
    return "pigz" if find_binary("pigz") else "gzip"


def fixup_kernel_stub(arch: Architecture, kernel: Path) -> Path:
    if arch.info().stub_fixup == StubFixup.none:
        return kernel

    with kernel.open("rb") as f:
        magic = f.read(len(GZIP_MAGIC))

    if magic != GZIP_MAGIC:
        logging.info(f"{kernel.name} is not gzip compressed, assuming it is already an EFI stub")
        return kernel

    with complete_step(f"Decompressing {kernel.name}…"):
        gz = kernel.rename(kernel.with_name(f"{kernel.name}.gz"))
        run([gzip_binary(), "--decompress", gz])

    return kernel


def console_flags(arch: Architecture) -> list[str]:
    return arch.info().console_flags()


def kernel_cmdline(partuuid: str, arch: Architecture) -> str:
    return " ".join([
        f"root=PARTUUID={partuuid}",
        "rootfstype=ext4",
        "rw",
        "rootwait",
        *console_flags(arch),
        *DEBUG_CMDLINE,
    ])  # fmt: skip


def kernel_invocation(assets: BootAssets) -> str:
    return f"{assets.kernel.name} initrd=\\EFI\\BOOT\\{assets.initrd.name} {assets.cmdline}"


def startup_script(assets: BootAssets) -> str:
    return textwrap.dedent(
        f"""\
        @echo -off
        echo "looplab EFI boot script ({assets.uefi_id})"
        echo "Checking mapped devices..."
        map -r
        echo "Entering ESP filesystem..."
        FS0:
        cd EFI\\BOOT
        echo "Current directory contents:"
        ls
        echo "Command line:"
        echo "{kernel_invocation(assets)}"
        echo "Loading kernel..."
        {kernel_invocation(assets)}
        """
    )


def iscsi_boot_script(assets: BootAssets) -> str:
    return textwrap.dedent(
        f"""\
        @echo -off
        echo "looplab EFI iSCSI boot script ({assets.uefi_id})"
        #
        # Template for booting with the root filesystem on an iSCSI target. Fill in the parameters below
        # and append them to the kernel command line in place of root=PARTUUID=...
        #
        #   ISCSI_INITIATOR=iqn.2004-10.com.ubuntu:01:<initiator>
        #   ISCSI_TARGET_NAME=iqn.<yyyy-mm>.<reversed domain>:<target>
        #   ISCSI_TARGET_IP=<address>
        #   ISCSI_TARGET_PORT=3260
        #   ISCSI_TARGET_GROUP=1
        #   ISCSI_LUN=0
        #
        # Example:
        #   ip=dhcp ISCSI_INITIATOR=... ISCSI_TARGET_NAME=... ISCSI_TARGET_IP=... ISCSI_TARGET_PORT=3260
        #   ISCSI_TARGET_GROUP=1 ISCSI_LUN=0 root=/dev/sda2 rootfstype=ext4 rw rootwait
        #
        echo "No iSCSI target configured, falling back to local boot..."
        map -r
        FS0:
        cd EFI\\BOOT
        {kernel_invocation(assets)}
        """
    )


def write_boot_scripts(esp: Path, assets: BootAssets) -> None:
    for name, content in (("startup.nsh", startup_script(assets)), ("iscsi-boot.nsh", iscsi_boot_script(assets))):
        p = esp / name
        p.write_text(content)
        p.chmod(0o644)


def stage_boot(target: BuildTarget, config: BuildConfig, root: Path, root_device: Path) -> BootAssets:
    with log_stage(target.architecture, "boot"), complete_step("Staging boot files on the ESP…"):
        # Resolve everything before the ESP is touched so a failure leaves it as it was.
        kernel, initrd = find_boot_assets(root)
        cmdline = kernel_cmdline(partition_uuid(root_device), target.architecture)

        install_uefi_shell(target, root)

        esp = esp_boot_dir(root)
        shutil.copyfile(kernel, esp / kernel.name)
        shutil.copyfile(initrd, esp / initrd.name)

        assets = BootAssets(
            kernel=fixup_kernel_stub(target.architecture, esp / kernel.name),
            initrd=esp / initrd.name,
            cmdline=cmdline,
            uefi_id=target.architecture.to_efi(),
        )

        write_boot_scripts(esp, assets)
        logging.info(f"Kernel command line: {assets.cmdline}")

        return assets
