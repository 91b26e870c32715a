# SPDX-License-Identifier: LGPL-2.1-or-later

import logging
import secrets
import shutil
import textwrap
from collections.abc import Sequence
from pathlib import Path

from looplab.archive import extract_tar
from looplab.cache import cache_manifest, reuse_cache, save_cache
from looplab.config import BuildConfig, BuildTarget
from looplab.log import complete_step, die, log_stage
from looplab.loop import LoopBinding
from looplab.mounts import MountStack, mount_apivfs
from looplab.partition import DiskImage, filesystem_uuid
from looplab.run import chroot_cmd, run
from looplab.util import umask

CONFIGURE_SCRIPT = Path("var/tmp/looplab-configure.sh")

ISCSI_MODULES = ("iscsi_tcp", "libiscsi", "libiscsi_tcp", "scsi_transport_iscsi")
# NIC drivers the initramfs needs to reach the target before the root filesystem is available.
ISCSI_NIC_DRIVERS = ("virtio_net", "e1000", "e1000e", "igb", "ixgbe", "r8169")


def mount_image(image: DiskImage, binding: LoopBinding, stack: MountStack, root: Path) -> None:
    """Mount the root filesystem at @root and the ESP beneath it at boot/efi."""
    if binding.image != image.path:
        die(f"{binding.device} is backed by {binding.image}, not {image.path}")

    stack.mount(binding.partition(2), root, fstype="ext4")
    stack.mount(binding.partition(1), root / "boot/efi", fstype="vfat")

    with umask(~0o755):
        (root / "boot/efi/EFI/BOOT").mkdir(parents=True, exist_ok=True)


def install_host_resolver(root: Path, *, host: Path = Path("/")) -> None:
    with umask(~0o755):
        (root / "etc").mkdir(exist_ok=True)

    for p in ("etc/resolv.conf", "etc/hosts"):
        # Often a dangling symlink into /run in a freshly unpacked tree.
        (root / p).unlink(missing_ok=True)

        if not (host / p).exists():
            logging.warning(f"Host has no /{p}, the tree is left without one")
            continue

        shutil.copyfile(host / p, root / p)
        (root / p).chmod(0o644)


def autologin_dropin(user: str, extra: str) -> str:
    return textwrap.dedent(
        f"""\
        [Service]
        ExecStart=
        ExecStart=-/sbin/agetty --autologin {user} {extra} %I $TERM
        """
    )


def generate_initiator_name() -> str:
    return f"iqn.2004-10.com.ubuntu:01:{secrets.token_hex(6)}"


def write_file_section(path: str, content: str, *, append: bool = False) -> str:
    # The heredoc delimiter is quoted so that $TERM and friends reach the file verbatim.
    return "\n".join([
        f"mkdir -p {Path(path).parent}",
        f"cat {'>>' if append else '>'} {path} <<'LOOPLAB_EOF'",
        content.rstrip("\n"),
        "LOOPLAB_EOF",
    ])  # fmt: skip


def package_section(packages: Sequence[str]) -> str:
    return textwrap.dedent(
        f"""\
        apt-get update
        apt-get install -y {" ".join(packages)}
        """
    )


def user_section(user: str, password: str) -> str:
    return textwrap.dedent(
        f"""\
        id -u {user} >/dev/null 2>&1 || useradd -m -s /bin/bash {user}
        echo '{user}:{password}' | chpasswd
        usermod -aG sudo {user}
        """
    )


def sshd_section() -> str:
    return textwrap.dedent(
        """\
        sed -i 's/^#\\?PasswordAuthentication .*/PasswordAuthentication yes/' /etc/ssh/sshd_config
        sed -i 's/^#\\?PermitRootLogin .*/PermitRootLogin yes/' /etc/ssh/sshd_config
        """
    )


def autologin_section(target: BuildTarget, user: str) -> str:
    tty = target.architecture.default_serial_tty()

    return "\n".join([
        write_file_section(
            "/etc/systemd/system/getty@tty1.service.d/override.conf",
            autologin_dropin(user, "--noclear"),
        ),
        write_file_section(
            f"/etc/systemd/system/serial-getty@{tty}.service.d/autologin.conf",
            autologin_dropin(user, f"--keep-baud {target.info.baud},38400,9600"),
        ),
    ])  # fmt: skip


def iscsi_section() -> str:
    return "\n".join([
        write_file_section("/etc/iscsi/initiatorname.iscsi", f"InitiatorName={generate_initiator_name()}\n"),
        "touch /etc/iscsi/iscsid.conf",
        "sed -i '/^node.startup *=/d' /etc/iscsi/iscsid.conf",
        "echo 'node.startup = automatic' >>/etc/iscsi/iscsid.conf",
        write_file_section(
            "/etc/initramfs-tools/modules",
            "\n".join([*ISCSI_MODULES, *ISCSI_NIC_DRIVERS]),
            append=True,
        ),
        "touch /etc/iscsi/iscsi.initramfs",
        "systemctl enable iscsid open-iscsi",
    ])  # fmt: skip


def configure_script(target: BuildTarget, config: BuildConfig) -> str:
    sections = [
        package_section(config.package_set()),
        user_section(config.user, config.password),
        sshd_section(),
        autologin_section(target, config.user),
        "systemctl enable ssh",
    ]

    if config.iscsi:
        sections += [iscsi_section()]

    sections += ["update-initramfs -u -k all"]

    return "\n".join(s.rstrip("\n") for s in sections) + "\n"


def run_configure_script(root: Path, script: str) -> None:
    path = root / CONFIGURE_SCRIPT

    with umask(~0o755):
        path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(script)

    try:
        run(
            [*chroot_cmd(root), "/bin/bash", "-euo", "pipefail", Path("/") / CONFIGURE_SCRIPT],
            env={"DEBIAN_FRONTEND": "noninteractive"},
        )
    finally:
        path.unlink(missing_ok=True)


def write_fstab(root: Path, root_device: Path, esp_device: Path) -> None:
    fstab = root / "etc/fstab"

    with umask(~0o755):
        fstab.parent.mkdir(parents=True, exist_ok=True)

    with umask(~0o644):
        fstab.write_text(
            f"UUID={filesystem_uuid(root_device)}  /          ext4    defaults        0 1\n"
            f"UUID={filesystem_uuid(esp_device)}   /boot/efi  vfat    umask=0077      0 1\n"
        )


def configure_tree(target: BuildTarget, config: BuildConfig, root: Path) -> None:
    extract_tar(target.rootfs, root)
    install_host_resolver(root)

    with complete_step("Configuring system in chroot…"), MountStack() as apivfs:
        mount_apivfs(apivfs, root)
        run_configure_script(root, configure_script(target, config))


def import_rootfs(binding: LoopBinding, target: BuildTarget, config: BuildConfig, root: Path) -> None:
    with log_stage(target.architecture, "rootfs"):
        manifest = cache_manifest(target, config) if config.cache_dir else {}

        if not manifest or not reuse_cache(root, target, config, manifest):
            configure_tree(target, config, root)
            if manifest:
                save_cache(root, target, config, manifest)

        with complete_step("Writing /etc/fstab…"):
            write_fstab(root, binding.partition(2), binding.partition(1))
