# SPDX-License-Identifier: LGPL-2.1-or-later

from collections.abc import Sequence
from pathlib import Path

from looplab.log import die, log_step
from looplab.run import run
from looplab.util import PathString, umask


def tar_exclude_apivfs_tmp() -> list[str]:
    return [
        "--exclude", "./dev/*",
        "--exclude", "./proc/*",
        "--exclude", "./sys/*",
        "--exclude", "./tmp/*",
        "--exclude", "./run/*",
        "--exclude", "./var/tmp/*",
    ]  # fmt: skip


def make_tar(src: Path, dst: Path, *, excludes: Sequence[str] = ()) -> None:
    log_step(f"Creating tar archive {dst}…")

    with dst.open("wb") as f:
        run(
            [
                "tar",
                "--create",
                "--file", "-",
                "--directory", src,
                "--acls",
                "--xattrs",
                "--numeric-owner",
                "--sparse",
                "--force-local",
                "--one-file-system",
                *tar_exclude_apivfs_tmp(),
                *(f"--exclude={e}" for e in excludes),
                ".",
            ],
            stdout=f,
        )  # fmt: skip


def can_extract_tar(src: Path) -> bool:
    return ".tar" in src.suffixes[-2:]


def extract_tar(
    src: Path,
    dst: Path,
    *,
    log: bool = True,
    options: Sequence[PathString] = (),
) -> None:
    if not src.is_file():
        die(f"Root filesystem archive {src} does not exist")
    if not can_extract_tar(src):
        die(f"{src} is not a tar archive")

    if log:
        log_step(f"Extracting tar archive {src}…")

    with umask(~0o755):
        dst.mkdir(exist_ok=True)

    run(
        [
            "tar",
            "--extract",
            "--file", src,
            "--directory", dst,
            "--keep-directory-symlink",
            "--same-permissions",
            "--same-owner",
            # Keep the uids/gids stored in the archive.
            "--numeric-owner",
            "--same-order",
            "--acls",
            "--xattrs",
            "--force-local",
            *tar_exclude_apivfs_tmp(),
            *options,
        ],
    )  # fmt: skip
