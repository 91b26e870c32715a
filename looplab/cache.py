# SPDX-License-Identifier: LGPL-2.1-or-later

import hashlib
import json
import logging
import subprocess
from pathlib import Path
from typing import Any

from looplab.archive import extract_tar, make_tar
from looplab.config import BuildConfig, BuildTarget
from looplab.log import complete_step, die
from looplab.util import hash_file


def cache_manifest(target: BuildTarget, config: BuildConfig) -> dict[str, Any]:
    if not target.rootfs.is_file():
        die(f"Root filesystem archive {target.rootfs} does not exist")

    manifest: dict[str, Any] = {
        "architecture": str(target.architecture),
        "rootfs": hash_file(target.rootfs),
        "packages": sorted(config.package_set()),
        "iscsi": config.iscsi,
        "user": config.user,
        "password": hashlib.sha256(config.password.encode()).hexdigest(),
    }
    manifest["key"] = cache_key(manifest)

    return manifest


def cache_key(manifest: dict[str, Any]) -> str:
    m = {k: v for k, v in manifest.items() if k != "key"}
    return hashlib.sha256(json.dumps(m, sort_keys=True).encode()).hexdigest()


def cache_tree_paths(target: BuildTarget, config: BuildConfig) -> tuple[Path, Path]:
    assert config.cache_dir
    return (
        config.cache_dir / f"{target.architecture}.cache.tar",
        config.cache_dir / f"{target.architecture}.cache.json",
    )


def have_cache(target: BuildTarget, config: BuildConfig, manifest: dict[str, Any]) -> bool:
    if not config.cache_dir:
        return False

    tree, stored = cache_tree_paths(target, config)
    if not tree.exists():
        logging.debug(f"{tree} does not exist, not reusing cached tree")
        return False

    if not stored.exists():
        logging.debug(f"{stored} does not exist, not reusing cached tree")
        return False

    try:
        prev = json.loads(stored.read_text())
    except json.JSONDecodeError:
        logging.info(f"{stored} is not valid JSON, not reusing cached tree")
        return False

    if prev != manifest or prev.get("key") != cache_key(prev):
        logging.info(f"Cache manifest mismatch for {target.architecture}, not reusing cached tree")
        return False

    return True


def reuse_cache(root: Path, target: BuildTarget, config: BuildConfig, manifest: dict[str, Any]) -> bool:
    if not have_cache(target, config, manifest):
        return False

    tree, _ = cache_tree_paths(target, config)

    with complete_step(f"Copying cached tree {manifest['key'][:12]}…"):
        extract_tar(tree, root, log=False)

    return True


def save_cache(root: Path, target: BuildTarget, config: BuildConfig, manifest: dict[str, Any]) -> None:
    if not config.cache_dir:
        return

    tree, stored = cache_tree_paths(target, config)

    with complete_step(f"Saving configured tree {manifest['key'][:12]} to cache…"):
        new_tree = tree.with_name(f"{tree.name}.new")
        new_stored = stored.with_name(f"{stored.name}.new")

        try:
            config.cache_dir.mkdir(parents=True, exist_ok=True)

            # The manifest is written last, an entry without one is never reused.
            stored.unlink(missing_ok=True)

            make_tar(root, new_tree, excludes=["./boot/efi"])
            new_tree.rename(tree)

            new_stored.write_text(json.dumps(manifest, indent=4, sort_keys=True))
            new_stored.rename(stored)
        except (OSError, subprocess.CalledProcessError) as e:
            logging.warning(f"Could not save configured tree to {config.cache_dir}, continuing without cache: {e}")
        finally:
            new_tree.unlink(missing_ok=True)
            new_stored.unlink(missing_ok=True)
