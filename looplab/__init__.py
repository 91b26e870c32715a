# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import dataclasses
import enum
import logging
import os
import signal
import subprocess
import sys
from collections.abc import Sequence

from looplab.architecture import Architecture
from looplab.bootloader import BootAssets, stage_boot
from looplab.config import BuildConfig, BuildTarget, Verb
from looplab.log import (
    ARG_DEBUG,
    LooplabError,
    PreconditionViolation,
    ResourceExhaustion,
    TimingAnomaly,
    complete_step,
    log_notice,
    log_stage,
)
from looplab.loop import loop_device, reclaim_stale_loops, wait_for_partitions
from looplab.mounts import MountStack, remove_mountpoint
from looplab.partition import partition_and_format
from looplab.rootfs import import_rootfs, mount_image
from looplab.run import ensure_exc_info
from looplab.util import StrEnum

__version__ = "1.0.0"


class BuildResult(StrEnum):
    success                = enum.auto()
    resource_exhaustion    = enum.auto()
    precondition_violation = enum.auto()
    timing_anomaly         = enum.auto()
    subprocess_failure     = enum.auto()
    interrupted            = enum.auto()
    crashed                = enum.auto()

    @property
    def exit_code(self) -> int:
        return BUILD_RESULT_EXIT_CODES[self]

    @staticmethod
    def from_exit_code(rc: int) -> "BuildResult":
        if rc < 0:
            return BuildResult.interrupted if -rc in (signal.SIGINT, signal.SIGTERM) else BuildResult.crashed

        for result, code in BUILD_RESULT_EXIT_CODES.items():
            if code == rc:
                return result

        return BuildResult.crashed

    @staticmethod
    def classify(exc: BaseException) -> "BuildResult":
        if isinstance(exc, ResourceExhaustion):
            return BuildResult.resource_exhaustion
        if isinstance(exc, TimingAnomaly):
            return BuildResult.timing_anomaly
        if isinstance(exc, PreconditionViolation):
            return BuildResult.precondition_violation
        if isinstance(exc, subprocess.CalledProcessError):
            return BuildResult.subprocess_failure
        if isinstance(exc, KeyboardInterrupt):
            return BuildResult.interrupted

        return BuildResult.crashed


BUILD_RESULT_EXIT_CODES = {
    BuildResult.success:                0,
    BuildResult.resource_exhaustion:    ResourceExhaustion.exit_code,
    BuildResult.precondition_violation: PreconditionViolation.exit_code,
    BuildResult.timing_anomaly:         TimingAnomaly.exit_code,
    BuildResult.subprocess_failure:     70,
    BuildResult.interrupted:            130,
    BuildResult.crashed:                LooplabError.exit_code,
}  # fmt: skip


@dataclasses.dataclass(frozen=True)
class BuildOutcome:
    architecture: Architecture
    result: BuildResult
    message: str = ""

    def succeeded(self) -> bool:
        return self.result == BuildResult.success


def build_image(target: BuildTarget, config: BuildConfig) -> BootAssets:
    image = partition_and_format(target, config)
    root = config.workspace / f"{target.architecture}-root"

    # Unwinds as: unmount everything, remove the mount point, detach the loop device.
    with contextlib.ExitStack() as stack:
        binding = stack.enter_context(loop_device(image.path))
        wait_for_partitions(
            binding,
            2,
            timeout=config.partition_timeout,
            interval=config.partition_poll_interval,
        )
        stack.callback(remove_mountpoint, root)
        mounts = stack.enter_context(MountStack())

        with log_stage(target.architecture, "mount"):
            mount_image(image, binding, mounts, root)

        import_rootfs(binding, target, config, root)
        return stage_boot(target, config, root, binding.partition(2))


def build_one(target: BuildTarget, config: BuildConfig) -> BuildOutcome:
    try:
        with complete_step(f"Building {target.architecture} image {target.image}…"):
            build_image(target, config)
    except BaseException as e:
        result = BuildResult.classify(e)

        # Everything but a crash was logged where it was raised.
        if result == BuildResult.crashed or ARG_DEBUG.get():
            sys.excepthook(*ensure_exc_info())

        return BuildOutcome(target.architecture, result, str(e) or type(e).__name__)

    return BuildOutcome(target.architecture, BuildResult.success, str(target.image))


def fork_build(target: BuildTarget, config: BuildConfig) -> int:
    pid = os.fork()
    if pid == 0:
        rc = BuildResult.crashed.exit_code
        try:
            rc = build_one(target, config).result.exit_code
        finally:
            sys.stdout.flush()
            sys.stderr.flush()
            os._exit(rc)

    return pid


def outcome_from_status(target: BuildTarget, status: int) -> BuildOutcome:
    rc = os.waitstatus_to_exitcode(status)
    result = BuildResult.from_exit_code(rc)

    return BuildOutcome(
        target.architecture,
        result,
        str(target.image) if result == BuildResult.success else f"build process exited with status {rc}",
    )


def not_started(targets: Sequence[BuildTarget]) -> list[BuildOutcome]:
    return [BuildOutcome(t.architecture, BuildResult.interrupted, "not started") for t in targets]


def build_serial(targets: Sequence[BuildTarget], config: BuildConfig) -> list[BuildOutcome]:
    outcomes: list[BuildOutcome] = []

    for i, target in enumerate(targets):
        outcome = build_one(target, config)
        outcomes += [outcome]

        # A failed architecture does not stop the others, an interrupt does.
        if outcome.result == BuildResult.interrupted:
            outcomes += not_started(targets[i + 1 :])
            break

    return outcomes


def build_parallel(targets: Sequence[BuildTarget], config: BuildConfig) -> list[BuildOutcome]:
    max_workers = config.max_workers or len(targets)
    pending = list(targets)
    running: dict[int, BuildTarget] = {}
    outcomes: dict[Architecture, BuildOutcome] = {}

    try:
        while pending or running:
            while pending and len(running) < max_workers:
                target = pending.pop(0)
                running[fork_build(target, config)] = target

            pid, status = os.waitpid(-1, 0)
            if pid in running:
                target = running.pop(pid)
                outcomes[target.architecture] = outcome_from_status(target, status)
    except KeyboardInterrupt:
        for pid in running:
            os.kill(pid, signal.SIGINT)
        for pid, target in running.items():
            _, status = os.waitpid(pid, 0)
            outcomes[target.architecture] = outcome_from_status(target, status)
        for outcome in not_started(pending):
            outcomes[outcome.architecture] = outcome

    return [outcomes[t.architecture] for t in targets]


def log_summary(outcomes: Sequence[BuildOutcome]) -> None:
    for outcome in outcomes:
        with log_stage(outcome.architecture, "summary"):
            if outcome.succeeded():
                log_notice(f"{outcome.architecture}: {outcome.message}")
            else:
                logging.error(f"{outcome.architecture}: {outcome.result} ({outcome.message})")


def run_build(targets: Sequence[BuildTarget], config: BuildConfig) -> list[BuildOutcome]:
    for target in targets:
        with log_stage(target.architecture, "reclaim"):
            reclaim_stale_loops(target.image)

    if config.ci:
        logging.info("Running in CI, building architectures serially")

    if config.effective_parallel() and len(targets) > 1:
        outcomes = build_parallel(targets, config)
    else:
        outcomes = build_serial(targets, config)

    log_summary(outcomes)
    return outcomes


def run_verb(verb: Verb, targets: Sequence[BuildTarget], config: BuildConfig) -> list[BuildOutcome]:
    if verb == Verb.clean:
        for target in targets:
            with log_stage(target.architecture, "reclaim"):
                reclaim_stale_loops(target.image)
        return []

    return run_build(targets, config)


def exit_code(outcomes: Sequence[BuildOutcome]) -> int:
    return next((o.result.exit_code for o in outcomes if not o.succeeded()), 0)
