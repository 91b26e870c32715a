# SPDX-License-Identifier: LGPL-2.1-or-later

import os
import subprocess
from collections.abc import Mapping, Sequence
from typing import Callable, Optional, Union

from looplab.run import CompletedProcess
from looplab.util import _FILE, PathString

# A handler gets the command line and returns stdout, or (returncode, stdout, stderr).
Handler = Callable[[list[str]], Union[str, tuple[int, str, str]]]

# Every module that shells out imports run() by name.
RUN_MODULES = (
    "looplab.archive",
    "looplab.bootloader",
    "looplab.loop",
    "looplab.mounts",
    "looplab.partition",
    "looplab.rootfs",
)


class FakeRun:
    """Stands in for looplab.run.run(), recording every command instead of executing it."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.envs: list[Mapping[str, str]] = []
        self.handlers: list[tuple[list[str], Handler]] = []

    def on(self, *prefix: str, handler: Optional[Handler] = None, stdout: str = "", returncode: int = 0,
           stderr: str = "") -> None:
        self.handlers.insert(0, (list(prefix), handler or (lambda cmd: (returncode, stdout, stderr))))

    def commands(self, name: str) -> list[list[str]]:
        return [c for c in self.calls if c[0] == name]

    def __call__(
        self,
        cmdline: Sequence[PathString],
        check: bool = True,
        stdout: _FILE = None,
        stderr: _FILE = None,
        env: Mapping[str, str] = {},
        log: bool = True,
    ) -> CompletedProcess:
        cmd = [os.fspath(c) for c in cmdline]
        self.calls.append(cmd)
        self.envs.append(env)

        returncode, out, err = 0, "", ""
        for prefix, handler in self.handlers:
            if cmd[: len(prefix)] == prefix:
                r = handler(cmd)
                returncode, out, err = (0, r, "") if isinstance(r, str) else r
                break

        if check and returncode != 0:
            raise subprocess.CalledProcessError(returncode, cmdline)

        return CompletedProcess(
            cmdline,
            returncode,
            out if stdout == subprocess.PIPE else None,
            err if stderr == subprocess.PIPE else None,
        )
