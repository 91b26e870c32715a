# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import logging
import os
import shlex
import shutil
import signal
import subprocess
import sys
from collections.abc import Iterator, Mapping, Sequence
from pathlib import Path
from types import TracebackType
from typing import TYPE_CHECKING, Callable, NoReturn, Optional

from looplab.log import ARG_DEBUG, LooplabError, die
from looplab.util import _FILE, PathString

# These types are only generic during type checking and not at runtime, leading
# to a TypeError during compilation.
# Let's be as strict as we can with the description for the usage we have.
if TYPE_CHECKING:
    CompletedProcess = subprocess.CompletedProcess[str]
    Popen = subprocess.Popen[str]
else:
    CompletedProcess = subprocess.CompletedProcess
    Popen = subprocess.Popen


def ensure_exc_info() -> tuple[type[BaseException], BaseException, TracebackType]:
    exctype, exc, tb = sys.exc_info()
    assert exctype
    assert exc
    assert tb
    return (exctype, exc, tb)


@contextlib.contextmanager
def uncaught_exception_handler(exit: Callable[[int], NoReturn] = sys.exit) -> Iterator[None]:
    rc = 0
    try:
        yield
    except SystemExit as e:
        rc = e.code if isinstance(e.code, int) else 1

        if ARG_DEBUG.get():
            sys.excepthook(*ensure_exc_info())
    except KeyboardInterrupt:
        rc = 130

        if ARG_DEBUG.get():
            sys.excepthook(*ensure_exc_info())
        else:
            logging.error("Interrupted")
    except LooplabError as e:
        # die() and the stages log before raising, so only show a stacktrace when debugging.
        rc = e.exit_code

        if ARG_DEBUG.get():
            sys.excepthook(*ensure_exc_info())
    except subprocess.CalledProcessError as e:
        # We always log when subprocess.CalledProcessError is raised, so we don't log again here.
        rc = e.returncode

        if ARG_DEBUG.get():
            sys.excepthook(*ensure_exc_info())
    except BaseException:
        sys.excepthook(*ensure_exc_info())
        rc = 1
    finally:
        sys.stdout.flush()
        sys.stderr.flush()
        exit(rc)


def log_process_failure(cmdline: Sequence[str], returncode: int) -> None:
    if -returncode in (signal.SIGINT, signal.SIGTERM):
        logging.error(f"Interrupted by {signal.Signals(-returncode).name} signal")
    elif returncode < 0:
        logging.error(f'"{shlex.join(cmdline)}" was killed by {signal.Signals(-returncode).name} signal.')
    elif returncode == 127:
        logging.error(f"{cmdline[0]} not found.")
    else:
        logging.error(f'"{shlex.join(cmdline)}" returned non-zero exit code {returncode}.')


def run(
    cmdline: Sequence[PathString],
    check: bool = True,
    stdout: _FILE = None,
    stderr: _FILE = None,
    env: Mapping[str, str] = {},
    log: bool = True,
) -> CompletedProcess:
    with spawn(cmdline, check=check, stdout=stdout, stderr=stderr, env=env, log=log) as process:
        out, err = process.communicate()

    return CompletedProcess(cmdline, process.returncode, out, err)


@contextlib.contextmanager
def spawn(
    cmdline: Sequence[PathString],
    check: bool = True,
    stdout: _FILE = None,
    stderr: _FILE = None,
    env: Mapping[str, str] = {},
    log: bool = True,
) -> Iterator[Popen]:
    cmd = [os.fspath(x) for x in cmdline]

    # Every privileged step leaves a trace line, loudly when debugging.
    logging.log(logging.INFO if ARG_DEBUG.get() else logging.DEBUG, f"+ {shlex.join(cmd)}")

    if not stdout and not stderr:
        # Unless explicit redirection is done, print all subprocess output on stderr, since we do so as well
        # for our own output.
        stdout = sys.stderr

    env = {
        "PATH": os.environ.get("PATH", "/usr/bin:/usr/sbin:/bin:/sbin"),
        "TERM": os.getenv("TERM", "vt220"),
        "LANG": "C.UTF-8",
        **{k: v for k, v in env.items() if k != "LANG" and not k.startswith("LC_")},
    }

    if "TMPDIR" in os.environ:
        env["TMPDIR"] = os.environ["TMPDIR"]

    if "HOME" not in env:
        env["HOME"] = "/"

    try:
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=stdout,
            stderr=stderr,
            text=True,
            env=env,
        )
    except FileNotFoundError as e:
        die(f"{e.filename} not found.")

    try:
        yield proc
        proc.wait()
    except KeyboardInterrupt:
        proc.send_signal(signal.SIGINT)
        raise
    except BaseException:
        proc.terminate()
        raise
    finally:
        returncode = proc.wait()

    if check and returncode != 0:
        if log:
            log_process_failure(cmd, returncode)
        raise subprocess.CalledProcessError(returncode, cmdline)


def find_binary(*names: PathString, root: Path = Path("/")) -> Optional[Path]:
    path = ":".join(os.fspath(root / s) for s in ("usr/bin", "usr/sbin", "bin", "sbin"))

    for name in names:
        if binary := shutil.which(name, path=path):
            return Path("/") / Path(binary).relative_to(root)

    return None


def chroot_cmd(root: Path) -> list[PathString]:
    return ["chroot", root]
