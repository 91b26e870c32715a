# SPDX-License-Identifier: LGPL-2.1-or-later

import contextlib
import contextvars
import logging
import os
import sys
from collections.abc import Iterator
from typing import Any, NoReturn, Optional

# This global should be initialized after parsing arguments
ARG_DEBUG = contextvars.ContextVar("debug", default=False)
# "<arch>:<stage>" tag attached to every log record emitted while a stage runs.
STAGE = contextvars.ContextVar("stage", default="")
LEVEL = 0


class LooplabError(Exception):
    """Base class for failures that abort the build of one architecture."""

    exit_code = 1


class PreconditionViolation(LooplabError):
    """Ambiguous or missing inputs, unknown architecture, malformed layout. Never retried."""

    exit_code = 65


class MountFailed(PreconditionViolation):
    pass


class ResourceExhaustion(LooplabError):
    """No free loop device. The caller may wait and retry."""

    exit_code = 75


class TimingAnomaly(LooplabError):
    """Partition device nodes did not show up within the retry window."""

    exit_code = 69


def die(message: str, *, hint: Optional[str] = None) -> NoReturn:
    logging.error(f"{message}")
    if hint:
        logging.info(f"({hint})")
    raise PreconditionViolation(message)


def terminal_is_dumb() -> bool:
    return not sys.stdout.isatty() or not sys.stderr.isatty() or os.getenv("TERM", "") == "dumb"


class Style:
    # fmt: off
    bold: str   = "\033[0;1;39m"     if not terminal_is_dumb() else ""
    blue: str   = "\033[0;1;34m"     if not terminal_is_dumb() else ""
    gray: str   = "\033[0;38;5;245m" if not terminal_is_dumb() else ""
    red: str    = "\033[31;1m"       if not terminal_is_dumb() else ""
    yellow: str = "\033[33;1m"       if not terminal_is_dumb() else ""
    reset: str  = "\033[0m"          if not terminal_is_dumb() else ""
    # fmt: on


def log_step(text: str) -> None:
    prefix = " " * LEVEL

    if sys.exc_info()[0]:
        # We are falling through exception handling blocks.
        # De-emphasize this step here, so the user can tell more
        # easily which step generated the exception. The exception
        # or error will only be printed after we finish cleanup.
        logging.info(f"{prefix}({text})")
    else:
        logging.info(f"{prefix}{Style.bold}{text}{Style.reset}")


def log_notice(text: str) -> None:
    logging.info(f"{Style.bold}{text}{Style.reset}")


@contextlib.contextmanager
def complete_step(text: str, text2: Optional[str] = None) -> Iterator[list[Any]]:
    global LEVEL

    log_step(text)

    LEVEL += 1
    try:
        args: list[Any] = []
        yield args
    finally:
        LEVEL -= 1
        assert LEVEL >= 0

    if text2 is not None:
        log_step(text2.format(*args))


@contextlib.contextmanager
def log_stage(arch: object, stage: str) -> Iterator[None]:
    token = STAGE.set(f"{arch}:{stage}")
    try:
        yield
    finally:
        STAGE.reset(token)


class StageFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        stage = STAGE.get()
        record.stage = f"[{stage}] " if stage else ""
        return True


class Formatter(logging.Formatter):
    def __init__(self, fmt: Optional[str] = None, *args: Any, **kwargs: Any) -> None:
        fmt = fmt or "%(asctime)s %(stage)s%(message)s"
        datefmt = "%H:%M:%S"

        self.formatters = {
            logging.DEBUG:    logging.Formatter(f"‣ {Style.gray}{fmt}{Style.reset}", datefmt),
            logging.INFO:     logging.Formatter(f"‣ {fmt}", datefmt),
            logging.WARNING:  logging.Formatter(f"‣ {Style.yellow}{fmt}{Style.reset}", datefmt),
            logging.ERROR:    logging.Formatter(f"‣ {Style.red}{fmt}{Style.reset}", datefmt),
            logging.CRITICAL: logging.Formatter(f"‣ {Style.red}{Style.bold}{fmt}{Style.reset}", datefmt),
        }  # fmt: skip

        super().__init__(fmt, datefmt, *args, **kwargs)

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "stage"):
            record.stage = ""
        return self.formatters[record.levelno].format(record)


def log_setup(default_log_level: str = "info") -> None:
    handler = logging.StreamHandler(stream=sys.stderr)
    handler.setFormatter(Formatter())
    handler.addFilter(StageFilter())

    logging.getLogger().addHandler(handler)
    logging.getLogger().setLevel(
        logging.getLevelName(os.getenv("LOOPLAB_LOG_LEVEL", default_log_level).upper())
    )
