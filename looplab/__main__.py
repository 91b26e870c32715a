# SPDX-License-Identifier: LGPL-2.1-or-later

import faulthandler
import logging
import os
import signal
import sys
from types import FrameType
from typing import Optional

from looplab import exit_code, run_verb
from looplab.config import parse_config
from looplab.log import ARG_DEBUG, log_setup
from looplab.run import uncaught_exception_handler
from looplab.util import try_parse_boolean


def onsigterm(signal: int, frame: Optional[FrameType]) -> None:
    raise KeyboardInterrupt()


def running_in_ci() -> bool:
    return any(try_parse_boolean(os.getenv(v, "")) for v in ("GITHUB_ACTIONS", "CI"))


@uncaught_exception_handler()
def main() -> None:
    signal.signal(signal.SIGTERM, onsigterm)

    log_setup()

    verb, targets, config = parse_config(sys.argv[1:], ci=running_in_ci())

    if config.debug:
        ARG_DEBUG.set(True)
        logging.getLogger().setLevel(logging.DEBUG)
        faulthandler.enable()

    sys.exit(exit_code(run_verb(verb, targets, config)))


if __name__ == "__main__":
    main()
