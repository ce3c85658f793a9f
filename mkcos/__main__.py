# SPDX-License-Identifier: LGPL-2.1-or-later

import faulthandler
import logging
import signal
import sys
from types import FrameType
from typing import Optional

from mkcos import run_verb
from mkcos.config import parse_args
from mkcos.log import log_setup
from mkcos.run import uncaught_exception_handler


def onsigterm(signal: int, frame: Optional[FrameType]) -> None:
    raise KeyboardInterrupt()


@uncaught_exception_handler()
def main() -> None:
    signal.signal(signal.SIGTERM, onsigterm)

    log_setup()

    args, config = parse_args(sys.argv[1:])

    if args.debug:
        faulthandler.enable()
        logging.getLogger().setLevel(logging.DEBUG)

    run_verb(args, config)


if __name__ == "__main__":
    main()
