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
from typing import IO, TYPE_CHECKING, Any, Callable, NoReturn, Optional, Union

from mkcos.errors import MkcosError
from mkcos.log import ARG_DEBUG

# docker export and the mkimage containers speak tar on their standard streams, so
# processes are always run in binary mode.
if TYPE_CHECKING:
    CompletedProcess = subprocess.CompletedProcess[bytes]
else:
    CompletedProcess = subprocess.CompletedProcess

Redirect = Union[None, int, IO[Any]]
Command = Sequence[Union[Path, str]]


def print_traceback() -> None:
    sys.excepthook(*sys.exc_info())  # type: ignore


@contextlib.contextmanager
def uncaught_exception_handler(exit: Callable[[int], NoReturn] = sys.exit) -> Iterator[None]:
    """Turn whatever ends the program into an exit status, logging it on the way out."""
    rc = 0
    try:
        yield
    except SystemExit as e:
        rc = e.code if isinstance(e.code, int) else 1
        if ARG_DEBUG.get():
            print_traceback()
    except KeyboardInterrupt:
        rc = 1
        if ARG_DEBUG.get():
            print_traceback()
        else:
            logging.error("Interrupted")
    except MkcosError as e:
        rc = 1
        if ARG_DEBUG.get():
            print_traceback()
        else:
            logging.error(str(e))
            # Failed commands were already logged by run().
            if e.__cause__ is not None and not isinstance(e.__cause__, subprocess.CalledProcessError):
                logging.info(f"({e.__cause__})")
    except subprocess.CalledProcessError as e:
        rc = e.returncode
        if ARG_DEBUG.get():
            print_traceback()
    except BaseException:
        rc = 1
        print_traceback()
    finally:
        sys.stdout.flush()
        sys.stderr.flush()
        exit(rc)


def log_process_failure(cmdline: Sequence[str], returncode: int, stderr: Optional[bytes] = None) -> None:
    cmd = shlex.join(cmdline)

    if returncode < 0:
        sig = signal.Signals(-returncode)
        if sig in (signal.SIGINT, signal.SIGTERM):
            logging.error(f"Interrupted by {sig.name} signal")
        else:
            logging.error(f'"{cmd}" was killed by {sig.name} signal.')
    elif returncode == 127:
        logging.error(f"{cmdline[0]} not found.")
    else:
        logging.error(f'"{cmd}" returned non-zero exit code {returncode}.')

    # docker reports why a pull or create failed on stderr.
    for line in (stderr or b"").decode(errors="replace").splitlines():
        logging.info(f"  {line}")


def process_env(env: Mapping[str, str]) -> dict[str, str]:
    # The docker client is configured through its environment (DOCKER_HOST, DOCKER_CONTENT_TRUST_SERVER,
    # SSH_AUTH_SOCK for ssh:// hosts, ...), so everything is passed on and env only adds to it.
    result = {**os.environ, **env}
    result.setdefault("HOME", "/")
    return result


def run(
    cmdline: Command,
    check: bool = True,
    stdin: Redirect = None,
    stdout: Redirect = None,
    stderr: Redirect = None,
    input: Optional[bytes] = None,
    env: Mapping[str, str] = {},
    log: bool = True,
) -> CompletedProcess:
    cmd = [os.fspath(x) for x in cmdline]

    if ARG_DEBUG.get():
        logging.info(f"+ {shlex.join(cmd)}")

    if input is not None:
        assert stdin is None  # stdin and input cannot be specified together
        stdin = subprocess.PIPE
    elif stdin is None:
        stdin = subprocess.DEVNULL

    # Output that isn't captured goes to stderr along with our own.
    if stdout is None and stderr is None:
        stdout = sys.stderr

    try:
        proc = subprocess.Popen(cmd, stdin=stdin, stdout=stdout, stderr=stderr, env=process_env(env))
    except FileNotFoundError as e:
        logging.error(f"{e.filename} not found.")
        raise

    try:
        out, err = proc.communicate(input)
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
            log_process_failure(cmd, returncode, err)
        raise subprocess.CalledProcessError(returncode, cmd, out, err)

    return CompletedProcess(cmd, returncode, out, err)


def find_binary(*names: Union[Path, str]) -> Optional[str]:
    for name in names:
        if binary := shutil.which(os.fspath(name)):
            return binary

    return None
