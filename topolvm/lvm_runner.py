"""Running the lvm command line tool and collecting its output."""

from __future__ import annotations

import contextlib
import io
import json
import logging
import os
import signal
import subprocess
import threading
from collections.abc import Iterator, Sequence
from typing import Any, TextIO

from .errors import LVMError

NSENTER = "/usr/bin/nsenter"
LVM = "/sbin/lvm"

CONTAINERIZED = False
"""When true, lvm is run in the host namespaces through nsenter by default."""

logger = logging.getLogger(__name__)


def wrap_command(cmd: str, args: Sequence[str], containerized: bool) -> list[str]:
    """Build the argument vector, entering the host namespaces when containerized."""
    if containerized:
        return [NSENTER, "-m", "-u", "-i", "-n", "-p", "-t", "1", cmd, *args]
    return [cmd, *args]


def _exit_message(returncode: int) -> str:
    if returncode >= 0:
        return f"exit status {returncode}"
    name = signal.strsignal(-returncode) or str(-returncode)
    return f"signal: {name.lower()}"


@contextlib.contextmanager
def stream_lvm(*args: str, containerized: bool | None = None) -> Iterator[TextIO]:
    """Run an lvm sub-command and yield its standard output as text.

    The command is waited for when the block ends; a non-zero exit raises
    LVMError carrying the command's standard error output.
    """
    use_nsenter = CONTAINERIZED if containerized is None else containerized
    argv = wrap_command(LVM, args, use_nsenter)
    env = dict(os.environ, LC_ALL="C")
    logger.info("invoking command args=%s", argv)
    proc = subprocess.Popen(
        argv,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env=env,
    )
    stderr_chunks: list[bytes] = []

    def _drain_stderr() -> None:
        assert proc.stderr is not None
        stderr_chunks.append(proc.stderr.read())

    reader = threading.Thread(target=_drain_stderr, daemon=True)
    reader.start()
    assert proc.stdout is not None
    stdout = io.TextIOWrapper(proc.stdout, encoding="utf-8", errors="replace")
    try:
        yield stdout
    finally:
        stdout.close()
        reader.join()
        if proc.stderr is not None:
            proc.stderr.close()
        returncode = proc.wait()
    if returncode != 0:
        raise LVMError(
            _exit_message(returncode),
            stderr=b"".join(stderr_chunks),
            returncode=returncode,
        )


def call_lvm(*args: str, containerized: bool | None = None) -> None:
    """Run an lvm sub-command, logging each line it prints."""
    with stream_lvm(*args, containerized=containerized) as out:
        for line in out:
            logger.info("%s", line.strip())


def call_lvm_json(*args: str, containerized: bool | None = None) -> Any:
    """Run an lvm sub-command and decode its standard output as JSON."""
    with stream_lvm(*args, containerized=containerized) as out:
        text = out.read()
    return json.loads(text)