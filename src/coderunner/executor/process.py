from __future__ import annotations
import os
import signal
import subprocess
import threading
import time
from typing import IO, List, Optional

import structlog

from ..core.errors import SpawnFailed
from ..core.models import Limits, ProcessOutcome
from ..runner.rlimits import make_preexec
from .base import ExecSpec

log = structlog.get_logger()

_CHUNK = 64 * 1024
# how long readers may keep draining after the process group is gone
_DRAIN_GRACE_S = 2.0


class _CappedReader(threading.Thread):
    """Drains one pipe, keeping at most `cap` bytes and discarding the rest."""

    def __init__(self, stream: IO[bytes], cap: int):
        super().__init__(daemon=True)
        self.stream = stream
        self.cap = cap
        self.buf = bytearray()
        self.truncated = False

    def run(self):
        try:
            while True:
                chunk = self.stream.read1(_CHUNK) if hasattr(self.stream, "read1") else self.stream.read(_CHUNK)
                if not chunk:
                    break
                room = self.cap - len(self.buf)
                if room > 0:
                    self.buf += chunk[:room]
                if len(chunk) > room:
                    self.truncated = True
        except (OSError, ValueError):
            # pipe closed under us during teardown
            pass
        finally:
            try:
                self.stream.close()
            except OSError:
                pass

    def text(self) -> str:
        data = bytes(self.buf)
        if self.truncated:
            data = _trim_partial_utf8(data)
        return data.decode("utf-8", errors="replace")


def _trim_partial_utf8(data: bytes) -> bytes:
    """Drop a multi-byte UTF-8 sequence cut in half at the end of `data`."""
    # walk back over continuation bytes (10xxxxxx) to the lead byte
    i = len(data) - 1
    while i >= 0 and len(data) - i <= 4 and data[i] & 0xC0 == 0x80:
        i -= 1
    if i < 0:
        return data
    lead = data[i]
    if lead >= 0xF0:
        need = 4
    elif lead >= 0xE0:
        need = 3
    elif lead >= 0xC0:
        need = 2
    else:
        return data
    return data[:i] if len(data) - i < need else data


def _wait_unreaped(pid: int, timeout_s: float) -> bool:
    """
    Wait for exit without reaping, so the pid (and its process group id) stays
    reserved until we have killed the group. Returns False on timeout.
    """
    deadline = time.monotonic() + timeout_s
    delay = 0.0005
    while True:
        if os.waitid(os.P_PID, pid, os.WEXITED | os.WNOHANG | os.WNOWAIT) is not None:
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        delay = min(delay * 2, remaining, 0.05)
        time.sleep(delay)


def _kill_group(pid: int) -> None:
    try:
        os.killpg(pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


class ProcessExecutor:
    """
    Runs exactly one external program per call, without a shell.

    The child gets its own session, so on timeout (and after a normal exit)
    the whole process group is SIGKILLed before run() returns.
    """

    def __init__(self, max_output_bytes: int = 64 * 1024, limits: Optional[Limits] = None):
        self.max_output_bytes = max_output_bytes
        self.limits = limits or Limits()

    def run(self, spec: ExecSpec) -> ProcessOutcome:
        argv: List[str] = list(spec.cmd)
        stdin = open(spec.stdin_path, "rb") if spec.stdin_path else subprocess.DEVNULL
        start = time.monotonic()
        try:
            try:
                proc = subprocess.Popen(
                    argv,
                    stdin=stdin,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    cwd=str(spec.workdir),
                    env={**os.environ, **spec.env},
                    start_new_session=True,
                    preexec_fn=make_preexec(self.limits),
                )
            except (OSError, subprocess.SubprocessError) as e:
                log.warning("spawn_failed", program=argv[0] if argv else None, error=str(e))
                raise SpawnFailed(argv[0] if argv else "<empty>", getattr(e, "strerror", None) or str(e)) from e
        finally:
            if stdin is not subprocess.DEVNULL:
                stdin.close()

        out = _CappedReader(proc.stdout, self.max_output_bytes)
        err = _CappedReader(proc.stderr, self.max_output_bytes)
        out.start()
        err.start()

        try:
            timed_out = not _wait_unreaped(proc.pid, spec.timeout_s)
        finally:
            # also takes down anything the program left running in its group
            _kill_group(proc.pid)
            proc.wait()

        out.join(_DRAIN_GRACE_S)
        err.join(_DRAIN_GRACE_S)

        return ProcessOutcome(
            stdout=out.text(),
            stderr=err.text(),
            returncode=proc.returncode,
            timed_out=timed_out,
            stdout_truncated=out.truncated,
            stderr_truncated=err.truncated,
            duration_s=time.monotonic() - start,
        )
