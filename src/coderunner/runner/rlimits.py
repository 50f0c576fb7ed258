from __future__ import annotations
import resource
from typing import Callable, Optional

from ..core.models import Limits


def apply_rlimits(limits: Limits) -> None:
    """
    Process-level limits: CPU time, address space, open files, process count.
    A limit the OS refuses keeps its inherited value.
    """
    pairs = (
        (resource.RLIMIT_CPU, limits.cpu_seconds),
        (resource.RLIMIT_AS, limits.memory_bytes),
        (resource.RLIMIT_NOFILE, limits.nofile),
        (resource.RLIMIT_NPROC, limits.nproc),
    )
    for which, value in pairs:
        if value is None:
            continue
        try:
            resource.setrlimit(which, (value, value))
        except (ValueError, OSError):
            pass


def make_preexec(limits: Limits) -> Optional[Callable[[], None]]:
    if limits.is_empty():
        return None

    def _preexec():
        apply_rlimits(limits)

    return _preexec
