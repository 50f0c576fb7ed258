from __future__ import annotations
import threading
from typing import Dict, Optional, Tuple

import structlog

from ..core.models import LanguageProfile, Workspace
from .workspace import WorkspaceManager

log = structlog.get_logger()


class CleanupScheduler:
    """
    Releases finished workspaces. The first attempt runs as soon as the
    executor has confirmed process exit (optionally after `delay_s`); leftovers
    are retried on timer threads. Nothing here ever raises to the caller.
    """

    def __init__(
        self,
        workspaces: WorkspaceManager,
        delay_s: float = 0.0,
        retries: int = 3,
        retry_delay_s: float = 0.5,
    ):
        self.workspaces = workspaces
        self.delay_s = delay_s
        self.retries = retries
        self.retry_delay_s = retry_delay_s
        self._lock = threading.Lock()
        self._pending: Dict[str, Tuple[threading.Timer, Workspace, Optional[LanguageProfile], int]] = {}
        self._closed = False

    def schedule(self, workspace: Workspace, profile: Optional[LanguageProfile] = None) -> None:
        if self.delay_s > 0:
            self._arm(workspace, profile, attempt=0, delay=self.delay_s)
        else:
            self._attempt(workspace, profile, attempt=0)

    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def flush(self) -> None:
        """Run every pending release now, in the calling thread."""
        while True:
            with self._lock:
                if not self._pending:
                    return
                request_id, (timer, ws, profile, attempt) = next(iter(self._pending.items()))
                timer.cancel()
                del self._pending[request_id]
            self._attempt(ws, profile, attempt, rearm=False)

    def shutdown(self) -> None:
        with self._lock:
            self._closed = True
        self.flush()

    # ---------- internals ----------

    def _arm(self, ws: Workspace, profile: Optional[LanguageProfile], attempt: int, delay: float) -> None:
        with self._lock:
            if not self._closed:
                timer = threading.Timer(delay, self._fire, args=(ws.request_id,))
                timer.daemon = True
                self._pending[ws.request_id] = (timer, ws, profile, attempt)
                timer.start()
                return
        # closed: no more timers, do it now
        self._attempt(ws, profile, attempt, rearm=False)

    def _fire(self, request_id: str) -> None:
        with self._lock:
            entry = self._pending.pop(request_id, None)
        if entry is None:
            # already taken by flush()
            return
        _, ws, profile, attempt = entry
        self._attempt(ws, profile, attempt)

    def _attempt(self, ws: Workspace, profile: Optional[LanguageProfile], attempt: int, rearm: bool = True) -> None:
        try:
            done = self.workspaces.release(ws, profile)
        except Exception:
            log.exception("cleanup_failed", request_id=ws.request_id, attempt=attempt)
            done = False
        if done:
            return
        if rearm and attempt < self.retries:
            self._arm(ws, profile, attempt + 1, self.retry_delay_s)
        elif not rearm and attempt < self.retries:
            # flush/shutdown path: retry inline until the budget is spent
            self._attempt(ws, profile, attempt + 1, rearm=False)
        else:
            log.error("cleanup_abandoned", request_id=ws.request_id, path=str(ws.directory), attempts=attempt + 1)
