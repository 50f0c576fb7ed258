from __future__ import annotations
import threading
import time
from typing import Optional

import structlog

from ..core.errors import InvalidRequest, SpawnFailed, UnsupportedLanguage
from ..core.utils import new_request_id
from ..core.models import (
    ExecutionRequest,
    ExecutionResult,
    FailureKind,
    LanguageProfile,
    ProcessOutcome,
    Workspace,
)
from ..executor.base import ExecSpec
from ..executor.process import ProcessExecutor
from ..runner.profiles import LanguageProfileRegistry, render
from ..settings import Settings
from .cleanup import CleanupScheduler
from .workspace import WorkspaceManager

log = structlog.get_logger()


class Orchestrator:
    """
    Per request: admit -> resolve -> stage -> compile (optional) -> run -> finalize.
    execute() never raises; every outcome is an ExecutionResult.
    """

    def __init__(
        self,
        settings: Settings,
        registry: Optional[LanguageProfileRegistry] = None,
        workspaces: Optional[WorkspaceManager] = None,
        executor: Optional[ProcessExecutor] = None,
        cleanup: Optional[CleanupScheduler] = None,
    ):
        self.s = settings
        self.registry = registry or LanguageProfileRegistry.default(
            runtimes=settings.runtimes, extra=settings.languages
        )
        self.workspaces = workspaces or WorkspaceManager(settings.workspace_root)
        self.exec = executor or ProcessExecutor(
            max_output_bytes=settings.max_output_bytes, limits=settings.rlimits()
        )
        self.cleanup = cleanup or CleanupScheduler(
            self.workspaces,
            delay_s=settings.cleanup_delay_ms / 1000,
            retries=settings.cleanup_retries,
            retry_delay_s=settings.cleanup_retry_delay_ms / 1000,
        )
        self._slots = threading.BoundedSemaphore(max(1, settings.max_concurrency))

    def execute(self, language: str, source: str, stdin: str = "") -> ExecutionResult:
        req = ExecutionRequest(language=language or "", source=source or "", stdin=stdin or "")
        if not self._slots.acquire(timeout=self.s.admission_timeout_s):
            request_id = new_request_id()
            log.warning("execution_rejected", request_id=request_id, language=req.language)
            return ExecutionResult(
                request_id=request_id,
                language=req.language,
                stderr="Server is busy, try again later",
                failure_kind=FailureKind.REJECTED,
            )
        try:
            return self._execute(req)
        finally:
            self._slots.release()

    def shutdown(self) -> None:
        self.cleanup.shutdown()

    # ---------- pipeline ----------

    def _execute(self, req: ExecutionRequest) -> ExecutionResult:
        started = time.monotonic()
        # no workspace yet; the id is only for the envelope and the logs
        request_id = new_request_id()
        profile: Optional[LanguageProfile] = None
        ws: Optional[Workspace] = None
        try:
            try:
                profile = self._resolve(req)
            except UnsupportedLanguage as e:
                return self._fail(request_id, req, FailureKind.UNSUPPORTED_LANGUAGE, str(e), started)
            except InvalidRequest as e:
                return self._fail(request_id, req, FailureKind.INVALID_REQUEST, str(e), started)

            ws = self.workspaces.allocate(profile, req.source, req.stdin)
            request_id = ws.request_id
            log.info("execution_started", request_id=request_id, language=profile.id)

            result = self._compile_and_run(req, profile, ws, started)
            log.info(
                "execution_finished",
                request_id=request_id,
                language=profile.id,
                status=result.failure_kind.value if result.failure_kind else "ok",
                exit_code=result.exit_code,
                duration_s=round(result.duration_s, 4),
            )
            return result
        except Exception:
            log.exception("internal_error", request_id=request_id, language=req.language)
            return self._fail(request_id, req, FailureKind.INTERNAL_ERROR, "Internal error", started)
        finally:
            if ws is not None:
                try:
                    self.cleanup.schedule(ws, profile)
                except Exception:
                    log.exception("cleanup_failed", request_id=ws.request_id)

    def _resolve(self, req: ExecutionRequest) -> LanguageProfile:
        if not req.language.strip():
            raise InvalidRequest("Language is required")
        profile = self.registry.resolve(req.language)
        if not req.source.strip():
            raise InvalidRequest("Source code is required")
        return profile

    def _compile_and_run(
        self, req: ExecutionRequest, profile: LanguageProfile, ws: Workspace, started: float
    ) -> ExecutionResult:
        if profile.has_compile_step:
            timeout_ms = self.s.compile_timeout_ms
            try:
                compiled = self._step(ws, render(profile.compile_command, ws), timeout_ms, with_stdin=False)
            except SpawnFailed as e:
                return self._fail(ws.request_id, req, FailureKind.SPAWN_FAILED, str(e), started)
            if compiled.timed_out:
                log.warning("step_timeout", request_id=ws.request_id, step="compile", timeout_ms=timeout_ms)
                return self._fail(
                    ws.request_id, req, FailureKind.COMPILE_FAILED,
                    f"Compilation timed out after {timeout_ms}ms", started,
                )
            if compiled.returncode != 0:
                message = compiled.stderr or compiled.stdout or f"Compilation failed with exit code {compiled.returncode}"
                return self._fail(
                    ws.request_id, req, FailureKind.COMPILE_FAILED, message, started,
                    exit_code=compiled.returncode, truncated=compiled.truncated,
                )

        timeout_ms = self.s.run_timeout_ms
        try:
            ran = self._step(ws, render(profile.run_command, ws), timeout_ms, with_stdin=True)
        except SpawnFailed as e:
            return self._fail(ws.request_id, req, FailureKind.SPAWN_FAILED, str(e), started)

        if ran.timed_out:
            log.warning("step_timeout", request_id=ws.request_id, step="run", timeout_ms=timeout_ms)
            return ExecutionResult(
                request_id=ws.request_id,
                language=req.language,
                stdout=ran.stdout,
                stderr=f"Execution timed out after {timeout_ms}ms",
                failure_kind=FailureKind.TIMEOUT,
                truncated=ran.truncated,
                duration_s=time.monotonic() - started,
            )
        return ExecutionResult(
            request_id=ws.request_id,
            language=req.language,
            stdout=ran.stdout,
            stderr=ran.stderr,
            failure_kind=None if ran.returncode == 0 else FailureKind.NON_ZERO_EXIT,
            exit_code=ran.returncode,
            truncated=ran.truncated,
            duration_s=time.monotonic() - started,
        )

    def _step(self, ws: Workspace, argv, timeout_ms: int, with_stdin: bool) -> ProcessOutcome:
        spec = ExecSpec(
            cmd=argv,
            workdir=ws.directory,
            timeout_s=timeout_ms / 1000,
            stdin_path=ws.stdin_path if with_stdin else None,
        )
        return self.exec.run(spec)

    @staticmethod
    def _fail(
        request_id: str,
        req: ExecutionRequest,
        kind: FailureKind,
        message: str,
        started: float,
        exit_code: Optional[int] = None,
        truncated: bool = False,
    ) -> ExecutionResult:
        return ExecutionResult(
            request_id=request_id,
            language=req.language,
            stderr=message,
            failure_kind=kind,
            exit_code=exit_code,
            truncated=truncated,
            duration_s=time.monotonic() - started,
        )
