from __future__ import annotations
import shutil
from pathlib import Path
from typing import List

import structlog

from ..core.models import LanguageProfile, Naming, Workspace
from ..core.utils import extract_entry_point, new_request_id

log = structlog.get_logger()


class WorkspaceManager:
    """
    Per-request artifacts on the filesystem:
      <root>/<request_id>/
        ├─ <request_id>.<ext>   (or <Entry>.<ext> for entry-point profiles)
        ├─ <request_id>.stdin   (only when stdin is non-empty)
        └─ <request_id>         (compiled binary, request-id profiles with a compile step)

    Nothing outside <root>/<request_id>/ is ever written or deleted.
    """

    def __init__(self, root: Path):
        # always an absolute path
        self.root = root if root.is_absolute() else root.resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def allocate(self, profile: LanguageProfile, source: str, stdin: str = "") -> Workspace:
        request_id = new_request_id()
        directory = self.root / request_id
        directory.mkdir()  # exist_ok=False: a collision is a bug, not something to share

        if profile.naming is Naming.ENTRY_POINT:
            entry = extract_entry_point(source, profile.default_entry)
            source_path = directory / f"{entry}{profile.source_extension}"
            artifact_path = None
        else:
            entry = request_id
            source_path = directory / f"{request_id}{profile.source_extension}"
            artifact_path = directory / request_id if profile.has_compile_step else None

        ws = Workspace(
            request_id=request_id,
            directory=directory,
            source_path=source_path,
            entry_name=entry,
            artifact_path=artifact_path,
        )
        try:
            source_path.write_text(source, encoding="utf-8")
            ws.created.append(source_path)
            if artifact_path is not None:
                # produced later by the compiler, tracked now so release() covers it
                ws.created.append(artifact_path)
            if stdin:
                stdin_path = directory / f"{request_id}.stdin"
                stdin_path.write_text(stdin, encoding="utf-8")
                ws.stdin_path = stdin_path
                ws.created.append(stdin_path)
        except OSError:
            self.release(ws, profile)
            raise
        return ws

    def release(self, workspace: Workspace, profile: LanguageProfile | None = None) -> bool:
        """
        Remove every tracked path, then sweep the request directory for the
        profile's secondary artifacts and whatever else the program left there.
        Idempotent. Returns True once the request directory is gone.
        """
        errors: List[str] = []
        for p in workspace.created:
            self._unlink(p, errors)

        directory = workspace.directory
        if directory.parent != self.root:
            # never sweep outside our own namespace
            log.error("cleanup_refused", request_id=workspace.request_id, path=str(directory))
            return False

        if directory.is_dir():
            for pattern in (profile.secondary_artifacts if profile else ()):
                for p in directory.glob(pattern):
                    self._unlink(p, errors)
            for p in directory.iterdir():
                self._unlink(p, errors)
            try:
                directory.rmdir()
            except FileNotFoundError:
                pass
            except OSError as e:
                errors.append(f"{directory}: {e}")

        if errors:
            log.warning("cleanup_failed", request_id=workspace.request_id, errors=errors)
            return False
        log.debug("workspace_released", request_id=workspace.request_id)
        return True

    @staticmethod
    def _unlink(p: Path, errors: List[str]) -> None:
        try:
            if p.is_dir() and not p.is_symlink():
                shutil.rmtree(p)
            else:
                p.unlink(missing_ok=True)
        except FileNotFoundError:
            pass
        except OSError as e:
            errors.append(f"{p}: {e}")
