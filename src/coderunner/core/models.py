from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


class FailureKind(str, Enum):
    UNSUPPORTED_LANGUAGE = "UNSUPPORTED_LANGUAGE"
    INVALID_REQUEST = "INVALID_REQUEST"
    COMPILE_FAILED = "COMPILE_FAILED"
    TIMEOUT = "TIMEOUT"
    NON_ZERO_EXIT = "NON_ZERO_EXIT"
    SPAWN_FAILED = "SPAWN_FAILED"
    REJECTED = "REJECTED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class Naming(str, Enum):
    REQUEST_ID = "request_id"    # <id>.<ext>
    ENTRY_POINT = "entry_point"  # <Entry>.<ext>, parsed from the source


@dataclass(frozen=True)
class Limits:
    cpu_seconds: Optional[int] = None
    memory_bytes: Optional[int] = None
    nofile: Optional[int] = None
    nproc: Optional[int] = None

    def is_empty(self) -> bool:
        return all(v is None for v in (self.cpu_seconds, self.memory_bytes, self.nofile, self.nproc))


@dataclass(frozen=True)
class ExecutionRequest:
    language: str
    source: str
    stdin: str = ""


@dataclass(frozen=True)
class LanguageProfile:
    """
    How to build and run one language. Commands are argv templates; the
    placeholders {source}, {artifact}, {workdir} and {entry} are filled in
    per request by plain string replacement.
    """
    id: str
    source_extension: str
    run_command: Tuple[str, ...]
    compile_command: Optional[Tuple[str, ...]] = None
    naming: Naming = Naming.REQUEST_ID
    default_entry: str = "Main"
    secondary_artifacts: Tuple[str, ...] = ()
    aliases: Tuple[str, ...] = ()

    @property
    def has_compile_step(self) -> bool:
        return self.compile_command is not None


@dataclass
class Workspace:
    request_id: str
    directory: Path
    source_path: Path
    entry_name: str
    artifact_path: Optional[Path] = None
    stdin_path: Optional[Path] = None
    created: List[Path] = field(default_factory=list)

    def placeholders(self) -> Dict[str, str]:
        return {
            "{source}": str(self.source_path),
            "{artifact}": str(self.artifact_path or ""),
            "{workdir}": str(self.directory),
            "{entry}": self.entry_name,
        }


@dataclass(frozen=True)
class ProcessOutcome:
    stdout: str
    stderr: str
    returncode: int
    timed_out: bool = False
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    duration_s: float = 0.0

    @property
    def truncated(self) -> bool:
        return self.stdout_truncated or self.stderr_truncated


@dataclass(frozen=True)
class ExecutionResult:
    request_id: str
    language: str
    stdout: str = ""
    stderr: str = ""
    failure_kind: Optional[FailureKind] = None
    exit_code: Optional[int] = None
    truncated: bool = False
    duration_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.failure_kind is None

    def to_envelope(self) -> Dict[str, Any]:
        return {
            "id": self.request_id,
            "language": self.language,
            "output": self.stdout,
            "error": self.stderr,
            "status": self.failure_kind.value if self.failure_kind else "ok",
            "exitCode": self.exit_code,
            "truncated": self.truncated,
        }
