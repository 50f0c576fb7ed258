from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

from .core.models import Limits


class Settings(BaseSettings):
    # ---- paths ----
    workspace_root: Path = Path("code")

    # ---- per-step budgets (independent) ----
    compile_timeout_ms: int = 10_000
    run_timeout_ms: int = 5_000

    max_output_bytes: int = 64 * 1024

    # ---- admission ----
    max_concurrency: int = 8
    admission_timeout_s: float = 10.0

    # ---- cleanup ----
    cleanup_delay_ms: int = 0
    cleanup_retries: int = 3
    cleanup_retry_delay_ms: int = 500

    # ---- transport ----
    host: str = "0.0.0.0"
    port: int = 8080
    max_payload_bytes: int = 1024 * 1024

    log_level: str = "INFO"

    # ---- merged from YAML ----
    runtimes: Dict[str, str] = {}
    limits: Dict[str, Any] = {}
    languages: Dict[str, Dict[str, Any]] = {}

    # env prefix CRUN_*
    model_config = SettingsConfigDict(env_prefix="CRUN_", extra="ignore")

    def rlimits(self) -> Limits:
        lim = self.limits or {}

        def _opt(key: str):
            v = lim.get(key)
            return int(v) if v is not None else None

        return Limits(
            cpu_seconds=_opt("cpu_seconds"),
            memory_bytes=_opt("memory_bytes"),
            nofile=_opt("nofile"),
            nproc=_opt("nproc"),
        )


_SCALAR_KEYS = (
    "workspace_root", "compile_timeout_ms", "run_timeout_ms", "max_output_bytes",
    "max_concurrency", "admission_timeout_s", "cleanup_delay_ms", "cleanup_retries",
    "cleanup_retry_delay_ms", "host", "port", "max_payload_bytes", "log_level",
)
_TABLE_KEYS = ("runtimes", "limits", "languages")


def load_settings(path: str | os.PathLike | None = None, **overrides: Any) -> Settings:
    # 0) base from CRUN_* env
    s = Settings()

    # 1) conf/runner.yaml (or CODERUNNER_CONF); a missing file is fine
    conf = Path(path or os.environ.get("CODERUNNER_CONF", "conf/runner.yaml"))
    try:
        data = yaml.safe_load(conf.read_text(encoding="utf-8")) or {}
    except FileNotFoundError:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"{conf}: top level must be a mapping")

    update: Dict[str, Any] = {}
    for key in _SCALAR_KEYS:
        if key in data:
            update[key] = data[key]
    for key in _TABLE_KEYS:
        table = data.get(key) or {}
        if not isinstance(table, dict):
            raise ValueError(f"{conf}: '{key}' must be a mapping")
        if table:
            update[key] = table
    update.update(overrides)

    # 2) re-validate so YAML values get the same coercion as env values
    return Settings.model_validate({**s.model_dump(), **update})
