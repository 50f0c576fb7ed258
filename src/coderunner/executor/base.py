from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional


@dataclass
class ExecSpec:
    cmd: List[str]
    workdir: Path
    timeout_s: float
    env: Dict[str, str] = field(default_factory=dict)
    stdin_path: Optional[Path] = None
