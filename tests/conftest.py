import shutil
import sys
from pathlib import Path

import pytest

from coderunner.runner.profiles import LanguageProfileRegistry
from coderunner.services.orchestrator import Orchestrator
from coderunner.settings import Settings


def listing(root: Path) -> set:
    return {p.relative_to(root) for p in root.rglob("*")} if root.exists() else set()


def needs(*tools):
    missing = [t for t in tools if shutil.which(t) is None]
    return pytest.mark.skipif(bool(missing), reason=f"missing tools: {', '.join(missing)}")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        workspace_root=tmp_path / "code",
        compile_timeout_ms=20_000,
        run_timeout_ms=5_000,
        max_output_bytes=64 * 1024,
        max_concurrency=16,
        admission_timeout_s=30,
        runtimes={"python3": sys.executable},
    )


@pytest.fixture
def registry(settings) -> LanguageProfileRegistry:
    return LanguageProfileRegistry.default(runtimes=settings.runtimes)


@pytest.fixture
def orchestrator(settings, registry):
    orc = Orchestrator(settings, registry=registry)
    yield orc
    orc.shutdown()
