import sys
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import listing
from coderunner.core.models import FailureKind, LanguageProfile
from coderunner.runner.profiles import LanguageProfileRegistry
from coderunner.services.orchestrator import Orchestrator

ECHO = "import sys\nline = sys.stdin.readline()\nprint(line.rstrip('\\n') if line else '<EOF>')\n"


def test_hello(orchestrator, settings):
    res = orchestrator.execute("python", "print('hello world')")
    assert res.ok
    assert res.stdout == "hello world\n"
    assert res.stderr == ""
    assert res.exit_code == 0
    assert res.language == "python"
    assert len(res.request_id) == 32
    assert listing(settings.workspace_root) == set()


def test_stdin_echo(orchestrator):
    res = orchestrator.execute("Python", ECHO, "ping\n")
    assert res.stdout == "ping\n"


def test_empty_stdin_is_eof(orchestrator):
    res = orchestrator.execute("python", ECHO, "")
    assert res.stdout == "<EOF>\n"


def test_stderr_on_success_is_not_a_failure(orchestrator):
    res = orchestrator.execute("python", "import sys\nprint('warn', file=sys.stderr)\nprint('done')")
    assert res.ok
    assert res.stdout == "done\n"
    assert res.stderr == "warn\n"


def test_program_failure_keeps_its_output(orchestrator):
    res = orchestrator.execute("python", "print('partial')\nraise SystemExit(7)")
    assert res.failure_kind is FailureKind.NON_ZERO_EXIT
    assert res.exit_code == 7
    assert res.stdout == "partial\n"


def test_uncaught_exception_is_non_zero_exit(orchestrator):
    res = orchestrator.execute("python", "1 / 0")
    assert res.failure_kind is FailureKind.NON_ZERO_EXIT
    assert "ZeroDivisionError" in res.stderr


def test_infinite_loop_times_out(settings, registry):
    orc = Orchestrator(settings.model_copy(update={"run_timeout_ms": 1000}), registry=registry)
    t0 = time.monotonic()
    res = orc.execute("python", "print('spinning', flush=True)\nwhile True:\n    pass\n")
    elapsed = time.monotonic() - t0
    orc.shutdown()
    assert elapsed < 8
    assert res.failure_kind is FailureKind.TIMEOUT
    assert res.stderr == "Execution timed out after 1000ms"
    assert res.stdout == "spinning\n"
    assert listing(settings.workspace_root) == set()


def test_unsupported_language_writes_nothing(orchestrator, settings):
    before = listing(settings.workspace_root)
    res = orchestrator.execute("brainfuck", "+++")
    assert res.failure_kind is FailureKind.UNSUPPORTED_LANGUAGE
    assert res.stdout == ""
    assert "brainfuck" in res.stderr
    assert listing(settings.workspace_root) == before


@pytest.mark.parametrize("language,source", [("", "print(1)"), ("python", ""), ("python", "   \n")])
def test_invalid_requests(orchestrator, settings, language, source):
    res = orchestrator.execute(language, source)
    assert res.failure_kind is FailureKind.INVALID_REQUEST
    assert listing(settings.workspace_root) == set()


def _registry_with(*profiles):
    return LanguageProfileRegistry(profiles)


def test_compile_failure_skips_run(settings, tmp_path):
    marker = tmp_path / "ran.marker"
    profile = LanguageProfile(
        id="fake",
        source_extension=".src",
        compile_command=(sys.executable, "-c", "import sys; sys.stderr.write('syntax error at 1:1\\n'); sys.exit(1)"),
        run_command=(sys.executable, "-c", f"open({str(marker)!r}, 'w').close()"),
    )
    orc = Orchestrator(settings, registry=_registry_with(profile))
    res = orc.execute("fake", "whatever")
    orc.shutdown()
    assert res.failure_kind is FailureKind.COMPILE_FAILED
    assert res.stdout == ""
    assert res.stderr == "syntax error at 1:1\n"
    assert res.exit_code == 1
    assert not marker.exists()
    assert listing(settings.workspace_root) == set()


def test_compile_then_run(settings):
    # "compile" copies the source to the artifact, "run" executes the artifact
    profile = LanguageProfile(
        id="copy",
        source_extension=".py",
        compile_command=(sys.executable, "-c", "import shutil, sys; shutil.copy(sys.argv[1], sys.argv[2])", "{source}", "{artifact}"),
        run_command=(sys.executable, "{artifact}"),
    )
    orc = Orchestrator(settings, registry=_registry_with(profile))
    res = orc.execute("copy", "print(input())", "via artifact\n")
    orc.shutdown()
    assert res.ok
    assert res.stdout == "via artifact\n"
    assert listing(settings.workspace_root) == set()


def test_compile_timeout(settings):
    profile = LanguageProfile(
        id="slow",
        source_extension=".src",
        compile_command=(sys.executable, "-c", "import time; time.sleep(30)"),
        run_command=(sys.executable, "-c", "print('never')"),
    )
    orc = Orchestrator(settings.model_copy(update={"compile_timeout_ms": 500}), registry=_registry_with(profile))
    res = orc.execute("slow", "x")
    orc.shutdown()
    assert res.failure_kind is FailureKind.COMPILE_FAILED
    assert res.stderr == "Compilation timed out after 500ms"
    assert res.stdout == ""


def test_spawn_failure_is_distinct_from_program_failure(settings, tmp_path):
    reg = LanguageProfileRegistry.default(runtimes={"python3": str(tmp_path / "no-such-python")})
    orc = Orchestrator(settings, registry=reg)
    res = orc.execute("python", "print(1)")
    orc.shutdown()
    assert res.failure_kind is FailureKind.SPAWN_FAILED
    assert "no-such-python" in res.stderr
    assert res.exit_code is None
    assert listing(settings.workspace_root) == set()


def test_internal_fault_still_cleans_up(orchestrator, settings, monkeypatch):
    def boom(spec):
        raise RuntimeError("executor exploded")

    monkeypatch.setattr(orchestrator.exec, "run", boom)
    res = orchestrator.execute("python", "print(1)", "stdin too\n")
    assert res.failure_kind is FailureKind.INTERNAL_ERROR
    assert res.stderr == "Internal error"
    assert listing(settings.workspace_root) == set()


def test_release_happens_exactly_once(orchestrator, monkeypatch):
    calls = []
    real = orchestrator.cleanup.schedule
    monkeypatch.setattr(orchestrator.cleanup, "schedule", lambda ws, p=None: (calls.append(ws.request_id), real(ws, p)))
    orchestrator.execute("python", "print(1)")
    orchestrator.execute("python", "raise SystemExit(2)")
    orchestrator.execute("nope", "print(1)")
    assert len(calls) == 2
    assert len(set(calls)) == 2


def test_rejects_when_saturated(settings, registry):
    orc = Orchestrator(settings.model_copy(update={"max_concurrency": 1, "admission_timeout_s": 0.1}), registry=registry)
    assert orc._slots.acquire(timeout=1)
    try:
        res = orc.execute("python", "print(1)")
    finally:
        orc._slots.release()
    assert res.failure_kind is FailureKind.REJECTED
    assert orc.execute("python", "print(1)").ok
    orc.shutdown()


def test_truncation_is_signalled(settings, registry):
    orc = Orchestrator(settings.model_copy(update={"max_output_bytes": 100}), registry=registry)
    res = orc.execute("python", "print('y' * 5000)")
    orc.shutdown()
    assert res.ok
    assert res.truncated
    assert res.stdout == "y" * 100
    assert res.to_envelope()["truncated"] is True


@pytest.mark.parametrize("identical", [True, False])
def test_concurrent_requests_stay_isolated(orchestrator, settings, identical):
    n = 16
    if identical:
        # same source for all; only stdin tells them apart
        jobs = [("python", ECHO, f"request-{i}\n") for i in range(n)]
    else:
        jobs = [("python", f"import time\ntime.sleep(0.{i % 5})\nprint('request-{i}')\n", "") for i in range(n)]

    with ThreadPoolExecutor(max_workers=n) as pool:
        results = list(pool.map(lambda j: orchestrator.execute(*j), jobs))

    for i, res in enumerate(results):
        assert res.ok, res.stderr
        assert res.stdout == f"request-{i}\n"
    assert len({r.request_id for r in results}) == n
    assert listing(settings.workspace_root) == set()


def test_envelope_shape(orchestrator):
    env = orchestrator.execute("python", "print('x')").to_envelope()
    assert env["output"] == "x\n"
    assert env["error"] == ""
    assert env["status"] == "ok"
    assert set(env) == {"id", "language", "output", "error", "status", "exitCode", "truncated"}


def test_cleanup_scheduling_failure_does_not_escape(orchestrator, monkeypatch):
    def no_threads(ws, profile=None):
        raise RuntimeError("can't start new thread")

    monkeypatch.setattr(orchestrator.cleanup, "schedule", no_threads)
    res = orchestrator.execute("python", "print('still answered')")
    assert res.ok
    assert res.stdout == "still answered\n"
