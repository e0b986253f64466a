from __future__ import annotations

from pathlib import Path

from backlog_orchestrator.runtime.orchestrator.settings import OrchestratorSettings
from backlog_orchestrator.runtime.orchestrator.test_runner import (
    ScopedTestRunner,
    changed_test_files,
    parse_test_output,
    scope_command,
)


def test_changed_test_files_picks_python_and_js_tests() -> None:
    files = ["src/app.py", "tests/test_app.py", "pkg/thing_test.py", "web/button.test.tsx", "web/button.tsx"]
    assert changed_test_files(files) == ["tests/test_app.py", "pkg/thing_test.py", "web/button.test.tsx"]


def test_scope_command_appends_only_matching_runner_files() -> None:
    changed = ["src/app.py", "tests/test_app.py", "web/a.spec.ts"]
    assert scope_command("pytest -q", changed) == "pytest -q tests/test_app.py"
    assert scope_command("npx jest", changed) == "npx jest web/a.spec.ts"
    assert scope_command("npm test", changed) == "npm test"
    assert scope_command("pytest -q", ["src/app.py"]) == "pytest -q"


def test_parse_pytest_summary() -> None:
    output = "....F.\n=========== 1 failed, 5 passed, 2 skipped in 0.52s ===========\n"
    results = parse_test_output(output)
    assert (results.passed, results.failed, results.skipped, results.total) == (5, 1, 2, 8)


def test_parse_jest_summary() -> None:
    output = "Test Suites: 1 failed, 2 passed, 3 total\nTests:       2 failed, 7 passed, 9 total\n"
    results = parse_test_output(output)
    assert (results.passed, results.failed, results.total) == (7, 2, 9)


def test_parse_vitest_summary() -> None:
    output = " Test Files  1 passed (1)\n      Tests  8 passed | 1 skipped (9)\n"
    results = parse_test_output(output)
    assert (results.passed, results.failed, results.skipped) == (8, 0, 1)


def test_runner_without_command_is_empty_pass(tmp_path: Path) -> None:
    results = ScopedTestRunner(OrchestratorSettings()).run(tmp_path, ["tests/test_x.py"])
    assert results.ok
    assert results.command is None


def test_runner_counts_nonzero_exit_without_summary_as_failure(tmp_path: Path) -> None:
    runner = ScopedTestRunner(OrchestratorSettings(test_command="echo broken; exit 3"))
    results = runner.run(tmp_path, [])
    assert results.exit_code == 3
    assert results.failed == 1
    assert "broken" in results.raw_output


def test_runner_parses_successful_output(tmp_path: Path) -> None:
    runner = ScopedTestRunner(OrchestratorSettings(test_command="echo '4 passed in 0.01s'"))
    results = runner.run(tmp_path, [])
    assert results.ok
    assert results.passed == 4


def test_runner_kills_on_timeout(tmp_path: Path) -> None:
    runner = ScopedTestRunner(OrchestratorSettings(test_command="sleep 30", test_timeout_seconds=0.5))
    results = runner.run(tmp_path, [])
    assert results.timed_out
    assert results.failed == 1
