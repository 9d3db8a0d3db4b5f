import asyncio
import json
import sys
from pathlib import Path

from conductor.tracker.comments import render_verification_comment
from conductor.verification import (
    Gate,
    GateResult,
    VerificationRunner,
    detect_gates,
    summarize,
)


def _python_gate(name: str, code: str, *, required: bool = True) -> Gate:
    return Gate(name, (sys.executable, "-c", code), required=required)


def test_detects_package_json_scripts_in_order(tmp_path: Path) -> None:
    (tmp_path / "package.json").write_text(
        json.dumps(
            {
                "scripts": {
                    "test": "vitest",
                    "build": "tsc",
                    "lint": "eslint .",
                    "format": "prettier --check .",
                }
            }
        ),
        encoding="utf-8",
    )
    (tmp_path / "tsconfig.json").write_text("{}", encoding="utf-8")

    gates = detect_gates(tmp_path)

    assert [gate.name for gate in gates] == [
        "Linting",
        "Type Checking",
        "Build",
        "Tests",
        "Formatting",
    ]
    assert gates[1].command == ("npx", "tsc", "--noEmit")
    assert gates[-1].required is False


def test_makefile_fills_missing_gates_only(tmp_path: Path) -> None:
    (tmp_path / "package.json").write_text(
        json.dumps({"scripts": {"test": "jest"}}), encoding="utf-8"
    )
    (tmp_path / "Makefile").write_text("lint:\n\truff .\ntest:\n\tpytest\n", encoding="utf-8")

    gates = detect_gates(tmp_path)

    assert [(gate.name, gate.command) for gate in gates] == [
        ("Tests", ("npm", "test")),
        ("Linting", ("make", "lint")),
    ]


def test_python_and_rust_projects(tmp_path: Path) -> None:
    python_project = tmp_path / "py"
    python_project.mkdir()
    (python_project / "pyproject.toml").write_text("[project]\nname='x'\n", encoding="utf-8")
    rust_project = tmp_path / "rs"
    rust_project.mkdir()
    (rust_project / "Cargo.toml").write_text("[package]\nname='x'\n", encoding="utf-8")

    assert [gate.command for gate in detect_gates(python_project)] == [("pytest",)]
    assert [gate.name for gate in detect_gates(rust_project)] == ["Linting", "Build", "Tests"]
    assert detect_gates(tmp_path) == []


def test_run_gates_stops_after_first_required_failure(tmp_path: Path) -> None:
    gates = [
        _python_gate("Formatting", "import sys; sys.exit(1)", required=False),
        _python_gate("Linting", "print('lint ok')"),
        _python_gate("Tests", "import sys; sys.stderr.write('2 failed'); sys.exit(3)"),
        _python_gate("Build", "print('never runs')"),
    ]
    runner = VerificationRunner(timeout_seconds=60)

    results = asyncio.run(runner.run_gates(tmp_path, gates))

    assert [result.gate.name for result in results] == ["Formatting", "Linting", "Tests"]
    assert [result.passed for result in results] == [False, True, False]
    assert results[1].output == "lint ok"
    assert results[2].exit_code == 3
    assert results[2].error == "2 failed"
    assert "FAIL Tests" in summarize(results)


def test_gate_timeout_fails_the_gate(tmp_path: Path) -> None:
    runner = VerificationRunner(timeout_seconds=0.5)
    gate = _python_gate("Tests", "import time; time.sleep(30)")

    result = asyncio.run(runner.run_gate(tmp_path, gate))

    assert result.passed is False
    assert result.error is not None and "Timed out" in result.error


def test_missing_tool_is_a_failed_gate(tmp_path: Path) -> None:
    runner = VerificationRunner()
    gate = Gate("Build", ("definitely-not-a-real-binary-xyz",))

    result = asyncio.run(runner.run_gate(tmp_path, gate))

    assert result.passed is False
    assert result.error


def test_all_required_passed_recomputes_gates(tmp_path: Path) -> None:
    (tmp_path / "Cargo.toml").write_text("[package]\n", encoding="utf-8")
    runner = VerificationRunner()
    gates = detect_gates(tmp_path)
    all_pass = [GateResult(gate=gate, passed=True) for gate in gates]
    missing_tests = [result for result in all_pass if result.gate.name != "Tests"]
    one_failed = all_pass[:-1] + [GateResult(gate=gates[-1], passed=False, error="boom")]

    assert runner.all_required_passed(tmp_path, all_pass) is True
    assert runner.all_required_passed(tmp_path, missing_tests) is False
    assert runner.all_required_passed(tmp_path, one_failed) is False


def test_verification_comment_lists_failures(tmp_path: Path) -> None:
    gates = [_python_gate("Linting", "print('ok')"), _python_gate("Tests", "raise SystemExit(1)")]
    results = asyncio.run(VerificationRunner().run_gates(tmp_path, gates))

    body = render_verification_comment("ai/issue-1-x", results)

    assert "## Verification report for `ai/issue-1-x`" in body
    assert "**Linting**: pass" in body
    assert "**Tests**: FAIL" in body
    assert "### Tests" in body
