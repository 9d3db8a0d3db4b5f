from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

OUTPUT_TAIL_CHARS = 4000
ESLINT_CONFIGS = (".eslintrc.js", ".eslintrc.json", "eslint.config.js")


@dataclass(slots=True, frozen=True)
class Gate:
    name: str
    command: tuple[str, ...]
    required: bool = True


@dataclass(slots=True)
class GateResult:
    gate: Gate
    passed: bool
    output: str = ""
    error: str | None = None
    exit_code: int | None = None
    duration_seconds: float = 0.0


def _package_scripts(path: Path) -> dict[str, str] | None:
    package_json = path / "package.json"
    if not package_json.is_file():
        return None
    try:
        payload = json.loads(package_json.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Ignoring unreadable %s: %s", package_json, exc)
        return {}
    scripts = payload.get("scripts") if isinstance(payload, dict) else None
    return scripts if isinstance(scripts, dict) else {}


def detect_gates(path: Path) -> list[Gate]:
    """Derive the ordered verification gates for a checkout from its build files."""
    gates: list[Gate] = []

    def has(name: str) -> bool:
        return any(gate.name == name for gate in gates)

    scripts = _package_scripts(path)
    if scripts is not None:
        if scripts.get("lint"):
            gates.append(Gate("Linting", ("npm", "run", "lint")))
        elif any((path / name).exists() for name in ESLINT_CONFIGS):
            gates.append(Gate("Linting", ("npx", "eslint", ".")))
        if scripts.get("type-check"):
            gates.append(Gate("Type Checking", ("npm", "run", "type-check")))
        elif (path / "tsconfig.json").exists():
            gates.append(Gate("Type Checking", ("npx", "tsc", "--noEmit")))
        if scripts.get("build"):
            gates.append(Gate("Build", ("npm", "run", "build")))
        if scripts.get("test"):
            gates.append(Gate("Tests", ("npm", "test")))
        if scripts.get("format"):
            gates.append(Gate("Formatting", ("npm", "run", "format"), required=False))

    makefile = path / "Makefile"
    if makefile.is_file():
        text = makefile.read_text(encoding="utf-8", errors="replace")
        for target, name in (("lint", "Linting"), ("test", "Tests"), ("build", "Build")):
            if f"{target}:" in text and not has(name):
                gates.append(Gate(name, ("make", target)))

    if (path / "pyproject.toml").exists() or (path / "setup.py").exists():
        if not has("Tests"):
            gates.append(Gate("Tests", ("pytest",)))

    if (path / "Cargo.toml").exists():
        gates.append(Gate("Linting", ("cargo", "clippy")))
        gates.append(Gate("Build", ("cargo", "build")))
        gates.append(Gate("Tests", ("cargo", "test")))

    return gates


class VerificationRunner:
    def __init__(self, timeout_seconds: float = 300.0) -> None:
        self.timeout_seconds = timeout_seconds

    def detect(self, path: Path) -> list[Gate]:
        return detect_gates(path)

    async def run_gate(self, path: Path, gate: Gate) -> GateResult:
        logger.info("Running gate %s: %s", gate.name, " ".join(gate.command))
        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *gate.command,
                cwd=str(path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.warning("Gate %s could not start: %s", gate.name, exc)
            return GateResult(gate=gate, passed=False, error=str(exc))

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout_seconds
            )
        except TimeoutError:
            process.kill()
            await process.wait()
            logger.warning("Gate %s timed out after %.0fs", gate.name, self.timeout_seconds)
            return GateResult(
                gate=gate,
                passed=False,
                error=f"Timed out after {self.timeout_seconds:.0f}s",
                duration_seconds=time.monotonic() - started,
            )

        output = stdout.decode("utf-8", errors="replace").strip()[-OUTPUT_TAIL_CHARS:]
        error_output = stderr.decode("utf-8", errors="replace").strip()[-OUTPUT_TAIL_CHARS:]
        passed = process.returncode == 0
        if passed:
            logger.info("Gate %s passed", gate.name)
        else:
            logger.warning("Gate %s failed with exit code %s", gate.name, process.returncode)
        return GateResult(
            gate=gate,
            passed=passed,
            output=output,
            error=None if passed else (error_output or f"exit code {process.returncode}"),
            exit_code=process.returncode,
            duration_seconds=time.monotonic() - started,
        )

    async def run_gates(self, path: Path, gates: Sequence[Gate]) -> list[GateResult]:
        """Run gates in order, stopping after the first required failure."""
        results: list[GateResult] = []
        for gate in gates:
            result = await self.run_gate(path, gate)
            results.append(result)
            if not result.passed and gate.required:
                logger.warning("Required gate %s failed, skipping the rest", gate.name)
                break
        return results

    async def run_all(self, path: Path) -> list[GateResult]:
        return await self.run_gates(path, self.detect(path))

    def all_required_passed(self, path: Path, results: Sequence[GateResult]) -> bool:
        required = {gate.name for gate in self.detect(path) if gate.required}
        for name in required:
            outcomes = [result.passed for result in results if result.gate.name == name]
            if not outcomes or not all(outcomes):
                return False
        return True


def summarize(results: Sequence[GateResult]) -> str:
    return "\n".join(
        f"- {'PASS' if result.passed else 'FAIL'} {result.gate.name}" for result in results
    )
