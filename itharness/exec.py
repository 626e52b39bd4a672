"""Bounded command execution.

Provides:
- run_command: one subprocess with timeout and stdout/stderr capture
- CLIExecutor: runs the product CLI in whatever form it was built
  (fast-jar, plain jar, script or native binary)
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import sys
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Mapping, Optional, Sequence, Tuple, Union

from .config import DEFAULT_CLI_TIMEOUT, QUARKUS_RUN_JAR, HarnessConfig


logger = logging.getLogger(__name__)

# Maximum output to store in result (characters)
MAX_STORED_OUTPUT = 100000

# Terminal settings that keep CLIs from emitting colors and cursor codes
CLI_ENV = {"TERM": "dumb"}
JLINE_DUMB = "-Djline.terminal=dumb"


def utc_now_iso() -> str:
    """Return current UTC time as ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class ExecResult:
    """Result of a subprocess execution."""
    command: str
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    error: Optional[str] = None
    log_path: Optional[Path] = None

    @property
    def success(self) -> bool:
        """Check if command succeeded (exit code 0)."""
        return self.exit_code == 0 and not self.timed_out

    @property
    def combined_output(self) -> str:
        """Combined stdout and stderr."""
        parts = []
        if self.stdout:
            parts.append(self.stdout)
        if self.stderr:
            parts.append(self.stderr)
        return "\n".join(parts)

    def __str__(self) -> str:
        status = "timed out" if self.timed_out else f"exit code {self.exit_code}"
        return f"{self.command!r}: {status} after {self.duration_ms}ms"


def _truncate_output(output: str, max_chars: int = MAX_STORED_OUTPUT) -> str:
    """Truncate output to maximum size."""
    if len(output) <= max_chars:
        return output

    head_size = max_chars // 2
    tail_size = max_chars - head_size - 100

    return (
        output[:head_size] +
        f"\n\n... [output truncated: {len(output)} total characters, "
        f"showing first {head_size} and last {tail_size}] ...\n\n" +
        output[-tail_size:]
    )


def _write_log(log_path: Path, cmd_str: str, cwd: Optional[Path], result: ExecResult) -> None:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("w", encoding="utf-8") as log_file:
        log_file.write(f"# Command: {cmd_str}\n")
        log_file.write(f"# CWD: {cwd or Path.cwd()}\n")
        log_file.write("-" * 60 + "\n")
        if result.stdout:
            log_file.write("# STDOUT:\n")
            log_file.write(result.stdout)
            if not result.stdout.endswith("\n"):
                log_file.write("\n")
        if result.stderr:
            log_file.write("# STDERR:\n")
            log_file.write(result.stderr)
            if not result.stderr.endswith("\n"):
                log_file.write("\n")
        log_file.write("-" * 60 + "\n")
        log_file.write(f"# Ended: {utc_now_iso()}\n")
        log_file.write(f"# Duration: {result.duration_ms}ms\n")
        log_file.write(f"# Exit code: {result.exit_code}\n")
        if result.timed_out:
            log_file.write("# TIMED OUT\n")
        if result.error:
            log_file.write(f"# Error: {result.error}\n")


def run_command(
    command: Union[str, List[str]],
    cwd: Optional[Path] = None,
    timeout: Optional[float] = None,
    env: Optional[Mapping[str, str]] = None,
    log_path: Optional[Path] = None,
) -> ExecResult:
    """Run a command and capture output.

    On timeout the process is killed and a synthetic result is returned
    (exit code -1, timed_out set).

    Args:
        command: Command to run (string or list of args).
        cwd: Working directory.
        timeout: Timeout in seconds (default: DEFAULT_CLI_TIMEOUT).
        env: Environment variables (merged with current env).
        log_path: Path to write combined output to.

    Returns:
        ExecResult with command results.
    """
    if timeout is None:
        timeout = DEFAULT_CLI_TIMEOUT

    if isinstance(command, str):
        cmd_str = command
        command = shlex.split(command)
    else:
        cmd_str = " ".join(shlex.quote(arg) for arg in command)

    run_env = os.environ.copy()
    if env:
        run_env.update(env)

    logger.debug("Executing: %s", cmd_str)
    start_time = time.monotonic()
    stdout_data = ""
    stderr_data = ""
    timed_out = False
    error_msg = None
    exit_code = -1

    try:
        result = subprocess.run(
            command,
            cwd=str(cwd) if cwd else None,
            env=run_env,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        exit_code = result.returncode
        stdout_data = result.stdout or ""
        stderr_data = result.stderr or ""

    except subprocess.TimeoutExpired:
        timed_out = True
        error_msg = f"Command timed out after {timeout:g}s"
        stderr_data = error_msg

    except FileNotFoundError as e:
        error_msg = f"Command not found: {e}"
        exit_code = 127

    except PermissionError as e:
        error_msg = f"Permission denied: {e}"
        exit_code = 126

    except OSError as e:
        error_msg = f"Execution error: {e}"

    duration_ms = int((time.monotonic() - start_time) * 1000)

    exec_result = ExecResult(
        command=cmd_str,
        exit_code=exit_code,
        stdout=_truncate_output(stdout_data),
        stderr=_truncate_output(stderr_data),
        duration_ms=duration_ms,
        timed_out=timed_out,
        error=error_msg,
        log_path=log_path,
    )

    if log_path:
        _write_log(log_path, cmd_str, cwd, exec_result)

    if timed_out:
        logger.warning("%s", error_msg)
    else:
        logger.debug("Exit code %d after %dms", exit_code, duration_ms)

    return exec_result


class CLIExecutor:
    """Runs the product CLI with a bounded timeout.

    The CLI may be a Quarkus fast-jar (quarkus-run.jar, run from its own
    directory), any other .jar, a Python script, or a native executable.
    """

    def __init__(
        self,
        cli_path: Union[str, Path],
        timeout: float = DEFAULT_CLI_TIMEOUT,
        env: Optional[Mapping[str, str]] = None,
        java: str = "java",
    ):
        """Initialize CLI executor.

        Args:
            cli_path: Path to the CLI (or a name resolved through PATH).
            timeout: Per-command timeout in seconds.
            env: Extra environment variables for every invocation.
            java: Java launcher used for jar CLIs.
        """
        self.cli_path = str(cli_path)
        self.timeout = timeout
        self.env = {**CLI_ENV, **(env or {})}
        self.java = java
        self.history: List[ExecResult] = []

    @classmethod
    def from_config(cls, config: HarnessConfig) -> "CLIExecutor":
        return cls(config.cli_path, timeout=config.cli_timeout, java=config.java)

    def build_command(self, args: Sequence[str]) -> Tuple[List[str], Optional[Path]]:
        """Command line and working directory for one invocation."""
        path = Path(self.cli_path)
        if path.suffix == ".jar":
            workdir = path.parent if path.name == QUARKUS_RUN_JAR else None
            target = path.name if workdir is not None else str(path)
            return [self.java, JLINE_DUMB, "-jar", target, *args], workdir
        if path.suffix == ".py":
            return [sys.executable, str(path), *args], None
        return [self.cli_path, *args], None

    def execute(self, *args: str, log_path: Optional[Path] = None) -> ExecResult:
        """Run the CLI with the given arguments."""
        command, workdir = self.build_command(args)
        result = run_command(
            command,
            cwd=workdir,
            timeout=self.timeout,
            env=self.env,
            log_path=log_path,
        )
        self.history.append(result)
        return result

    def is_available(self) -> bool:
        """True if `--version` succeeds or prints anything at all."""
        result = self.execute("--version")
        if result.exit_code in (-1, 126, 127):
            return False
        return result.success or bool(result.combined_output.strip())

    def get_failed_commands(self) -> List[ExecResult]:
        return [r for r in self.history if not r.success]
