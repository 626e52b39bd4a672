"""Process lifecycle management.

A ProcessHandle owns exactly one spawned OS process and drives it through

    STOPPED -> STARTING -> RUNNING -> STOPPING -> STOPPED

Everything process-specific (command line, environment, readiness check,
log naming) lives in a data-only LaunchSpec, so the same handle type runs
the router, the identity provider and capability workers, and can be unit
tested with a fake health check.

Provides:
- Artifact validation before spawning
- stdout/stderr redirected to a per-process log file
- Health check with a configured timeout
- Graceful shutdown (SIGTERM to the process group), then SIGKILL
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import IO, Callable, Dict, Mapping, Optional, Sequence

from .config import DEFAULT_GRACE_PERIOD, DEFAULT_KILL_WAIT, DEFAULT_TIMEOUT
from .health import HealthCheck, wait_until
from .timeline import TimelineLogger


logger = logging.getLogger(__name__)

_POSIX = sys.platform != "win32"
GROUP_POLL_INTERVAL = 0.05


class ProcessState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class IllegalStateError(RuntimeError):
    """Raised when an operation is invoked from a state that forbids it."""


class StartupFailure(RuntimeError):
    """Raised when a process could not be brought to RUNNING.

    Attributes:
        log_path: The process log file, or None if none was created.
    """

    def __init__(self, message: str, log_path: Optional[Path] = None):
        super().__init__(message)
        self.log_path = log_path


@dataclass(frozen=True)
class LogContext:
    """Where a process log file belongs.

    With profile, test class and test method all known the log goes into
    the hierarchical layout; otherwise the flat fallback is used.
    """
    profile: Optional[str] = None
    test_class: Optional[str] = None
    test_method: Optional[str] = None
    test_name: Optional[str] = None

    @property
    def hierarchical(self) -> bool:
        return None not in (self.profile, self.test_class, self.test_method)


LogFileFactory = Callable[[LogContext], Path]


@dataclass(frozen=True, eq=False)
class LaunchSpec:
    """Everything needed to launch and health-check one process."""
    name: str
    artifact: Path
    command: Sequence[str]
    health_check: HealthCheck
    log_file: LogFileFactory
    cwd: Optional[Path] = None
    env: Mapping[str, str] = field(default_factory=dict)
    startup_timeout: float = DEFAULT_TIMEOUT


class ProcessHandle:
    """Owns one spawned process and its start/stop state machine."""

    def __init__(
        self,
        spec: LaunchSpec,
        grace_period: float = DEFAULT_GRACE_PERIOD,
        kill_wait: float = DEFAULT_KILL_WAIT,
        timeline: Optional[TimelineLogger] = None,
    ):
        """Initialize process handle.

        Args:
            spec: Launch specification.
            grace_period: Seconds to wait after SIGTERM before SIGKILL.
            kill_wait: Seconds to wait after SIGKILL.
            timeline: Optional timeline logger for lifecycle events.
        """
        self.spec = spec
        self.grace_period = grace_period
        self.kill_wait = kill_wait
        self.timeline = timeline

        self.state = ProcessState.STOPPED
        self.log_path: Optional[Path] = None
        self.returncode: Optional[int] = None
        self._process: Optional[subprocess.Popen] = None
        self._log_handle: Optional[IO[bytes]] = None
        self._log_context = LogContext()

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    def set_log_context(self, profile: str, test_class: str, test_method: str) -> None:
        """Route the next start's output into the hierarchical log layout."""
        self._log_context = LogContext(profile, test_class, test_method)

    def _environment(self) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(self.spec.env)
        return env

    def start(self, test_name: Optional[str] = None) -> None:
        """Spawn the process and wait for it to become healthy.

        Args:
            test_name: Used in the log file name when no hierarchical
                context was set.

        Raises:
            IllegalStateError: If the handle is not STOPPED.
            StartupFailure: If the artifact is missing, the spawn failed, or
                the health check did not pass in time.
        """
        if self.state != ProcessState.STOPPED:
            raise IllegalStateError(
                f"Process is already running: {self.name} (state: {self.state.value})"
            )

        artifact = self.spec.artifact
        if not artifact.exists():
            raise StartupFailure(f"Launch artifact not found for {self.name}: {artifact}")

        started_at = time.monotonic()
        self.returncode = None
        self.log_path = None

        logger.debug("Starting %s", self.name)
        logger.debug("Working directory: %s", self.spec.cwd)
        logger.debug("Command: %s", " ".join(self.spec.command))

        try:
            self.log_path = self.spec.log_file(replace(self._log_context, test_name=test_name))
            log_handle = self.log_path.open("ab")
        except OSError as e:
            if self.timeline:
                self.timeline.process_failed(self.name, str(e), self.log_path)
            raise StartupFailure(f"Cannot open log file for {self.name}: {e}", self.log_path) from e

        try:
            process = subprocess.Popen(
                list(self.spec.command),
                cwd=str(self.spec.cwd) if self.spec.cwd else None,
                env=self._environment(),
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                start_new_session=_POSIX,
            )
        except OSError as e:
            log_handle.close()
            if self.timeline:
                self.timeline.process_failed(self.name, str(e), self.log_path)
            raise StartupFailure(f"Failed to start {self.name}: {e}", self.log_path) from e

        self._process = process
        self._log_handle = log_handle
        self.state = ProcessState.STARTING
        logger.debug("%s started with PID: %d", self.name, process.pid)
        if self.timeline:
            self.timeline.process_start(self.name, process.pid, self.log_path)

        error: Optional[BaseException] = None
        try:
            healthy = self.spec.health_check(self.spec.startup_timeout)
        except Exception as e:
            healthy = False
            error = e

        if healthy and process.poll() is not None:
            # Something else answered the probe; our process is gone.
            healthy = False
            error = RuntimeError(f"exited with code {process.returncode}")

        duration_ms = int((time.monotonic() - started_at) * 1000)

        if healthy:
            self.state = ProcessState.RUNNING
            logger.debug("%s is healthy after %dms", self.name, duration_ms)
            if self.timeline:
                self.timeline.process_ready(self.name, process.pid, duration_ms)
            return

        self._kill()
        message = f"{self.name} failed health check. Check logs: {self.log_path}"
        if error is not None:
            message = f"{message} ({error})"
        if self.timeline:
            self.timeline.process_failed(self.name, message, self.log_path, duration_ms)
        raise StartupFailure(message, self.log_path) from error

    def stop(self) -> None:
        """Stop the process with graceful shutdown.

        Safe to call in any state; ends in STOPPED.
        """
        process = self._process
        if process is None:
            self._release()
            return
        if process.poll() is not None:
            # Leader already gone; its group may not be.
            self._kill_group()
            self._release()
            return

        self.state = ProcessState.STOPPING
        logger.debug("Stopping %s", self.name)
        forced = False
        deadline = time.monotonic() + self.grace_period

        try:
            self._signal(signal.SIGTERM)
            try:
                process.wait(timeout=self.grace_period)
            except subprocess.TimeoutExpired:
                logger.warning("%s did not stop gracefully, forcing shutdown", self.name)
                forced = True
                self._signal(signal.SIGKILL if _POSIX else signal.SIGTERM)
                try:
                    process.wait(timeout=self.kill_wait)
                except subprocess.TimeoutExpired:
                    logger.error("%s (pid %d) still alive after SIGKILL", self.name, process.pid)
            if not forced and not wait_until(self._group_gone, deadline, GROUP_POLL_INTERVAL):
                logger.warning("%s left processes behind, killing its process group", self.name)
                forced = True
            self._kill_group()
            logger.debug("%s stopped", self.name)
        finally:
            if self.timeline:
                self.timeline.process_stop(self.name, process.pid, process.poll(), forced=forced)
            self._release()

    def is_running(self) -> bool:
        """True only when RUNNING and the OS process is alive."""
        return (
            self.state == ProcessState.RUNNING
            and self._process is not None
            and self._process.poll() is None
        )

    def _signal(self, sig: int) -> None:
        process = self._process
        if process is None:
            return
        try:
            if _POSIX:
                # Own session, so the group id is the pid.
                os.killpg(process.pid, sig)
            elif sig == signal.SIGTERM:
                process.terminate()
            else:
                process.kill()
        except (ProcessLookupError, PermissionError):
            # Group already gone; the leader may still need reaping.
            if process.poll() is None:
                process.send_signal(sig)

    def _group_gone(self) -> bool:
        process = self._process
        if not _POSIX or process is None:
            return True
        try:
            os.killpg(process.pid, 0)
        except ProcessLookupError:
            return True
        except PermissionError:
            return False
        return False

    def _kill_group(self) -> None:
        """SIGKILL whatever is left in the process group.

        The group id outlives the leader while any member is alive, so this
        also reaches children the leader left behind.
        """
        process = self._process
        if not _POSIX or process is None:
            return
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass

    def _kill(self) -> None:
        process = self._process
        if process is not None and process.poll() is None:
            self._signal(signal.SIGKILL if _POSIX else signal.SIGTERM)
            try:
                process.wait(timeout=self.kill_wait)
            except subprocess.TimeoutExpired:
                logger.error("%s (pid %d) still alive after SIGKILL", self.name, process.pid)
        self._kill_group()
        self._release()

    def _release(self) -> None:
        if self._process is not None:
            self.returncode = self._process.poll()
        if self._log_handle is not None:
            self._log_handle.close()
            self._log_handle = None
        self._process = None
        self.state = ProcessState.STOPPED

    def __enter__(self) -> "ProcessHandle":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def __repr__(self) -> str:
        return f"ProcessHandle(name={self.name!r}, state={self.state.value}, pid={self.pid})"
