"""Unit tests for the process state machine.

These spawn short-lived Python children; readiness is decided by fake
health checks so no network service is involved.
"""

from __future__ import annotations

import os
import signal
import sys
import time
from dataclasses import replace
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import pytest

from itharness.health import wait_until
from itharness.logs import flat_log_file
from itharness.process import (
    IllegalStateError,
    LaunchSpec,
    LogContext,
    ProcessHandle,
    ProcessState,
    StartupFailure,
)
from itharness.services import default_log_file
from itharness.timeline import EventType, TimelineLogger


PYTHON = Path(sys.executable)
SLEEPER = [sys.executable, "-c", "import time; print('started', flush=True); time.sleep(60)"]

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX-only")


def make_spec(
    log_dir: Path,
    command: Sequence[str] = SLEEPER,
    health_check: Callable[[float], bool] = lambda timeout: True,
    artifact: Path = PYTHON,
    name: str = "proc",
    env: Optional[dict] = None,
    startup_timeout: float = 5.0,
) -> LaunchSpec:
    return LaunchSpec(
        name=name,
        artifact=artifact,
        command=list(command),
        health_check=health_check,
        log_file=lambda context: flat_log_file(log_dir, context.test_name, name),
        env=env or {},
        startup_timeout=startup_timeout,
    )


def log_contains(handle: ProcessHandle, text: str) -> Callable[[float], bool]:
    """Health check that waits for `text` in the handle's log file."""
    def check(timeout: float) -> bool:
        return wait_until(
            lambda: text in handle.log_path.read_text(),
            time.monotonic() + timeout,
            0.05,
        )
    return check


def is_gone(pid: int) -> bool:
    """True if pid no longer exists or is a zombie."""
    try:
        status = Path(f"/proc/{pid}/status").read_text()
    except FileNotFoundError:
        return True
    return "State:\tZ" in status


@pytest.fixture
def handles() -> List[ProcessHandle]:
    """Handles registered here are stopped after the test."""
    created: List[ProcessHandle] = []
    yield created
    for handle in created:
        handle.stop()


# =============================================================================
# State machine
# =============================================================================

class TestStartStop:
    """Test the happy path through the state machine."""

    def test_start_then_stop(self, log_dir: Path, handles):
        handle = ProcessHandle(make_spec(log_dir), grace_period=3, kill_wait=3)
        handles.append(handle)
        assert handle.state == ProcessState.STOPPED

        handle.start("test_start_then_stop")
        assert handle.state == ProcessState.RUNNING
        assert handle.is_running()
        assert handle.pid is not None
        assert handle.log_path.exists()
        assert handle.log_path.name.startswith("test_start_then_stop-proc-")

        handle.stop()
        assert handle.state == ProcessState.STOPPED
        assert not handle.is_running()
        assert handle.pid is None
        assert handle.returncode == -signal.SIGTERM

    def test_health_check_receives_startup_timeout(self, log_dir: Path, handles):
        seen = []

        def health(timeout: float) -> bool:
            seen.append(timeout)
            return True

        handle = ProcessHandle(make_spec(log_dir, health_check=health, startup_timeout=7.5))
        handles.append(handle)
        handle.start()
        assert seen == [7.5]

    def test_state_is_starting_during_health_check(self, log_dir: Path, handles):
        states = []
        handle = ProcessHandle(make_spec(log_dir, health_check=lambda t: states.append(handle.state) or True))
        handles.append(handle)
        handle.start()
        assert states == [ProcessState.STARTING]

    def test_output_goes_to_log_file(self, log_dir: Path, handles):
        handle = ProcessHandle(make_spec(log_dir, health_check=lambda t: log_contains(handle, "started")(t)))
        handles.append(handle)

        handle.start()
        handle.stop()
        assert "started" in handle.log_path.read_text()

    def test_env_is_merged(self, log_dir: Path, handles):
        command = [sys.executable, "-c",
                   "import os, time; print(os.environ['ITH_TEST_VALUE'], os.environ.get('PATH') is not None, flush=True); time.sleep(60)"]
        spec = make_spec(
            log_dir,
            command=command,
            env={"ITH_TEST_VALUE": "injected"},
            health_check=lambda t: log_contains(handle, "injected True")(t),
        )
        handle = ProcessHandle(spec)
        handles.append(handle)

        handle.start()
        assert handle.is_running()

    def test_restart_after_stop(self, log_dir: Path, handles):
        handle = ProcessHandle(make_spec(log_dir))
        handles.append(handle)
        handle.start()
        first_pid = handle.pid
        handle.stop()

        handle.start()
        assert handle.is_running()
        assert handle.pid != first_pid

    def test_context_manager(self, log_dir: Path):
        with ProcessHandle(make_spec(log_dir)) as handle:
            assert handle.is_running()
        assert handle.state == ProcessState.STOPPED

    def test_is_running_false_after_process_dies(self, log_dir: Path, handles):
        handle = ProcessHandle(make_spec(log_dir))
        handles.append(handle)
        handle.start()
        os.kill(handle.pid, signal.SIGKILL)

        assert wait_until(lambda: not handle.is_running(), time.monotonic() + 5, 0.05)
        assert handle.state == ProcessState.RUNNING
        handle.stop()
        assert handle.state == ProcessState.STOPPED


class TestIllegalTransitions:
    """Test operations from states that forbid them."""

    def test_double_start_raises(self, log_dir: Path, handles):
        handle = ProcessHandle(make_spec(log_dir))
        handles.append(handle)
        handle.start()
        pid = handle.pid

        with pytest.raises(IllegalStateError, match="already running"):
            handle.start()
        assert handle.state == ProcessState.RUNNING
        assert handle.pid == pid

    def test_stop_without_start(self, log_dir: Path):
        handle = ProcessHandle(make_spec(log_dir))
        handle.stop()
        handle.stop()
        assert handle.state == ProcessState.STOPPED

    def test_double_stop(self, log_dir: Path):
        handle = ProcessHandle(make_spec(log_dir))
        handle.start()
        handle.stop()
        handle.stop()
        assert handle.state == ProcessState.STOPPED


# =============================================================================
# Startup failures
# =============================================================================

class TestStartupFailure:
    """Test that failed starts end in STOPPED with a diagnosable error."""

    def test_missing_artifact_fails_fast(self, log_dir: Path):
        spec = make_spec(log_dir, artifact=log_dir / "missing.jar")
        handle = ProcessHandle(spec)

        with pytest.raises(StartupFailure, match="not found") as exc_info:
            handle.start()
        assert exc_info.value.log_path is None
        assert handle.state == ProcessState.STOPPED
        assert not log_dir.exists()

    def test_health_check_false(self, log_dir: Path):
        pids = []
        handle = ProcessHandle(make_spec(log_dir, health_check=lambda t: pids.append(handle.pid) or False), kill_wait=3)

        with pytest.raises(StartupFailure, match="failed health check") as exc_info:
            handle.start()

        assert exc_info.value.log_path == handle.log_path
        assert exc_info.value.log_path.exists()
        assert handle.state == ProcessState.STOPPED
        assert not handle.is_running()
        with pytest.raises(ProcessLookupError):
            os.kill(pids[0], 0)

    def test_health_check_exception(self, log_dir: Path):
        def health(timeout: float) -> bool:
            raise ConnectionRefusedError("nope")

        handle = ProcessHandle(make_spec(log_dir, health_check=health))

        with pytest.raises(StartupFailure) as exc_info:
            handle.start()
        assert isinstance(exc_info.value.__cause__, ConnectionRefusedError)
        assert handle.state == ProcessState.STOPPED

    def test_spawn_error(self, log_dir: Path):
        spec = make_spec(log_dir, command=[str(log_dir / "no-such-binary")])
        handle = ProcessHandle(spec)

        with pytest.raises(StartupFailure, match="Failed to start") as exc_info:
            handle.start()
        assert exc_info.value.log_path is not None
        assert handle.state == ProcessState.STOPPED

    def test_unwritable_log_file(self, log_dir: Path):
        timeline = TimelineLogger(log_dir / "timeline.jsonl")
        target = log_dir / "missing-dir" / "proc.log"
        spec = replace(make_spec(log_dir), log_file=lambda context: target)
        handle = ProcessHandle(spec, timeline=timeline)

        with pytest.raises(StartupFailure, match="Cannot open log file") as exc_info:
            handle.start()

        assert isinstance(exc_info.value.__cause__, FileNotFoundError)
        assert exc_info.value.log_path == target
        assert handle.state == ProcessState.STOPPED
        assert handle.pid is None
        assert len(timeline.get_events_by_type(EventType.PROCESS_FAILED)) == 1

    def test_log_file_factory_error(self, log_dir: Path):
        def refuse(context: LogContext) -> Path:
            raise PermissionError("read-only log directory")

        handle = ProcessHandle(replace(make_spec(log_dir), log_file=refuse))

        with pytest.raises(StartupFailure, match="read-only log directory") as exc_info:
            handle.start()
        assert exc_info.value.log_path is None
        assert handle.state == ProcessState.STOPPED

    def test_process_exits_before_ready(self, log_dir: Path):
        def slow_yes(timeout: float) -> bool:
            time.sleep(1)
            return True

        handle = ProcessHandle(make_spec(log_dir, command=[sys.executable, "-c", "pass"], health_check=slow_yes))

        with pytest.raises(StartupFailure, match="exited with code 0"):
            handle.start()
        assert handle.state == ProcessState.STOPPED
        assert handle.returncode == 0

    def test_can_start_again_after_failure(self, log_dir: Path, handles):
        answers = iter([False, True])
        handle = ProcessHandle(make_spec(log_dir, health_check=lambda t: next(answers)))
        handles.append(handle)

        with pytest.raises(StartupFailure):
            handle.start()
        handle.start()
        assert handle.is_running()


# =============================================================================
# Shutdown escalation
# =============================================================================

@posix_only
class TestShutdown:
    """Test graceful stop, SIGKILL escalation and process groups."""

    def test_sigterm_ignored_escalates_to_sigkill(self, log_dir: Path, ignores_sigterm_script: Path):
        spec = make_spec(
            log_dir,
            command=[sys.executable, str(ignores_sigterm_script)],
            artifact=ignores_sigterm_script,
            health_check=lambda t: log_contains(handle, "ready")(t),
        )
        handle = ProcessHandle(spec, grace_period=0.5, kill_wait=3)
        handle.start()

        start = time.monotonic()
        handle.stop()
        elapsed = time.monotonic() - start

        assert handle.state == ProcessState.STOPPED
        assert handle.returncode == -signal.SIGKILL
        assert 0.4 <= elapsed < 4

    def test_whole_process_group_is_stopped(self, log_dir: Path):
        if not Path("/proc").is_dir():
            pytest.skip("needs /proc")

        command = [
            sys.executable, "-c",
            "import subprocess, sys, time\n"
            "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'])\n"
            "print('child', child.pid, flush=True)\n"
            "time.sleep(60)\n",
        ]
        spec = make_spec(log_dir, command=command, health_check=lambda t: log_contains(handle, "child ")(t))
        handle = ProcessHandle(spec, grace_period=3)
        handle.start()

        child_pid = int(handle.log_path.read_text().split("child ")[1].split()[0])
        handle.stop()

        assert wait_until(lambda: is_gone(child_pid), time.monotonic() + 5, 0.1)

    def test_children_of_exited_leader_are_stopped(self, log_dir: Path):
        """
        Stopping after the leader exited still clears its process group.

        Given: A leader that starts a child, reports it and exits
        When: stop() is called after the leader is gone
        Then: The orphaned child is killed
        """
        if not Path("/proc").is_dir():
            pytest.skip("needs /proc")

        command = [
            sys.executable, "-c",
            "import subprocess, sys, time\n"
            "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'])\n"
            "print('child', child.pid, flush=True)\n"
            "time.sleep(0.5)\n",
        ]
        spec = make_spec(log_dir, command=command, health_check=lambda t: log_contains(handle, "child ")(t))
        handle = ProcessHandle(spec, grace_period=3)
        handle.start()
        child_pid = int(handle.log_path.read_text().split("child ")[1].split()[0])

        assert wait_until(lambda: not handle.is_running(), time.monotonic() + 5, 0.05)
        assert not is_gone(child_pid)

        handle.stop()

        assert handle.state == ProcessState.STOPPED
        assert handle.returncode == 0
        assert wait_until(lambda: is_gone(child_pid), time.monotonic() + 5, 0.1)

    def test_child_ignoring_sigterm_is_killed_after_grace(self, log_dir: Path):
        """
        A child that outlives the leader's SIGTERM is killed once the grace period ends.

        Given: A leader that dies on SIGTERM and a child that ignores it
        When: stop() is called
        Then: The leader exits on SIGTERM and the child is killed; the stop is recorded as forced
        """
        if not Path("/proc").is_dir():
            pytest.skip("needs /proc")

        child_code = (
            "import signal, time; "
            "signal.signal(signal.SIGTERM, signal.SIG_IGN); "
            "print('ignoring', flush=True); "
            "time.sleep(60)"
        )
        command = [
            sys.executable, "-c",
            "import subprocess, sys, time\n"
            f"child = subprocess.Popen([sys.executable, '-c', {child_code!r}])\n"
            "print('child', child.pid, flush=True)\n"
            "time.sleep(60)\n",
        ]
        timeline = TimelineLogger(log_dir / "timeline.jsonl")
        spec = make_spec(
            log_dir,
            command=command,
            health_check=lambda t: log_contains(handle, "ignoring")(t) and log_contains(handle, "child ")(t),
        )
        handle = ProcessHandle(spec, grace_period=0.5, kill_wait=3, timeline=timeline)
        handle.start()
        child_pid = int(handle.log_path.read_text().split("child ")[1].split()[0])

        start = time.monotonic()
        handle.stop()
        elapsed = time.monotonic() - start

        assert handle.returncode == -signal.SIGTERM
        assert wait_until(lambda: is_gone(child_pid), time.monotonic() + 5, 0.1)
        assert 0.4 <= elapsed < 4
        assert timeline.get_events_by_type(EventType.PROCESS_KILLED)

    def test_own_session(self, log_dir: Path, handles):
        handle = ProcessHandle(make_spec(log_dir))
        handles.append(handle)
        handle.start()
        assert os.getpgid(handle.pid) == handle.pid
        assert os.getpgid(handle.pid) != os.getpgid(0)


# =============================================================================
# Log context and timeline
# =============================================================================

class TestLogContext:
    """Test log file resolution."""

    def test_hierarchical_flag(self):
        assert LogContext("p", "Cls", "test_x").hierarchical
        assert not LogContext("p", "Cls", None).hierarchical
        assert not LogContext().hierarchical

    def test_set_log_context_uses_hierarchy(self, log_dir: Path):
        spec = LaunchSpec(
            name="http-capability",
            artifact=PYTHON,
            command=SLEEPER,
            health_check=lambda t: True,
            log_file=default_log_file(log_dir, "http-capability"),
        )
        handle = ProcessHandle(spec)
        handle.set_log_context("http-capability", "ToolTests", "test_add")
        try:
            handle.start("ignored")
        finally:
            handle.stop()

        assert handle.log_path.parent == log_dir / "http-capability" / "ToolTests"
        assert handle.log_path.name.startswith("test_add-")

    def test_flat_fallback(self, log_dir: Path):
        spec = LaunchSpec(
            name="http-capability",
            artifact=PYTHON,
            command=SLEEPER,
            health_check=lambda t: True,
            log_file=default_log_file(log_dir, "http-capability"),
        )
        with ProcessHandle(spec) as handle:
            pass
        assert handle.log_path.parent == log_dir
        assert handle.log_path.name.startswith("unknown-http-capability-")


class TestTimelineEvents:
    """Test lifecycle events written to the timeline."""

    def test_start_and_stop_events(self, log_dir: Path):
        timeline = TimelineLogger(log_dir / "timeline.jsonl")
        handle = ProcessHandle(make_spec(log_dir, name="router"), timeline=timeline)
        handle.start()
        handle.stop()

        events = [e["event"] for e in timeline.get_events_for_process("router")]
        assert events == ["process_start", "process_ready", "process_stop"]

    def test_failure_event(self, log_dir: Path):
        timeline = TimelineLogger(log_dir / "timeline.jsonl")
        handle = ProcessHandle(make_spec(log_dir, health_check=lambda t: False), timeline=timeline)

        with pytest.raises(StartupFailure):
            handle.start()

        failed = timeline.get_events_by_type(EventType.PROCESS_FAILED)
        assert len(failed) == 1
        assert failed[0]["details"]["log_path"] == str(handle.log_path)
