"""Log file layout and harness logging setup.

Spawned processes write to their own files; the harness logs to
test-framework.log. Layout under the log directory:

    target/logs/
    ├── test-framework.log
    ├── timeline.jsonl
    ├── router/
    │   └── router-ToolCliTests-2026-02-04_15-35-09.log
    └── default/
        └── ToolCliTests/
            └── test_register_tool-2026-02-04_15-35-12.log

Processes started without test context fall back to a flat
<test>-<component>-<timestamp>.log name.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Optional


TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"
FRAMEWORK_LOG = "test-framework.log"
LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


def sanitize_filename(value: Optional[str]) -> str:
    """Make a string safe for use as a single path component."""
    if value is None:
        return "unknown"
    return _UNSAFE_CHARS.sub("_", value)


def timestamp() -> str:
    return datetime.now().strftime(TIMESTAMP_FORMAT)


def ensure_directory(log_dir: Path, *subdirs: str) -> Path:
    """Create (if needed) and return log_dir/subdir/... with sanitized parts."""
    directory = log_dir
    for subdir in subdirs:
        directory = directory / sanitize_filename(subdir)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def _create(directory: Path, filename: str) -> Path:
    path = directory / filename
    path.touch(exist_ok=True)
    return path


def component_log_file(log_dir: Path, component: str, test_class: Optional[str]) -> Path:
    """Log file for a suite-scoped component, keyed by the test class.

    Returns:
        <log_dir>/<component>/<component>-<TestClass>-<timestamp>.log
    """
    directory = ensure_directory(log_dir, component)
    name = f"{sanitize_filename(component)}-{sanitize_filename(test_class)}-{timestamp()}.log"
    return _create(directory, name)


def capability_log_file(
    log_dir: Path,
    profile: str,
    test_class: str,
    test_method: str,
) -> Path:
    """Log file for a test-scoped process.

    Returns:
        <log_dir>/<profile>/<TestClass>/<test_method>-<timestamp>.log
    """
    directory = ensure_directory(log_dir, profile, test_class)
    return _create(directory, f"{sanitize_filename(test_method)}-{timestamp()}.log")


def flat_log_file(log_dir: Path, test_name: Optional[str], component: str) -> Path:
    """Fallback log file when no hierarchical context is known.

    Returns:
        <log_dir>/<test>-<component>-<timestamp>.log
    """
    directory = ensure_directory(log_dir)
    name = f"{sanitize_filename(test_name)}-{sanitize_filename(component)}-{timestamp()}.log"
    return _create(directory, name)


def configure_logging(log_dir: Path, level: str = "INFO") -> Path:
    """Attach a file handler for harness diagnostics.

    Safe to call more than once; the handler is only added the first time
    for a given file.

    Args:
        log_dir: Base log directory.
        level: Logging level name.

    Returns:
        Path to test-framework.log.
    """
    log_path = ensure_directory(log_dir) / FRAMEWORK_LOG
    logger = logging.getLogger("itharness")
    logger.setLevel(level.upper())

    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == log_path.resolve():
            return log_path

    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    return log_path
