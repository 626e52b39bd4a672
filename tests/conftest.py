"""
Shared test fixtures for itharness tests.

This module provides pytest fixtures for unit and integration tests,
including:
- Paths to the fake services under tests/fixtures
- Fast HarnessConfig instances pointing at those fakes
- Temporary directory management
- Isolation from ITH_* environment variables
"""

import os
import sys
import pytest
import tempfile
from pathlib import Path
from typing import Generator

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from itharness.config import AuthConfig, HarnessConfig  # noqa: E402

FIXTURES_DIR = Path(__file__).parent / "fixtures"


# =============================================================================
# Session-scoped fixtures (created once per test session)
# =============================================================================

@pytest.fixture(scope="session")
def fixtures_dir() -> Path:
    """Return path to fixtures directory."""
    return FIXTURES_DIR


@pytest.fixture(scope="session")
def fake_router_script() -> Path:
    return FIXTURES_DIR / "fake_router.py"


@pytest.fixture(scope="session")
def fake_capability_script() -> Path:
    return FIXTURES_DIR / "fake_capability.py"


@pytest.fixture(scope="session")
def fake_cli_script() -> Path:
    return FIXTURES_DIR / "fake_cli.py"


@pytest.fixture(scope="session")
def ignores_sigterm_script() -> Path:
    return FIXTURES_DIR / "ignores_sigterm.py"


# =============================================================================
# Function-scoped fixtures (created fresh for each test)
# =============================================================================

@pytest.fixture(autouse=True)
def clean_harness_env(monkeypatch) -> None:
    """Keep ITH_* variables from the developer's shell out of tests."""
    for key in list(os.environ):
        if key.startswith("ITH_"):
            monkeypatch.delenv(key)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test use.

    The directory is automatically cleaned up after the test.
    """
    with tempfile.TemporaryDirectory() as td:
        yield Path(td)


@pytest.fixture
def isolated_cwd(temp_dir: Path) -> Generator[Path, None, None]:
    """Change to temporary directory for test, restore afterward."""
    original_cwd = os.getcwd()
    os.chdir(temp_dir)
    try:
        yield temp_dir
    finally:
        os.chdir(original_cwd)


@pytest.fixture
def log_dir(temp_dir: Path) -> Path:
    return temp_dir / "logs"


@pytest.fixture
def fast_config(temp_dir: Path, log_dir: Path) -> HarnessConfig:
    """Config with short timeouts and no artifacts or identity provider."""
    return HarnessConfig(
        artifacts_dir=temp_dir / "artifacts",
        default_timeout=20.0,
        health_interval=0.1,
        grace_period=3.0,
        kill_wait=3.0,
        settle_delay=0.0,
        cli_timeout=10.0,
        port_retry_delay=0.0,
        log_dir=log_dir,
        log_level="DEBUG",
        auth=AuthConfig(enabled=False),
    )


@pytest.fixture
def stack_config(
    fast_config: HarnessConfig,
    fake_router_script: Path,
    fake_capability_script: Path,
) -> HarnessConfig:
    """Config that launches the fake router and fake capability."""
    fast_config.router_artifact = fake_router_script
    fast_config.capability_artifact = fake_capability_script
    return fast_config
