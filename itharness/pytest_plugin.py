"""pytest integration.

Registered through the ``pytest11`` entry point. Provides:

- ``harness_config``: session-wide HarnessConfig (also configures logging)
- ``harness_suite``: SuiteScope shared by the tests of one class
- ``harness``: TestScope set up before and torn down after each test
- ``harness_cli``: CLIExecutor built from the configuration
- ``@pytest.mark.requires("router", "capability", ...)``: skip a test
  whose resources are unavailable

Test classes may set ``harness_log_profile`` to pick the top-level
directory of their capability log files.
"""

from __future__ import annotations

import uuid
from pathlib import Path
from typing import Callable, Dict, Generator

import pytest

from .config import HarnessConfig, load_config
from .exec import CLIExecutor
from .logs import configure_logging
from .scope import DEFAULT_PROFILE, SuiteScope, TestContext, TestScope
from .timeline import TimelineLogger, create_timeline_logger


RESOURCE_CHECKS: Dict[str, Callable[[TestScope], bool]] = {
    "router": TestScope.is_router_available,
    "auth": TestScope.is_auth_available,
    "capability": TestScope.is_capability_available,
    "protocol-client": TestScope.is_protocol_client_available,
    "full-stack": TestScope.is_full_stack_available,
    "cli": lambda scope: CLIExecutor.from_config(scope.config).is_available(),
}


def pytest_addoption(parser) -> None:
    group = parser.getgroup("itharness")
    group.addoption(
        "--harness-config",
        default=None,
        help="Path to harness.yml (default: $ITH_CONFIG or ./harness.yml)",
    )


def pytest_configure(config) -> None:
    config.addinivalue_line(
        "markers",
        "requires(*resources): skip unless the named harness resources are available "
        f"({', '.join(RESOURCE_CHECKS)})",
    )
    config.addinivalue_line("markers", "integration: tests that launch external processes")


def _group_name(request) -> str:
    if request.cls is not None:
        return request.cls.__name__
    return request.module.__name__.rsplit(".", 1)[-1]


def _missing_resources(request, scope: TestScope) -> list:
    missing = []
    for marker in request.node.iter_markers("requires"):
        for name in marker.args:
            check = RESOURCE_CHECKS.get(name)
            if check is None:
                pytest.fail(f"Unknown harness resource: {name!r}", pytrace=False)
            if not check(scope):
                missing.append(name)
    return missing


@pytest.fixture(scope="session")
def harness_config(pytestconfig) -> HarnessConfig:
    """Harness configuration, loaded once per session."""
    option = pytestconfig.getoption("harness_config")
    cfg = load_config(Path(option) if option else None)
    configure_logging(cfg.log_dir, cfg.log_level)
    return cfg


@pytest.fixture(scope="session")
def harness_timeline(harness_config: HarnessConfig) -> TimelineLogger:
    return create_timeline_logger(harness_config.log_dir, run_id=uuid.uuid4().hex[:12])


@pytest.fixture(scope="class")
def harness_suite(
    request,
    harness_config: HarnessConfig,
    harness_timeline: TimelineLogger,
) -> Generator[SuiteScope, None, None]:
    """Suite scope shared by one test class (or module for plain functions)."""
    suite = SuiteScope(harness_config, test_class=_group_name(request), timeline=harness_timeline)
    suite.setup()
    try:
        yield suite
    finally:
        suite.teardown()


@pytest.fixture
def harness(request, harness_suite: SuiteScope) -> Generator[TestScope, None, None]:
    """Test scope for the current test.

    Skips the test when a ``requires`` marker names an unavailable resource.
    """
    context = TestContext(
        profile=getattr(request.cls, "harness_log_profile", DEFAULT_PROFILE),
        test_class=_group_name(request),
        test_method=getattr(request.node, "originalname", None) or request.node.name,
        display_name=request.node.name,
    )
    scope = TestScope(harness_suite, context)

    missing = _missing_resources(request, scope)
    if missing:
        pytest.skip(f"Harness resources not available: {', '.join(missing)}")

    scope.setup()
    try:
        yield scope
    finally:
        scope.teardown()


@pytest.fixture
def harness_cli(harness_config: HarnessConfig) -> CLIExecutor:
    return CLIExecutor.from_config(harness_config)
