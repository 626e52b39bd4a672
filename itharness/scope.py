"""Suite- and test-scoped resource lifecycles.

SuiteScope owns what a group of tests shares: a temporary data directory,
the identity provider and the router. TestScope owns what each test gets
fresh: the REST client, the protocol client and a capability worker.

Every resource is pushed onto a teardown stack the moment it exists.
Teardown pops in reverse creation order; a step that raises is logged,
recorded in the timeline and skipped so the remaining steps still run.
A setup that raises unwinds whatever it already created before
re-raising.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .auth import AuthError, AuthProvider, OidcCredentials
from .clients import ProtocolClient, ProtocolClientError, RouterClient
from .config import HarnessConfig
from .ports import PortAllocator
from .process import IllegalStateError, LaunchSpec, ProcessHandle, StartupFailure
from .services import RouterEndpoint, auth_spec, capability_spec, router_spec
from .timeline import EventType, TimelineLogger


logger = logging.getLogger(__name__)

DATA_DIR_PREFIX = "itharness-"
DEFAULT_PROFILE = "default"

TeardownError = Tuple[str, Exception]


@dataclass(frozen=True)
class TestContext:
    """Identifies the test a TestScope is created for."""
    __test__ = False

    profile: str = DEFAULT_PROFILE
    test_class: Optional[str] = None
    test_method: Optional[str] = None
    display_name: Optional[str] = None


class TeardownStack:
    """LIFO list of cleanup steps that never aborts early."""

    def __init__(self, scope: str, timeline: Optional[TimelineLogger] = None):
        self.scope = scope
        self.timeline = timeline
        self._steps: List[Tuple[str, Callable[[], object]]] = []

    def push(self, step: str, action: Callable[[], object]) -> None:
        self._steps.append((step, action))

    def __len__(self) -> int:
        return len(self._steps)

    def unwind(self) -> List[TeardownError]:
        """Run all steps newest first.

        Returns:
            The (step, exception) pairs that were suppressed.
        """
        errors: List[TeardownError] = []
        while self._steps:
            step, action = self._steps.pop()
            try:
                action()
            except Exception as e:
                logger.warning("Error during %s teardown (%s): %s", self.scope, step, e)
                if self.timeline:
                    self.timeline.teardown_error(self.scope, step, str(e))
                errors.append((step, e))
        return errors


class SuiteScope:
    """Resources shared by every test in a group."""

    def __init__(
        self,
        config: HarnessConfig,
        test_class: str = "suite",
        handle_factory: Callable[..., ProcessHandle] = ProcessHandle,
        port_allocator: Optional[PortAllocator] = None,
        timeline: Optional[TimelineLogger] = None,
    ):
        """Initialize suite scope.

        Args:
            config: Harness configuration.
            test_class: Name of the test group; used in router log names.
            handle_factory: Builds a process handle from a LaunchSpec.
            port_allocator: Defaults to one built from the config.
            timeline: Optional timeline logger.
        """
        self.config = config
        self.test_class = test_class
        self.handle_factory = handle_factory
        self.port_allocator = port_allocator or PortAllocator(
            retries=config.port_retries,
            retry_delay=config.port_retry_delay,
        )
        self.timeline = timeline

        self.data_dir: Optional[Path] = None
        self.router: Optional[ProcessHandle] = None
        self.router_endpoint: Optional[RouterEndpoint] = None
        self.auth: Optional[AuthProvider] = None
        self.allocated_ports: List[int] = []
        self.skipped = False
        self.started = False
        self._teardown = TeardownStack("suite", timeline)

    def new_handle(self, spec: LaunchSpec) -> ProcessHandle:
        return self.handle_factory(
            spec,
            grace_period=self.config.grace_period,
            kill_wait=self.config.kill_wait,
            timeline=self.timeline,
        )

    def allocate_port(self) -> int:
        port = self.port_allocator.allocate(exclude=self.allocated_ports)
        self.allocated_ports.append(port)
        return port

    def _event(self, event: EventType) -> None:
        if self.timeline:
            self.timeline.scope_event(event, "suite", self.test_class)

    def setup(self) -> None:
        """Bring up suite resources.

        Raises:
            IllegalStateError: If the scope is already set up.
            StartupFailure: If the router failed to start.
            AllocationError: If no ports could be allocated.
        """
        if self.started:
            raise IllegalStateError(f"Suite scope already set up: {self.test_class}")

        logger.info("Setting up suite for %s", self.test_class)
        self._event(EventType.SUITE_SETUP)

        try:
            self.data_dir = Path(tempfile.mkdtemp(prefix=DATA_DIR_PREFIX))
            self._teardown.push("remove data directory", self._remove_data_dir)
            logger.debug("Data directory: %s", self.data_dir)

            if not self.config.has_artifacts():
                logger.warning(
                    "No artifacts found in %s, skipping infrastructure setup",
                    self.config.artifacts_dir,
                )
                self.skipped = True
                self._event(EventType.SUITE_SKIPPED)
            else:
                if self.config.auth.configured:
                    self._start_auth()
                if self.config.router_artifact_exists:
                    self._start_router()
                else:
                    logger.warning("Router artifact not found, router will not be started")
        except BaseException:
            logger.error("Suite setup failed for %s, cleaning up", self.test_class)
            self._teardown.unwind()
            self._reset()
            raise

        self.started = True
        self._event(EventType.SUITE_READY)

    def _start_auth(self) -> None:
        provider = AuthProvider(self.config.auth, self.new_handle(auth_spec(self.config)))
        try:
            provider.start(self.test_class)
        except StartupFailure as e:
            logger.warning("Identity provider failed to start, continuing without authentication: %s", e)
            return
        self.auth = provider
        self._teardown.push("stop identity provider", provider.stop)
        logger.info("Identity provider started at %s", provider.base_url)

    def _start_router(self) -> None:
        http_port = self.allocate_port()
        grpc_port = self.allocate_port()
        endpoint = RouterEndpoint(self.config.router_host, http_port, grpc_port)

        handle = self.new_handle(router_spec(self.config, endpoint, self.data_dir))
        handle.start(self.test_class)
        self.router = handle
        self.router_endpoint = endpoint
        self._teardown.push("stop router", handle.stop)
        logger.info("Router started on port %d (gRPC %d)", http_port, grpc_port)

    def _remove_data_dir(self) -> None:
        if self.data_dir is not None and self.data_dir.exists():
            shutil.rmtree(self.data_dir)

    def _reset(self) -> None:
        self.router = None
        self.router_endpoint = None
        self.auth = None
        self.data_dir = None
        self.allocated_ports = []

    def teardown(self) -> List[TeardownError]:
        """Stop the router, stop the identity provider, remove the data directory.

        Safe to call in any state.
        """
        logger.info("Tearing down suite for %s", self.test_class)
        errors = self._teardown.unwind()
        self._reset()
        self.started = False
        self.skipped = False
        self._event(EventType.SUITE_TEARDOWN)
        return errors

    def require_running(self) -> None:
        """Raise IllegalStateError unless every started suite process is running."""
        for name, handle in (("router", self.router), ("identity provider", self.auth)):
            if handle is not None and not handle.is_running():
                raise IllegalStateError(f"Suite resource is not running: {name}")

    def is_router_available(self) -> bool:
        return self.router is not None and self.router.is_running()

    def is_auth_available(self) -> bool:
        return self.auth is not None and self.auth.is_running()

    @property
    def router_url(self) -> Optional[str]:
        return self.router_endpoint.base_url if self.router_endpoint else None

    def credentials(self) -> Optional[OidcCredentials]:
        if not self.is_auth_available():
            return None
        return self.auth.service_credentials()

    def access_token(self) -> Optional[str]:
        """Test user token, or None when authentication is unavailable."""
        if not self.is_auth_available():
            return None
        try:
            return self.auth.get_access_token()
        except AuthError as e:
            logger.warning("Failed to get access token: %s", e)
            return None

    def __enter__(self) -> "SuiteScope":
        self.setup()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.teardown()


class TestScope:
    """Resources created fresh for one test."""
    __test__ = False

    def __init__(
        self,
        suite: SuiteScope,
        context: Optional[TestContext] = None,
        router_client_factory: Callable[..., RouterClient] = RouterClient,
        protocol_client_factory: Callable[..., ProtocolClient] = ProtocolClient,
        settle_delay: Optional[float] = None,
    ):
        self.suite = suite
        self.context = context or TestContext()
        self.router_client_factory = router_client_factory
        self.protocol_client_factory = protocol_client_factory
        self.settle_delay = suite.config.settle_delay if settle_delay is None else settle_delay

        self.router_client: Optional[RouterClient] = None
        self.protocol_client: Optional[ProtocolClient] = None
        self.capability: Optional[ProcessHandle] = None
        self.capability_port: Optional[int] = None
        self.started = False
        self._teardown = TeardownStack("test", suite.timeline)

    @property
    def config(self) -> HarnessConfig:
        return self.suite.config

    def _event(self, event: EventType) -> None:
        if self.suite.timeline:
            self.suite.timeline.scope_event(event, "test", self.context.display_name)

    def setup(self) -> None:
        """Build clients and start the capability.

        Raises:
            IllegalStateError: If already set up, or a started suite
                resource is no longer running.
            StartupFailure: If the capability failed to start.
        """
        if self.started:
            raise IllegalStateError("Test scope already set up")
        self.suite.require_running()

        self._event(EventType.TEST_SETUP)
        try:
            if self.suite.is_router_available():
                self._setup_resources()
            else:
                logger.debug("Router not running, test scope has no resources")
        except BaseException:
            logger.error("Test setup failed for %s, cleaning up", self.context.display_name)
            self._teardown.unwind()
            self._reset()
            raise

        self.started = True
        self._event(EventType.TEST_READY)

    def _setup_resources(self) -> None:
        base_url = self.suite.router_url
        token = self.suite.access_token()

        self.router_client = self.router_client_factory(base_url, access_token=token)
        self._teardown.push("clear tools", self.router_client.clear_all_tools)

        client = self.protocol_client_factory(base_url, access_token=token)
        try:
            client.connect()
        except ProtocolClientError as e:
            logger.warning("Failed to connect protocol client: %s", e)
        else:
            self.protocol_client = client
            self._teardown.push("disconnect protocol client", client.disconnect)

        if self.config.capability_artifact_exists:
            self._start_capability()

    def _start_capability(self) -> None:
        grpc_port = self.suite.allocate_port()
        self.capability_port = grpc_port
        spec = capability_spec(
            self.config,
            self.suite.router_endpoint,
            grpc_port,
            self.suite.credentials(),
        )
        handle = self.suite.new_handle(spec)
        context = self.context
        if context.test_class and context.test_method:
            handle.set_log_context(context.profile, context.test_class, context.test_method)

        handle.start(context.display_name)
        self.capability = handle
        self._teardown.push("stop capability", handle.stop)

        # Registration with the router happens after the port opens.
        if self.settle_delay > 0:
            time.sleep(self.settle_delay)

    def _reset(self) -> None:
        if self.capability_port in self.suite.allocated_ports:
            self.suite.allocated_ports.remove(self.capability_port)
        self.router_client = None
        self.protocol_client = None
        self.capability = None
        self.capability_port = None

    def teardown(self) -> List[TeardownError]:
        """Stop the capability, disconnect the protocol client, clear tools.

        Safe to call in any state.
        """
        errors = self._teardown.unwind()
        self._reset()
        self.started = False
        self._event(EventType.TEST_TEARDOWN)
        return errors

    def is_router_available(self) -> bool:
        return self.suite.is_router_available()

    def is_auth_available(self) -> bool:
        return self.suite.is_auth_available()

    def is_capability_available(self) -> bool:
        """Live state once set up; otherwise whether a capability could start."""
        if self.started:
            return self.capability is not None and self.capability.is_running()
        return self.suite.is_router_available() and self.config.capability_artifact_exists

    def is_protocol_client_available(self) -> bool:
        if self.started:
            return self.protocol_client is not None
        return self.suite.is_router_available()

    def is_full_stack_available(self) -> bool:
        return (
            self.is_router_available()
            and self.is_capability_available()
            and self.is_protocol_client_available()
        )

    def __enter__(self) -> "TestScope":
        self.setup()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.teardown()
