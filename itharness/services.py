"""Launch specifications for the processes the harness manages.

Each factory returns a data-only LaunchSpec: the command line with the
assigned ports and data directory injected as runtime flags, the readiness
check, and the log naming rule. ProcessHandle does the rest.
"""

from __future__ import annotations

import shutil
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .auth import OidcCredentials
from .config import HarnessConfig
from .health import http_health_check, tcp_health_check
from .logs import capability_log_file, component_log_file, flat_log_file
from .process import LaunchSpec, LogContext, LogFileFactory


ROUTER_NAME = "router"
CAPABILITY_NAME = "http-capability"
AUTH_NAME = "auth-provider"


@dataclass(frozen=True)
class RouterEndpoint:
    """Where the router listens."""
    host: str
    http_port: int
    grpc_port: int

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.http_port}"


def _flags(properties: Mapping[str, object], template: str) -> List[str]:
    return [template.format(key=key, value=value) for key, value in properties.items()]


def build_command(
    artifact: Path,
    properties: Mapping[str, object],
    args: Sequence[str] = (),
    java: str = "java",
) -> Tuple[List[str], Path]:
    """Build the command line for an artifact.

    - .jar: java -Dkey=value ... -jar <name> args, run from the jar's
      directory (Quarkus fast-jar layout needs that)
    - .py: <python> <name> args --key=value ...
    - anything else: executed directly with --key=value flags

    Returns:
        Tuple of (command, working_directory).
    """
    workdir = artifact.parent
    if artifact.suffix == ".jar":
        command = [java, *_flags(properties, "-D{key}={value}"), "-jar", artifact.name, *args]
    elif artifact.suffix == ".py":
        command = [sys.executable, artifact.name, *args, *_flags(properties, "--{key}={value}")]
    else:
        command = [str(artifact), *args, *_flags(properties, "--{key}={value}")]
    return command, workdir


def default_log_file(log_dir: Path, component: str) -> LogFileFactory:
    """Hierarchical log file when the context allows it, flat otherwise."""
    def resolve(context: LogContext) -> Path:
        if context.hierarchical:
            return capability_log_file(
                log_dir, context.profile, context.test_class, context.test_method
            )
        return flat_log_file(log_dir, context.test_name, component)
    return resolve


def router_log_file(log_dir: Path) -> LogFileFactory:
    """Router logs are keyed by test class, passed in as the test name."""
    def resolve(context: LogContext) -> Path:
        return component_log_file(log_dir, ROUTER_NAME, context.test_name or context.test_class)
    return resolve


def router_spec(
    config: HarnessConfig,
    endpoint: RouterEndpoint,
    data_dir: Optional[Path] = None,
) -> LaunchSpec:
    """Launch spec for the router (the service under test)."""
    if config.router_artifact is None:
        raise ValueError("No router artifact configured")

    properties: Dict[str, object] = {
        "quarkus.http.port": endpoint.http_port,
        "quarkus.grpc.server.port": endpoint.grpc_port,
    }
    if data_dir is not None:
        properties["wanaku.data.dir"] = data_dir.resolve()

    command, workdir = build_command(config.router_artifact, properties, java=config.java)
    health_url = endpoint.base_url + config.router_health_path

    return LaunchSpec(
        name=ROUTER_NAME,
        artifact=config.router_artifact,
        command=command,
        cwd=workdir,
        health_check=http_health_check(health_url, config.health_interval),
        log_file=router_log_file(config.log_dir),
        startup_timeout=config.default_timeout,
    )


def capability_spec(
    config: HarnessConfig,
    router: RouterEndpoint,
    grpc_port: int,
    credentials: Optional[OidcCredentials] = None,
) -> LaunchSpec:
    """Launch spec for the HTTP capability worker.

    The capability exposes only gRPC; readiness is its gRPC port accepting
    connections. It registers itself with the router asynchronously after
    that, so callers still need a settle delay.
    """
    if config.capability_artifact is None:
        raise ValueError("No capability artifact configured")

    properties: Dict[str, object] = {
        "quarkus.http.port": 0,
        "quarkus.grpc.server.port": grpc_port,
        "wanaku.service.registration.uri": router.base_url,
        "wanaku.router.host": router.host,
        "wanaku.router.port": router.grpc_port,
    }
    if credentials is not None:
        properties["quarkus.oidc-client.auth-server-url"] = credentials.auth_server_url
        properties["quarkus.oidc-client.client-id"] = credentials.client_id
        properties["quarkus.oidc-client.credentials.secret"] = credentials.client_secret
    properties["wanaku.service.registration.delay-seconds"] = 0

    command, workdir = build_command(config.capability_artifact, properties, java=config.java)

    return LaunchSpec(
        name=CAPABILITY_NAME,
        artifact=config.capability_artifact,
        command=command,
        cwd=workdir,
        health_check=tcp_health_check("localhost", grpc_port, config.health_interval),
        log_file=default_log_file(config.log_dir, CAPABILITY_NAME),
        startup_timeout=config.default_timeout,
    )


def auth_spec(config: HarnessConfig) -> LaunchSpec:
    """Launch spec for the identity provider.

    The configured command may contain a {port} placeholder; it is replaced
    with the configured auth port.
    """
    auth = config.auth
    if not auth.command:
        raise ValueError("No identity provider command configured")

    command = [part.replace("{port}", str(auth.port)) for part in auth.command]
    executable = shutil.which(command[0])
    artifact = Path(executable) if executable else Path(command[0])
    health_url = f"http://localhost:{auth.port}{auth.readiness_path}"

    return LaunchSpec(
        name=AUTH_NAME,
        artifact=artifact,
        command=command,
        health_check=http_health_check(health_url, config.health_interval),
        log_file=default_log_file(config.log_dir, AUTH_NAME),
        startup_timeout=auth.startup_timeout,
    )
