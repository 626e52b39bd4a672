"""Configuration loader for itharness.

Loads harness.yml, validates it against schemas/harness-config.schema.json
and applies ITH_* environment overrides. A missing file is not an error:
every setting has a default, so a bare checkout can still run unit tests.
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from jsonschema import Draft7Validator


SCHEMAS_DIR = Path(__file__).resolve().parent / "schemas"
CONFIG_SCHEMA = "harness-config.schema.json"

# Environment variable names
ENV_CONFIG = "ITH_CONFIG"
ENV_ARTIFACTS_DIR = "ITH_ARTIFACTS_DIR"
ENV_ROUTER_ARTIFACT = "ITH_ROUTER_ARTIFACT"
ENV_CAPABILITY_ARTIFACT = "ITH_CAPABILITY_ARTIFACT"
ENV_CLI_PATH = "ITH_CLI_PATH"
ENV_TIMEOUT = "ITH_TIMEOUT"
ENV_LOG_DIR = "ITH_LOG_DIR"
ENV_LOG_LEVEL = "ITH_LOG_LEVEL"
ENV_AUTH_ENABLED = "ITH_AUTH_ENABLED"

# Default values
DEFAULT_CONFIG_FILE = "harness.yml"
DEFAULT_ARTIFACTS_DIR = "artifacts"
DEFAULT_CLI_PATH = "wanaku"
DEFAULT_TIMEOUT = 60.0
DEFAULT_HEALTH_INTERVAL = 0.5
DEFAULT_GRACE_PERIOD = 10.0
DEFAULT_KILL_WAIT = 5.0
DEFAULT_SETTLE_DELAY = 1.0
DEFAULT_CLI_TIMEOUT = 30.0
DEFAULT_PORT_RETRIES = 5
DEFAULT_PORT_RETRY_DELAY = 0.05
DEFAULT_LOG_DIR = "target/logs"
DEFAULT_ROUTER_HEALTH_PATH = "/q/health/ready"

# Artifact name prefixes searched in the artifacts directory
ROUTER_PREFIX = "wanaku-router"
CAPABILITY_PREFIX = "wanaku-tool-service-http"
QUARKUS_RUN_JAR = "quarkus-run.jar"
ARTIFACT_SUFFIXES = (".jar", ".py")

_TRUE_VALUES = {"1", "true", "yes", "on"}


class ConfigError(ValueError):
    """Raised when a configuration file does not match the schema."""


def _read_schema(schema_name: str) -> Dict[str, Any]:
    """Load a JSON schema shipped with the package."""
    schema_path = SCHEMAS_DIR / schema_name
    if not schema_path.exists():
        raise FileNotFoundError(f"Schema not found: {schema_path}")
    return json.loads(schema_path.read_text(encoding="utf-8"))


def validate_against_schema(data: Any, schema_name: str = CONFIG_SCHEMA) -> Tuple[bool, List[str]]:
    """Validate data against a JSON schema.

    Args:
        data: The data to validate
        schema_name: Name of schema file in the schemas/ directory

    Returns:
        Tuple of (is_valid, list_of_error_messages)
    """
    validator = Draft7Validator(_read_schema(schema_name))
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.path))

    if not errors:
        return True, []

    messages: List[str] = []
    for err in errors[:50]:
        location = ".".join([str(p) for p in err.absolute_path]) or "<root>"
        messages.append(f"{location}: {err.message}")

    if len(errors) > 50:
        messages.append(f"... and {len(errors) - 50} more errors")

    return False, messages


@dataclass
class AuthConfig:
    """Identity provider process and the credentials tests use against it."""
    enabled: bool = True
    command: List[str] = field(default_factory=list)
    port: int = 8543
    health_path: Optional[str] = None
    startup_timeout: float = 120.0
    realm: str = "wanaku"
    service_client_id: str = "wanaku-service"
    service_client_secret: str = "secret"
    client_id: str = "mcp-client"
    username: str = "test-user"
    password: str = "test-password"
    scope: str = "openid wanaku-mcp-client"

    @property
    def configured(self) -> bool:
        """True when there is a command to launch the identity provider."""
        return self.enabled and bool(self.command)

    @property
    def readiness_path(self) -> str:
        return self.health_path or f"/realms/{self.realm}"


@dataclass
class HarnessConfig:
    """Full harness configuration with structured access.

    Created once per run and treated as read-only afterwards.
    """

    artifacts_dir: Path = field(default_factory=lambda: Path(DEFAULT_ARTIFACTS_DIR))
    router_artifact: Optional[Path] = None
    capability_artifact: Optional[Path] = None
    cli_path: str = DEFAULT_CLI_PATH
    java: str = "java"

    # Timeouts (seconds)
    default_timeout: float = DEFAULT_TIMEOUT
    health_interval: float = DEFAULT_HEALTH_INTERVAL
    grace_period: float = DEFAULT_GRACE_PERIOD
    kill_wait: float = DEFAULT_KILL_WAIT
    settle_delay: float = DEFAULT_SETTLE_DELAY
    cli_timeout: float = DEFAULT_CLI_TIMEOUT

    # Port allocation
    port_retries: int = DEFAULT_PORT_RETRIES
    port_retry_delay: float = DEFAULT_PORT_RETRY_DELAY

    # Router
    router_host: str = "localhost"
    router_health_path: str = DEFAULT_ROUTER_HEALTH_PATH

    # Logging
    log_dir: Path = field(default_factory=lambda: Path(DEFAULT_LOG_DIR))
    log_level: str = "INFO"

    auth: AuthConfig = field(default_factory=AuthConfig)

    path: Optional[Path] = None
    raw_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def router_artifact_exists(self) -> bool:
        return self.router_artifact is not None and self.router_artifact.exists()

    @property
    def capability_artifact_exists(self) -> bool:
        return self.capability_artifact is not None and self.capability_artifact.exists()

    def has_artifacts(self) -> bool:
        """Check whether any launchable artifact is available.

        Explicitly configured artifacts count even when they live outside
        the artifacts directory.
        """
        if self.router_artifact_exists or self.capability_artifact_exists:
            return True
        return has_artifacts(self.artifacts_dir)


def _is_artifact(path: Path) -> bool:
    if path.is_dir():
        return (path / QUARKUS_RUN_JAR).exists()
    return path.is_file() and path.suffix in ARTIFACT_SUFFIXES


def has_artifacts(artifacts_dir: Path) -> bool:
    """Check if the artifacts directory holds at least one launchable artifact."""
    if not artifacts_dir.is_dir():
        return False
    return any(_is_artifact(p) for p in artifacts_dir.iterdir())


def find_artifact(artifacts_dir: Path, prefix: str) -> Optional[Path]:
    """Find a launchable artifact by name prefix.

    A Quarkus fast-jar directory (containing quarkus-run.jar) wins over a
    standalone .jar or .py file.

    Args:
        artifacts_dir: Directory to search.
        prefix: File or directory name prefix.

    Returns:
        Path to the artifact, or None when nothing matches.
    """
    if not artifacts_dir.is_dir():
        return None

    candidates = sorted(p for p in artifacts_dir.iterdir() if p.name.startswith(prefix))

    for candidate in candidates:
        run_jar = candidate / QUARKUS_RUN_JAR
        if candidate.is_dir() and run_jar.exists():
            return run_jar

    for candidate in candidates:
        if candidate.is_file() and candidate.suffix in ARTIFACT_SUFFIXES:
            return candidate

    return None


def parse_timeout(value: str) -> float:
    """Parse a timeout such as "60", "90s" or "2.5" into seconds."""
    digits = re.sub(r"[^0-9.]", "", value)
    if not digits:
        raise ValueError(f"Invalid timeout: {value!r}")
    return float(digits)


def _parse_auth(auth_data: Dict[str, Any]) -> AuthConfig:
    """Parse the auth section into an AuthConfig."""
    defaults = AuthConfig()
    return AuthConfig(
        enabled=auth_data.get("enabled", defaults.enabled),
        command=list(auth_data.get("command", [])),
        port=auth_data.get("port", defaults.port),
        health_path=auth_data.get("health_path"),
        startup_timeout=auth_data.get("startup_timeout", defaults.startup_timeout),
        realm=auth_data.get("realm", defaults.realm),
        service_client_id=auth_data.get("service_client_id", defaults.service_client_id),
        service_client_secret=auth_data.get("service_client_secret", defaults.service_client_secret),
        client_id=auth_data.get("client_id", defaults.client_id),
        username=auth_data.get("username", defaults.username),
        password=auth_data.get("password", defaults.password),
        scope=auth_data.get("scope", defaults.scope),
    )


def _resolve(path_value: Optional[str], base: Path) -> Optional[Path]:
    if not path_value:
        return None
    path = Path(path_value).expanduser()
    if path.is_absolute():
        return path
    return base / path


def _locate_config_file(config_path: Optional[Path]) -> Optional[Path]:
    if config_path is not None:
        return config_path
    env_config = os.environ.get(ENV_CONFIG)
    if env_config:
        return Path(env_config)
    default = Path.cwd() / DEFAULT_CONFIG_FILE
    if default.exists():
        return default
    return None


def load_config(config_path: Optional[Path] = None) -> HarnessConfig:
    """Load harness configuration.

    Lookup order: explicit path, $ITH_CONFIG, ./harness.yml. Relative paths
    inside the file resolve against the file's directory. ITH_* environment
    variables override file values.

    Args:
        config_path: Optional path to a YAML configuration file.

    Returns:
        HarnessConfig instance.

    Raises:
        FileNotFoundError: If an explicitly requested file does not exist.
        ConfigError: If the file does not match the schema.
    """
    path = _locate_config_file(config_path)
    raw_data: Dict[str, Any] = {}
    base = Path.cwd()

    if path is not None:
        path = path.resolve()
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")
        raw_data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        valid, errors = validate_against_schema(raw_data)
        if not valid:
            raise ConfigError(
                f"Invalid configuration in {path}:\n" +
                "\n".join(f"  - {e}" for e in errors)
            )
        base = path.parent

    timeouts = raw_data.get("timeouts", {})
    ports = raw_data.get("ports", {})
    router = raw_data.get("router", {})
    logging_data = raw_data.get("logging", {})

    artifacts_dir = _resolve(
        os.environ.get(ENV_ARTIFACTS_DIR) or raw_data.get("artifacts_dir"), base
    ) or base / DEFAULT_ARTIFACTS_DIR

    router_artifact = _resolve(
        os.environ.get(ENV_ROUTER_ARTIFACT) or raw_data.get("router_artifact"), base
    ) or find_artifact(artifacts_dir, ROUTER_PREFIX)

    capability_artifact = _resolve(
        os.environ.get(ENV_CAPABILITY_ARTIFACT) or raw_data.get("capability_artifact"), base
    ) or find_artifact(artifacts_dir, CAPABILITY_PREFIX)

    default_timeout = timeouts.get("default", DEFAULT_TIMEOUT)
    if os.environ.get(ENV_TIMEOUT):
        default_timeout = parse_timeout(os.environ[ENV_TIMEOUT])

    auth = _parse_auth(raw_data.get("auth", {}))
    if os.environ.get(ENV_AUTH_ENABLED):
        auth.enabled = os.environ[ENV_AUTH_ENABLED].strip().lower() in _TRUE_VALUES

    log_dir = _resolve(
        os.environ.get(ENV_LOG_DIR) or logging_data.get("dir"), base
    ) or base / DEFAULT_LOG_DIR

    return HarnessConfig(
        artifacts_dir=artifacts_dir,
        router_artifact=router_artifact,
        capability_artifact=capability_artifact,
        cli_path=os.environ.get(ENV_CLI_PATH) or raw_data.get("cli_path") or DEFAULT_CLI_PATH,
        java=raw_data.get("java", "java"),
        default_timeout=float(default_timeout),
        health_interval=timeouts.get("health_interval", DEFAULT_HEALTH_INTERVAL),
        grace_period=timeouts.get("grace_period", DEFAULT_GRACE_PERIOD),
        kill_wait=timeouts.get("kill_wait", DEFAULT_KILL_WAIT),
        settle_delay=timeouts.get("settle_delay", DEFAULT_SETTLE_DELAY),
        cli_timeout=timeouts.get("cli", DEFAULT_CLI_TIMEOUT),
        port_retries=ports.get("retries", DEFAULT_PORT_RETRIES),
        port_retry_delay=ports.get("retry_delay", DEFAULT_PORT_RETRY_DELAY),
        router_host=router.get("host", "localhost"),
        router_health_path=router.get("health_path", DEFAULT_ROUTER_HEALTH_PATH),
        log_dir=log_dir,
        log_level=(os.environ.get(ENV_LOG_LEVEL) or logging_data.get("level", "INFO")).upper(),
        auth=auth,
        path=path,
        raw_data=raw_data,
    )
