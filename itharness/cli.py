from __future__ import annotations

import argparse
import atexit
import json
import shutil
import signal
import sys
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from . import __version__
from .config import ConfigError, HarnessConfig, load_config
from .exec import CLIExecutor
from .health import wait_for_http, wait_for_port
from .logs import configure_logging
from .ports import AllocationError, PortAllocator
from .process import StartupFailure
from .scope import SuiteScope, TestContext, TestScope
from .timeline import create_timeline_logger


def eprint(msg: str) -> None:
    print(msg, file=sys.stderr)


def _load(args: argparse.Namespace) -> HarnessConfig:
    return load_config(Path(args.config) if args.config else None)


def command_port(args: argparse.Namespace) -> int:
    cfg = _load(args)
    allocator = PortAllocator(retries=cfg.port_retries, retry_delay=cfg.port_retry_delay)
    try:
        ports = allocator.allocate_many(args.count)
    except AllocationError as e:
        eprint(f"✗ {e}")
        return 1
    if args.json:
        print(json.dumps(ports))
    else:
        for port in ports:
            print(port)
    return 0


def command_probe_http(args: argparse.Namespace) -> int:
    if wait_for_http(args.url, args.timeout, args.interval):
        print(f"✓ {args.url} is ready")
        return 0
    eprint(f"✗ {args.url} not ready after {args.timeout:g}s")
    return 1


def command_probe_tcp(args: argparse.Namespace) -> int:
    target = f"{args.host}:{args.port}"
    if wait_for_port(args.host, args.port, args.timeout, args.interval):
        print(f"✓ {target} is accepting connections")
        return 0
    eprint(f"✗ {target} not reachable after {args.timeout:g}s")
    return 1


def command_cli_check(args: argparse.Namespace) -> int:
    cfg = _load(args)
    executor = CLIExecutor.from_config(cfg)
    if executor.is_available():
        result = executor.history[-1]
        print(f"✓ CLI available: {cfg.cli_path}")
        version = result.stdout.strip()
        if version:
            print(f"  {version.splitlines()[0]}")
        return 0
    eprint(f"✗ CLI not available: {cfg.cli_path}")
    return 1


def _path_check(name: str, path: Optional[Path]) -> Dict[str, Any]:
    ok = path is not None and path.exists()
    return {"name": name, "status": "ok" if ok else "missing", "path": str(path) if path else None}


def command_scan(args: argparse.Namespace) -> int:
    try:
        cfg = _load(args)
    except (ConfigError, FileNotFoundError) as e:
        eprint(f"✗ config: {e}")
        return 2

    java = shutil.which(cfg.java)
    checks: List[Dict[str, Any]] = [
        _path_check("artifacts_dir", cfg.artifacts_dir),
        _path_check("router", cfg.router_artifact),
        _path_check("capability", cfg.capability_artifact),
        {"name": "java", "status": "ok" if java else "missing", "path": java},
        {
            "name": "auth",
            "status": "ok" if cfg.auth.configured else "disabled",
            "path": " ".join(cfg.auth.command) or None,
        },
    ]

    report: Dict[str, Any] = {
        "status": "ready" if cfg.has_artifacts() else "unit-only",
        "config": str(cfg.path) if cfg.path else None,
        "log_dir": str(cfg.log_dir),
        "checks": checks,
    }

    if args.json:
        print(json.dumps(report, indent=2))
        return 0

    print("ITHARNESS ENVIRONMENT SCAN")
    print("--------------------------")
    print(f"config: {report['config'] or '(defaults)'}")
    for c in checks:
        if c["status"] == "ok":
            print(f"✓ {c['name']}: {c.get('path')}")
        else:
            print(f"⚠ {c['name']}: {c['status']}")
    print(f"status: {report['status']}")
    return 0


def _register_cleanup(cleanup: Callable[[], None]) -> None:
    """Run cleanup at exit and on SIGINT/SIGTERM."""
    atexit.register(cleanup)

    def handler(signum: int, frame) -> None:
        eprint(f"\n⚠ Received signal {signum}, tearing down...")
        cleanup()
        sys.exit(128 + signum)

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


def command_up(args: argparse.Namespace) -> int:
    cfg = _load(args)
    configure_logging(cfg.log_dir, cfg.log_level)
    timeline = create_timeline_logger(cfg.log_dir, run_id=f"up-{int(time.time())}")

    suite = SuiteScope(cfg, test_class=args.name, timeline=timeline)
    scopes: List[Any] = [suite]
    done = []

    def cleanup() -> None:
        if done:
            return
        done.append(True)
        for scope in reversed(scopes):
            scope.teardown()

    _register_cleanup(cleanup)

    try:
        suite.setup()
        if args.with_capability:
            test = TestScope(suite, TestContext(test_class=args.name, test_method="up", display_name=args.name))
            scopes.append(test)
            test.setup()
    except (StartupFailure, AllocationError) as e:
        eprint(f"✗ {e}")
        cleanup()
        return 1

    if suite.skipped:
        eprint(f"⚠ No artifacts found in {cfg.artifacts_dir}")
        cleanup()
        return 1

    print("Stack is up:")
    if suite.router_url:
        print(f"  ✓ Router: {suite.router_url}")
    if suite.auth is not None:
        print(f"  ✓ Identity provider: {suite.auth.base_url}")
    if len(scopes) > 1 and scopes[1].capability is not None:
        print(f"  ✓ Capability: gRPC port {scopes[1].capability_port}")
    print(f"  Logs: {cfg.log_dir}")
    print("Press Ctrl+C to stop.")

    try:
        while suite.is_router_available() or suite.router is None:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        cleanup()

    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="itharness", description="Integration test harness CLI")
    p.add_argument("-V", "--version", action="version", version=f"itharness {__version__}")
    p.add_argument("-c", "--config", default=None, help="Path to harness.yml")
    sub = p.add_subparsers(dest="cmd", required=True)

    sp = sub.add_parser("port", help="Allocate free TCP ports")
    sp.add_argument("-n", "--count", type=int, default=1)
    sp.add_argument("--json", action="store_true")
    sp.set_defaults(func=command_port)

    sp = sub.add_parser("probe-http", help="Wait for an HTTP endpoint to return 2xx")
    sp.add_argument("url")
    sp.add_argument("-t", "--timeout", type=float, default=60.0)
    sp.add_argument("-i", "--interval", type=float, default=0.5)
    sp.set_defaults(func=command_probe_http)

    sp = sub.add_parser("probe-tcp", help="Wait for a TCP port to accept connections")
    sp.add_argument("host")
    sp.add_argument("port", type=int)
    sp.add_argument("-t", "--timeout", type=float, default=60.0)
    sp.add_argument("-i", "--interval", type=float, default=0.5)
    sp.set_defaults(func=command_probe_tcp)

    sp = sub.add_parser("cli-check", help="Check that the product CLI runs")
    sp.set_defaults(func=command_cli_check)

    sp = sub.add_parser("scan", help="Report config, artifacts and tools")
    sp.add_argument("--json", action="store_true")
    sp.set_defaults(func=command_scan)

    sp = sub.add_parser("up", help="Start the suite stack and wait for Ctrl+C")
    sp.add_argument("--name", default="interactive", help="Name used in log file names")
    sp.add_argument("--with-capability", action="store_true", help="Also start a capability")
    sp.set_defaults(func=command_up)

    return p


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    rc = int(args.func(args))
    raise SystemExit(rc)


if __name__ == "__main__":
    main()
