#!/usr/bin/env python3
"""
Fake capability worker for itharness testing.

Listens on the gRPC port it is given (plain TCP, no protocol), then
registers itself with the router over HTTP, the way a real capability
announces itself after startup. Runs until terminated.

Usage:
    python fake_capability.py --quarkus.grpc.server.port=9191 \
        --wanaku.service.registration.uri=http://localhost:8080
"""

import argparse
import json
import socket
import sys
from urllib.error import URLError
from urllib.request import Request, urlopen


SERVICE_NAME = "http"


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Fake capability")
    parser.add_argument("--quarkus.grpc.server.port", dest="grpc_port", type=int, required=True)
    parser.add_argument("--wanaku.service.registration.uri", dest="registration_uri", default=None)
    parser.add_argument("--quarkus.oidc-client.client-id", dest="client_id", default=None)
    args, _ = parser.parse_known_args(argv)
    return args


def register(registration_uri: str, port: int) -> None:
    body = json.dumps({"serviceName": SERVICE_NAME, "host": "localhost", "port": port})
    request = Request(
        registration_uri.rstrip("/") + "/api/v1/capabilities/register",
        data=body.encode("utf-8"),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urlopen(request, timeout=5):
            pass
        print(f"Registered with {registration_uri}", flush=True)
    except (URLError, OSError) as e:
        print(f"Registration failed: {e}", flush=True)


def main() -> int:
    args = parse_args()

    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    server.bind(("127.0.0.1", args.grpc_port))
    server.listen(16)
    print(f"Fake capability listening on {args.grpc_port} (client: {args.client_id})", flush=True)

    if args.registration_uri:
        register(args.registration_uri, args.grpc_port)

    while True:
        conn, _ = server.accept()
        conn.close()


if __name__ == "__main__":
    sys.exit(main())
