#!/usr/bin/env python3
"""
Backend Development Script
Development utilities for the accent relay service
"""

import json
import subprocess
import sys
import argparse
from pathlib import Path

import httpx

backend_root = Path(__file__).parent.parent
repo_root = backend_root.parent
sys.path.insert(0, str(backend_root))


def run_server(port: int = 4001, reload: bool = True, log_level: str = "info") -> None:
    """Run the FastAPI development server."""
    cmd = [
        "uvicorn",
        "accent_relay.api.main:app",
        f"--port={port}",
        f"--log-level={log_level}",
        "--host=0.0.0.0",
    ]

    if reload:
        cmd.append("--reload")

    print(f"-> Starting relay on port {port}")
    print(f"-> Media stream: ws://localhost:{port}/stream")
    print(f"-> Health: http://localhost:{port}/api/voice/health")

    subprocess.run(cmd, cwd=backend_root, check=False)


def run_tests(verbose: bool = False, pattern: str = "") -> bool:
    """Run backend tests."""
    cmd = [sys.executable, "-m", "pytest"]

    if verbose:
        cmd.append("-v")
    if pattern:
        cmd.extend(["-k", pattern])

    print("-> Running relay tests")
    result = subprocess.run(cmd, cwd=repo_root, check=False)
    return result.returncode == 0


def check_health(base_url: str) -> bool:
    """Print the relay health snapshot of a running server."""
    try:
        response = httpx.get(f"{base_url.rstrip('/')}/api/voice/health", timeout=5.0)
        response.raise_for_status()
    except httpx.HTTPError as exc:
        print(f"Health check failed: {exc}")
        return False

    health = response.json()
    print("-> Relay status:")
    print(f"   Active calls: {health.get('active_sessions')}")
    print(f"   Synthesis streams: {health.get('synthesis_sessions')}")
    print(f"   Cache entries: {health.get('cache_entries')}")
    for session in health.get("sessions", []):
        print(f"   - {json.dumps(session, sort_keys=True)}")
    return True


def install_dependencies() -> None:
    """Install the package with test extras."""
    subprocess.run([sys.executable, "-m", "pip", "install", "-e", ".[test]"], cwd=repo_root, check=False)


def main() -> None:
    parser = argparse.ArgumentParser(description="Accent Relay Development Tools")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    server_parser = subparsers.add_parser("serve", help="Run development server")
    server_parser.add_argument("--port", type=int, default=4001, help="Server port")
    server_parser.add_argument("--no-reload", action="store_true", help="Disable auto-reload")
    server_parser.add_argument("--log-level", default="info", help="Log level")

    test_parser = subparsers.add_parser("test", help="Run tests")
    test_parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    test_parser.add_argument("-k", "--pattern", default="", help="pytest -k expression")

    health_parser = subparsers.add_parser("health", help="Query a running relay")
    health_parser.add_argument("--url", default="http://localhost:4001", help="Relay base URL")

    subparsers.add_parser("install", help="Install dependencies")

    args = parser.parse_args()

    if args.command == "serve":
        run_server(args.port, not args.no_reload, args.log_level)
    elif args.command == "test":
        success = run_tests(args.verbose, args.pattern)
        sys.exit(0 if success else 1)
    elif args.command == "health":
        success = check_health(args.url)
        sys.exit(0 if success else 1)
    elif args.command == "install":
        install_dependencies()
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
