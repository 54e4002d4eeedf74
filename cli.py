#!/usr/bin/env python3
"""
Command-line interface for the notification pipeline.

Usage:
    uv run python cli.py [command] [options]

Commands:
    demo        Run delivery scenarios with a simulated clock
    status      Print the status of a local pipeline
    test        Run the test suite
    serve       Start the API server

Examples:
    uv run python cli.py demo retry
    uv run python cli.py demo all
    uv run python cli.py status
    uv run python cli.py serve --reload
"""

import argparse
import json
import subprocess
import sys


DEMO_SCENARIOS = ["delivery", "retry", "exhausted", "duplicate", "unknown-type", "all"]


def run_demo(scenario: str) -> None:
    """Run a demo scenario."""
    from shared.config import configure_logging
    from pipeline.demo import DEMOS, run_all_demos

    configure_logging()
    if scenario == "all":
        run_all_demos()
    elif scenario in DEMOS:
        DEMOS[scenario]()
    else:
        print(f"Unknown scenario: {scenario}")
        sys.exit(1)


def show_status() -> None:
    """Print the status of a pipeline built from the current settings."""
    from pipeline.controller import PipelineController

    controller = PipelineController.from_settings()
    print(json.dumps(controller.status(), indent=2, default=str))


def run_tests(args: list[str]) -> None:
    """Run the test suite."""
    cmd = ["uv", "run", "pytest"] + args
    subprocess.run(cmd)


def run_server(host: str, port: int, reload: bool) -> None:
    """Start the API server."""
    cmd = ["uv", "run", "uvicorn", "api.main:app", f"--host={host}", f"--port={port}"]
    if reload:
        cmd.append("--reload")

    print(f"Starting server at http://{host}:{port}")
    print(f"API docs available at http://{host}:{port}/docs")
    subprocess.run(cmd)


def main() -> None:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Notification Pipeline CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s demo delivery
  %(prog)s demo exhausted
  %(prog)s demo all
  %(prog)s status
  %(prog)s test -v
  %(prog)s serve --reload
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Demo command
    demo_parser = subparsers.add_parser("demo", help="Run delivery scenarios")
    demo_parser.add_argument(
        "scenario",
        nargs="?",
        default="all",
        choices=DEMO_SCENARIOS,
        help="Which scenario to run",
    )

    # Status command
    subparsers.add_parser("status", help="Print pipeline status")

    # Test command
    test_parser = subparsers.add_parser("test", help="Run the test suite")
    test_parser.add_argument(
        "pytest_args",
        nargs="*",
        default=[],
        help="Arguments to pass to pytest",
    )

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    args = parser.parse_args()

    if args.command == "demo":
        run_demo(args.scenario)
    elif args.command == "status":
        show_status()
    elif args.command == "test":
        run_tests(args.pytest_args)
    elif args.command == "serve":
        run_server(args.host, args.port, args.reload)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
