"""CLI entry point for agentwatch.

Usage:
    agentwatch profiles
    agentwatch projects [--executor CODEX]
    agentwatch sessions CODEX:L2hvbWUvbWUvYXBw
    agentwatch logs CODEX:L2hvbWUvbWUvYXBw:0199a2f4-...
    agentwatch serve --port 8765
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from .config import AgentWatchConfig, load_yaml_config
from .errors import SessionNotFoundError


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentwatch",
        description=(
            "Launch coding-agent CLIs and follow their sessions "
            "as normalized conversation patches"
        ),
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="Path to an agentwatch.yaml file",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("profiles", help="List agent profiles and their variants")

    projects = sub.add_parser("projects", help="List projects across agents")
    projects.add_argument(
        "--executor",
        default=None,
        help="Only list projects of one executor type (e.g. CODEX)",
    )

    sessions = sub.add_parser("sessions", help="List sessions of a project")
    sessions.add_argument("project_id", help="Composite project id")

    logs = sub.add_parser("logs", help="Print a session's log stream as SSE frames")
    logs.add_argument("session_id", help="Composite session id")

    serve = sub.add_parser("serve", help="Run the HTTP + SSE server")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument(
        "--port",
        type=int,
        default=0,
        help="Port to listen on (default: any free port)",
    )
    return parser


def _load_config(path: str | None) -> AgentWatchConfig:
    config = AgentWatchConfig.from_env()
    if path:
        try:
            config = load_yaml_config(path, base=config)
        except FileNotFoundError:
            print(f"Error: Config file not found: {path}")
            sys.exit(1)
    return config


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


async def _list_projects(config: AgentWatchConfig, executor: str | None) -> None:
    from .logs.factory import LogSourceFactory

    projects = await LogSourceFactory(config).get_all_projects(executor)
    _print_json([p.to_dict() for p in projects])


async def _list_sessions(config: AgentWatchConfig, project_id: str) -> None:
    from .logs.factory import LogSourceFactory

    sessions = await LogSourceFactory(config).get_sessions_for_project(project_id)
    _print_json([s.to_dict() for s in sessions])


async def _print_logs(config: AgentWatchConfig, session_id: str) -> int:
    from .logs.factory import LogSourceFactory

    try:
        channel = await LogSourceFactory(config).get_session_stream(session_id)
    except SessionNotFoundError as exc:
        print(f"Error: {exc}")
        return 1
    try:
        async for event in channel:
            sys.stdout.write(event.to_sse())
            sys.stdout.flush()
    finally:
        await channel.aclose()
    return 0


def main(argv: list[str] | None = None) -> None:
    args = _build_parser().parse_args(argv)

    config = _load_config(args.config)

    # Configure logging
    level = logging.DEBUG if args.verbose else getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    try:
        if args.command == "profiles":
            from .execution.profile_registry import ProfileRegistry

            _print_json(ProfileRegistry.from_config(config).list_profiles())
        elif args.command == "projects":
            asyncio.run(_list_projects(config, args.executor))
        elif args.command == "sessions":
            asyncio.run(_list_sessions(config, args.project_id))
        elif args.command == "logs":
            sys.exit(asyncio.run(_print_logs(config, args.session_id)))
        elif args.command == "serve":
            from .server import run_server

            asyncio.run(run_server(args.host, args.port, config))
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(1)


if __name__ == "__main__":
    main()
