"""envoy: command-line entry point for serving, running and listing agent sessions."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import uuid
from contextlib import aclosing
from pathlib import Path
from typing import Optional, Sequence

from envoy import __version__
from envoy.api_server import APIServer
from envoy.config import Config, config as default_config, load_config
from envoy.constants import SPAWN_FAILED_EXIT_CODE
from envoy.core.agents import detect_installed_clis
from envoy.core.errors import ProcessSpawnFailed, RemoteConnectionError
from envoy.core.models import CLIType, DeviceSession, OutputType, SessionStatus
from envoy.core.session_manager import SessionManager, group_by_device
from envoy.logging_config import setup_logging
from envoy.transport.remote_connection import parse_address
from envoy.utils import format_size

logger = logging.getLogger(__name__)

# Exit status reported by `envoy run` when the session was terminated rather than exiting
TERMINATED_EXIT_CODE = 143
CLEANUP_INTERVAL_S = 600.0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="envoy", description="Run and share CLI agent sessions.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", help="Path to config.yml (default: ENVOY_CONFIG_PATH or project root)")
    parser.add_argument("--log-level", help="Log level (default: ENVOY_LOG_LEVEL or INFO)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Serve this device's sessions to peers")
    serve.add_argument("--host", help="Bind address (default: server.host)")
    serve.add_argument("--port", type=int, help="Bind port (default: server.port)")

    run = subparsers.add_parser("run", help="Run one agent session and stream its output")
    run.add_argument("--cli", default=None, help="claude-code | codex | gemini-cli (default: sessions.default_cli)")
    run.add_argument("--cwd", help="Working directory (default: sessions.default_working_dir)")
    run.add_argument("--timeout", type=float, help="Terminate the session after this many seconds")
    run.add_argument("prompt", help="Initial prompt")

    list_cmd = subparsers.add_parser("list", help="List local and remote sessions")
    list_cmd.add_argument(
        "--remote",
        action="append",
        default=[],
        metavar="HOST:PORT",
        help="Remote device to include (repeatable)",
    )
    return parser


def _load_settings(path: Optional[str]) -> Config:
    if not path:
        return default_config
    return load_config(Path(path).expanduser())


def _log_available_agents(settings: Config) -> dict[CLIType, str]:
    """Log which agent CLIs this device can run; missing ones fail at session start."""
    installed = detect_installed_clis(settings.agents)
    for cli in CLIType:
        if cli in installed:
            logger.info("Agent %s available at %s", cli.value, installed[cli])
        else:
            logger.warning("Agent %s not found; sessions for it will fail to spawn", cli.value)
    return installed


# ==================== serve ====================


async def _serve(settings: Config, host: Optional[str], port: Optional[int]) -> int:
    _log_available_agents(settings)
    manager = SessionManager(settings)
    server = APIServer(manager, host=host, port=port)
    await server.start()
    peers = await manager.connect_configured_peers()
    logger.info("Serving sessions of %s (%d peers connected)", manager.device_name, len(peers))

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    cleanup_task = manager.task_registry.spawn(
        _cleanup_loop(manager, settings.sessions.cleanup_after_hours), name="session-cleanup"
    )
    try:
        await stop_event.wait()
    finally:
        cleanup_task.cancel()
        await server.stop()
        await manager.shutdown()
    return 0


async def _cleanup_loop(manager: SessionManager, cleanup_after_hours: float) -> None:
    while True:
        await asyncio.sleep(CLEANUP_INTERVAL_S)
        manager.cleanup_old_sessions(cleanup_after_hours * 3600)


# ==================== run ====================


async def _run(
    settings: Config,
    cli_name: Optional[str],
    prompt: str,
    cwd: Optional[str],
    timeout: Optional[float],
) -> int:
    try:
        cli = CLIType.from_str(cli_name or settings.sessions.default_cli)
    except ValueError as e:
        sys.stderr.write(f"envoy error: {e}\n")
        return 2

    manager = SessionManager(settings)
    try:
        try:
            session = await manager.create_session(
                str(uuid.uuid4()), cli, prompt, working_directory=cwd, timeout=timeout
            )
        except ProcessSpawnFailed as e:
            sys.stderr.write(f"envoy error: {e}\n")
            return SPAWN_FAILED_EXIT_CODE

        async with aclosing(session.output_stream()) as events:
            async for event in events:
                if event.type == OutputType.STDOUT and event.data:
                    sys.stdout.buffer.write(event.data)
                    sys.stdout.buffer.flush()
                elif event.type == OutputType.STDERR and event.data:
                    sys.stderr.buffer.write(event.data)
                    sys.stderr.buffer.flush()

        info = await session.wait()
        if info.status == SessionStatus.TERMINATED:
            return TERMINATED_EXIT_CODE
        return info.exit_code if info.exit_code is not None else 1
    finally:
        await manager.shutdown()


# ==================== list ====================


async def _list(settings: Config, remotes: Sequence[str]) -> int:
    manager = SessionManager(settings)
    try:
        for address in remotes:
            host, port = parse_address(address)
            try:
                await manager.connect_to_remote(host, port)
            except RemoteConnectionError as e:
                sys.stderr.write(f"envoy warning: {e}\n")
        sessions = await manager.list_all_sessions()
    finally:
        await manager.shutdown()

    if not sessions:
        print("No sessions found.")
        return 0
    _print_session_table(sessions)
    return 0


def _print_session_table(sessions: list[DeviceSession]) -> None:
    header = f"{'ID':<8}  {'Task':<8}  {'CLI':<11}  {'Status':<10}  {'Created':<16}  {'Output':>8}"
    for device_id, device_name, members in group_by_device(sessions):
        local = " (local)" if members[0].is_local else ""
        print(f"{device_name}{local} [{device_id[:8]}]")
        print(header)
        print("-" * len(header))
        for session in members:
            info = session.info
            created = info.created_at.astimezone().strftime("%Y-%m-%d %H:%M")
            print(
                f"{info.id[:8]:<8}  {info.short_task_id:<8}  {info.cli.value:<11}  "
                f"{info.status.value:<10}  {created:<16}  {format_size(info.output_size):>8}"
            )
        print()


def _main_impl(argv: Optional[Sequence[str]]) -> int:
    args = _build_parser().parse_args(argv)
    setup_logging(args.log_level)
    settings = _load_settings(args.config)

    if args.command == "serve":
        return asyncio.run(_serve(settings, args.host, args.port))
    if args.command == "run":
        return asyncio.run(_run(settings, args.cli, args.prompt, args.cwd, args.timeout))
    if args.command == "list":
        return asyncio.run(_list(settings, args.remote))

    sys.stderr.write("envoy error: unsupported command\n")
    return 1


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        return _main_impl(argv)
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
