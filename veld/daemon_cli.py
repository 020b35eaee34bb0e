"""The per-user daemon: health monitor, garbage collector and event socket."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import Sequence
from contextlib import suppress
from pathlib import Path

from veld.broadcaster import DAEMON_VERSION, Broadcaster
from veld.gc import run_gc_scheduler
from veld.monitor import run_health_monitor
from veld.protocol import HelperClient

logger = logging.getLogger(__name__)

VERSION = DAEMON_VERSION
DEFAULT_SOCKET = "~/.veld/daemon.sock"

_HELP = f"""Usage: veld-daemon [OPTIONS]

Options:
  --socket-path <PATH>  Path to Unix socket (default: {DEFAULT_SOCKET})
  --version, -V         Print version and exit
  --help, -h            Print help and exit"""


def default_socket_path() -> Path:
    """Socket location used when ``--socket-path`` is not given."""
    return Path.home() / ".veld" / "daemon.sock"


def parse_args(argv: Sequence[str]) -> Path:
    """Return the socket path from *argv*; version and help print and exit."""
    socket_path: Path | None = None
    args = iter(argv)
    for arg in args:
        if arg in ("--version", "-V"):
            print(f"veld-daemon {VERSION}")
            raise SystemExit(0)
        if arg in ("--help", "-h"):
            print(_HELP)
            raise SystemExit(0)
        if arg == "--socket-path":
            value = next(args, None)
            if value is None:
                raise ValueError("--socket-path requires a value")
            socket_path = Path(value)
        else:
            raise ValueError(f"Unknown argument: {arg}")
    return socket_path if socket_path is not None else default_socket_path()


async def accept_connections(
    socket_path: Path | str, broadcaster: Broadcaster
) -> asyncio.AbstractServer:
    """Listen on *socket_path*, handing each client to *broadcaster*."""

    async def on_client(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        logger.info("client connected")
        await broadcaster.handle_client(reader, writer)

    return await asyncio.start_unix_server(on_client, path=str(socket_path))


async def serve(
    socket_path: Path | str,
    helper_socket: Path | str | None = None,
    registry_path: Path | str | None = None,
) -> None:
    """Run the daemon until SIGINT or SIGTERM arrives, or until cancelled."""
    path = Path(socket_path)
    logger.info("veld-daemon %s starting", VERSION)
    logger.info("socket path: %s", path)

    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists() or path.is_symlink():
        path.unlink()

    broadcaster = Broadcaster()
    server = await accept_connections(path, broadcaster)
    logger.info("listening on %s", path)

    helper = HelperClient(helper_socket)
    tasks = [
        asyncio.create_task(run_health_monitor(broadcaster, registry_path)),
        asyncio.create_task(run_gc_scheduler(helper, registry_path)),
    ]

    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError, ValueError):
            continue
        installed.append(sig)

    try:
        await stop.wait()
        logger.info("shutdown signal received, cleaning up")
    finally:
        for sig in installed:
            with suppress(NotImplementedError, RuntimeError, ValueError):
                loop.remove_signal_handler(sig)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        server.close()
        with suppress(OSError):
            path.unlink()
        logger.info("veld-daemon stopped")


def main(argv: Sequence[str] | None = None) -> int:
    """Run the daemon; returns the process exit status."""
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s"
    )
    try:
        socket_path = parse_args(sys.argv[1:] if argv is None else argv)
    except SystemExit as exc:
        return int(exc.code or 0)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    try:
        asyncio.run(serve(socket_path))
    except KeyboardInterrupt:
        return 0
    except OSError as exc:
        print(f"error: failed to serve on {socket_path}: {exc}", file=sys.stderr)
        return 1
    return 0