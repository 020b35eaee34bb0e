"""The privileged helper: serves DNS and Caddy commands on a Unix socket."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import sys
from collections.abc import Sequence
from contextlib import suppress
from pathlib import Path
from typing import Any

import platformdirs

from veld.caddy import CaddyManager
from veld.dns import DnsManager
from veld.handler import HelperState
from veld.protocol import DEFAULT_SOCKET_PATH

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def default_socket_path() -> Path:
    """Socket location used when ``--socket-path`` is not given."""
    return DEFAULT_SOCKET_PATH


def parse_args(argv: Sequence[str]) -> Path:
    """Return the socket path from *argv*; ``--version`` prints and exits."""
    socket_path = default_socket_path()
    args = iter(argv)
    for arg in args:
        if arg == "--version":
            print(f"veld-helper {VERSION}")
            raise SystemExit(0)
        if arg == "--socket-path":
            value = next(args, None)
            if value is None:
                raise ValueError("--socket-path requires a value")
            socket_path = Path(value)
        else:
            raise ValueError(f"unknown argument: {arg}")
    return socket_path


async def handle_connection(reader: Any, writer: Any, state: HelperState) -> None:
    """Answer each non-empty request line with one JSON response line."""
    try:
        async for raw in reader:
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            response = await state.handle_request(line)
            try:
                payload = response.to_json()
            except (TypeError, ValueError) as exc:
                payload = json.dumps(
                    {"ok": False, "error": f"serialization error: {exc}"},
                    separators=(",", ":"),
                )
            writer.write((payload + "\n").encode("utf-8"))
            await writer.drain()
    finally:
        writer.close()
        with suppress(OSError):
            await writer.wait_closed()


async def serve(socket_path: Path | str, state: HelperState) -> None:
    """Listen on *socket_path* and serve clients until cancelled."""
    path = Path(socket_path)
    if path.exists() or path.is_symlink():
        path.unlink()
    with suppress(OSError):
        path.parent.mkdir(parents=True, exist_ok=True)

    async def on_client(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            await handle_connection(reader, writer, state)
        except (OSError, ValueError) as exc:
            logger.error("connection handler error: %s", exc)

    server = await asyncio.start_unix_server(on_client, path=str(path))
    try:
        # The helper runs as root; the CLI and daemon connect as regular users.
        os.chmod(path, 0o777)
    except OSError:
        server.close()
        await server.wait_closed()
        raise
    logger.info("veld-helper %s listening on %s", VERSION, path)
    async with server:
        await server.serve_forever()


def _default_state() -> HelperState:
    data_dir = Path(platformdirs.user_data_dir("veld"))
    caddy_bin = shutil.which("caddy") or data_dir / "bin" / "caddy"
    return HelperState(
        DnsManager(data_dir / "dnsmasq.d" / "veld.conf"),
        CaddyManager(caddy_bin, data_dir / "caddy"),
    )


def main(argv: Sequence[str] | None = None) -> int:
    """Run the helper; returns the process exit status."""
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    try:
        socket_path = parse_args(sys.argv[1:] if argv is None else argv)
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    try:
        asyncio.run(serve(socket_path, _default_state()))
    except KeyboardInterrupt:
        return 0
    except OSError as exc:
        print(f"error: failed to serve on {socket_path}: {exc}", file=sys.stderr)
        return 1
    return 0