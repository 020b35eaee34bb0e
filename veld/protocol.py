"""Line-delimited JSON protocol spoken with the privileged helper."""

from __future__ import annotations

import asyncio
import json
import sys
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_SOCKET_PATH = (
    Path("/var/run/veld-helper.sock")
    if sys.platform == "darwin"
    else Path("/run/veld-helper.sock")
)


class ProtocolError(Exception):
    """A message could not be parsed, or the helper reported a failure."""


@dataclass
class Request:
    """A command sent to the helper, one JSON object per line."""

    command: str
    args: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, line: str | bytes) -> Request:
        """Parse one request line; missing or null ``args`` become ``{}``."""
        try:
            data = json.loads(line)
        except ValueError as exc:
            raise ProtocolError(f"invalid request JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ProtocolError("invalid request JSON: expected an object")
        command = data.get("command")
        if not isinstance(command, str):
            raise ProtocolError("invalid request JSON: missing string field `command`")
        args = data.get("args")
        return cls(command=command, args=args if isinstance(args, dict) else {})


class Response:
    """The helper's reply to a single request."""

    def __init__(self, ok: bool, data: Any = None, error: str | None = None) -> None:
        self.ok = ok
        self.data = data
        self.error = error

    @classmethod
    def ok(cls) -> Response:  # noqa: F811 - instances carry a boolean ``ok``
        """A successful response without data."""
        return cls(True)

    @classmethod
    def ok_with_data(cls, data: Any) -> Response:
        """A successful response carrying *data*."""
        return cls(True, data=data)

    @classmethod
    def err(cls, message: str) -> Response:
        """A failed response with an error message."""
        return cls(False, error=str(message))

    def to_dict(self) -> dict[str, Any]:
        """Wire form; ``data`` and ``error`` are left out when unset."""
        result: dict[str, Any] = {"ok": self.ok}
        if self.data is not None:
            result["data"] = self.data
        if self.error is not None:
            result["error"] = self.error
        return result

    def to_json(self) -> str:
        """Compact JSON encoding of :meth:`to_dict`."""
        return json.dumps(self.to_dict(), separators=(",", ":"))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Response):
            return NotImplemented
        return (self.ok, self.data, self.error) == (other.ok, other.data, other.error)

    def __repr__(self) -> str:
        return f"Response(ok={self.ok!r}, data={self.data!r}, error={self.error!r})"


class HelperClient:
    """Async client for the helper's Unix socket."""

    def __init__(self, socket_path: Path | str | None = None) -> None:
        self.socket_path = Path(socket_path) if socket_path is not None else DEFAULT_SOCKET_PATH

    async def request(self, command: str, args: dict[str, Any] | None = None) -> Any:
        """Send one command and return its ``data``; raise on failure."""
        payload = json.dumps({"command": command, "args": args or {}}) + "\n"
        try:
            reader, writer = await asyncio.open_unix_connection(str(self.socket_path))
        except OSError as exc:
            raise ProtocolError(
                f"cannot connect to helper at {self.socket_path}: {exc}"
            ) from exc
        try:
            writer.write(payload.encode("utf-8"))
            await writer.drain()
            line = await reader.readline()
        except OSError as exc:
            raise ProtocolError(f"helper connection failed: {exc}") from exc
        finally:
            writer.close()
            with suppress(OSError):
                await writer.wait_closed()

        if not line:
            raise ProtocolError("helper closed the connection without a response")
        try:
            data = json.loads(line)
        except ValueError as exc:
            raise ProtocolError(f"invalid response JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ProtocolError("invalid response JSON: expected an object")
        if not data.get("ok"):
            raise ProtocolError(data.get("error") or f"helper command {command} failed")
        return data.get("data")

    async def add_host(self, hostname: str, ip: str = "127.0.0.1") -> None:
        """Register a DNS entry for *hostname*."""
        await self.request("add_host", {"hostname": hostname, "ip": ip})

    async def remove_host(self, hostname: str) -> None:
        """Remove the DNS entry for *hostname*."""
        await self.request("remove_host", {"hostname": hostname})

    async def remove_route(self, route_id: str) -> None:
        """Remove the proxy route with the given id."""
        await self.request("remove_route", {"route_id": route_id})