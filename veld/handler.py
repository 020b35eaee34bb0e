"""Dispatch of helper requests to the DNS and Caddy managers."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from veld import dns
from veld.caddy import CaddyError, CaddyManager, FeedbackConfig
from veld.dns import DnsError, DnsManager
from veld.protocol import ProtocolError, Request, Response

logger = logging.getLogger(__name__)


class _MissingArgument(Exception):
    def __init__(self, name: str) -> None:
        super().__init__(name)
        self.name = name


def _require(args: dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str):
        raise _MissingArgument(key)
    return value


def _optional(args: dict[str, Any], key: str) -> str | None:
    value = args.get(key)
    return value if isinstance(value, str) else None


class HelperState:
    """Shared state of all helper connections."""

    def __init__(self, dns: DnsManager, caddy: CaddyManager) -> None:
        self.dns = dns
        self.caddy = caddy
        self._commands: dict[str, Callable[[dict[str, Any]], Awaitable[Any]]] = {
            "add_host": self._add_host,
            "remove_host": self._remove_host,
            "add_route": self._add_route,
            "remove_route": self._remove_route,
            "reload_dns": self._reload_dns,
            "caddy_start": self._caddy_start,
            "caddy_stop": self._caddy_stop,
            "caddy_reload": self._caddy_reload,
            "status": self._status,
        }

    async def handle_request(self, line: str | bytes) -> Response:
        """Parse and run one JSON request line."""
        try:
            request = Request.from_json(line)
        except ProtocolError as exc:
            return Response.err(str(exc))

        handler = self._commands.get(request.command)
        if handler is None:
            logger.warning("unknown command: %s", request.command)
            return Response.err(f"unknown command: {request.command}")

        try:
            data = await handler(request.args)
        except _MissingArgument as exc:
            return Response.err(f"missing '{exc.name}' in args")
        except (DnsError, CaddyError) as exc:
            return Response.err(str(exc))
        return Response.ok() if data is None else Response.ok_with_data(data)

    async def _add_host(self, args: dict[str, Any]) -> None:
        hostname = _require(args, "hostname")
        ip = _optional(args, "ip") or "127.0.0.1"
        await self.dns.add_host(hostname, ip)

    async def _remove_host(self, args: dict[str, Any]) -> None:
        await self.dns.remove_host(_require(args, "hostname"))

    async def _add_route(self, args: dict[str, Any]) -> None:
        route_id = _require(args, "route_id")
        hostname = _require(args, "hostname")
        upstream = _require(args, "upstream")

        fields = (
            _optional(args, "feedback_upstream"),
            _optional(args, "run_name"),
            _optional(args, "project_root"),
        )
        feedback = None
        if all(value is not None for value in fields):
            fb_upstream, run_name, project_root = fields
            feedback = FeedbackConfig(
                upstream=fb_upstream, run_name=run_name, project_root=project_root
            )
        elif any(value is not None for value in fields):
            logger.warning(
                "partial feedback config in add_route args, disabling feedback overlay"
            )

        await self.caddy.add_route(route_id, hostname, upstream, feedback)

    async def _remove_route(self, args: dict[str, Any]) -> None:
        await self.caddy.remove_route(_require(args, "route_id"))

    async def _reload_dns(self, args: dict[str, Any]) -> None:
        await dns.reload_dns()

    async def _caddy_start(self, args: dict[str, Any]) -> None:
        await self.caddy.start()

    async def _caddy_stop(self, args: dict[str, Any]) -> None:
        await self.caddy.stop()

    async def _caddy_reload(self, args: dict[str, Any]) -> None:
        await self.caddy.reload()

    async def _status(self, args: dict[str, Any]) -> dict[str, Any]:
        running = await self.caddy.is_running()
        return {
            "caddy": "running" if running else "stopped",
            "dns_entries": await self.dns.entry_count(),
        }