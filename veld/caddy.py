"""Management of the Caddy reverse proxy through its admin API."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

logger = logging.getLogger(__name__)

CADDY_ADMIN_API = "http://localhost:2019"

_STARTUP_POLLS = 30
_STARTUP_POLL_DELAY = 0.2


class CaddyError(Exception):
    """Caddy could not be started, configured or reached."""


@dataclass(frozen=True)
class FeedbackConfig:
    """Where feedback overlay requests go and which run they belong to."""

    upstream: str
    run_name: str
    project_root: str


def build_base_config(data_dir: Path | str) -> dict[str, Any]:
    """Base Caddy config: one ``veld`` server, local CA, internal TLS issuer."""
    data_dir = Path(data_dir)
    try:
        data_dir.mkdir(parents=True, exist_ok=True)
    except OSError:
        pass
    return {
        "storage": {"module": "file_system", "root": str(data_dir)},
        "apps": {
            "http": {
                "servers": {
                    "veld": {"listen": [":443", ":80"], "routes": []},
                },
            },
            "pki": {
                "certificate_authorities": {"local": {"name": "Veld Local CA"}},
            },
            "tls": {
                "automation": {"policies": [{"issuers": [{"module": "internal"}]}]},
            },
        },
    }


def build_route_json(
    route_id: str,
    hostname: str,
    upstream: str,
    feedback: FeedbackConfig | None = None,
) -> dict[str, Any]:
    """A host-matched route proxying to *upstream*, with optional feedback overlay."""
    if feedback is not None:
        subroutes = [
            {
                "match": [{"path": ["/__veld__/*"]}],
                "handle": [
                    {"handler": "rewrite", "strip_path_prefix": "/__veld__"},
                    {
                        "handler": "reverse_proxy",
                        "headers": {
                            "request": {
                                "set": {
                                    "X-Veld-Run": [feedback.run_name],
                                    "X-Veld-Project": [feedback.project_root],
                                },
                            },
                        },
                        "upstreams": [{"dial": feedback.upstream}],
                    },
                ],
            },
            {
                "handle": [
                    {
                        "handler": "replace_response",
                        "replacements": [
                            {
                                "search": "</body>",
                                "replace": '<script src="/__veld__/feedback/script.js">'
                                "</script></body>",
                            }
                        ],
                    },
                    {"handler": "reverse_proxy", "upstreams": [{"dial": upstream}]},
                ],
            },
        ]
    else:
        subroutes = [
            {"handle": [{"handler": "reverse_proxy", "upstreams": [{"dial": upstream}]}]}
        ]

    return {
        "@id": route_id,
        "match": [{"host": [hostname]}],
        "handle": [{"handler": "subroute", "routes": subroutes}],
        "terminal": True,
    }


def is_process_alive(pid: int) -> bool:
    """Whether signal 0 can be delivered to *pid*."""
    try:
        os.kill(pid, 0)
    except (OSError, OverflowError):
        return False
    return True


class CaddyManager:
    """Starts and stops Caddy and edits its routes."""

    def __init__(
        self,
        caddy_bin: Path | str,
        data_dir: Path | str,
        admin_api: str = CADDY_ADMIN_API,
    ) -> None:
        self.caddy_bin = Path(caddy_bin)
        self.data_dir = Path(data_dir)
        self.admin_api = admin_api.rstrip("/")
        self._lock = asyncio.Lock()
        self._child_pid: int | None = None
        self._process: asyncio.subprocess.Process | None = None

    async def start(self) -> None:
        """Start Caddy unless it is already running, then load the base config."""
        async with self._lock:
            if self._child_pid is not None:
                if is_process_alive(self._child_pid):
                    logger.info("caddy is already running (pid %d)", self._child_pid)
                    return
                self._child_pid = None

        if await self.is_running():
            logger.info("caddy admin API already reachable, skipping startup")
            return

        async with self._lock:
            if not self.caddy_bin.exists():
                raise CaddyError(f"caddy not found at {self.caddy_bin}")
            try:
                self._process = await asyncio.create_subprocess_exec(
                    str(self.caddy_bin),
                    "run",
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                )
            except OSError as exc:
                raise CaddyError(f"spawning caddy at {self.caddy_bin}: {exc}") from exc
            pid = self._process.pid
            self._child_pid = pid

        logger.info("caddy process started (pid %d), loading base config...", pid)
        async with httpx.AsyncClient() as client:
            for _ in range(_STARTUP_POLLS):
                await asyncio.sleep(_STARTUP_POLL_DELAY)
                try:
                    await client.get(f"{self.admin_api}/config/")
                except httpx.HTTPError:
                    continue
                break
        try:
            await self.reload()
        except CaddyError as exc:
            raise CaddyError(f"failed to load caddy base config: {exc}") from exc
        logger.info("caddy started with base config (pid %d)", pid)

    async def stop(self) -> None:
        """Stop Caddy via the admin API, falling back to SIGTERM."""
        async with self._lock:
            try:
                async with httpx.AsyncClient() as client:
                    resp = await client.post(f"{self.admin_api}/stop")
            except httpx.HTTPError as exc:
                logger.debug("caddy admin API not reachable for /stop: %s", exc)
            else:
                if resp.is_success:
                    logger.info("caddy stopped via admin API")
                    self._child_pid = None
                    return
                logger.debug("caddy admin API /stop returned %d", resp.status_code)

            pid, self._child_pid = self._child_pid, None
            if pid is not None:
                try:
                    os.kill(pid, signal.SIGTERM)
                except OSError as exc:
                    logger.warning("failed to send SIGTERM to caddy: %s", exc)
                else:
                    logger.info("sent SIGTERM to caddy (pid %d)", pid)

    async def reload(self) -> None:
        """Load the base configuration through ``/load``."""
        body = json.dumps(build_base_config(self.data_dir))
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(
                    f"{self.admin_api}/load",
                    content=body,
                    headers={"Content-Type": "application/json"},
                )
        except httpx.HTTPError as exc:
            raise CaddyError(f"posting config to caddy /load: {exc}") from exc
        if not resp.is_success:
            raise CaddyError(f"caddy /load returned error: {resp.text}")
        logger.info("caddy configuration reloaded")

    async def add_route(
        self,
        route_id: str,
        hostname: str,
        upstream: str,
        feedback: FeedbackConfig | None = None,
    ) -> None:
        """Append a reverse-proxy route to the ``veld`` server."""
        body = json.dumps(build_route_json(route_id, hostname, upstream, feedback))
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(
                    f"{self.admin_api}/config/apps/http/servers/veld/routes",
                    content=body,
                    headers={"Content-Type": "application/json"},
                )
        except httpx.HTTPError as exc:
            raise CaddyError(f"adding route to caddy: {exc}") from exc
        if not resp.is_success:
            raise CaddyError(f"caddy add route returned error: {resp.text}")
        logger.info("caddy route added: %s %s -> %s", route_id, hostname, upstream)

    async def remove_route(self, route_id: str) -> None:
        """Delete the route whose ``@id`` is *route_id*."""
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.delete(f"{self.admin_api}/id/{route_id}")
        except httpx.HTTPError as exc:
            raise CaddyError(f"removing route from caddy: {exc}") from exc
        if not resp.is_success:
            raise CaddyError(f"caddy remove route returned error: {resp.text}")
        logger.info("caddy route removed: %s", route_id)

    async def is_running(self) -> bool:
        """Whether the admin API answers ``/config/`` successfully."""
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.get(f"{self.admin_api}/config/")
        except httpx.HTTPError:
            return False
        return resp.is_success