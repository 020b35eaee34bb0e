"""Garbage collection of orphaned runs, stale entries and old log files."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from veld.caddy import is_process_alive
from veld.protocol import HelperClient, ProtocolError
from veld.state import (
    GlobalRegistry,
    NodeStatus,
    ProjectState,
    RunState,
    RunStatus,
    StateError,
)

logger = logging.getLogger(__name__)

GC_INTERVAL = 600.0
MAX_ENTRY_AGE_HOURS = 72
MAX_LOG_AGE_HOURS = 168


@dataclass
class GcSummary:
    """Counts of what one garbage-collection pass cleaned up."""

    stale_removed: int = 0
    orphans_killed: int = 0
    logs_pruned: int = 0
    routes_cleaned: int = 0


def kill_process(pid: int) -> None:
    """Send SIGTERM to *pid*, ignoring failures."""
    with suppress(OSError, OverflowError):
        os.kill(pid, signal.SIGTERM)


async def cleanup_routes_and_dns(run: RunState, run_name: str, helper: Any) -> int:
    """Remove the proxy routes and DNS entries of a run; return routes removed."""
    cleaned = 0
    for node in run.nodes.values():
        route_id = f"veld-{run_name}-{node.node_name}-{node.variant}"
        try:
            await helper.remove_route(route_id)
        except (ProtocolError, OSError) as exc:
            logger.debug("could not remove route %s: %s", route_id, exc)
        else:
            logger.debug("removed Caddy route: %s", route_id)
            cleaned += 1

        if node.url is not None:
            hostname = node.url.removeprefix("https://")
            try:
                await helper.remove_host(hostname)
            except (ProtocolError, OSError) as exc:
                logger.debug("could not remove DNS entry %s: %s", hostname, exc)
            else:
                logger.debug("removed DNS entry: %s", hostname)
    return cleaned


def _is_orphan(run: RunState) -> bool:
    pids = [node.pid for node in run.nodes.values() if node.pid is not None]
    return bool(pids) and not any(is_process_alive(pid) for pid in pids)


def _stop_orphan(run: RunState) -> None:
    run.status = RunStatus.STOPPED
    run.stopped_at = datetime.now(timezone.utc)
    for node in run.nodes.values():
        if node.pid is None:
            continue
        if is_process_alive(node.pid):
            kill_process(node.pid)
        node.status = NodeStatus.STOPPED


def _is_stale(run: RunState) -> bool:
    if run.stopped_at is None:
        return False
    age = datetime.now(timezone.utc) - run.stopped_at
    return int(age.total_seconds() // 3600) > MAX_ENTRY_AGE_HOURS


def _prune_logs(registry_path: Path | str | None) -> int:
    try:
        registry = GlobalRegistry.load(registry_path)
    except StateError:
        registry = GlobalRegistry()

    pruned = 0
    now = time.time()
    for entry in registry.projects.values():
        logs_dir = entry.project_root / ".veld" / "logs"
        try:
            paths = list(logs_dir.iterdir())
        except OSError:
            continue
        for path in paths:
            try:
                modified = path.stat().st_mtime
            except OSError:
                continue
            age_hours = int(max(0.0, now - modified)) // 3600
            if age_hours > MAX_LOG_AGE_HOURS:
                logger.debug("pruning old log: %s", path)
                with suppress(OSError):
                    path.unlink()
                pruned += 1
    return pruned


async def run_gc(
    helper: Any = None, registry_path: Path | str | None = None
) -> GcSummary:
    """Perform one garbage-collection pass."""
    summary = GcSummary()
    helper = helper if helper is not None else HelperClient()

    registry = GlobalRegistry.load(registry_path)
    registry_changed = False

    for entry in registry.projects.values():
        project_root = entry.project_root
        try:
            project_state = ProjectState.load(project_root)
        except StateError as exc:
            logger.debug("could not load project state for %s: %s", project_root, exc)
            continue
        project_changed = False

        run_names = list(entry.runs)
        for run_name in run_names:
            info = entry.runs[run_name]
            run = project_state.get_run(run_name)
            if run is None:
                continue

            if info.status in (RunStatus.RUNNING, RunStatus.STARTING):
                if not _is_orphan(run):
                    continue
                logger.info("cleaning up orphan run '%s'", run_name)
                _stop_orphan(run)
                summary.routes_cleaned += await cleanup_routes_and_dns(run, run_name, helper)
                project_changed = True
                info.status = RunStatus.STOPPED
                info.urls.clear()
                registry_changed = True
                summary.orphans_killed += 1
            elif info.status in (RunStatus.STOPPED, RunStatus.FAILED):
                if not _is_stale(run):
                    continue
                logger.debug("removing stale run '%s' from project %s", run_name, project_root)
                summary.routes_cleaned += await cleanup_routes_and_dns(run, run_name, helper)
                del project_state.runs[run_name]
                project_changed = True
                summary.stale_removed += 1

        entry.runs = {
            name: info for name, info in entry.runs.items() if name in project_state.runs
        }
        if len(entry.runs) != len(run_names):
            registry_changed = True

        if project_changed:
            with suppress(StateError):
                project_state.save(project_root)

    if registry_changed:
        with suppress(StateError):
            registry.save(registry_path)

    summary.logs_pruned = _prune_logs(registry_path)
    return summary


async def run_gc_scheduler(
    helper: Any = None,
    registry_path: Path | str | None = None,
    interval: float = GC_INTERVAL,
) -> None:
    """Run a garbage-collection pass every *interval* seconds, forever."""
    while True:
        logger.info("running scheduled garbage collection")
        try:
            summary = await run_gc(helper, registry_path)
        except (StateError, OSError) as exc:
            logger.warning("gc error: %s", exc)
        else:
            logger.info(
                "gc complete: %d stale removed, %d orphans killed, "
                "%d logs pruned, %d routes cleaned",
                summary.stale_removed,
                summary.orphans_killed,
                summary.logs_pruned,
                summary.routes_cleaned,
            )
        await asyncio.sleep(interval)