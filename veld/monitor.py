"""Periodic health scan of running runs, broadcasting status changes."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import suppress
from datetime import datetime, timezone
from pathlib import Path

from veld.broadcaster import Broadcaster
from veld.state import GlobalRegistry, NodeStatus, ProjectState, RunStatus, StateError

__all__ = ["SCAN_INTERVAL", "is_process_alive", "run_health_monitor", "scan_and_update"]

logger = logging.getLogger(__name__)

SCAN_INTERVAL = 5.0


def is_process_alive(pid: int) -> bool:
    """Return True if signal 0 can be delivered to *pid*."""
    try:
        os.kill(pid, 0)
    except (OSError, OverflowError):
        return False
    return True


def _update_registry(registry_path: Path | str | None, project_root: Path, run_name: str) -> None:
    try:
        registry = GlobalRegistry.load(registry_path)
    except StateError:
        registry = GlobalRegistry()
    entry = registry.projects.get(str(project_root))
    if entry is not None:
        info = entry.runs.get(run_name)
        if info is not None:
            info.status = RunStatus.STOPPED
    with suppress(StateError):
        registry.save(registry_path)


def scan_and_update(
    broadcaster: Broadcaster, registry_path: Path | str | None = None
) -> int:
    """Stop running runs whose processes died; return the number of changes."""
    registry = GlobalRegistry.load(registry_path)
    changes = 0

    for entry in registry.projects.values():
        project_root = entry.project_root
        for run_name, info in entry.runs.items():
            if info.status is not RunStatus.RUNNING:
                continue

            try:
                project_state = ProjectState.load(project_root)
            except StateError as exc:
                logger.debug("could not load project state for %s: %s", project_root, exc)
                continue

            run = project_state.get_run(run_name)
            if run is None:
                continue

            dead = [
                node
                for node in run.nodes.values()
                if node.pid is not None and not is_process_alive(node.pid)
            ]
            for node in dead:
                logger.info(
                    "process %d (node %s:%s) is no longer alive",
                    node.pid,
                    node.node_name,
                    node.variant,
                )
            if not dead:
                continue

            try:
                project_state = ProjectState.load(project_root)
            except StateError:
                continue
            run = project_state.get_run(run_name)
            if run is not None:
                run.status = RunStatus.STOPPED
                run.stopped_at = datetime.now(timezone.utc)
                for node in run.nodes.values():
                    if node.pid is not None and not is_process_alive(node.pid):
                        node.status = NodeStatus.STOPPED
            with suppress(StateError):
                project_state.save(project_root)

            _update_registry(registry_path, project_root, run_name)

            broadcaster.broadcast(
                {
                    "event": "status_change",
                    "run": run_name,
                    "project": str(project_root),
                    "old_status": "running",
                    "new_status": "stopped",
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            )
            changes += 1

    return changes


async def run_health_monitor(
    broadcaster: Broadcaster,
    registry_path: Path | str | None = None,
    interval: float = SCAN_INTERVAL,
) -> None:
    """Scan every *interval* seconds, forever."""
    while True:
        logger.debug("running health-check scan")
        try:
            changes = scan_and_update(broadcaster, registry_path)
        except StateError as exc:
            logger.warning("health scan error: %s", exc)
        else:
            if changes:
                logger.info("health scan detected %d status change(s)", changes)
        await asyncio.sleep(interval)