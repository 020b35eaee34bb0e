"""Run, node and registry state persisted as JSON."""

from __future__ import annotations

import enum
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, TypeVar
from uuid import UUID, uuid4

import platformdirs


class StateError(Exception):
    """A state or registry file could not be read, parsed or written."""

    def __init__(self, message: str, path: Path | None = None) -> None:
        super().__init__(message)
        self.path = path


class RunNotFoundError(StateError):
    """A run with the given name does not exist."""

    def __init__(self, name: str) -> None:
        super().__init__(f'run "{name}" not found')
        self.name = name


class RunStatus(str, enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


class NodeStatus(str, enum.Enum):
    PENDING = "pending"
    STARTING = "starting"
    HEALTH_CHECKING = "health_checking"
    HEALTHY = "healthy"
    FAILED = "failed"
    STOPPED = "stopped"
    SKIPPED = "skipped"


# ---------------------------------------------------------------------------
# Value conversion helpers
# ---------------------------------------------------------------------------

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MILLISECOND = timedelta(milliseconds=1)
_FRACTION = re.compile(r"\.(\d+)")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _format_datetime(value: datetime) -> str:
    text = value.astimezone(timezone.utc).isoformat()
    return text[:-6] + "Z" if text.endswith("+00:00") else text


def _parse_datetime(text: Any) -> datetime:
    if not isinstance(text, str):
        raise TypeError(f"expected a timestamp string, got {text!r}")
    normalized = text.strip()
    if normalized[-1:] in ("Z", "z"):
        normalized = normalized[:-1] + "+00:00"
    normalized = _FRACTION.sub(
        lambda m: "." + m.group(1)[:6].ljust(6, "0"), normalized, count=1
    )
    value = datetime.fromisoformat(normalized)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_millis(value: datetime | None) -> int | None:
    if value is None:
        return None
    return (value.astimezone(timezone.utc) - _EPOCH) // _MILLISECOND


def _from_millis(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"expected integer milliseconds, got {value!r}")
    return _EPOCH + timedelta(milliseconds=value)


def _optional_int(value: Any, name: str, maximum: int) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name} must be an integer, got {value!r}")
    if not 0 <= value <= maximum:
        raise ValueError(f"{name} out of range: {value}")
    return value


def _str_map(value: Any, name: str) -> dict[str, str]:
    if not isinstance(value, dict):
        raise TypeError(f"{name} must be an object")
    if not all(isinstance(k, str) and isinstance(v, str) for k, v in value.items()):
        raise TypeError(f"{name} must map strings to strings")
    return dict(value)


def _str_list(value: Any, name: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise TypeError(f"{name} must be a list of strings")
    return list(value)


T = TypeVar("T")


def _load_json(path: Path, factory: Callable[[Any], T]) -> T:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise StateError(f"failed to read state file {path}: {exc}", path) from exc
    try:
        return factory(json.loads(text))
    except (ValueError, KeyError, TypeError, AttributeError) as exc:
        raise StateError(f"failed to parse state file {path}: {exc}", path) from exc


def _save_json(path: Path, data: Any) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    except OSError as exc:
        raise StateError(f"failed to write state file {path}: {exc}", path) from exc


# ---------------------------------------------------------------------------
# Node and run state
# ---------------------------------------------------------------------------


@dataclass
class HealthCheckPhase:
    """Progress of one health-check phase (1 = port, 2 = HTTPS)."""

    phase: int
    passed: bool
    last_error: str | None = None
    passed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "passed": self.passed,
            "last_error": self.last_error,
            "passed_at": _to_millis(self.passed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HealthCheckPhase:
        passed = data["passed"]
        if not isinstance(passed, bool):
            raise TypeError("passed must be a boolean")
        return cls(
            phase=_optional_int(data["phase"], "phase", 255),
            passed=passed,
            last_error=data.get("last_error"),
            passed_at=_from_millis(data.get("passed_at")),
        )


@dataclass
class NodeState:
    """State of one node variant within a run."""

    node_name: str
    variant: str
    status: NodeStatus = NodeStatus.PENDING
    pid: int | None = None
    port: int | None = None
    url: str | None = None
    outputs: dict[str, str] = field(default_factory=dict)
    health_phases: list[HealthCheckPhase] = field(default_factory=list)
    sensitive_keys: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "node_name": self.node_name,
            "variant": self.variant,
            "status": self.status.value,
            "pid": self.pid,
            "port": self.port,
            "url": self.url,
            "outputs": dict(self.outputs),
            "health_phases": [phase.to_dict() for phase in self.health_phases],
        }
        if self.sensitive_keys:
            data["sensitive_keys"] = list(self.sensitive_keys)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NodeState:
        return cls(
            node_name=data["node_name"],
            variant=data["variant"],
            status=NodeStatus(data["status"]),
            pid=_optional_int(data.get("pid"), "pid", 2**32 - 1),
            port=_optional_int(data.get("port"), "port", 65535),
            url=data.get("url"),
            outputs=_str_map(data["outputs"], "outputs"),
            health_phases=[HealthCheckPhase.from_dict(p) for p in data["health_phases"]],
            sensitive_keys=_str_list(data.get("sensitive_keys", []), "sensitive_keys"),
        )


@dataclass
class RunState:
    """State of one named run of a project."""

    name: str
    project: str
    run_id: UUID = field(default_factory=uuid4)
    status: RunStatus = RunStatus.STARTING
    nodes: dict[str, NodeState] = field(default_factory=dict)
    execution_order: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)
    stopped_at: datetime | None = None

    @classmethod
    def create(cls, name: str, project: str) -> RunState:
        """Create a fresh run with a new id, starting now."""
        return cls(name=name, project=project)

    @staticmethod
    def node_key(node: str, variant: str) -> str:
        """Key of a node in :attr:`nodes`: ``"node:variant"``."""
        return f"{node}:{variant}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": str(self.run_id),
            "name": self.name,
            "project": self.project,
            "status": self.status.value,
            "nodes": {key: node.to_dict() for key, node in self.nodes.items()},
            "execution_order": list(self.execution_order),
            "created_at": _format_datetime(self.created_at),
            "stopped_at": None if self.stopped_at is None else _format_datetime(self.stopped_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunState:
        stopped_at = data.get("stopped_at")
        return cls(
            run_id=UUID(data["run_id"]),
            name=data["name"],
            project=data["project"],
            status=RunStatus(data["status"]),
            nodes={key: NodeState.from_dict(node) for key, node in data["nodes"].items()},
            execution_order=_str_list(data.get("execution_order", []), "execution_order"),
            created_at=_parse_datetime(data["created_at"]),
            stopped_at=None if stopped_at is None else _parse_datetime(stopped_at),
        )


def state_file_path(project_root: Path | str) -> Path:
    """Location of the project state file: ``<root>/.veld/state.json``."""
    return Path(project_root) / ".veld" / "state.json"


@dataclass
class ProjectState:
    """All runs of one project, stored in ``.veld/state.json``."""

    runs: dict[str, RunState] = field(default_factory=dict)

    @classmethod
    def load(cls, project_root: Path | str) -> ProjectState:
        """Load the project's state; a missing file yields an empty state."""
        path = state_file_path(project_root)
        if not path.exists():
            return cls()
        return _load_json(path, cls.from_dict)

    def save(self, project_root: Path | str) -> None:
        """Write the state to ``.veld/state.json``, creating the directory."""
        _save_json(state_file_path(project_root), self.to_dict())

    def get_run(self, name: str) -> RunState | None:
        return self.runs.get(name)

    def to_dict(self) -> dict[str, Any]:
        return {"runs": {name: run.to_dict() for name, run in self.runs.items()}}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProjectState:
        return cls(runs={name: RunState.from_dict(run) for name, run in data["runs"].items()})


# ---------------------------------------------------------------------------
# Global registry
# ---------------------------------------------------------------------------


@dataclass
class RegistryRunInfo:
    """Summary of a run kept in the global registry."""

    run_id: UUID
    name: str
    status: RunStatus
    urls: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": str(self.run_id),
            "name": self.name,
            "status": self.status.value,
            "urls": dict(self.urls),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RegistryRunInfo:
        return cls(
            run_id=UUID(data["run_id"]),
            name=data["name"],
            status=RunStatus(data["status"]),
            urls=_str_map(data["urls"], "urls"),
        )


@dataclass
class RegistryEntry:
    """A project known to the global registry."""

    project_root: Path
    project_name: str
    runs: dict[str, RegistryRunInfo] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_root": str(self.project_root),
            "project_name": self.project_name,
            "runs": {name: info.to_dict() for name, info in self.runs.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RegistryEntry:
        return cls(
            project_root=Path(data["project_root"]),
            project_name=data["project_name"],
            runs={name: RegistryRunInfo.from_dict(i) for name, i in data["runs"].items()},
        )


@dataclass
class GlobalRegistry:
    """Registry of all projects and their runs, shared across projects."""

    projects: dict[str, RegistryEntry] = field(default_factory=dict)

    @staticmethod
    def registry_path() -> Path:
        """Default registry location in the user's data directory."""
        return Path(platformdirs.user_data_dir()) / "veld" / "registry.json"

    @classmethod
    def load(cls, path: Path | str | None = None) -> GlobalRegistry:
        """Load the registry; a missing file yields an empty registry."""
        target = Path(path) if path is not None else cls.registry_path()
        if not target.exists():
            return cls()
        return _load_json(target, cls.from_dict)

    def save(self, path: Path | str | None = None) -> None:
        """Write the registry, creating its directory if needed."""
        target = Path(path) if path is not None else self.registry_path()
        _save_json(target, self.to_dict())

    def to_dict(self) -> dict[str, Any]:
        return {"projects": {key: entry.to_dict() for key, entry in self.projects.items()}}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GlobalRegistry:
        return cls(
            projects={key: RegistryEntry.from_dict(e) for key, e in data["projects"].items()}
        )