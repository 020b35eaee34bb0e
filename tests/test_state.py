import json
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

import pytest

from veld.state import (
    GlobalRegistry,
    HealthCheckPhase,
    NodeState,
    NodeStatus,
    ProjectState,
    RegistryEntry,
    RegistryRunInfo,
    RunNotFoundError,
    RunState,
    RunStatus,
    StateError,
    state_file_path,
)


def make_run():
    run = RunState.create("swift-falcon", "shop")
    node = NodeState("backend", "local")
    node.status = NodeStatus.HEALTH_CHECKING
    node.pid = 4242
    node.port = 3000
    node.url = "https://backend.swift-falcon.localhost"
    node.outputs = {"url": "http://localhost:3000", "db_pass": "placeholder"}
    node.sensitive_keys = ["db_pass"]
    node.health_phases = [
        HealthCheckPhase(1, True, None, datetime(2024, 3, 1, 12, 0, 0, 123000, tzinfo=timezone.utc)),
        HealthCheckPhase(2, False, "connection refused", None),
    ]
    key = RunState.node_key("backend", "local")
    run.nodes[key] = node
    run.execution_order.append(key)
    return run


def test_node_key():
    assert RunState.node_key("backend", "local") == "backend:local"


def test_new_node_defaults():
    node = NodeState("web", "dev")
    assert node.status is NodeStatus.PENDING
    assert node.pid is None and node.port is None and node.url is None
    assert node.outputs == {} and node.health_phases == [] and node.sensitive_keys == []


def test_create_run_defaults():
    run = RunState.create("a", "b")
    assert run.status is RunStatus.STARTING
    assert run.nodes == {}
    assert run.stopped_at is None
    assert run.created_at.tzinfo is not None
    assert RunState.create("a", "b").run_id != run.run_id


def test_status_serialized_snake_case():
    data = make_run().to_dict()
    assert data["status"] == RunStatus.STARTING.value
    assert data["nodes"]["backend:local"]["status"] == "health_checking"


def test_health_phase_round_trip():
    phase = HealthCheckPhase(1, True, None, datetime(2024, 3, 1, 12, 0, 0, 123000, tzinfo=timezone.utc))
    data = phase.to_dict()
    assert isinstance(data["passed_at"], int)
    assert HealthCheckPhase.from_dict(data) == phase


def test_sensitive_keys_omitted_when_empty():
    data = NodeState("web", "dev").to_dict()
    assert "sensitive_keys" not in data
    assert NodeState.from_dict(data).sensitive_keys == []


def test_run_round_trip():
    run = make_run()
    run.stopped_at = datetime(2024, 3, 2, 8, 30, tzinfo=timezone.utc)
    assert RunState.from_dict(run.to_dict()) == run


def test_run_round_trip_through_json():
    run = make_run()
    assert RunState.from_dict(json.loads(json.dumps(run.to_dict()))) == run


def test_execution_order_defaults_when_missing():
    data = make_run().to_dict()
    del data["execution_order"]
    assert RunState.from_dict(data).execution_order == []


def test_parses_nanosecond_timestamps():
    data = make_run().to_dict()
    data["created_at"] = "2024-05-06T07:08:09.123456789Z"
    run = RunState.from_dict(data)
    assert run.created_at == datetime(2024, 5, 6, 7, 8, 9, 123456, tzinfo=timezone.utc)


def test_invalid_status_rejected():
    data = make_run().to_dict()
    data["status"] = "exploded"
    with pytest.raises(ValueError):
        RunState.from_dict(data)


def test_state_file_path(tmp_path):
    assert state_file_path(tmp_path) == tmp_path / ".veld" / "state.json"


def test_load_missing_is_empty(tmp_path):
    assert ProjectState.load(tmp_path).runs == {}


def test_save_and_load(tmp_path):
    state = ProjectState()
    run = make_run()
    state.runs[run.name] = run
    state.save(tmp_path)
    assert state_file_path(tmp_path).exists()
    loaded = ProjectState.load(tmp_path)
    assert loaded == state
    assert loaded.get_run("swift-falcon") == run
    assert loaded.get_run("nope") is None


def test_load_corrupt_raises(tmp_path):
    path = state_file_path(tmp_path)
    path.parent.mkdir(parents=True)
    path.write_text("{not json")
    with pytest.raises(StateError) as info:
        ProjectState.load(tmp_path)
    assert info.value.path == path


def test_load_wrong_shape_raises(tmp_path):
    path = state_file_path(tmp_path)
    path.parent.mkdir(parents=True)
    path.write_text(json.dumps({"runs": {"x": {"name": "x"}}}))
    with pytest.raises(StateError):
        ProjectState.load(tmp_path)


def test_port_out_of_range_rejected():
    data = NodeState("web", "dev").to_dict()
    data["port"] = 70000
    with pytest.raises(ValueError):
        NodeState.from_dict(data)


def test_run_not_found_message():
    error = RunNotFoundError("ghost")
    assert str(error) == 'run "ghost" not found'
    assert isinstance(error, StateError)


def test_registry_path_location():
    path = GlobalRegistry.registry_path()
    assert path.name == "registry.json"
    assert path.parent.name == "veld"


def test_registry_round_trip(tmp_path):
    root = tmp_path / "proj"
    info = RegistryRunInfo(uuid4(), "swift-falcon", RunStatus.RUNNING, {"backend": "https://b.localhost"})
    registry = GlobalRegistry({str(root): RegistryEntry(root, "proj", {"swift-falcon": info})})
    target = tmp_path / "data" / "registry.json"
    registry.save(target)
    loaded = GlobalRegistry.load(target)
    assert loaded == registry
    assert loaded.projects[str(root)].project_root == root


def test_registry_missing_is_empty(tmp_path):
    assert GlobalRegistry.load(tmp_path / "none.json").projects == {}


def test_registry_corrupt_raises(tmp_path):
    target = tmp_path / "registry.json"
    target.write_text("[]")
    with pytest.raises(StateError):
        GlobalRegistry.load(target)


def test_registry_entry_serializes_path_as_string():
    entry = RegistryEntry(Path("/tmp/project"), "project")
    assert entry.to_dict()["project_root"] == str(Path("/tmp/project"))