import json
import os

import httpx
import pytest
import respx

from veld.caddy import (
    CaddyError,
    CaddyManager,
    FeedbackConfig,
    build_base_config,
    build_route_json,
    is_process_alive,
)

API = "http://localhost:2019"


def test_build_route_json():
    route = build_route_json("test-route", "app.test.localhost", "localhost:3000", None)
    assert route["@id"] == "test-route"
    assert route["match"][0]["host"][0] == "app.test.localhost"
    subroutes = route["handle"][0]["routes"]
    assert len(subroutes) == 1
    assert subroutes[0]["handle"][0]["upstreams"][0]["dial"] == "localhost:3000"
    assert route["terminal"] is True


def test_build_route_json_with_feedback():
    route = build_route_json(
        "test-route",
        "app.test.localhost",
        "localhost:3000",
        FeedbackConfig(
            upstream="localhost:19899",
            run_name="my-run",
            project_root="/tmp/project",
        ),
    )
    subroutes = route["handle"][0]["routes"]
    assert len(subroutes) == 2
    assert subroutes[0]["match"][0]["path"][0] == "/__veld__/*"
    fb_proxy = subroutes[0]["handle"][1]
    assert fb_proxy["headers"]["request"]["set"]["X-Veld-Run"][0] == "my-run"
    assert fb_proxy["headers"]["request"]["set"]["X-Veld-Project"][0] == "/tmp/project"
    assert fb_proxy["upstreams"][0]["dial"] == "localhost:19899"
    assert subroutes[1]["handle"][1]["upstreams"][0]["dial"] == "localhost:3000"
    assert subroutes[1]["handle"][0]["replacements"][0]["search"] == "</body>"


def test_build_base_config(tmp_path):
    data_dir = tmp_path / "caddy-data"
    config = build_base_config(data_dir)
    assert isinstance(config["apps"]["http"]["servers"]["veld"], dict)
    assert config["storage"]["root"] == str(data_dir)
    assert data_dir.is_dir()


def test_is_process_alive_self():
    assert is_process_alive(os.getpid()) is True


def test_is_process_alive_missing_pid():
    assert is_process_alive(99999999) is False


@pytest.mark.asyncio
async def test_add_route_posts_route(tmp_path):
    manager = CaddyManager(tmp_path / "caddy", tmp_path / "data")
    with respx.mock(assert_all_called=False) as router:
        route = router.post(f"{API}/config/apps/http/servers/veld/routes").respond(200)
        await manager.add_route("r1", "app.test.localhost", "localhost:3000")
    assert route.called
    body = json.loads(route.calls.last.request.content)
    assert body == build_route_json("r1", "app.test.localhost", "localhost:3000")


@pytest.mark.asyncio
async def test_add_route_error_raises(tmp_path):
    manager = CaddyManager(tmp_path / "caddy", tmp_path / "data")
    with respx.mock(assert_all_called=False) as router:
        router.post(f"{API}/config/apps/http/servers/veld/routes").respond(400, text="bad")
        with pytest.raises(CaddyError, match="caddy add route returned error: bad"):
            await manager.add_route("r1", "h", "u")


@pytest.mark.asyncio
async def test_remove_route_uses_id_endpoint(tmp_path):
    manager = CaddyManager(tmp_path / "caddy", tmp_path / "data")
    with respx.mock(assert_all_called=False) as router:
        route = router.delete(f"{API}/id/r1").respond(200)
        result = await manager.remove_route("r1")
    assert result is None
    assert route.call_count == 1


@pytest.mark.asyncio
async def test_remove_route_error_raises(tmp_path):
    manager = CaddyManager(tmp_path / "caddy", tmp_path / "data")
    with respx.mock(assert_all_called=False) as router:
        router.delete(f"{API}/id/r1").respond(404, text="unknown object ID")
        with pytest.raises(CaddyError, match="unknown object ID"):
            await manager.remove_route("r1")


@pytest.mark.asyncio
async def test_reload_posts_base_config(tmp_path):
    data_dir = tmp_path / "data"
    manager = CaddyManager(tmp_path / "caddy", data_dir)
    with respx.mock(assert_all_called=False) as router:
        route = router.post(f"{API}/load").respond(200)
        await manager.reload()
    body = json.loads(route.calls.last.request.content)
    assert body == build_base_config(data_dir)
    assert route.calls.last.request.headers["content-type"] == "application/json"


@pytest.mark.asyncio
async def test_reload_unreachable_raises(tmp_path):
    manager = CaddyManager(tmp_path / "caddy", tmp_path / "data")
    with respx.mock(assert_all_called=False) as router:
        router.post(f"{API}/load").mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(CaddyError, match="/load"):
            await manager.reload()


@pytest.mark.asyncio
async def test_is_running_states(tmp_path):
    manager = CaddyManager(tmp_path / "caddy", tmp_path / "data")
    with respx.mock(assert_all_called=False) as router:
        router.get(f"{API}/config/").respond(200, json={})
        assert await manager.is_running() is True
    with respx.mock(assert_all_called=False) as router:
        router.get(f"{API}/config/").respond(500)
        assert await manager.is_running() is False
    with respx.mock(assert_all_called=False) as router:
        router.get(f"{API}/config/").mock(side_effect=httpx.ConnectError("refused"))
        assert await manager.is_running() is False


@pytest.mark.asyncio
async def test_start_skips_when_admin_reachable(tmp_path):
    manager = CaddyManager(tmp_path / "missing-caddy", tmp_path / "data")
    with respx.mock(assert_all_called=False) as router:
        probe = router.get(f"{API}/config/").respond(200, json={})
        load = router.post(f"{API}/load").respond(200)
        result = await manager.start()
    assert result is None
    assert probe.called
    assert not load.called


@pytest.mark.asyncio
async def test_start_missing_binary_raises(tmp_path):
    manager = CaddyManager(tmp_path / "missing-caddy", tmp_path / "data")
    with respx.mock(assert_all_called=False) as router:
        router.get(f"{API}/config/").mock(side_effect=httpx.ConnectError("refused"))
        with pytest.raises(CaddyError, match="caddy not found"):
            await manager.start()


@pytest.mark.asyncio
async def test_stop_via_admin_api(tmp_path):
    manager = CaddyManager(tmp_path / "caddy", tmp_path / "data")
    with respx.mock(assert_all_called=False) as router:
        stop = router.post(f"{API}/stop").respond(200)
        result = await manager.stop()
    assert result is None
    assert stop.call_count == 1


@pytest.mark.asyncio
async def test_stop_unreachable_without_process(tmp_path):
    manager = CaddyManager(tmp_path / "caddy", tmp_path / "data")
    with respx.mock(assert_all_called=False) as router:
        stop = router.post(f"{API}/stop").mock(side_effect=httpx.ConnectError("refused"))
        result = await manager.stop()
    assert result is None
    assert stop.call_count == 1


@pytest.mark.asyncio
async def test_custom_admin_api(tmp_path):
    manager = CaddyManager(tmp_path / "caddy", tmp_path / "data", "http://127.0.0.1:2999/")
    with respx.mock(assert_all_called=False) as router:
        route = router.delete("http://127.0.0.1:2999/id/r2").respond(200)
        result = await manager.remove_route("r2")
    assert result is None
    assert route.call_count == 1