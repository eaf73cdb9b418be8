from __future__ import annotations

import json
import threading
import time

import httpx
import pytest

from conftest import FakeProvider, make_pod
from sparkanywhere import control_plane as control_plane_module
from sparkanywhere.common.constants import ControlPlaneState
from sparkanywhere.common.errors import (
    ConfigurationError,
    LogRetrievalError,
    TaskCancelledError,
    TaskWaitError,
)
from sparkanywhere.common.schemas import Pod, TaskHandle
from sparkanywhere.common.settings import EcsSettings, Settings
from sparkanywhere.control_plane import ControlPlane


@pytest.fixture(autouse=True)
def no_backends(monkeypatch):
    """Fail loudly if a test reaches a real backend"""

    def _create_provider(*args, **kwargs):
        raise AssertionError("provider must not be constructed")

    monkeypatch.setattr(control_plane_module, "create_provider", _create_provider)


class _FailingWaitProvider(FakeProvider):
    def wait_for_task(self, handle, *, timeout=None, cancel=None):
        raise TaskWaitError("driver container vanished")


class _BlockingProvider(FakeProvider):
    def wait_for_task(self, handle, *, timeout=None, cancel=None):
        if not cancel.wait(5):
            raise AssertionError("never cancelled")
        raise TaskCancelledError("cancelled")


@pytest.mark.parametrize(
    "settings",
    [
        Settings(),
        Settings(docker_enabled=True, ecs_enabled=True),
        Settings(ecs_enabled=True, control_plane_addr="1.2.3.4"),
        Settings(
            ecs_enabled=True,
            ecs=EcsSettings(cluster_name="spark", subnet_id="subnet-1", security_group="sg-1"),
        ),
    ],
    ids=["no-provider", "both-providers", "ecs-without-resources", "ecs-without-address"],
)
def test_invalid_configuration_fails_before_provider(settings):
    with pytest.raises(ConfigurationError):
        ControlPlane(settings)


def test_docker_defaults_address(docker_settings, provider):
    control_plane = ControlPlane(docker_settings, provider=provider)

    assert control_plane.control_plane_addr == "host.docker.internal"
    assert control_plane.state == ControlPlaneState.PROVIDER_SELECTED


def test_deploy_runs_driver(provider):
    settings = Settings(docker_enabled=True, control_plane_addr="10.0.0.2", instances=2)
    control_plane = ControlPlane(settings, provider=provider)

    handle = control_plane.deploy()

    assert handle.name == "spark-pi"
    driver, = provider.created
    assert "k8s://http://10.0.0.2:1323" in driver.args[2]
    assert "spark.executor.instances=2" in driver.args[2]
    assert provider.waited == [handle]
    assert control_plane.broadcaster.handles() == [handle]
    assert control_plane.state == ControlPlaneState.DRIVER_COMPLETED


def test_deploy_failure_is_fatal(docker_settings):
    control_plane = ControlPlane(docker_settings, provider=_FailingWaitProvider())

    with pytest.raises(TaskWaitError):
        control_plane.deploy()
    assert control_plane.state == ControlPlaneState.FAILED


def test_cancel_unblocks_deploy(docker_settings):
    control_plane = ControlPlane(docker_settings, provider=_BlockingProvider())
    errors = []

    def _deploy():
        try:
            control_plane.deploy()
        except TaskCancelledError as e:
            errors.append(e)

    thread = threading.Thread(target=_deploy)
    thread.start()
    control_plane.cancel()
    thread.join(5)

    assert not thread.is_alive()
    assert len(errors) == 1


def test_gather_logs_writes_one_file_per_task(docker_settings, provider, pod, tmp_path):
    control_plane = ControlPlane(docker_settings, provider=provider)
    control_plane.deploy()
    control_plane.broadcaster.record_and_broadcast(pod, TaskHandle(id="task-9", name="exec-1"))

    log_dir = control_plane.gather_logs(tmp_path)

    assert log_dir == tmp_path / str(control_plane.started_at_ms)
    assert sorted(p.name for p in log_dir.iterdir()) == ["exec-1.log", "spark-pi.log"]
    assert (log_dir / "exec-1.log").read_text() == "logs of exec-1\n"
    assert control_plane.state == ControlPlaneState.LOGS_GATHERED


def test_gather_logs_stops_at_first_error(docker_settings, tmp_path):
    provider = FakeProvider(broken_logs=("exec-1",))
    control_plane = ControlPlane(docker_settings, provider=provider)
    control_plane.broadcaster.add_handle(TaskHandle(id="a", name="spark-pi"))
    control_plane.broadcaster.add_handle(TaskHandle(id="b", name="exec-1"))
    control_plane.broadcaster.add_handle(TaskHandle(id="c", name="exec-2"))

    with pytest.raises(LogRetrievalError):
        control_plane.gather_logs(tmp_path)

    log_dir = tmp_path / str(control_plane.started_at_ms)
    assert [p.name for p in log_dir.iterdir()] == ["spark-pi.log"]


def test_gather_logs_uses_configured_dir(provider, tmp_path):
    settings = Settings(docker_enabled=True, log_dir=tmp_path / "runs")
    control_plane = ControlPlane(settings, provider=provider)

    log_dir = control_plane.gather_logs()

    assert log_dir.parent == tmp_path / "runs"
    assert list(log_dir.iterdir()) == []


def test_server_serves_shim_until_shutdown(provider):
    settings = Settings(docker_enabled=True, host="127.0.0.1", port=0)
    control_plane = ControlPlane(settings, provider=provider)

    control_plane.start_server()
    assert control_plane.state == ControlPlaneState.SERVER_STARTED

    control_plane.shutdown()
    assert provider.closed
    assert not control_plane._server_thread.is_alive()


def test_shutdown_waits_for_pending_creations(docker_settings, provider, pod):
    control_plane = ControlPlane(docker_settings, provider=provider)
    control_plane.shim.submit_pod(Pod.model_validate(pod.to_wire()))

    control_plane.shutdown()

    assert [t.name for t in provider.created] == ["exec-1"]
    assert provider.closed


def _wait_for(condition, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            return False
        time.sleep(0.02)
    return True


def test_watch_streams_created_pods_over_http(provider):
    settings = Settings(docker_enabled=True, host="127.0.0.1", port=0)
    control_plane = ControlPlane(settings, provider=provider)
    control_plane.start_server()
    broadcaster = control_plane.broadcaster
    pods = "/api/v1/namespaces/default/pods"

    try:
        with httpx.Client(base_url=f"http://127.0.0.1:{control_plane.bound_port}", timeout=10) as http:
            with http.stream("GET", pods, params={"watch": "true"}) as stream:
                assert stream.status_code == 200
                assert stream.headers["content-type"].startswith("application/json")
                assert broadcaster.subscriber_count() == 1

                first, second = make_pod("exec-a"), make_pod("exec-b")
                assert http.post(pods, json=first).status_code == 201
                lines = stream.iter_lines()
                event_a = json.loads(next(lines))
                assert http.post(pods, json=second).status_code == 201
                event_b = json.loads(next(lines))

            assert _wait_for(lambda: broadcaster.subscriber_count() == 0)
    finally:
        control_plane.shutdown()

    assert [(e["type"], e["object"]["metadata"]["resourceVersion"]) for e in (event_a, event_b)] == [
        ("ADDED", "1"),
        ("ADDED", "2"),
    ]
    received = event_a["object"]
    received["metadata"].pop("resourceVersion")
    assert received.pop("status")["phase"] == "Running"
    assert received == first
