from __future__ import annotations

import pytest
from pydantic import ValidationError

from conftest import make_pod
from sparkanywhere.common.errors import PodValidationError
from sparkanywhere.common.schemas import Pod, build_driver_task, pod_to_task, validate_pod


def test_pod_to_task_copies_container(pod: Pod):
    task = pod_to_task(pod)

    assert task.name == "exec-1"
    assert task.image == "apache/spark:latest"
    assert task.args == ("executor",)
    assert task.env["SPARK_EXECUTOR_ID"] == "1"


def test_pod_to_task_rewrites_local_dirs_and_value_from(pod: Pod):
    task = pod_to_task(pod)

    assert task.env["SPARK_LOCAL_DIRS"] == "/tmp"
    assert task.env["SPARK_EXECUTOR_POD_IP"] == ""


@pytest.mark.parametrize("containers", [0, 2])
def test_validate_pod_requires_exactly_one_container(containers: int):
    pod = Pod.model_validate(make_pod(containers=containers))

    with pytest.raises(PodValidationError, match="only one container"):
        validate_pod(pod)


def test_validate_pod_requires_name():
    body = make_pod()
    body["metadata"].pop("name")

    with pytest.raises(PodValidationError, match="metadata.name"):
        validate_pod(Pod.model_validate(body))


def test_wire_format_keeps_unknown_fields(pod_body):
    wire = Pod.model_validate(pod_body).to_wire()

    assert wire == pod_body
    assert wire["spec"]["restartPolicy"] == "Never"


def test_task_is_immutable(pod: Pod):
    task = pod_to_task(pod)

    with pytest.raises(ValidationError):
        task.image = "other"


def test_driver_task_points_at_control_plane():
    task = build_driver_task("10.0.0.5", 1323, 3)

    assert task.name == "spark-pi"
    assert task.image == "apache/spark"
    assert task.args[:2] == ("/bin/bash", "-c")
    assert "--master k8s://http://10.0.0.5:1323" in task.args[2]
    assert "spark.executor.instances=3" in task.args[2]
