from __future__ import annotations

import itertools
import threading
from typing import Any, Dict, List, Optional

import pytest

from sparkanywhere.common.errors import LogRetrievalError, TaskLaunchError
from sparkanywhere.common.schemas import Pod, Task, TaskHandle
from sparkanywhere.common.settings import Settings
from sparkanywhere.providers.base import TaskProvider


class FakeProvider(TaskProvider):
    """In-memory provider recording every call"""

    name = "fake"

    def __init__(self, fail_names: tuple = (), broken_logs: tuple = ()):
        self.fail_names = set(fail_names)
        self.broken_logs = set(broken_logs)
        self.created: List[Task] = []
        self.waited: List[TaskHandle] = []
        self.closed = False
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def create_task(self, task, *, timeout=None, cancel=None):
        if task.name in self.fail_names:
            raise TaskLaunchError(f"backend rejected {task.name}")
        with self._lock:
            self.created.append(task)
            task_id = f"task-{next(self._ids)}"
        return TaskHandle(id=task_id)

    def wait_for_task(self, handle, *, timeout=None, cancel=None):
        self.waited.append(handle)

    def get_logs(self, handle):
        if handle.name in self.broken_logs:
            raise LogRetrievalError(f"no logs for {handle.name}")
        return f"logs of {handle.name}\n"

    def close(self):
        self.closed = True


def make_pod(name: str = "exec-1", containers: Optional[int] = 1, **extra: Any) -> Dict[str, Any]:
    """Executor pod body as sent by the Spark driver"""
    body: Dict[str, Any] = {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {"name": name, "labels": {"spark-role": "executor"}},
        "spec": {
            "restartPolicy": "Never",
            "containers": [
                {
                    "name": f"spark-kubernetes-executor-{i}",
                    "image": "apache/spark:latest",
                    "args": ["executor"],
                    "env": [
                        {"name": "SPARK_EXECUTOR_ID", "value": "1"},
                        {"name": "SPARK_LOCAL_DIRS", "value": "/var/data/spark-1"},
                        {
                            "name": "SPARK_EXECUTOR_POD_IP",
                            "valueFrom": {"fieldRef": {"apiVersion": "v1", "fieldPath": "status.podIP"}},
                        },
                    ],
                }
                for i in range(containers)
            ],
        },
    }
    body.update(extra)
    return body


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def pod_body() -> Dict[str, Any]:
    return make_pod()


@pytest.fixture
def pod(pod_body) -> Pod:
    return Pod.model_validate(pod_body)


@pytest.fixture
def docker_settings() -> Settings:
    return Settings(docker_enabled=True)
