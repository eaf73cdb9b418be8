"""
Docker Task Provider

Runs tasks as containers on a local Docker engine. All containers join one
user-defined network and can reach the control plane on the host through
``host.docker.internal``.
"""

import threading
import time
from typing import Any, Dict, Optional

import docker
import requests
import structlog
from docker.errors import DockerException, ImageNotFound, NotFound
from docker.utils import parse_repository_tag

from sparkanywhere.common.constants import (
    DOCKER_HOST_ALIAS,
    DOCKER_NETWORK_NAME,
    DOCKER_TASK_LABEL,
    DOCKER_WAIT_CHUNK,
)
from sparkanywhere.common.errors import (
    LogRetrievalError,
    ProviderConstructionError,
    TaskCancelledError,
    TaskLaunchError,
    TaskTimeoutError,
    TaskWaitError,
)
from sparkanywhere.common.schemas import Task, TaskHandle
from .base import TaskProvider


logger = structlog.get_logger(__name__)

# container states that mean the task is over
_FINISHED_STATES = {"exited", "dead"}


class DockerProvider(TaskProvider):
    """Task provider backed by a local Docker engine"""

    name = "docker"

    def __init__(
        self,
        client: Optional[docker.DockerClient] = None,
        network_name: str = DOCKER_NETWORK_NAME,
        wait_chunk: float = DOCKER_WAIT_CHUNK,
    ):
        try:
            self.client = client or docker.from_env()
        except DockerException as e:
            raise ProviderConstructionError(f"cannot connect to docker engine: {e}") from e

        self.network_name = network_name
        self.wait_chunk = wait_chunk
        self._ensure_network()

    def _ensure_network(self) -> None:
        """Create the shared network if there is none yet"""
        try:
            self.client.networks.get(self.network_name)
            logger.debug("Using existing network", name=self.network_name)
            return
        except NotFound:
            pass
        except (DockerException, requests.exceptions.RequestException) as e:
            raise ProviderConstructionError(
                f"cannot inspect network {self.network_name}: {e}"
            ) from e

        logger.info("Creating network", name=self.network_name)
        try:
            self.client.networks.create(self.network_name)
        except (DockerException, requests.exceptions.RequestException) as e:
            raise ProviderConstructionError(
                f"cannot create network {self.network_name}: {e}"
            ) from e

    def _container_kwargs(self, task: Task) -> Dict[str, Any]:
        return {
            "command": list(task.args) or None,
            "environment": [f"{name}={value}" for name, value in task.env.items()],
            "network": self.network_name,
            "labels": {DOCKER_TASK_LABEL: task.name},
            "extra_hosts": {DOCKER_HOST_ALIAS: "host-gateway"},
        }

    def _create_container(self, task: Task):
        kwargs = self._container_kwargs(task)
        try:
            return self.client.containers.create(task.image, **kwargs)
        except ImageNotFound:
            repository, tag = parse_repository_tag(task.image)
            logger.info("Pulling image", image=task.image)
            self.client.images.pull(repository, tag=tag or "latest")
            return self.client.containers.create(task.image, **kwargs)

    def create_task(
        self,
        task: Task,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> TaskHandle:
        if cancel is not None and cancel.is_set():
            raise TaskCancelledError(f"cancelled before launching {task.name}")

        try:
            container = self._create_container(task)
        except (DockerException, requests.exceptions.RequestException) as e:
            raise TaskLaunchError(f"failed to create container for {task.name}: {e}") from e

        try:
            container.start()
        except (DockerException, requests.exceptions.RequestException) as e:
            try:
                container.remove(force=True)
            except (DockerException, requests.exceptions.RequestException) as cleanup_error:
                logger.warning("Failed to remove container", container_id=container.id,
                               error=str(cleanup_error))
            raise TaskLaunchError(f"failed to start container for {task.name}: {e}") from e

        logger.info("Container started", task=task.name, container_id=container.id)
        return TaskHandle(id=container.id, name=task.name)

    def _get_container(self, handle: TaskHandle, error_cls=TaskWaitError):
        try:
            return self.client.containers.get(handle.id)
        except (DockerException, requests.exceptions.RequestException) as e:
            raise error_cls(f"cannot find container {handle.id}: {e}") from e

    def wait_for_task(
        self,
        handle: TaskHandle,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        container = self._get_container(handle)
        deadline = None if timeout is None else time.monotonic() + timeout

        while True:
            if cancel is not None and cancel.is_set():
                raise TaskCancelledError(f"cancelled while waiting for {handle.name or handle.id}")

            chunk = self.wait_chunk
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TaskTimeoutError(
                        f"timed out after {timeout}s waiting for {handle.name or handle.id}"
                    )
                chunk = min(chunk, remaining)

            try:
                result = container.wait(timeout=chunk, condition="not-running")
                break
            except (requests.exceptions.ReadTimeout, requests.exceptions.ConnectionError):
                # the wait chunk elapsed; make sure the engine is still there
                pass
            except DockerException as e:
                raise TaskWaitError(f"waiting on container {handle.id} failed: {e}") from e

            try:
                container.reload()
            except (DockerException, requests.exceptions.RequestException) as e:
                raise TaskWaitError(f"lost container {handle.id}: {e}") from e
            if container.status in _FINISHED_STATES:
                result = {"StatusCode": container.attrs.get("State", {}).get("ExitCode")}
                break

        error = (result or {}).get("Error")
        if error:
            raise TaskWaitError(f"waiting on container {handle.id} failed: {error}")
        logger.info("Container finished", task=handle.name, container_id=handle.id,
                    exit_code=(result or {}).get("StatusCode"))

    def get_logs(self, handle: TaskHandle) -> str:
        container = self._get_container(handle, error_cls=LogRetrievalError)
        try:
            raw = container.logs(stdout=True, stderr=True)
        except (DockerException, requests.exceptions.RequestException) as e:
            raise LogRetrievalError(f"cannot read logs of container {handle.id}: {e}") from e
        if isinstance(raw, bytes):
            return raw.decode("utf-8", errors="replace")
        return str(raw)

    def close(self) -> None:
        try:
            self.client.close()
        except (DockerException, requests.exceptions.RequestException) as e:
            logger.warning("Failed to close docker client", error=str(e))
