"""
Control Plane

Top-level coordinator of a run: picks the provider, serves the API shim,
submits the Spark driver, waits for it and finally collects the logs of
every task started during the run.
"""

import threading
import time
from pathlib import Path
from typing import Optional

import structlog
import uvicorn

from sparkanywhere.common.constants import (
    DOCKER_HOST_ALIAS,
    DRIVER_TASK_NAME,
    ControlPlaneState,
    ProviderType,
)
from sparkanywhere.common.errors import ConfigurationError, LogRetrievalError, SparkAnywhereError
from sparkanywhere.common.schemas import TaskHandle, build_driver_task
from sparkanywhere.common.settings import Settings
from sparkanywhere.common.utils import now_ms
from sparkanywhere.providers import TaskProvider, create_provider
from sparkanywhere.shim import ApiShim, EventBroadcaster


logger = structlog.get_logger(__name__)


class ControlPlane:
    """Owns the provider, the shim and all state of one run"""

    def __init__(self, settings: Settings, provider: Optional[TaskProvider] = None):
        self.settings = settings
        self.state = ControlPlaneState.CONFIGURING
        self.started_at_ms = now_ms()

        # all configuration checks happen before any backend is contacted
        self.provider_type = settings.provider_type()
        self.control_plane_addr = self._resolve_address()

        self.provider = provider or create_provider(settings, self.provider_type)
        self._transition(ControlPlaneState.PROVIDER_SELECTED)

        self.cancel_event = threading.Event()
        self.broadcaster = EventBroadcaster()
        self.shim = ApiShim(self.provider, self.broadcaster, cancel=self.cancel_event)

        self.driver_handle: Optional[TaskHandle] = None
        self.bound_port = settings.port
        self._server: Optional[uvicorn.Server] = None
        self._server_thread: Optional[threading.Thread] = None

    def _transition(self, state: ControlPlaneState) -> None:
        logger.info("Control plane state", previous=self.state.value, state=state.value)
        self.state = state

    def _resolve_address(self) -> str:
        addr = self.settings.control_plane_addr
        if self.provider_type == ProviderType.DOCKER and not addr:
            addr = DOCKER_HOST_ALIAS

        if self.provider_type == ProviderType.ECS:
            ecs = self.settings.ecs
            missing = [
                flag for flag, value in (
                    ("--ecs-cluster-name", ecs.cluster_name),
                    ("--ecs-subnet-id", ecs.subnet_id),
                    ("--ecs-security-group", ecs.security_group),
                ) if not value
            ]
            if missing:
                raise ConfigurationError(f"ECS provider requires {', '.join(missing)}")

        if not addr:
            raise ConfigurationError("control plane public address is required")

        logger.info("Using control plane address", control_plane_addr=addr)
        return addr

    # ---------- Server ----------

    def start_server(self, timeout: float = 10.0) -> None:
        """Serve the API shim in a background thread"""
        config = uvicorn.Config(
            self.shim.app,
            host=self.settings.host,
            port=self.settings.port,
            log_level=self.settings.log_level.lower(),
            access_log=False,
        )
        self._server = uvicorn.Server(config)
        self._server_thread = threading.Thread(
            target=self._server.run, name="api-shim", daemon=True
        )
        self._server_thread.start()

        deadline = time.monotonic() + timeout
        while not self._server.started:
            if not self._server_thread.is_alive():
                raise SparkAnywhereError(
                    f"API shim failed to listen on {self.settings.host}:{self.settings.port}"
                )
            if time.monotonic() > deadline:
                raise SparkAnywhereError(f"API shim did not start within {timeout}s")
            time.sleep(0.05)

        # port 0 binds an ephemeral port
        sockets = [s for server in self._server.servers for s in server.sockets]
        if sockets:
            self.bound_port = sockets[0].getsockname()[1]
        logger.info("API shim listening", host=self.settings.host, port=self.bound_port)
        self._transition(ControlPlaneState.SERVER_STARTED)

    # ---------- Run ----------

    def deploy(self) -> TaskHandle:
        """Submit the Spark driver and block until it finishes"""
        task = build_driver_task(self.control_plane_addr, self.settings.port, self.settings.instances)

        try:
            self._transition(ControlPlaneState.DRIVER_SUBMITTED)
            handle = self.provider.create_task(task, cancel=self.cancel_event)
            handle.name = DRIVER_TASK_NAME
            self.broadcaster.add_handle(handle)
            self.driver_handle = handle
            logger.info("Deploy task created", name=handle.name, id=handle.id)

            self._transition(ControlPlaneState.DRIVER_RUNNING)
            self.provider.wait_for_task(
                handle,
                timeout=self.settings.driver_timeout,
                cancel=self.cancel_event,
            )
        except Exception:
            self._transition(ControlPlaneState.FAILED)
            raise

        self._transition(ControlPlaneState.DRIVER_COMPLETED)
        return handle

    def run(self) -> TaskHandle:
        self.start_server()
        return self.deploy()

    def cancel(self) -> None:
        """Unblock provider waits"""
        self.cancel_event.set()

    # ---------- Shutdown ----------

    def gather_logs(self, log_root: Optional[Path] = None) -> Path:
        """Write one ``<name>.log`` per task handle into a per-run directory"""
        log_dir = Path(log_root or self.settings.log_dir) / str(self.started_at_ms)
        logger.info("Gathering logs", log_dir=str(log_dir))

        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LogRetrievalError(f"cannot create log directory {log_dir}: {e}") from e

        for handle in self.broadcaster.handles():
            logs = self.provider.get_logs(handle)
            path = log_dir / f"{handle.name or handle.id}.log"
            try:
                path.write_text(logs, encoding="utf-8")
            except OSError as e:
                raise LogRetrievalError(f"cannot write {path}: {e}") from e
            logger.info("Logs saved", task=handle.name, path=str(path))

        self._transition(ControlPlaneState.LOGS_GATHERED)
        return log_dir

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop the server, wait for pending pod creations and close the provider"""
        self.cancel()
        if self._server is not None:
            self._server.should_exit = True
        if self._server_thread is not None:
            self._server_thread.join(timeout)

        if not self.shim.drain(timeout):
            logger.warning("Pod creations still running at shutdown")
        self.provider.close()
