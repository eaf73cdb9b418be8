"""
Kubernetes API Shim

This module implements the FastAPI server that stands in for the Kubernetes
API server. It implements only what a Spark driver in client mode calls:
creating and watching executor pods, config maps, and the deletes issued at
the end of a job.
"""

import threading
import time
from typing import AsyncIterator, Awaitable, Callable, Optional, Set

import structlog
from fastapi import FastAPI, Query, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool

from sparkanywhere import __version__
from sparkanywhere.common.constants import API_ROUTES, WATCH_POLL_INTERVAL
from sparkanywhere.common.errors import SparkAnywhereError
from sparkanywhere.common.schemas import (
    ConfigMap,
    Pod,
    config_map_list,
    pod_list,
    pod_to_task,
    status_body,
    validate_pod,
)
from sparkanywhere.providers.base import TaskProvider
from .broadcaster import EventBroadcaster, Subscriber


logger = structlog.get_logger(__name__)


class RequestLogMiddleware:
    """Log method, path and query of every request before dispatch"""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http":
            logger.info(
                "request",
                method=scope["method"],
                path=scope["path"],
                query=scope.get("query_string", b"").decode("latin-1"),
            )
        await self.app(scope, receive, send)


async def watch_events(
    broadcaster: EventBroadcaster,
    subscriber: Subscriber,
    is_disconnected: Callable[[], Awaitable[bool]],
    poll_interval: float = WATCH_POLL_INTERVAL,
) -> AsyncIterator[str]:
    """Yield one JSON document per event until the client goes away"""
    try:
        while not await is_disconnected():
            event = await run_in_threadpool(subscriber.get, poll_interval)
            if event is None:
                continue
            logger.debug("Sending watch event", type=event.type.value,
                         pod=event.object.metadata.name,
                         resource_version=event.object.metadata.resource_version)
            yield event.to_json()
    finally:
        broadcaster.unsubscribe(subscriber)


def _is_true(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("true", "1")


class ApiShim:
    """Fake Kubernetes API server backed by a task provider"""

    def __init__(
        self,
        provider: TaskProvider,
        broadcaster: EventBroadcaster,
        cancel: Optional[threading.Event] = None,
        watch_poll_interval: float = WATCH_POLL_INTERVAL,
    ):
        self.provider = provider
        self.broadcaster = broadcaster
        self.cancel = cancel or threading.Event()
        self.watch_poll_interval = watch_poll_interval

        self._threads: Set[threading.Thread] = set()
        self._threads_lock = threading.Lock()
        self.app = self._create_app()

    def _create_app(self) -> FastAPI:
        """Create FastAPI application"""
        app = FastAPI(
            title="sparkanywhere",
            description="Kubernetes API shim for Spark",
            version=__version__,
            docs_url=None,
            redoc_url=None,
        )

        app.add_middleware(RequestLogMiddleware)

        @app.exception_handler(SparkAnywhereError)
        async def handle_error(request: Request, exc: SparkAnywhereError):
            logger.warning("Request failed", path=request.url.path, error=str(exc))
            return JSONResponse(
                status_code=exc.status_code,
                content=status_body(exc.status_code, exc.reason, str(exc)),
            )

        self._add_routes(app)
        return app

    def _add_routes(self, app: FastAPI) -> None:
        """Add API routes"""

        @app.get(API_ROUTES["ROOT"], response_class=PlainTextResponse)
        async def root():
            return "sparkanywhere control plane"

        @app.get(API_ROUTES["HEALTH"])
        async def healthz():
            return {"ok": True}

        # pods
        @app.get(API_ROUTES["PODS"])
        async def list_pods(namespace: str, request: Request, watch: Optional[str] = Query(None)):
            if _is_true(watch):
                subscriber = self.broadcaster.subscribe()
                return StreamingResponse(
                    watch_events(
                        self.broadcaster,
                        subscriber,
                        request.is_disconnected,
                        self.watch_poll_interval,
                    ),
                    media_type="application/json",
                )

            pods, resource_version = self.broadcaster.snapshot()
            pods = [p for p in pods if p.metadata.namespace in (None, namespace)]
            return pod_list(pods, resource_version)

        @app.post(API_ROUTES["PODS"], status_code=201)
        async def create_pod(namespace: str, pod: Pod):
            validate_pod(pod)
            self.submit_pod(pod.model_copy(deep=True))
            return pod.to_wire()

        # called at the end of the spark job
        @app.delete(API_ROUTES["PODS"])
        async def delete_pods(namespace: str):
            return Response(status_code=200)

        # config maps
        @app.get(API_ROUTES["CONFIGMAPS"])
        async def list_config_maps(namespace: str):
            return config_map_list()

        @app.post(API_ROUTES["CONFIGMAPS"], status_code=201)
        async def create_config_map(namespace: str, config_map: ConfigMap):
            return config_map.to_wire()

        @app.delete(API_ROUTES["CONFIGMAPS"])
        async def delete_config_maps(namespace: str):
            return Response(status_code=200)

        @app.delete(API_ROUTES["SERVICES"])
        async def delete_services(namespace: str):
            return Response(status_code=200)

        @app.delete(API_ROUTES["PVCS"])
        async def delete_persistent_volume_claims(namespace: str):
            return Response(status_code=200)

    # ---------- Pod creation ----------

    def submit_pod(self, pod: Pod) -> threading.Thread:
        """Create the pod's task in the background"""
        thread = threading.Thread(
            target=self._create_pod,
            args=(pod,),
            name=f"create-pod-{pod.metadata.name}",
            daemon=True,
        )
        with self._threads_lock:
            self._threads.add(thread)
            thread.start()
        return thread

    def _create_pod(self, pod: Pod) -> None:
        name = pod.metadata.name
        try:
            task = pod_to_task(pod)
            handle = self.provider.create_task(task, cancel=self.cancel)
            handle.name = name
            stamped = self.broadcaster.record_and_broadcast(pod, handle)
            logger.info("Task created", name=handle.name, id=handle.id,
                        resource_version=stamped.metadata.resource_version)
        except Exception as e:
            logger.error("Error creating pod", pod=name, error=str(e))
            self.broadcaster.record_failure(pod, str(e))
        finally:
            with self._threads_lock:
                self._threads.discard(threading.current_thread())

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight pod creations; True if none are left"""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._threads_lock:
                pending = list(self._threads)
            if not pending:
                return True
            for thread in pending:
                remaining = None
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return False
                thread.join(remaining)


def create_app(provider: TaskProvider, broadcaster: Optional[EventBroadcaster] = None) -> FastAPI:
    """Create and configure FastAPI application"""
    shim = ApiShim(provider, broadcaster or EventBroadcaster())
    return shim.app
