"""
ECS Task Provider

Runs tasks on AWS ECS with the Fargate launch type. Nothing is provisioned
here: the cluster, subnet, security group and a single task definition whose
family name contains ``sparkanywhere`` must already exist. Task commands and
environment are passed as container overrides of that task definition.
"""

import threading
import uuid
from typing import Any, Callable, Dict, List, Optional, TypeVar

import boto3
import structlog
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from sparkanywhere.common.constants import (
    ECS_LAUNCH_TYPE,
    ECS_MAX_POLL_INTERVAL,
    ECS_POLL_BACKOFF,
    ECS_START_POLL_INTERVAL,
    ECS_STATUS_RUNNING,
    ECS_STATUS_STOPPED,
    ECS_STOP_POLL_INTERVAL,
    ECS_TASK_DEFINITION_MARKER,
    RETRY_ATTEMPTS,
    RETRY_BASE_DELAY,
    RETRY_MAX_DELAY,
    TRANSIENT_AWS_ERROR_CODES,
)
from sparkanywhere.common.errors import (
    LogRetrievalError,
    ProviderConstructionError,
    SparkAnywhereError,
    TaskLaunchError,
    TaskWaitError,
)
from sparkanywhere.common.schemas import Task, TaskHandle
from sparkanywhere.common.settings import EcsSettings
from sparkanywhere.common.utils import poll_until, retry_transient
from .base import TaskProvider


logger = structlog.get_logger(__name__)

T = TypeVar("T")

_TRANSIENT_EXCEPTIONS = (
    EndpointConnectionError,
    ConnectionClosedError,
    ConnectTimeoutError,
    ReadTimeoutError,
)


def is_transient_aws_error(error: BaseException) -> bool:
    """Throttling, 5xx and connection failures are worth retrying"""
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "")
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0
        return code in TRANSIENT_AWS_ERROR_CODES or status >= 500
    return isinstance(error, _TRANSIENT_EXCEPTIONS)


class EcsProvider(TaskProvider):
    """Task provider backed by ECS Fargate"""

    name = "ecs"

    def __init__(
        self,
        settings: EcsSettings,
        *,
        session: Optional[boto3.session.Session] = None,
        ecs_client: Any = None,
        ec2_client: Any = None,
        logs_client: Any = None,
        start_poll_interval: float = ECS_START_POLL_INTERVAL,
        stop_poll_interval: float = ECS_STOP_POLL_INTERVAL,
        poll_backoff: float = ECS_POLL_BACKOFF,
        retry_attempts: int = RETRY_ATTEMPTS,
        retry_base_delay: float = RETRY_BASE_DELAY,
    ):
        self.settings = settings
        self.start_poll_interval = start_poll_interval
        self.stop_poll_interval = stop_poll_interval
        self.poll_backoff = poll_backoff
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay

        # full "family:revision" name of the task definition
        self.task_definition: str = ""
        # name of the primary (spark) container of the task definition
        self.container_name: str = ""
        self.log_config: Dict[str, Any] = {}

        try:
            if session is None and not (ecs_client and ec2_client and logs_client):
                session = boto3.session.Session(region_name=settings.region)
            self.ecs = ecs_client or session.client("ecs")
            self.ec2 = ec2_client or session.client("ec2")

            self._resolve_cluster()
            self._resolve_task_definition()
            self._validate_network()

            self.logs = logs_client or session.client(
                "logs",
                region_name=self.log_config.get("options", {}).get("awslogs-region")
                or session.region_name,
            )
        except (ClientError, BotoCoreError) as e:
            raise ProviderConstructionError(f"failed to initialise ECS provider: {e}") from e

    # ---------- Construction ----------

    def _resolve_cluster(self) -> None:
        name = self.settings.cluster_name
        output = self.ecs.describe_clusters(clusters=[name])
        if not output.get("clusters"):
            raise ProviderConstructionError(f"cluster not found: {name}")

    def _resolve_task_definition(self) -> None:
        families: List[str] = []
        paginator = self.ecs.get_paginator("list_task_definition_families")
        for page in paginator.paginate(status="ACTIVE"):
            families.extend(
                f for f in page.get("families", []) if ECS_TASK_DEFINITION_MARKER in f
            )

        if not families:
            raise ProviderConstructionError(
                f"no task definition family matching '{ECS_TASK_DEFINITION_MARKER}' found"
            )
        if len(families) > 1:
            raise ProviderConstructionError(
                f"more than one task definition family matching "
                f"'{ECS_TASK_DEFINITION_MARKER}' found: {', '.join(families)}"
            )

        family = families[0]
        definition = self.ecs.describe_task_definition(taskDefinition=family)["taskDefinition"]
        containers = definition.get("containerDefinitions") or []
        if not containers:
            raise ProviderConstructionError(f"task definition {family} has no containers")

        self.task_definition = f"{family}:{definition['revision']}"
        self.container_name = containers[0]["name"]
        self.log_config = containers[0].get("logConfiguration") or {}

        logger.info("Using task definition", name=self.task_definition)
        logger.info("Detected task primary container", name=self.container_name)

    def _validate_network(self) -> None:
        subnet_id = self.settings.subnet_id
        try:
            subnets = self.ec2.describe_subnets(SubnetIds=[subnet_id]).get("Subnets")
        except ClientError as e:
            raise ProviderConstructionError(f"subnet not found: {subnet_id}") from e
        if not subnets:
            raise ProviderConstructionError(f"subnet not found: {subnet_id}")

        group_id = self.settings.security_group
        try:
            groups = self.ec2.describe_security_groups(GroupIds=[group_id]).get("SecurityGroups")
        except ClientError as e:
            raise ProviderConstructionError(f"security group not found: {group_id}") from e
        if not groups:
            raise ProviderConstructionError(f"security group not found: {group_id}")

    # ---------- Helpers ----------

    def _call(self, fn: Callable[[], T], cancel: Optional[threading.Event], description: str) -> T:
        return retry_transient(
            fn,
            is_transient=is_transient_aws_error,
            attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            max_delay=RETRY_MAX_DELAY,
            cancel=cancel,
            description=description,
        )

    def _run_task_params(self, task: Task) -> Dict[str, Any]:
        override: Dict[str, Any] = {
            "name": self.container_name,
            "environment": [{"name": k, "value": v} for k, v in task.env.items()],
        }
        if task.args:
            override["command"] = list(task.args)

        return {
            "cluster": self.settings.cluster_name,
            "taskDefinition": self.task_definition,
            "launchType": ECS_LAUNCH_TYPE,
            "count": 1,
            # same token on retries so a throttled call cannot start two tasks
            "clientToken": uuid.uuid4().hex,
            "networkConfiguration": {
                "awsvpcConfiguration": {
                    "assignPublicIp": "ENABLED",
                    "securityGroups": [self.settings.security_group],
                    "subnets": [self.settings.subnet_id],
                },
            },
            "overrides": {"containerOverrides": [override]},
        }

    def _wait_for_status(
        self,
        handle: TaskHandle,
        target: str,
        interval: float,
        timeout: Optional[float],
        cancel: Optional[threading.Event],
        error_cls: type,
    ) -> Dict[str, Any]:
        def check() -> Optional[Dict[str, Any]]:
            try:
                output = self._call(
                    lambda: self.ecs.describe_tasks(
                        cluster=self.settings.cluster_name, tasks=[handle.id]
                    ),
                    cancel,
                    "describe_tasks",
                )
            except (ClientError, BotoCoreError) as e:
                raise error_cls(f"describe_tasks failed for {handle.id}: {e}") from e

            tasks = output.get("tasks") or []
            if not tasks:
                reasons = [f.get("reason", "") for f in output.get("failures") or []]
                raise error_cls(f"task {handle.id} not found: {', '.join(reasons) or 'unknown'}")

            described = tasks[0]
            status = described.get("lastStatus")
            logger.debug("Polled task", task=handle.name, status=status, target=target)
            if status == target:
                return described
            if status == ECS_STATUS_STOPPED:
                raise TaskLaunchError(
                    f"task {handle.id} stopped before reaching {target}: "
                    f"{described.get('stoppedReason', 'unknown reason')}"
                )
            return None

        return poll_until(
            check,
            interval=interval,
            timeout=timeout,
            cancel=cancel,
            backoff=self.poll_backoff,
            max_interval=ECS_MAX_POLL_INTERVAL,
            description=f"task {handle.name or handle.id} to reach {target}",
        )

    # ---------- Provider API ----------

    def create_task(
        self,
        task: Task,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> TaskHandle:
        logger.info("Creating task", task=task.name)
        params = self._run_task_params(task)

        try:
            result = self._call(lambda: self.ecs.run_task(**params), cancel, "run_task")
        except (ClientError, BotoCoreError) as e:
            raise TaskLaunchError(f"run_task failed for {task.name}: {e}") from e

        failures = result.get("failures") or []
        tasks = result.get("tasks") or []
        if failures or not tasks:
            reasons = ", ".join(
                f"{f.get('arn', '')} {f.get('reason', '')}".strip() for f in failures
            )
            raise TaskLaunchError(f"run_task returned no task for {task.name}: {reasons or 'unknown'}")

        handle = TaskHandle(id=tasks[0]["taskArn"], name=task.name)
        try:
            self._wait_for_status(
                handle,
                ECS_STATUS_RUNNING,
                self.start_poll_interval,
                timeout,
                cancel,
                TaskLaunchError,
            )
        except SparkAnywhereError as e:
            self._stop_task(handle, f"sparkanywhere: {e}")
            raise
        logger.info("Task is running", task=task.name, task_arn=handle.id)
        return handle

    def _stop_task(self, handle: TaskHandle, reason: str) -> None:
        """Stop a task that never became usable; failures are only logged"""
        try:
            self._call(
                lambda: self.ecs.stop_task(
                    cluster=self.settings.cluster_name, task=handle.id, reason=reason[:1024]
                ),
                None,
                "stop_task",
            )
            logger.info("Stopped task", task=handle.name, task_arn=handle.id)
        except (ClientError, BotoCoreError) as e:
            logger.warning("Failed to stop task", task=handle.name, task_arn=handle.id,
                           error=str(e))

    def wait_for_task(
        self,
        handle: TaskHandle,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        described = self._wait_for_status(
            handle,
            ECS_STATUS_STOPPED,
            self.stop_poll_interval,
            timeout,
            cancel,
            TaskWaitError,
        )
        logger.info("Task stopped", task=handle.name, task_arn=handle.id,
                    reason=described.get("stoppedReason"))

    def _log_stream(self, handle: TaskHandle) -> tuple:
        if self.log_config.get("logDriver") != "awslogs":
            raise LogRetrievalError(
                f"task definition {self.task_definition} does not use the awslogs driver"
            )
        options = self.log_config.get("options") or {}
        group = options.get("awslogs-group")
        prefix = options.get("awslogs-stream-prefix")
        if not group or not prefix:
            raise LogRetrievalError(
                f"task definition {self.task_definition} needs awslogs-group and "
                f"awslogs-stream-prefix to locate task logs"
            )
        task_id = handle.id.rsplit("/", 1)[-1]
        return group, f"{prefix}/{self.container_name}/{task_id}"

    def get_logs(self, handle: TaskHandle) -> str:
        group, stream = self._log_stream(handle)

        lines: List[str] = []
        token: Optional[str] = None
        while True:
            kwargs: Dict[str, Any] = {
                "logGroupName": group,
                "logStreamName": stream,
                "startFromHead": True,
            }
            if token:
                kwargs["nextToken"] = token
            try:
                output = self._call(lambda: self.logs.get_log_events(**kwargs), None, "get_log_events")
            except (ClientError, BotoCoreError) as e:
                raise LogRetrievalError(f"cannot read log stream {group}/{stream}: {e}") from e

            lines.extend(event.get("message", "") for event in output.get("events", []))
            next_token = output.get("nextForwardToken")
            # the forward token repeats once the end of the stream is reached
            if not next_token or next_token == token:
                break
            token = next_token

        return "\n".join(lines)

    def close(self) -> None:
        for client in (self.ecs, self.ec2, self.logs):
            close = getattr(client, "close", None)
            if close is not None:
                close()
