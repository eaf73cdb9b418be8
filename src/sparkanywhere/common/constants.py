"""
Constants used throughout the sparkanywhere system.
"""

from enum import Enum
from typing import Dict


class ProviderType(str, Enum):
    """Task provider enumeration"""
    DOCKER = "docker"
    ECS = "ecs"


class EventType(str, Enum):
    """Watch event type enumeration"""
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"


class PodPhase(str, Enum):
    """Pod phase enumeration (subset used by the shim)"""
    RUNNING = "Running"
    FAILED = "Failed"


class ControlPlaneState(str, Enum):
    """Lifecycle of a control plane run"""
    CONFIGURING = "configuring"
    PROVIDER_SELECTED = "provider_selected"
    SERVER_STARTED = "server_started"
    DRIVER_SUBMITTED = "driver_submitted"
    DRIVER_RUNNING = "driver_running"
    DRIVER_COMPLETED = "driver_completed"
    LOGS_GATHERED = "logs_gathered"
    FAILED = "failed"


# API endpoints
NAMESPACE_PREFIX = "/api/v1/namespaces/{namespace}"

API_ROUTES = {
    "ROOT": "/",
    "HEALTH": "/healthz",
    "PODS": f"{NAMESPACE_PREFIX}/pods",
    "CONFIGMAPS": f"{NAMESPACE_PREFIX}/configmaps",
    "SERVICES": f"{NAMESPACE_PREFIX}/services",
    "PVCS": f"{NAMESPACE_PREFIX}/persistentvolumeclaims",
}

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 1323
DEFAULT_LOG_DIR = "logs"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Watch fan-out
DEFAULT_SUBSCRIBER_CAPACITY = 1000
WATCH_POLL_INTERVAL = 1.0

# Docker provider
DOCKER_NETWORK_NAME = "spark-network"
DOCKER_HOST_ALIAS = "host.docker.internal"
DOCKER_TASK_LABEL = "sparkanywhere.task"
DOCKER_WAIT_CHUNK = 5.0

# ECS provider
ECS_TASK_DEFINITION_MARKER = "sparkanywhere"
ECS_LAUNCH_TYPE = "FARGATE"
ECS_START_POLL_INTERVAL = 5.0
ECS_STOP_POLL_INTERVAL = 1.0
ECS_MAX_POLL_INTERVAL = 30.0
ECS_POLL_BACKOFF = 1.5
ECS_STATUS_RUNNING = "RUNNING"
ECS_STATUS_STOPPED = "STOPPED"

# Transient backend errors
RETRY_ATTEMPTS = 5
RETRY_BASE_DELAY = 0.5
RETRY_MAX_DELAY = 10.0
TRANSIENT_AWS_ERROR_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "ServerException",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "InternalFailure",
})

# Driver workload
DRIVER_TASK_NAME = "spark-pi"
DRIVER_IMAGE = "apache/spark"
EXECUTOR_IMAGE = "apache/spark:latest"
DRIVER_EXAMPLES_JAR = "./examples/jars/spark-examples_2.12-3.5.0.jar"
DRIVER_MAIN_CLASS = "org.apache.spark.examples.SparkPi"

# Env vars rewritten when a pod becomes a task
ENV_OVERRIDES: Dict[str, str] = {
    # executors have no pod-local volume on these backends
    "SPARK_LOCAL_DIRS": "/tmp",
}
