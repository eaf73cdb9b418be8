"""
Pydantic schemas for sparkanywhere.

Two families live here: the provider-agnostic task model handed to the
backends, and the slice of the Kubernetes object model that the Spark driver
sends to the API shim.
"""

import json
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .constants import (
    DRIVER_EXAMPLES_JAR,
    DRIVER_IMAGE,
    DRIVER_MAIN_CLASS,
    DRIVER_TASK_NAME,
    ENV_OVERRIDES,
    EXECUTOR_IMAGE,
    EventType,
)
from .errors import PodValidationError


class BaseSchema(BaseModel):
    """Base schema with common configuration"""
    model_config = ConfigDict(
        use_enum_values=True,
        validate_assignment=True,
        extra="forbid"
    )


# Task model
class Task(BaseSchema):
    """Provider-agnostic description of one container to run"""
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str
    image: str
    args: Tuple[str, ...] = ()
    env: Dict[str, str] = Field(default_factory=dict)


class TaskHandle(BaseSchema):
    """Backend-assigned identity of a launched task"""
    id: str
    name: str = ""


# Kubernetes object slice
class KubeModel(BaseModel):
    """Kubernetes JSON object; unknown fields are kept so echoes are lossless"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_assignment=True,
        extra="allow",
    )

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_unset=True)


class EnvVar(KubeModel):
    name: str
    value: Optional[str] = None
    value_from: Optional[Dict[str, Any]] = None


class Container(KubeModel):
    name: Optional[str] = None
    image: Optional[str] = None
    command: List[str] = Field(default_factory=list)
    args: List[str] = Field(default_factory=list)
    env: List[EnvVar] = Field(default_factory=list)


class ObjectMeta(KubeModel):
    name: Optional[str] = None
    namespace: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    annotations: Dict[str, str] = Field(default_factory=dict)
    resource_version: Optional[str] = None


class PodSpec(KubeModel):
    containers: List[Container] = Field(default_factory=list)


class PodStatus(KubeModel):
    phase: Optional[str] = None
    reason: Optional[str] = None
    message: Optional[str] = None


class Pod(KubeModel):
    api_version: str = "v1"
    kind: str = "Pod"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: PodSpec = Field(default_factory=PodSpec)
    status: Optional[PodStatus] = None


class ConfigMap(KubeModel):
    api_version: str = "v1"
    kind: str = "ConfigMap"
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    data: Dict[str, str] = Field(default_factory=dict)


class WatchEvent(BaseModel):
    """One entry of a watch stream"""
    model_config = ConfigDict(frozen=True)

    type: EventType
    object: Pod

    def to_wire(self) -> Dict[str, Any]:
        return {"type": self.type.value, "object": self.object.to_wire()}

    def to_json(self) -> str:
        return json.dumps(self.to_wire(), ensure_ascii=False) + "\n"


def pod_list(pods: List[Pod], resource_version: int) -> Dict[str, Any]:
    """Render a PodList body"""
    return {
        "apiVersion": "v1",
        "kind": "PodList",
        "metadata": {"resourceVersion": str(resource_version)},
        "items": [p.to_wire() for p in pods],
    }


def config_map_list() -> Dict[str, Any]:
    return {"apiVersion": "v1", "kind": "ConfigMapList", "metadata": {}, "items": []}


def status_body(code: int, reason: str, message: str) -> Dict[str, Any]:
    """Render a Kubernetes Status object for error responses"""
    return {
        "apiVersion": "v1",
        "kind": "Status",
        "metadata": {},
        "status": "Failure",
        "message": message,
        "reason": reason,
        "code": code,
    }


def validate_pod(pod: Pod) -> Container:
    """Check that a pod can run as a single task and return its container.

    Only one container per pod is supported; sidecars would need networking
    between tasks that the backends do not provide.
    """
    containers = pod.spec.containers
    if len(containers) != 1:
        raise PodValidationError(
            f"only one container per pod is supported, got {len(containers)}"
        )
    if not pod.metadata.name:
        raise PodValidationError("pod metadata.name is required")
    if not containers[0].image:
        raise PodValidationError(f"container of pod {pod.metadata.name} has no image")
    return containers[0]


def pod_to_task(pod: Pod) -> Task:
    """Convert a pod into a task"""
    container = validate_pod(pod)

    env: Dict[str, str] = {}
    for var in container.env:
        if var.name in ENV_OVERRIDES:
            env[var.name] = ENV_OVERRIDES[var.name]
            continue
        env[var.name] = var.value or ""

    return Task(
        name=pod.metadata.name,
        image=container.image,
        args=tuple(container.args),
        env=env,
    )


def build_driver_task(control_plane_addr: str, port: int, instances: int) -> Task:
    """Build the Spark driver task pointed at the API shim"""
    submit = " ".join([
        "cd .. && ./bin/spark-submit",
        f"--master k8s://http://{control_plane_addr}:{port}",
        "--deploy-mode client",
        f"--name {DRIVER_TASK_NAME}",
        f"--class {DRIVER_MAIN_CLASS}",
        f"--conf spark.executor.instances={instances}",
        f"--conf spark.kubernetes.container.image={EXECUTOR_IMAGE}",
        DRIVER_EXAMPLES_JAR,
    ])
    return Task(
        name=DRIVER_TASK_NAME,
        image=DRIVER_IMAGE,
        args=("/bin/bash", "-c", submit),
    )
