"""
sparkanywhere

Runs Spark-on-Kubernetes workloads on backends that know nothing about
Kubernetes: a local Docker engine or AWS ECS (Fargate). A tiny fake of the
Kubernetes pod API accepts executor pods from the Spark driver and turns each
one into a container task.
"""

__version__ = "0.1.0"
__author__ = "sparkanywhere authors"

from sparkanywhere.common.constants import EventType, PodPhase, ProviderType

__all__ = [
    "__version__",
    "__author__",
    "EventType",
    "PodPhase",
    "ProviderType",
]
