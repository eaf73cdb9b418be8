"""
Task providers for sparkanywhere.

This package contains the provider interface and the backends that can run
tasks: a local Docker engine and AWS ECS.
"""

from typing import Optional

from sparkanywhere.common.constants import ProviderType
from sparkanywhere.common.settings import Settings
from .base import TaskProvider


def create_provider(settings: Settings, provider_type: Optional[ProviderType] = None) -> TaskProvider:
    """Build the provider enabled in ``settings``"""
    provider_type = provider_type or settings.provider_type()

    # imported lazily so one backend's SDK is not needed to run the other
    if provider_type == ProviderType.ECS:
        from .ecs_provider import EcsProvider
        return EcsProvider(settings.ecs)

    from .docker_provider import DockerProvider
    return DockerProvider()


__all__ = [
    "TaskProvider",
    "create_provider",
]
