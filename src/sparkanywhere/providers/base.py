"""
Base task provider

Every backend that can run a container implements this interface. The
control plane and the API shim only ever talk to a TaskProvider.
"""

import threading
from abc import ABC, abstractmethod
from typing import Optional

from sparkanywhere.common.schemas import Task, TaskHandle


class TaskProvider(ABC):
    """Abstract base class for task providers.

    Blocking operations take an optional ``timeout`` in seconds and an
    optional ``cancel`` event. Running out of time raises TaskTimeoutError;
    a set ``cancel`` event raises TaskCancelledError.
    """

    name: str = "base"

    @abstractmethod
    def create_task(
        self,
        task: Task,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> TaskHandle:
        """Launch ``task`` and return its handle once it is running"""

    @abstractmethod
    def wait_for_task(
        self,
        handle: TaskHandle,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        """Block until the task is no longer running"""

    @abstractmethod
    def get_logs(self, handle: TaskHandle) -> str:
        """Return the combined output of the task"""

    def close(self) -> None:
        """Release backend clients"""
        return None
