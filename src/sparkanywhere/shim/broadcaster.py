"""
Event Broadcaster

Single owner of the shim's shared state: the pod list, the task handles, the
resource version counter and the watch subscribers. Every mutation happens
under one lock, so resource versions are handed out without gaps and every
subscriber sees events in the same order.
"""

import threading
from collections import deque
from typing import Deque, List, Optional, Tuple

import structlog

from sparkanywhere.common.constants import DEFAULT_SUBSCRIBER_CAPACITY, EventType, PodPhase
from sparkanywhere.common.schemas import Pod, PodStatus, TaskHandle, WatchEvent


logger = structlog.get_logger(__name__)


class Subscriber:
    """Bounded event queue of one watch connection.

    When full, the oldest pending event is dropped so a slow reader never
    blocks the broadcaster.
    """

    def __init__(self, capacity: int = DEFAULT_SUBSCRIBER_CAPACITY):
        if capacity < 1:
            raise ValueError("subscriber capacity must be at least 1")
        self.capacity = capacity
        self.dropped = 0
        self._events: Deque[WatchEvent] = deque()
        self._cond = threading.Condition()

    def put(self, event: WatchEvent) -> None:
        with self._cond:
            if len(self._events) >= self.capacity:
                self._events.popleft()
                self.dropped += 1
                logger.warning("Subscriber queue full, dropped oldest event",
                               capacity=self.capacity, dropped=self.dropped)
            self._events.append(event)
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[WatchEvent]:
        """Next event, or None if nothing arrived within ``timeout``"""
        with self._cond:
            if not self._events:
                self._cond.wait(timeout)
            if not self._events:
                return None
            return self._events.popleft()

    def pending(self) -> int:
        with self._cond:
            return len(self._events)


class EventBroadcaster:
    """Resource version authority and watch fan-out"""

    def __init__(self, subscriber_capacity: int = DEFAULT_SUBSCRIBER_CAPACITY):
        self.subscriber_capacity = subscriber_capacity
        self._lock = threading.Lock()
        self._resource_version = 0
        self._pods: List[Pod] = []
        self._handles: List[TaskHandle] = []
        self._subscribers: List[Subscriber] = []

    # ---------- Subscribers ----------

    def subscribe(self, capacity: Optional[int] = None) -> Subscriber:
        subscriber = Subscriber(capacity or self.subscriber_capacity)
        with self._lock:
            self._subscribers.append(subscriber)
            count = len(self._subscribers)
        logger.info("Watch subscriber registered", subscribers=count)
        return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)
            count = len(self._subscribers)
        logger.info("Watch subscriber removed", subscribers=count)

    # ---------- Mutations ----------

    def _stamp(self, pod: Pod, phase: PodPhase, reason: Optional[str] = None) -> Pod:
        """Copy ``pod`` with the next resource version and ``phase``; lock held"""
        self._resource_version += 1

        stamped = pod.model_copy(deep=True)
        metadata = stamped.metadata
        metadata.resource_version = str(self._resource_version)
        stamped.metadata = metadata

        status = stamped.status or PodStatus()
        status.phase = phase.value
        if reason is not None:
            status.reason = "ProviderFailed"
            status.message = reason
        stamped.status = status
        return stamped

    def _publish(self, event: WatchEvent) -> None:
        for subscriber in self._subscribers:
            subscriber.put(event)

    def record_and_broadcast(self, pod: Pod, handle: Optional[TaskHandle] = None) -> Pod:
        """Store a created pod and send ADDED to every current subscriber"""
        with self._lock:
            stamped = self._stamp(pod, PodPhase.RUNNING)
            if handle is not None:
                self._handles.append(handle)
            self._pods.append(stamped)
            self._publish(WatchEvent(type=EventType.ADDED, object=stamped.model_copy(deep=True)))
            return stamped

    def record_failure(self, pod: Pod, reason: str) -> Pod:
        """Send MODIFIED with phase Failed for a pod whose task never started.

        The pod is not added to the pod list.
        """
        with self._lock:
            stamped = self._stamp(pod, PodPhase.FAILED, reason)
            self._publish(WatchEvent(type=EventType.MODIFIED, object=stamped.model_copy(deep=True)))
            return stamped

    def add_handle(self, handle: TaskHandle) -> None:
        with self._lock:
            self._handles.append(handle)

    # ---------- Snapshots ----------

    @property
    def resource_version(self) -> int:
        with self._lock:
            return self._resource_version

    def snapshot(self) -> Tuple[List[Pod], int]:
        """Pods and the resource version they correspond to"""
        with self._lock:
            return [p.model_copy(deep=True) for p in self._pods], self._resource_version

    def pods(self) -> List[Pod]:
        with self._lock:
            return [p.model_copy(deep=True) for p in self._pods]

    def handles(self) -> List[TaskHandle]:
        with self._lock:
            return list(self._handles)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
