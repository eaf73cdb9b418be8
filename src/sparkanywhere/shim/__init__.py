"""
Kubernetes API shim: the HTTP surface the Spark driver talks to and the
event fan-out behind its watch endpoint.
"""

from .api import ApiShim, create_app, watch_events
from .broadcaster import EventBroadcaster, Subscriber

__all__ = [
    "ApiShim",
    "EventBroadcaster",
    "Subscriber",
    "create_app",
    "watch_events",
]
