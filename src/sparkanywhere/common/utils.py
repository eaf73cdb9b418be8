"""
Utility functions used throughout the sparkanywhere system.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, TypeVar

import structlog
import yaml

from .errors import TaskCancelledError, TaskTimeoutError


logger = structlog.get_logger(__name__)

T = TypeVar("T")


def setup_logging(level: str = "INFO", json_logs: bool = True) -> None:
    """Setup structured logging for the application"""

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper()),
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def load_yaml_config(file_path: str) -> Dict[str, Any]:
    """Load YAML configuration file"""
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f)
    except FileNotFoundError:
        raise ValueError(f"Configuration file not found: {file_path}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML configuration: {e}")


def now_ms() -> int:
    """Current UTC time as milliseconds since the epoch"""
    return time.time_ns() // 1_000_000


def sleep(seconds: float, cancel: Optional[threading.Event] = None) -> None:
    """Sleep, waking early with TaskCancelledError if ``cancel`` is set"""
    if cancel is None:
        time.sleep(seconds)
        return
    if cancel.wait(seconds):
        raise TaskCancelledError("operation cancelled")


def poll_until(
    check: Callable[[], Optional[T]],
    *,
    interval: float,
    timeout: Optional[float] = None,
    cancel: Optional[threading.Event] = None,
    backoff: float = 1.0,
    max_interval: Optional[float] = None,
    description: str = "task",
) -> T:
    """Call ``check`` until it returns something other than None.

    The delay between calls starts at ``interval`` and grows by ``backoff``
    up to ``max_interval``. Raises TaskTimeoutError once ``timeout`` seconds
    have passed and TaskCancelledError when ``cancel`` is set.
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    delay = interval

    while True:
        if cancel is not None and cancel.is_set():
            raise TaskCancelledError(f"cancelled while waiting for {description}")

        result = check()
        if result is not None:
            return result

        sleep_for = delay
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TaskTimeoutError(f"timed out after {timeout}s waiting for {description}")
            sleep_for = min(delay, remaining)

        try:
            sleep(sleep_for, cancel)
        except TaskCancelledError:
            raise TaskCancelledError(f"cancelled while waiting for {description}")

        delay = delay * backoff
        if max_interval is not None:
            delay = min(delay, max_interval)


def retry_transient(
    fn: Callable[[], T],
    *,
    is_transient: Callable[[BaseException], bool],
    attempts: int,
    base_delay: float,
    max_delay: float,
    cancel: Optional[threading.Event] = None,
    description: str = "backend call",
) -> T:
    """Run ``fn``, retrying transient failures with exponential backoff"""
    attempt = 1
    while True:
        try:
            return fn()
        except Exception as e:
            if attempt >= attempts or not is_transient(e):
                raise
            delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
            logger.warning(
                "Transient backend error, retrying",
                call=description,
                attempt=attempt,
                delay=delay,
                error=str(e),
            )
            sleep(delay, cancel)
            attempt += 1
