"""Exception types raised across composewatch.

Most component failures are converted into domain results (None, empty
lists, ``error`` fields). Only the conditions below escape as exceptions.
"""

import functools
import logging
import threading
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class ComposeWatchError(Exception):
    """Base class for composewatch errors."""


class OperationCancelled(ComposeWatchError):
    """The caller's cancel event was set while the operation was running."""


class RuntimeUnavailableError(ComposeWatchError):
    """No usable container runtime or registry client exists."""


class UpdateInProgressError(ComposeWatchError):
    """Another update operation already holds the update guard."""


def check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled("Operation cancelled")


def runtime_safe(default_return: Any = None) -> Callable:
    """
    Decorator for runtime calls that logs failures and returns a default.

    Cancellation is never swallowed.

    Usage:
        @runtime_safe(default_return=[])
        def list_containers(self) -> List[ContainerRecord]:
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            try:
                return func(*args, **kwargs)
            except OperationCancelled:
                raise
            except Exception as e:
                logger.error(f"Runtime operation failed in {func.__name__}: {e}", exc_info=True)
                return default_return
        return wrapper
    return decorator
