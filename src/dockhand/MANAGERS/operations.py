"""
Task-based invocation of lifecycle operations with pre-dispatch cancellation.
"""
import logging
import threading
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from typing import Any, Optional, TYPE_CHECKING

from ..errors import OperationCancelledError

if TYPE_CHECKING:
    from .lifecycle_controller import LifecycleController

logger = logging.getLogger(__name__)

OPERATIONS = frozenset({
    "pull_image",
    "build_image",
    "remove_image",
    "create",
    "start",
    "stop",
    "remove",
    "create_network",
    "remove_network",
    "attach_network",
    "detach_network",
})


class CancellationToken:
    """
    Shared between a caller and a running operation. Cancelling only works
    until the operation marks itself dispatched, just before its engine call.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._cancelled = False
        self._dispatched = False

    def cancel(self) -> bool:
        with self._lock:
            if self._dispatched:
                return False
            self._cancelled = True
            return True

    def mark_dispatched(self) -> None:
        """
        Called by the operation right before the engine call.
        Raises OperationCancelledError if the caller cancelled first.
        """
        with self._lock:
            if self._cancelled:
                raise OperationCancelledError("operation was cancelled before dispatch")
            self._dispatched = True

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    @property
    def dispatched(self) -> bool:
        with self._lock:
            return self._dispatched


class Operation:
    """
    Handle for a submitted lifecycle operation.
    """

    def __init__(self, name: str, future: Future, token: CancellationToken):
        self.name = name
        self._future = future
        self._token = token

    def cancel(self) -> bool:
        """
        Cancels the operation if its engine call has not begun.

        :return: True if the operation will not reach the engine.
        """
        if not self._token.cancel():
            return False
        self._future.cancel()
        return True

    def result(self, timeout: Optional[float] = None) -> Any:
        """
        Waits for the outcome and returns it, re-raising the operation's error.
        """
        try:
            return self._future.result(timeout=timeout)
        except CancelledError:
            raise OperationCancelledError(f"{self.name} was cancelled before dispatch")

    def done(self) -> bool:
        return self._future.done()

    @property
    def dispatched(self) -> bool:
        return self._token.dispatched

    @property
    def cancelled(self) -> bool:
        return self._token.cancelled

    def __repr__(self) -> str:
        return f"Operation({self.name}, dispatched={self.dispatched}, done={self.done()})"


class OperationDispatcher:
    """
    Runs controller operations on a worker pool and hands back Operation handles.
    """

    def __init__(self, controller: "LifecycleController", max_workers: int = 8):
        self.controller = controller
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix="dockhand-op")

    def submit(self, operation: str, *args, **kwargs) -> Operation:
        """
        Schedules a controller operation by name.

        :param operation: One of OPERATIONS, e.g. 'start'.
        :return: Handle for waiting on or cancelling the operation.
        """
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown operation {operation!r}")
        token = CancellationToken()
        method = getattr(self.controller, operation)
        future = self._executor.submit(method, *args, token=token, **kwargs)
        logger.debug("Submitted %s%r", operation, args)
        return Operation(operation, future, token)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "OperationDispatcher":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()
