# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Error taxonomy for the orchestration core.

Store errors are local invariant violations raised before any engine call is
made. Operation errors wrap a failed or timed-out engine call and are safe to
retry once the reconciler has verified the container's real state.
"""

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .DRIVERS.base import DriverError
    from .MODELS.engine_status import DriftEvent
    from .MODELS.entities import ContainerState


class DockhandError(Exception):
    """Base class for every error raised by dockhand."""


class StoreError(DockhandError):
    """An entity store invariant would be violated."""


class ConflictError(StoreError):
    """An entity already exists with incompatible attributes."""


class NotFoundError(StoreError):
    """The requested entity is not known to the store."""

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} {key} not found")
        self.kind = kind
        self.key = key


class PreconditionError(StoreError):
    """The entity is not in a state that allows the requested operation."""


class OperationError(DockhandError):
    """
    An engine call failed. The store was left at its last confirmed state.
    """

    action = "operation"

    def __init__(self, subject: str, cause: Optional["DriverError"] = None,
                 message: Optional[str] = None):
        self.subject = subject
        self.cause = cause
        self.diagnostic = cause.diagnostic if cause is not None else ""
        if message is None:
            message = f"{self.action} failed for {subject}"
            if self.diagnostic:
                message = f"{message}: {self.diagnostic}"
        super().__init__(message)

    @property
    def container_id(self) -> str:
        return self.subject


class ProvisionError(OperationError):
    action = "provision"


class StartError(OperationError):
    action = "start"


class StopError(OperationError):
    action = "stop"


class RemoveError(OperationError):
    action = "remove"


class NetworkOperationError(OperationError):
    action = "network operation"


class ImageOperationError(OperationError):
    action = "image operation"


class OperationTimeoutError(OperationError, TimeoutError):
    """
    An engine call did not finish within its timeout. The call may still have
    taken effect; observed_state holds what the reconciler found afterwards,
    or None if the real state could not be verified.
    """

    action = "timed out"

    def __init__(self, subject: str, operation: str,
                 cause: Optional["DriverError"] = None,
                 observed_state: Optional["ContainerState"] = None):
        self.operation = operation
        self.observed_state = observed_state
        if observed_state is not None:
            outcome = f"engine reports {observed_state.value}"
        else:
            outcome = "real state could not be verified"
        super().__init__(subject, cause,
                         message=f"{operation} timed out for {subject} ({outcome})")


class OperationCancelledError(DockhandError):
    """A pending operation was cancelled before its engine call began."""


class DriftDetectedError(DockhandError):
    """
    The engine's real state diverged from the store. Informational: the
    reconciler logs and corrects it, and only raises it when the correction fails.
    """

    def __init__(self, event: "DriftEvent"):
        self.event = event
        super().__init__(
            f"drift on {event.container_id} during {event.operation}: "
            f"store believed {event.believed.value}, engine reports {event.observed.value}"
        )
