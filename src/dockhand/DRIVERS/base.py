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
Engine driver interface consumed by the orchestration core.

A driver is the core's only channel to the container engine. Methods return
their value on success and raise DriverError on failure; the core acts only on
the error's classification and structured fields, never on its free text.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from ..errors import DockhandError
from ..MODELS.engine_status import StatusReport
from ..MODELS.image_ref import ImageRef


class ErrorClass(str, Enum):
    """Classification of a driver failure."""
    NOT_FOUND = "NotFound"
    TRANSPORT = "Transport"
    UNKNOWN = "Unknown"


class DriverError(DockhandError):
    """
    A failed engine call.

    Attributes:
        code: Exit or failure code reported by the engine, None if it never ran.
        diagnostic: Raw diagnostic text, for people and logs only.
        classification: ErrorClass used for control decisions.
    """

    def __init__(self, code: Optional[int], diagnostic: str,
                 classification: ErrorClass = ErrorClass.UNKNOWN):
        super().__init__(diagnostic or f"engine call failed with code {code}")
        self.code = code
        self.diagnostic = diagnostic
        self.classification = classification

    @property
    def not_found(self) -> bool:
        return self.classification == ErrorClass.NOT_FOUND

    @property
    def transport(self) -> bool:
        return self.classification == ErrorClass.TRANSPORT


class DriverTimeoutError(DriverError):
    """The engine call did not complete within its timeout."""

    def __init__(self, timeout: Optional[float], diagnostic: str = ""):
        super().__init__(None, diagnostic or f"engine call exceeded {timeout}s",
                         ErrorClass.TRANSPORT)
        self.timeout = timeout


class ImageSummary(BaseModel):
    """An image as listed by the engine."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    ref: ImageRef
    image_id: Optional[str] = None


class ContainerSummary(BaseModel):
    """A container as listed by the engine."""
    container_id: str
    image: str
    status: StatusReport
    managed: bool = False


class EngineDriver(ABC):
    """
    Abstract engine driver. Every call accepts a timeout in seconds;
    None means the driver's own default.
    """

    @abstractmethod
    def pull(self, name: str, tag: str, timeout: Optional[float] = None) -> ImageRef:
        """Fetch an image from a registry."""

    @abstractmethod
    def build(self, context_path: str, name: str, tag: str,
              timeout: Optional[float] = None) -> ImageRef:
        """Build an image from a directory containing a Dockerfile."""

    @abstractmethod
    def run_detached(self, image_ref: ImageRef, container_id: str,
                     timeout: Optional[float] = None) -> None:
        """
        Provision a container under the given id without attaching to it.
        The engine leaves it in its created state until start is called.
        """

    @abstractmethod
    def start(self, container_id: str, timeout: Optional[float] = None) -> None:
        """Start a created or stopped container."""

    @abstractmethod
    def stop(self, container_id: str, timeout: Optional[float] = None) -> None:
        """Stop a running container."""

    @abstractmethod
    def remove(self, container_id: str, timeout: Optional[float] = None) -> None:
        """Delete a stopped container from the engine."""

    @abstractmethod
    def create_network(self, name: str, timeout: Optional[float] = None) -> None:
        """Create a user network."""

    @abstractmethod
    def remove_network(self, name: str, timeout: Optional[float] = None) -> None:
        """Delete a user network."""

    @abstractmethod
    def connect_network(self, container_id: str, network_name: str,
                        timeout: Optional[float] = None) -> None:
        """Attach a container to a network."""

    @abstractmethod
    def disconnect_network(self, container_id: str, network_name: str,
                           timeout: Optional[float] = None) -> None:
        """Detach a container from a network."""

    @abstractmethod
    def remove_image(self, name: str, tag: str, timeout: Optional[float] = None) -> None:
        """Delete an image from the engine."""

    @abstractmethod
    def query_container_status(self, container_id: str,
                               timeout: Optional[float] = None) -> StatusReport:
        """
        Report the engine's view of a container. A container the engine does
        not know is reported with EngineState.MISSING rather than an error.
        """

    @abstractmethod
    def inspect_image(self, name: str, tag: str, timeout: Optional[float] = None) -> Optional[str]:
        """Return the engine id of an image, or None if the engine lacks it."""

    @abstractmethod
    def list_images(self, timeout: Optional[float] = None) -> List[ImageSummary]:
        """List images known to the engine."""

    @abstractmethod
    def list_containers(self, timeout: Optional[float] = None) -> List[ContainerSummary]:
        """List all containers known to the engine, running or not."""

    @abstractmethod
    def list_networks(self, timeout: Optional[float] = None) -> List[str]:
        """List user network names, excluding the engine's built-in networks."""
