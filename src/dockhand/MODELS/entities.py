"""
Models for the entities tracked by the orchestrator: images, containers and networks.
"""
from typing import Optional, Set
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field

from .image_ref import ImageRef


class ContainerState(str, Enum):
    """
    Lifecycle states a container moves through.
    """
    CREATED = "Created"
    RUNNING = "Running"
    STOPPED = "Stopped"
    REMOVED = "Removed"


# Legal lifecycle transitions, keyed by the current state
TRANSITIONS = {
    ContainerState.CREATED: {ContainerState.RUNNING},
    ContainerState.RUNNING: {ContainerState.STOPPED},
    ContainerState.STOPPED: {ContainerState.RUNNING, ContainerState.REMOVED},
    ContainerState.REMOVED: set(),
}


def can_transition(current: ContainerState, target: ContainerState) -> bool:
    """
    Checks whether moving from one lifecycle state to another is legal.
    """
    return target in TRANSITIONS[current]


class Image(BaseModel):
    """
    An image known to the orchestrator, created by a pull or a build.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    ref: ImageRef
    image_id: Optional[str] = None
    source: Optional[str] = None  # "pull" or "build"
    build_context: Optional[str] = None


class Container(BaseModel):
    """
    A container record. The image reference is fixed for the life of the id.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    image: ImageRef
    state: ContainerState = ContainerState.CREATED
    network: Optional[str] = None


class Network(BaseModel):
    """
    A user network and the ids of the containers attached to it.
    """
    name: str
    members: Set[str] = Field(default_factory=set)
