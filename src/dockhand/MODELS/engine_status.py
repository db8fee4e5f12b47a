"""
Models for what the engine reports back: container status and drift events.
"""
from typing import Optional
from enum import Enum
from datetime import datetime, timezone
from pydantic import BaseModel, Field

from .entities import ContainerState


class EngineState(str, Enum):
    """
    Raw container status vocabulary used by Docker-compatible engines.
    MISSING stands for a container the engine does not know about.
    """
    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    RESTARTING = "restarting"
    REMOVING = "removing"
    EXITED = "exited"
    DEAD = "dead"
    MISSING = "missing"

    @property
    def lifecycle_state(self) -> ContainerState:
        return _LIFECYCLE_MAP[self]


_LIFECYCLE_MAP = {
    EngineState.CREATED: ContainerState.CREATED,
    EngineState.RUNNING: ContainerState.RUNNING,
    EngineState.PAUSED: ContainerState.RUNNING,
    EngineState.RESTARTING: ContainerState.RUNNING,
    EngineState.REMOVING: ContainerState.STOPPED,
    EngineState.EXITED: ContainerState.STOPPED,
    EngineState.DEAD: ContainerState.STOPPED,
    EngineState.MISSING: ContainerState.REMOVED,
}


class StatusReport(BaseModel):
    """
    Structured status of one container as reported by the engine.
    """
    container_id: str
    engine_state: EngineState
    exit_code: Optional[int] = None
    network: Optional[str] = None
    raw: str = ""

    @property
    def lifecycle_state(self) -> ContainerState:
        return self.engine_state.lifecycle_state


class DriftEvent(BaseModel):
    """
    Records a divergence between what the store believed and what the engine reported.
    """
    container_id: str
    believed: ContainerState
    observed: ContainerState
    operation: str
    detail: str = ""
    detected_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
