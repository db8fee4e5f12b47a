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
Shared fixtures: a scriptable in-memory engine standing in for a real container engine.
"""
import hashlib
import threading
from collections import defaultdict
from typing import Callable, Dict, List, Optional

import pytest

from dockhand.CONFIG.settings import Settings
from dockhand.DRIVERS.base import (
    ContainerSummary,
    DriverError,
    DriverTimeoutError,
    EngineDriver,
    ErrorClass,
    ImageSummary,
)
from dockhand.MANAGERS.session import OrchestrationSession
from dockhand.MODELS.engine_status import EngineState, StatusReport
from dockhand.MODELS.image_ref import ImageRef


class _Fault:
    def __init__(self, error: Exception, apply: bool):
        self.error = error
        self.apply = apply


class FakeEngineDriver(EngineDriver):
    """
    In-memory engine. Faults can be queued per method; a fault with apply=True
    performs the call's effect before raising, like an engine that finished the
    work but answered too late.
    """

    def __init__(self):
        self.images: Dict[str, str] = {}
        self.containers: Dict[str, dict] = {}
        self.networks = set()
        self.calls: List[tuple] = []
        self._faults: Dict[str, List[_Fault]] = defaultdict(list)
        self._hooks: Dict[str, Callable] = {}
        self._lock = threading.RLock()

    # Scripting

    def inject(self, method: str, error: Exception, apply: bool = False) -> None:
        with self._lock:
            self._faults[method].append(_Fault(error, apply))

    def inject_timeout(self, method: str, apply: bool = False) -> None:
        self.inject(method, DriverTimeoutError(1.0), apply=apply)

    def hook(self, method: str, fn: Callable) -> None:
        """Runs fn(*args) at the start of every call to method, outside the engine lock."""
        self._hooks[method] = fn

    def call_count(self, method: str) -> int:
        with self._lock:
            return sum(1 for name, _ in self.calls if name == method)

    def set_state(self, container_id: str, state: EngineState) -> None:
        """Changes a container behind the orchestrator's back."""
        with self._lock:
            if state == EngineState.MISSING:
                self.containers.pop(container_id, None)
            else:
                self.containers[container_id]["state"] = state

    def _enter(self, method: str, *args) -> Optional[_Fault]:
        with self._lock:
            self.calls.append((method, args))
            fault = self._faults[method].pop(0) if self._faults[method] else None
        hook = self._hooks.get(method)
        if hook is not None:
            hook(*args)
        if fault is not None and not fault.apply:
            raise fault.error
        return fault

    @staticmethod
    def _leave(fault: Optional[_Fault]) -> None:
        if fault is not None:
            raise fault.error

    def _container(self, container_id: str) -> dict:
        record = self.containers.get(container_id)
        if record is None:
            raise DriverError(1, f"Error: No such container: {container_id}", ErrorClass.NOT_FOUND)
        return record

    # Images

    def pull(self, name, tag, timeout=None):
        fault = self._enter("pull", name, tag)
        ref = ImageRef(name=name, tag=tag)
        with self._lock:
            self.images[ref.key] = "sha256:" + hashlib.sha256(ref.key.encode()).hexdigest()[:12]
        self._leave(fault)
        return ref

    def build(self, context_path, name, tag, timeout=None):
        fault = self._enter("build", context_path, name, tag)
        ref = ImageRef(name=name, tag=tag)
        with self._lock:
            self.images[ref.key] = "sha256:" + hashlib.sha256(context_path.encode()).hexdigest()[:12]
        self._leave(fault)
        return ref

    def remove_image(self, name, tag, timeout=None):
        fault = self._enter("remove_image", name, tag)
        with self._lock:
            if self.images.pop(f"{name}:{tag}", None) is None:
                raise DriverError(1, f"Error: No such image: {name}:{tag}", ErrorClass.NOT_FOUND)
        self._leave(fault)

    def inspect_image(self, name, tag, timeout=None):
        fault = self._enter("inspect_image", name, tag)
        self._leave(fault)
        with self._lock:
            return self.images.get(f"{name}:{tag}")

    def list_images(self, timeout=None):
        fault = self._enter("list_images")
        self._leave(fault)
        with self._lock:
            return [ImageSummary(ref=ImageRef.parse(key), image_id=image_id)
                    for key, image_id in self.images.items()]

    # Containers

    def run_detached(self, image_ref, container_id, timeout=None):
        fault = self._enter("run_detached", image_ref, container_id)
        with self._lock:
            if image_ref.key not in self.images:
                raise DriverError(125, f"Unable to find image '{image_ref}' locally", ErrorClass.NOT_FOUND)
            self.containers[container_id] = {
                "image": image_ref.key,
                "state": EngineState.CREATED,
                "network": None,
                "managed": True,
            }
        self._leave(fault)

    def start(self, container_id, timeout=None):
        fault = self._enter("start", container_id)
        with self._lock:
            self._container(container_id)["state"] = EngineState.RUNNING
        self._leave(fault)

    def stop(self, container_id, timeout=None):
        fault = self._enter("stop", container_id)
        with self._lock:
            self._container(container_id)["state"] = EngineState.EXITED
        self._leave(fault)

    def remove(self, container_id, timeout=None):
        fault = self._enter("remove", container_id)
        with self._lock:
            record = self._container(container_id)
            if record["state"] == EngineState.RUNNING:
                raise DriverError(1, "cannot remove a running container", ErrorClass.UNKNOWN)
            del self.containers[container_id]
        self._leave(fault)

    def query_container_status(self, container_id, timeout=None):
        fault = self._enter("query_container_status", container_id)
        self._leave(fault)
        with self._lock:
            record = self.containers.get(container_id)
            if record is None:
                return StatusReport(container_id=container_id, engine_state=EngineState.MISSING)
            return StatusReport(container_id=container_id,
                                engine_state=record["state"],
                                network=record["network"])

    def list_containers(self, timeout=None):
        fault = self._enter("list_containers")
        self._leave(fault)
        with self._lock:
            return [
                ContainerSummary(
                    container_id=container_id,
                    image=record["image"],
                    status=StatusReport(container_id=container_id,
                                        engine_state=record["state"],
                                        network=record["network"]),
                    managed=record["managed"],
                )
                for container_id, record in self.containers.items()
            ]

    # Networks

    def create_network(self, name, timeout=None):
        fault = self._enter("create_network", name)
        with self._lock:
            if name in self.networks:
                raise DriverError(1, f"network with name {name} already exists", ErrorClass.UNKNOWN)
            self.networks.add(name)
        self._leave(fault)

    def remove_network(self, name, timeout=None):
        fault = self._enter("remove_network", name)
        with self._lock:
            if name not in self.networks:
                raise DriverError(1, f"Error: No such network: {name}", ErrorClass.NOT_FOUND)
            self.networks.discard(name)
        self._leave(fault)

    def connect_network(self, container_id, network_name, timeout=None):
        fault = self._enter("connect_network", container_id, network_name)
        with self._lock:
            if network_name not in self.networks:
                raise DriverError(1, f"Error: No such network: {network_name}", ErrorClass.NOT_FOUND)
            self._container(container_id)["network"] = network_name
        self._leave(fault)

    def disconnect_network(self, container_id, network_name, timeout=None):
        fault = self._enter("disconnect_network", container_id, network_name)
        with self._lock:
            self._container(container_id)["network"] = None
        self._leave(fault)

    def list_networks(self, timeout=None):
        fault = self._enter("list_networks")
        self._leave(fault)
        with self._lock:
            return sorted(self.networks)


@pytest.fixture
def settings():
    return Settings(status_retry_attempts=3, status_retry_wait=0, default_timeout=5)


@pytest.fixture
def engine():
    return FakeEngineDriver()


@pytest.fixture
def session(settings, engine):
    with OrchestrationSession(settings, driver=engine) as s:
        yield s


@pytest.fixture
def controller(session):
    return session.controller


@pytest.fixture
def nginx(controller):
    """An (nginx, latest) image pulled into the session."""
    return controller.pull_image("nginx", "latest").ref
