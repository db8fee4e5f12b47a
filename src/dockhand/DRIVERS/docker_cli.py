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
Engine driver backed by a Docker-compatible command line client.
Each call runs the engine binary as a subprocess with an argument list and
turns its exit status into a return value or a classified DriverError.
"""

import json
import logging
import subprocess
from typing import Any, Dict, List, Optional

from ..CONFIG.settings import Settings
from ..MODELS.engine_status import EngineState, StatusReport
from ..MODELS.image_ref import ImageRef
from .base import (
    ContainerSummary,
    DriverError,
    DriverTimeoutError,
    EngineDriver,
    ErrorClass,
    ImageSummary,
)

logger = logging.getLogger(__name__)

BUILTIN_NETWORKS = {"bridge", "host", "none"}

_TRANSPORT_MARKERS = (
    "cannot connect to the docker daemon",
    "error during connect",
    "is the docker daemon running",
    "connection refused",
)
_NOT_FOUND_MARKERS = (
    "no such",
    "not found",
    "does not exist",
)


def classify(code: Optional[int], diagnostic: str) -> ErrorClass:
    """
    Maps an engine failure to an ErrorClass from its exit code and stderr.
    """
    text = diagnostic.lower()
    if code is None or any(marker in text for marker in _TRANSPORT_MARKERS):
        return ErrorClass.TRANSPORT
    if any(marker in text for marker in _NOT_FOUND_MARKERS):
        return ErrorClass.NOT_FOUND
    return ErrorClass.UNKNOWN


class DockerCliDriver(EngineDriver):
    """
    Drives a Docker-compatible engine through its command line client.
    """

    def __init__(self, settings: Optional[Settings] = None):
        """
        Initializes the driver.

        :param settings: Settings naming the engine binary, default timeout,
                         stop grace period and the label marking managed containers.
        """
        self.settings = settings or Settings()
        self.binary = self.settings.engine_binary

    def _run(self, arguments: List[str], timeout: Optional[float] = None) -> str:
        """
        Runs the engine binary and returns its stdout.

        Raises DriverError on a non-zero exit and DriverTimeoutError on expiry.
        """
        if timeout is None:
            timeout = self.settings.default_timeout
        command = [self.binary, *arguments]
        logger.debug("Running engine command: %s", " ".join(command))
        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=timeout,
                shell=False,
            )
        except subprocess.TimeoutExpired as e:
            raise DriverTimeoutError(timeout, f"{' '.join(command)} exceeded {timeout}s") from e
        except OSError as e:
            raise DriverError(None, f"cannot run {self.binary}: {e}", ErrorClass.TRANSPORT) from e

        if completed.returncode != 0:
            diagnostic = (completed.stderr or completed.stdout or "").strip()
            classification = classify(completed.returncode, diagnostic)
            logger.debug("Engine command failed (%s, %s): %s",
                         completed.returncode, classification.value, diagnostic)
            raise DriverError(completed.returncode, diagnostic, classification)
        return completed.stdout

    @staticmethod
    def _json_lines(output: str) -> List[Dict[str, Any]]:
        rows = []
        for line in output.splitlines():
            line = line.strip()
            if line:
                rows.append(json.loads(line))
        return rows

    # Images

    def pull(self, name: str, tag: str, timeout: Optional[float] = None) -> ImageRef:
        ref = ImageRef(name=name, tag=tag)
        self._run(["pull", ref.key], timeout)
        return ref

    def build(self, context_path: str, name: str, tag: str,
              timeout: Optional[float] = None) -> ImageRef:
        ref = ImageRef(name=name, tag=tag)
        self._run(["build", "-t", ref.key, context_path], timeout)
        return ref

    def remove_image(self, name: str, tag: str, timeout: Optional[float] = None) -> None:
        self._run(["rmi", f"{name}:{tag}"], timeout)

    def inspect_image(self, name: str, tag: str, timeout: Optional[float] = None) -> Optional[str]:
        try:
            output = self._run(["image", "inspect", "--format", "{{.Id}}", f"{name}:{tag}"], timeout)
        except DriverError as e:
            if e.not_found:
                return None
            raise
        return output.strip() or None

    def list_images(self, timeout: Optional[float] = None) -> List[ImageSummary]:
        output = self._run(["images", "--format", "{{json .}}"], timeout)
        images = []
        for row in self._json_lines(output):
            repository, tag = row.get("Repository"), row.get("Tag")
            if not repository or repository == "<none>" or not tag or tag == "<none>":
                continue
            images.append(ImageSummary(ref=ImageRef(name=repository, tag=tag), image_id=row.get("ID")))
        return images

    # Containers

    def run_detached(self, image_ref: ImageRef, container_id: str,
                     timeout: Optional[float] = None) -> None:
        self._run([
            "create",
            "--name", container_id,
            "--label", f"{self.settings.managed_label}=true",
            image_ref.key,
        ], timeout)

    def start(self, container_id: str, timeout: Optional[float] = None) -> None:
        self._run(["start", container_id], timeout)

    def stop(self, container_id: str, timeout: Optional[float] = None) -> None:
        self._run(["stop", "-t", str(self.settings.stop_grace_period), container_id], timeout)

    def remove(self, container_id: str, timeout: Optional[float] = None) -> None:
        self._run(["rm", container_id], timeout)

    def query_container_status(self, container_id: str,
                               timeout: Optional[float] = None) -> StatusReport:
        try:
            output = self._run(["container", "inspect", container_id], timeout)
        except DriverError as e:
            if e.not_found:
                return StatusReport(container_id=container_id,
                                    engine_state=EngineState.MISSING,
                                    raw=e.diagnostic)
            raise
        data = json.loads(output or "[]")
        if not data:
            return StatusReport(container_id=container_id, engine_state=EngineState.MISSING)
        return self._status_from_inspect(container_id, data[0])

    def _status_from_inspect(self, container_id: str, data: Dict[str, Any]) -> StatusReport:
        state = data.get("State") or {}
        try:
            engine_state = EngineState(str(state.get("Status", "")).lower())
        except ValueError:
            raise DriverError(0, f"unrecognised container status {state.get('Status')!r}",
                              ErrorClass.UNKNOWN)
        networks = ((data.get("NetworkSettings") or {}).get("Networks") or {}).keys()
        user_networks = [n for n in networks if n not in BUILTIN_NETWORKS]
        return StatusReport(
            container_id=container_id,
            engine_state=engine_state,
            exit_code=state.get("ExitCode"),
            network=user_networks[0] if user_networks else None,
            raw=json.dumps(state),
        )

    def list_containers(self, timeout: Optional[float] = None) -> List[ContainerSummary]:
        output = self._run(["ps", "-a", "--no-trunc", "--format", "{{json .}}"], timeout)
        containers = []
        for row in self._json_lines(output):
            name = (row.get("Names") or "").split(",")[0]
            if not name:
                continue
            try:
                engine_state = EngineState(str(row.get("State", "")).lower())
            except ValueError:
                logger.warning("Skipping container %s with unrecognised state %r", name, row.get("State"))
                continue
            networks = [n for n in (row.get("Networks") or "").split(",") if n and n not in BUILTIN_NETWORKS]
            containers.append(ContainerSummary(
                container_id=name,
                image=row.get("Image", ""),
                status=StatusReport(
                    container_id=name,
                    engine_state=engine_state,
                    network=networks[0] if networks else None,
                    raw=row.get("Status", ""),
                ),
                managed=self._has_managed_label(row.get("Labels") or ""),
            ))
        return containers

    def _has_managed_label(self, labels: str) -> bool:
        for pair in labels.split(","):
            key, _, value = pair.partition("=")
            if key.strip() == self.settings.managed_label:
                return value.strip().lower() == "true"
        return False

    # Networks

    def create_network(self, name: str, timeout: Optional[float] = None) -> None:
        self._run(["network", "create", name], timeout)

    def remove_network(self, name: str, timeout: Optional[float] = None) -> None:
        self._run(["network", "rm", name], timeout)

    def connect_network(self, container_id: str, network_name: str,
                        timeout: Optional[float] = None) -> None:
        self._run(["network", "connect", network_name, container_id], timeout)

    def disconnect_network(self, container_id: str, network_name: str,
                           timeout: Optional[float] = None) -> None:
        self._run(["network", "disconnect", network_name, container_id], timeout)

    def list_networks(self, timeout: Optional[float] = None) -> List[str]:
        output = self._run(["network", "ls", "--format", "{{.Name}}"], timeout)
        return [name.strip() for name in output.splitlines()
                if name.strip() and name.strip() not in BUILTIN_NETWORKS]
