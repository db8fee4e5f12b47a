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
Reconciliation of the entity store against the engine's reported state.

After an engine call the reconciler asks the engine what actually happened to
the container, compares the answer with the store and, on a mismatch, applies
the corrective transition and emits a drift event. Only the structured status
and the driver error classification are used for these decisions.
"""

import logging
import re
import threading
from typing import Callable, Dict, List, Optional

from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_fixed

from ..CONFIG.settings import Settings
from ..DRIVERS.base import DriverError, EngineDriver
from ..errors import DriftDetectedError, NotFoundError
from ..MODELS.engine_status import DriftEvent, StatusReport
from ..MODELS.entities import Container, ContainerState, Image, Network
from ..MODELS.image_ref import ImageRef
from ..STORE.entity_store import EntityStore
from ..UTILS.id_generator import is_container_id
from ..UTILS.keyed_lock import KeyedLock

logger = logging.getLogger(__name__)

DriftCallback = Callable[[DriftEvent], None]

# What `docker ps` shows in place of a name:tag once the tag has moved on
_IMAGE_ID = re.compile(r"^(sha256:)?[0-9a-f]{12,64}$")


def container_key(container_id: str):
    return ("container", container_id)


def image_key(ref: ImageRef):
    return ("image", ref.key)


def network_key(name: str):
    return ("network", name)


def _is_transport_error(error: BaseException) -> bool:
    return isinstance(error, DriverError) and error.transport


class Reconciler:
    """
    Detects and corrects drift between the store and the engine.
    """

    def __init__(self, store: EntityStore, driver: EngineDriver,
                 settings: Optional[Settings] = None,
                 locks: Optional[KeyedLock] = None):
        """
        Args:
            store: The session's entity store.
            driver: Engine driver used for status queries.
            settings: Retry policy for status queries.
            locks: Per-id locks shared with the lifecycle controller.
        """
        self.store = store
        self.driver = driver
        self.settings = settings or Settings()
        self.locks = locks if locks is not None else KeyedLock()
        self.events: List[DriftEvent] = []
        self._subscribers: List[DriftCallback] = []
        self._events_lock = threading.Lock()

    def subscribe(self, callback: DriftCallback) -> None:
        """Registers a callback invoked with every drift event."""
        with self._events_lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: DriftCallback) -> None:
        with self._events_lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def query_status(self, container_id: str, timeout: Optional[float] = None) -> StatusReport:
        """
        Queries the engine for a container's status, retrying transport failures.
        """
        retrying = Retrying(
            stop=stop_after_attempt(self.settings.status_retry_attempts),
            wait=wait_fixed(self.settings.status_retry_wait),
            retry=retry_if_exception(_is_transport_error),
            reraise=True,
        )
        return retrying(self.driver.query_container_status, container_id, timeout=timeout)

    def verify(self, container_id: str, operation: str,
               timeout: Optional[float] = None) -> Optional[ContainerState]:
        """
        Compares the engine's view of a container with the store and corrects
        the store on mismatch. The caller must hold the container's lock.

        :param container_id: Container to check.
        :param operation: Name of the operation that triggered the check.
        :param timeout: Timeout for each status query.
        :return: The observed lifecycle state, or None if the engine could not be queried.
        """
        try:
            report = self.query_status(container_id, timeout=timeout)
        except DriverError as e:
            logger.error("Cannot verify container %s after %s (%s): %s",
                         container_id, operation, e.classification.value, e.diagnostic)
            return None

        observed = report.lifecycle_state
        try:
            believed = self.store.get_container(container_id).state
        except NotFoundError:
            return observed

        if believed == observed:
            return observed

        event = DriftEvent(
            container_id=container_id,
            believed=believed,
            observed=observed,
            operation=operation,
            detail=f"engine state {report.engine_state.value}",
        )
        try:
            self._correct(container_id, observed)
        except Exception as e:
            logger.error("Failed to correct drift on %s: %s", container_id, e)
            raise DriftDetectedError(event) from e
        self._emit(event)
        return observed

    def _correct(self, container_id: str, observed: ContainerState) -> None:
        if observed != ContainerState.REMOVED:
            self.store.set_container_state(container_id, observed)
            return
        # The engine no longer knows the container: evict it
        record = self.store.set_container_state(container_id, ContainerState.REMOVED)
        if record.network is not None:
            self.store.unlink_network(container_id, record.network)
        self.store.remove_container(container_id)

    def _emit(self, event: DriftEvent) -> None:
        logger.warning("%s", DriftDetectedError(event))
        with self._events_lock:
            self.events.append(event)
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Drift subscriber %r failed", callback)

    def observed_network(self, container_id: str,
                         timeout: Optional[float] = None) -> Optional[str]:
        """
        Returns the user network the engine reports for a container.
        """
        return self.query_status(container_id, timeout=timeout).network

    def reconcile(self, container_id: str) -> Optional[ContainerState]:
        """
        Verifies one container, taking its lock.
        """
        with self.locks.hold(container_key(container_id)):
            return self.verify(container_id, "reconcile")

    def reconcile_all(self) -> Dict[str, Optional[ContainerState]]:
        """
        Verifies every container in the store.

        :return: Observed state per container id, None where the engine could not be queried.
        """
        results = {}
        for record in self.store.list_containers():
            results[record.id] = self.reconcile(record.id)
        return results

    def _adopted_image_ref(self, image: str) -> Optional[ImageRef]:
        """
        Resolves the image column of a container listing. A bare image id is
        matched against known images, and None is returned if none matches.
        """
        if not image:
            return None
        if not _IMAGE_ID.match(image):
            return ImageRef.parse(image)
        wanted = image.split(":", 1)[-1]
        for record in self.store.list_images():
            known = (record.image_id or "").split(":", 1)[-1]
            if known and (known.startswith(wanted) or wanted.startswith(known)):
                return record.ref
        return None

    def adopt_from_engine(self) -> Dict[str, int]:
        """
        Imports user networks, tagged images and managed containers that the
        engine knows about but the store does not.

        :return: Count of adopted entities per kind.
        """
        adopted = {"networks": 0, "images": 0, "containers": 0}

        for name in self.driver.list_networks():
            with self.locks.hold(network_key(name)):
                if not self.store.has_network(name):
                    self.store.upsert_network(Network(name=name))
                    adopted["networks"] += 1

        for summary in self.driver.list_images():
            with self.locks.hold(image_key(summary.ref)):
                if not self.store.has_image(summary.ref):
                    self.store.upsert_image(Image(ref=summary.ref, image_id=summary.image_id, source="engine"))
                    adopted["images"] += 1

        for summary in self.driver.list_containers():
            state = summary.status.lifecycle_state
            if not summary.managed or state == ContainerState.REMOVED:
                continue
            if not is_container_id(summary.container_id):
                logger.warning("Skipping managed container %s with a foreign name", summary.container_id)
                continue
            with self.locks.hold(container_key(summary.container_id)):
                if self.store.has_container(summary.container_id):
                    continue
                ref = self._adopted_image_ref(summary.image)
                if ref is None:
                    logger.warning("Skipping container %s whose image %s is not tagged in the engine",
                                   summary.container_id, summary.image)
                    continue
                with self.locks.hold(image_key(ref)):
                    if not self.store.has_image(ref):
                        self.store.upsert_image(Image(ref=ref, source="engine"))
                        adopted["images"] += 1
                    self.store.upsert_container(Container(id=summary.container_id, image=ref, state=state))
                network = summary.status.network
                if network is not None and self.store.has_network(network):
                    self.store.link_network(summary.container_id, network)
                adopted["containers"] += 1

        logger.info("Adopted %d network(s), %d image(s), %d container(s) from the engine",
                    adopted["networks"], adopted["images"], adopted["containers"])
        return adopted
