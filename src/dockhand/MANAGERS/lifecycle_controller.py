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
Lifecycle management for containers, images and networks.

Every operation checks its preconditions before touching the engine, holds the
entity's lock across "call the engine, then commit the outcome", and commits
only what the engine confirmed. Timeouts and failures are handed to the
reconciler, which decides what the store should believe.
"""

import logging
from typing import Callable, List, Optional, Type, Union

from ..CONFIG.settings import Settings
from ..DRIVERS.base import DriverError, DriverTimeoutError, EngineDriver
from ..errors import (
    ConflictError,
    ImageOperationError,
    NetworkOperationError,
    NotFoundError,
    OperationError,
    OperationTimeoutError,
    PreconditionError,
    ProvisionError,
    RemoveError,
    StartError,
    StopError,
)
from ..MODELS.entities import Container, ContainerState, Image, Network, can_transition
from ..MODELS.image_ref import ImageRef
from ..STORE.entity_store import EntityStore
from ..UTILS.id_generator import generate_container_id
from ..UTILS.keyed_lock import KeyedLock
from .operations import CancellationToken
from .reconciler import Reconciler, container_key, image_key, network_key

logger = logging.getLogger(__name__)

ImageLike = Union[ImageRef, str]


def _as_ref(image: ImageLike) -> ImageRef:
    return image if isinstance(image, ImageRef) else ImageRef.parse(image)


def _dispatch(token: Optional[CancellationToken]) -> None:
    if token is not None:
        token.mark_dispatched()


class LifecycleController:
    """
    Sequences state transitions and delegates real work to the engine driver.
    """

    def __init__(self,
                 store: EntityStore,
                 driver: EngineDriver,
                 reconciler: Optional[Reconciler] = None,
                 settings: Optional[Settings] = None,
                 locks: Optional[KeyedLock] = None):
        """
        Initializes the controller.

        :param store: Entity store owned by the session.
        :param driver: Engine driver performing the real calls.
        :param reconciler: Reconciler sharing the same store, driver and locks.
        :param settings: Timeouts and verification policy.
        :param locks: Per-id locks, shared with the reconciler.
        """
        self.store = store
        self.driver = driver
        self.settings = settings or Settings()
        if locks is None:
            locks = reconciler.locks if reconciler is not None else KeyedLock()
        self.locks = locks
        if reconciler is None:
            reconciler = Reconciler(store, driver, self.settings, locks)
        self.reconciler = reconciler

    def _timeout(self, timeout: Optional[float]) -> float:
        return self.settings.default_timeout if timeout is None else timeout

    # Reads

    def get(self, container_id: str) -> Container:
        return self.store.get_container(container_id)

    def list_containers(self, state: Optional[ContainerState] = None) -> List[Container]:
        return self.store.list_containers(state=state)

    # Images

    def pull_image(self, name: str, tag: str = ImageRef.DEFAULT_TAG,
                   timeout: Optional[float] = None,
                   token: Optional[CancellationToken] = None) -> Image:
        """
        Pulls an image through the engine and records it.
        """
        ref = ImageRef(name=name, tag=tag)
        with self.locks.hold(image_key(ref)):
            self._check_retag(ref)
            _dispatch(token)
            try:
                ref = self.driver.pull(name, tag, timeout=self._timeout(timeout))
            except DriverTimeoutError as e:
                self._settle_image_timeout(ref, "pull", None)
                raise OperationTimeoutError(ref.key, "pull", cause=e) from e
            except DriverError as e:
                logger.error("Pull of %s failed: %s", ref, e.diagnostic)
                raise ImageOperationError(ref.key, cause=e) from e
            image = self.store.upsert_image(Image(ref=ref, image_id=self._image_id(ref), source="pull"))
        logger.info("Pulled image %s", ref)
        return image

    def build_image(self, context_path: str, name: str, tag: str = ImageRef.DEFAULT_TAG,
                    timeout: Optional[float] = None,
                    token: Optional[CancellationToken] = None) -> Image:
        """
        Builds an image from a context directory and records it.
        """
        ref = ImageRef(name=name, tag=tag)
        with self.locks.hold(image_key(ref)):
            self._check_retag(ref)
            _dispatch(token)
            try:
                ref = self.driver.build(context_path, name, tag, timeout=self._timeout(timeout))
            except DriverTimeoutError as e:
                self._settle_image_timeout(ref, "build", context_path)
                raise OperationTimeoutError(ref.key, "build", cause=e) from e
            except DriverError as e:
                logger.error("Build of %s from %s failed: %s", ref, context_path, e.diagnostic)
                raise ImageOperationError(ref.key, cause=e) from e
            image = self.store.upsert_image(Image(ref=ref, image_id=self._image_id(ref),
                                                  source="build", build_context=context_path))
        logger.info("Built image %s from %s", ref, context_path)
        return image

    def _check_retag(self, ref: ImageRef) -> None:
        users = self.store.image_users(ref)
        if users:
            raise ConflictError(f"image {ref} is referenced by {', '.join(users)} and cannot be replaced")

    def _image_id(self, ref: ImageRef) -> Optional[str]:
        try:
            return self.driver.inspect_image(ref.name, ref.tag)
        except DriverError as e:
            logger.warning("Could not read the engine id of %s: %s", ref, e.diagnostic)
            return None

    def _engine_image_id(self, ref: ImageRef) -> Optional[str]:
        """
        Returns the engine id of an image, an empty string if the engine lacks
        it, or None if the engine could not be asked.
        """
        try:
            return self.driver.inspect_image(ref.name, ref.tag) or ""
        except DriverError as e:
            logger.error("Cannot verify image %s: %s", ref, e.diagnostic)
            return None

    def _settle_image_timeout(self, ref: ImageRef, operation: str,
                              context_path: Optional[str]) -> None:
        """
        Records an image whose pull or build timed out but still landed in the engine.
        """
        image_id = self._engine_image_id(ref)
        if image_id:
            logger.warning("%s of %s timed out but the engine has it", operation, ref)
            self.store.upsert_image(Image(ref=ref, image_id=image_id, source=operation,
                                          build_context=context_path))

    def remove_image(self, image: ImageLike,
                     timeout: Optional[float] = None,
                     token: Optional[CancellationToken] = None) -> None:
        """
        Removes an image that no container references.
        """
        ref = _as_ref(image)
        with self.locks.hold(image_key(ref)):
            self.store.get_image(ref)
            users = self.store.image_users(ref)
            if users:
                raise PreconditionError(f"image {ref} is referenced by {', '.join(users)}")
            _dispatch(token)
            try:
                self.driver.remove_image(ref.name, ref.tag, timeout=self._timeout(timeout))
            except DriverTimeoutError as e:
                if self._engine_image_id(ref) == "":
                    self.store.remove_image(ref)
                raise OperationTimeoutError(ref.key, "remove_image", cause=e) from e
            except DriverError as e:
                if not e.not_found:
                    raise ImageOperationError(ref.key, cause=e) from e
                logger.warning("Image %s was already gone from the engine", ref)
            self.store.remove_image(ref)
        logger.info("Removed image %s", ref)

    # Containers

    def create(self, image: ImageLike,
               timeout: Optional[float] = None,
               token: Optional[CancellationToken] = None) -> str:
        """
        Creates a container from a known image.

        :param image: Image reference or 'name:tag' string; the image must be in the store.
        :return: The new container id.
        """
        ref = _as_ref(image)
        if not self.store.has_image(ref):
            raise NotFoundError("image", ref.key)
        container_id = generate_container_id()

        with self.locks.hold(container_key(container_id)):
            _dispatch(token)
            with self.locks.hold(image_key(ref)):
                self.store.upsert_container(Container(id=container_id, image=ref))
            try:
                self.driver.run_detached(ref, container_id, timeout=self._timeout(timeout))
            except DriverTimeoutError as e:
                observed = self.reconciler.verify(container_id, "create")
                if observed is None:
                    logger.warning("Create of %s timed out and could not be verified; "
                                   "keeping it as Created until reconciled", container_id)
                raise OperationTimeoutError(container_id, "create", cause=e,
                                            observed_state=observed) from e
            except DriverError as e:
                self.store.remove_container(container_id)
                logger.error("Provisioning %s from %s failed: %s", container_id, ref, e.diagnostic)
                raise ProvisionError(container_id, cause=e) from e

            logger.info("Created container %s from %s", container_id, ref)
            if self.settings.verify_after_success:
                self.reconciler.verify(container_id, "create")
        return container_id

    def start(self, container_id: str,
              timeout: Optional[float] = None,
              token: Optional[CancellationToken] = None) -> Optional[ContainerState]:
        """
        Starts a Created or Stopped container.
        """
        return self._transition(container_id, ContainerState.RUNNING, "start",
                                self.driver.start, StartError, timeout, token)

    def stop(self, container_id: str,
             timeout: Optional[float] = None,
             token: Optional[CancellationToken] = None) -> Optional[ContainerState]:
        """
        Stops a Running container. The store is only marked Stopped once the
        engine confirms it.
        """
        return self._transition(container_id, ContainerState.STOPPED, "stop",
                                self.driver.stop, StopError, timeout, token)

    def remove(self, container_id: str,
               timeout: Optional[float] = None,
               token: Optional[CancellationToken] = None) -> Optional[ContainerState]:
        """
        Removes a Stopped container from the engine and evicts it from the store.
        """
        return self._transition(container_id, ContainerState.REMOVED, "remove",
                                self.driver.remove, RemoveError, timeout, token)

    def _transition(self,
                    container_id: str,
                    target: ContainerState,
                    operation: str,
                    call: Callable[..., None],
                    error_cls: Type[OperationError],
                    timeout: Optional[float],
                    token: Optional[CancellationToken]) -> Optional[ContainerState]:
        with self.locks.hold(container_key(container_id)):
            current = self.store.get_container(container_id).state
            if not can_transition(current, target):
                raise PreconditionError(
                    f"cannot {operation} container {container_id} in state {current.value}"
                )
            _dispatch(token)
            try:
                call(container_id, timeout=self._timeout(timeout))
            except DriverTimeoutError as e:
                observed = self.reconciler.verify(container_id, operation)
                raise OperationTimeoutError(container_id, operation, cause=e,
                                            observed_state=observed) from e
            except DriverError as e:
                logger.error("%s of %s failed (%s): %s", operation.capitalize(), container_id,
                             e.classification.value, e.diagnostic)
                self.reconciler.verify(container_id, operation)
                raise error_cls(container_id, cause=e) from e

            if target == ContainerState.REMOVED:
                self.store.set_container_state(container_id, target)
                self.store.remove_container(container_id)
                logger.info("Removed container %s", container_id)
                return target

            self.store.set_container_state(container_id, target)
            logger.info("Container %s is %s", container_id, target.value)
            if self.settings.verify_after_success:
                observed = self.reconciler.verify(container_id, operation)
                if observed is not None:
                    return observed
            return target

    # Networks

    def create_network(self, name: str,
                       timeout: Optional[float] = None,
                       token: Optional[CancellationToken] = None) -> Network:
        """
        Creates an empty user network.
        """
        with self.locks.hold(network_key(name)):
            if self.store.has_network(name):
                raise ConflictError(f"network {name} already exists")
            _dispatch(token)
            try:
                self.driver.create_network(name, timeout=self._timeout(timeout))
            except DriverTimeoutError as e:
                if self._engine_has_network(name) is True:
                    self.store.upsert_network(Network(name=name))
                raise OperationTimeoutError(name, "create_network", cause=e) from e
            except DriverError as e:
                raise NetworkOperationError(name, cause=e) from e
            network = self.store.upsert_network(Network(name=name))
        logger.info("Created network %s", name)
        return network

    def remove_network(self, name: str,
                       timeout: Optional[float] = None,
                       token: Optional[CancellationToken] = None) -> None:
        """
        Removes a network that has no members.
        """
        with self.locks.hold(network_key(name)):
            network = self.store.get_network(name)
            if network.members:
                raise PreconditionError(
                    f"network {name} still has members: {', '.join(sorted(network.members))}"
                )
            _dispatch(token)
            try:
                self.driver.remove_network(name, timeout=self._timeout(timeout))
            except DriverTimeoutError as e:
                if self._engine_has_network(name) is False:
                    self.store.remove_network(name)
                raise OperationTimeoutError(name, "remove_network", cause=e) from e
            except DriverError as e:
                if not e.not_found:
                    raise NetworkOperationError(name, cause=e) from e
                logger.warning("Network %s was already gone from the engine", name)
            self.store.remove_network(name)
        logger.info("Removed network %s", name)

    def _engine_has_network(self, name: str) -> Optional[bool]:
        try:
            return name in self.driver.list_networks()
        except DriverError as e:
            logger.error("Cannot verify network %s: %s", name, e.diagnostic)
            return None

    def attach_network(self, container_id: str, network_name: str,
                       timeout: Optional[float] = None,
                       token: Optional[CancellationToken] = None) -> None:
        """
        Connects a container to a network and records both sides of the membership.
        """
        with self.locks.hold_many([container_key(container_id), network_key(network_name)]):
            record = self.store.get_container(container_id)
            self.store.get_network(network_name)
            if record.network == network_name:
                return
            if record.network is not None:
                raise PreconditionError(
                    f"container {container_id} is already attached to network {record.network}"
                )
            _dispatch(token)
            try:
                self.driver.connect_network(container_id, network_name, timeout=self._timeout(timeout))
            except DriverTimeoutError as e:
                observed = self._settle_membership(container_id, network_name)
                raise OperationTimeoutError(container_id, "attach_network", cause=e,
                                            observed_state=observed) from e
            except DriverError as e:
                raise NetworkOperationError(container_id, cause=e) from e
            self.store.link_network(container_id, network_name)
        logger.info("Attached container %s to network %s", container_id, network_name)

    def detach_network(self, container_id: str, network_name: str,
                       timeout: Optional[float] = None,
                       token: Optional[CancellationToken] = None) -> None:
        """
        Disconnects a container from a network and updates both sides of the membership.
        """
        with self.locks.hold_many([container_key(container_id), network_key(network_name)]):
            record = self.store.get_container(container_id)
            self.store.get_network(network_name)
            if record.network != network_name:
                raise PreconditionError(
                    f"container {container_id} is not attached to network {network_name}"
                )
            _dispatch(token)
            try:
                self.driver.disconnect_network(container_id, network_name, timeout=self._timeout(timeout))
            except DriverTimeoutError as e:
                observed = self._settle_membership(container_id, network_name)
                raise OperationTimeoutError(container_id, "detach_network", cause=e,
                                            observed_state=observed) from e
            except DriverError as e:
                raise NetworkOperationError(container_id, cause=e) from e
            self.store.unlink_network(container_id, network_name)
        logger.info("Detached container %s from network %s", container_id, network_name)

    def _settle_membership(self, container_id: str, network_name: str) -> Optional[ContainerState]:
        """
        After a timed-out connect or disconnect, records whichever membership
        the engine reports for the container.
        """
        try:
            report = self.reconciler.query_status(container_id)
        except DriverError as e:
            logger.error("Cannot verify network membership of %s: %s", container_id, e.diagnostic)
            return None
        record = self.store.get_container(container_id)
        if report.network == network_name and record.network != network_name:
            self.store.link_network(container_id, network_name)
        elif report.network != network_name and record.network == network_name:
            self.store.unlink_network(container_id, network_name)
        return report.lifecycle_state
