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
In-memory authoritative record of images, containers and networks.

Every public method is atomic with respect to concurrent callers. Records are
copied on the way in and on the way out, so nothing outside the store ever
holds the store's own objects.
"""

import logging
import threading
from typing import Any, Dict, List, Optional

from ..errors import ConflictError, NotFoundError, PreconditionError
from ..MODELS.entities import Container, ContainerState, Image, Network
from ..MODELS.image_ref import ImageRef

logger = logging.getLogger(__name__)


class EntityStore:
    """
    Owns all entity records for one orchestration session.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._images: Dict[ImageRef, Image] = {}
        self._containers: Dict[str, Container] = {}
        self._networks: Dict[str, Network] = {}

    # Images

    def get_image(self, ref: ImageRef) -> Image:
        with self._lock:
            image = self._images.get(ref)
            if image is None:
                raise NotFoundError("image", ref.key)
            return image.model_copy(deep=True)

    def has_image(self, ref: ImageRef) -> bool:
        with self._lock:
            return ref in self._images

    def upsert_image(self, image: Image) -> Image:
        """
        Inserts or refreshes an image record. A referenced image is immutable:
        refreshing it with a different engine id raises ConflictError.
        """
        with self._lock:
            existing = self._images.get(image.ref)
            if existing is not None and self._image_references(image.ref):
                if image.image_id and existing.image_id and image.image_id != existing.image_id:
                    raise ConflictError(
                        f"image {image.ref} is referenced by containers and cannot change "
                        f"from {existing.image_id} to {image.image_id}"
                    )
                return existing.model_copy(deep=True)
            self._images[image.ref] = image.model_copy(deep=True)
            return image.model_copy(deep=True)

    def remove_image(self, ref: ImageRef) -> None:
        with self._lock:
            if ref not in self._images:
                raise NotFoundError("image", ref.key)
            users = self._image_references(ref)
            if users:
                raise PreconditionError(
                    f"image {ref} is still referenced by {len(users)} container(s): {', '.join(sorted(users))}"
                )
            del self._images[ref]

    def list_images(self) -> List[Image]:
        with self._lock:
            return [image.model_copy(deep=True) for image in self._images.values()]

    def image_users(self, ref: ImageRef) -> List[str]:
        """Ids of the containers referencing an image."""
        with self._lock:
            return sorted(self._image_references(ref))

    def _image_references(self, ref: ImageRef) -> List[str]:
        return [c.id for c in self._containers.values() if c.image == ref]

    # Containers

    def get_container(self, container_id: str) -> Container:
        with self._lock:
            return self._require_container(container_id).model_copy(deep=True)

    def has_container(self, container_id: str) -> bool:
        with self._lock:
            return container_id in self._containers

    def upsert_container(self, container: Container) -> Container:
        """
        Inserts or updates a container record.

        Raises ConflictError if the id is already bound to a different image,
        and NotFoundError if the image is unknown.
        """
        with self._lock:
            existing = self._containers.get(container.id)
            if existing is not None and existing.image != container.image:
                raise ConflictError(
                    f"container {container.id} already exists with image {existing.image}, "
                    f"not {container.image}"
                )
            if container.image not in self._images:
                raise NotFoundError("image", container.image.key)
            if existing is not None and existing.network != container.network:
                raise PreconditionError(
                    f"network membership of {container.id} changes only through link/unlink"
                )
            if existing is None and container.network is not None:
                raise PreconditionError(
                    f"new container {container.id} must be attached through link_network"
                )
            self._containers[container.id] = container.model_copy(deep=True)
            return container.model_copy(deep=True)

    def set_container_state(self, container_id: str, state: ContainerState) -> Container:
        with self._lock:
            record = self._require_container(container_id)
            if record.state != state:
                logger.debug("Container %s: %s -> %s", container_id, record.state.value, state.value)
            record.state = state
            return record.model_copy(deep=True)

    def remove_container(self, container_id: str) -> Container:
        """
        Evicts a container, dropping its network membership with it.
        A running container cannot be removed.
        """
        with self._lock:
            record = self._require_container(container_id)
            if record.state == ContainerState.RUNNING:
                raise PreconditionError(f"container {container_id} is running")
            if record.network is not None:
                network = self._networks.get(record.network)
                if network is not None:
                    network.members.discard(container_id)
            del self._containers[container_id]
            return record.model_copy(deep=True)

    def list_containers(self, state: Optional[ContainerState] = None,
                        image: Optional[ImageRef] = None) -> List[Container]:
        with self._lock:
            result = []
            for record in self._containers.values():
                if state is not None and record.state != state:
                    continue
                if image is not None and record.image != image:
                    continue
                result.append(record.model_copy(deep=True))
            return result

    def _require_container(self, container_id: str) -> Container:
        record = self._containers.get(container_id)
        if record is None:
            raise NotFoundError("container", container_id)
        return record

    # Networks

    def get_network(self, name: str) -> Network:
        with self._lock:
            return self._require_network(name).model_copy(deep=True)

    def has_network(self, name: str) -> bool:
        with self._lock:
            return name in self._networks

    def upsert_network(self, network: Network) -> Network:
        """
        Inserts a network. An existing network keeps its members; membership
        only changes through link_network and unlink_network.
        """
        with self._lock:
            existing = self._networks.get(network.name)
            if existing is not None:
                if network.members and network.members != existing.members:
                    raise ConflictError(f"network {network.name} already exists with other members")
                return existing.model_copy(deep=True)
            if network.members:
                raise PreconditionError(f"network {network.name} must be created empty")
            self._networks[network.name] = network.model_copy(deep=True)
            return network.model_copy(deep=True)

    def remove_network(self, name: str) -> None:
        with self._lock:
            network = self._require_network(name)
            if network.members:
                raise PreconditionError(
                    f"network {name} still has members: {', '.join(sorted(network.members))}"
                )
            del self._networks[name]

    def list_networks(self) -> List[Network]:
        with self._lock:
            return [network.model_copy(deep=True) for network in self._networks.values()]

    def _require_network(self, name: str) -> Network:
        network = self._networks.get(name)
        if network is None:
            raise NotFoundError("network", name)
        return network

    # Membership

    def link_network(self, container_id: str, network_name: str) -> None:
        """
        Records that a container joined a network, on both sides at once.
        """
        with self._lock:
            record = self._require_container(container_id)
            network = self._require_network(network_name)
            if record.network == network_name:
                return
            if record.network is not None:
                raise PreconditionError(
                    f"container {container_id} is already attached to network {record.network}"
                )
            record.network = network_name
            network.members.add(container_id)

    def unlink_network(self, container_id: str, network_name: str) -> None:
        """
        Records that a container left a network, on both sides at once.
        """
        with self._lock:
            record = self._require_container(container_id)
            network = self._require_network(network_name)
            if record.network != network_name:
                raise PreconditionError(
                    f"container {container_id} is not attached to network {network_name}"
                )
            record.network = None
            network.members.discard(container_id)

    # Diagnostics

    def check_integrity(self) -> List[str]:
        """
        Returns a description of every violated invariant; empty when consistent.
        """
        problems = []
        with self._lock:
            for record in self._containers.values():
                if record.image not in self._images:
                    problems.append(f"container {record.id} references unknown image {record.image}")
                if record.state == ContainerState.REMOVED:
                    problems.append(f"container {record.id} is Removed but still stored")
                if record.network is not None:
                    network = self._networks.get(record.network)
                    if network is None:
                        problems.append(f"container {record.id} references unknown network {record.network}")
                    elif record.id not in network.members:
                        problems.append(f"network {network.name} does not list member {record.id}")
            for network in self._networks.values():
                for member in network.members:
                    record = self._containers.get(member)
                    if record is None:
                        problems.append(f"network {network.name} lists unknown container {member}")
                    elif record.network != network.name:
                        problems.append(f"container {member} does not point back to network {network.name}")
        return problems

    def snapshot(self) -> Dict[str, Any]:
        """
        Returns a plain-dict dump of the store for display.
        """
        with self._lock:
            return {
                "images": [
                    {"image": image.ref.key, "id": image.image_id, "source": image.source}
                    for image in self._images.values()
                ],
                "containers": [
                    {
                        "id": record.id,
                        "image": record.image.key,
                        "state": record.state.value,
                        "network": record.network,
                    }
                    for record in self._containers.values()
                ],
                "networks": [
                    {"name": network.name, "members": sorted(network.members)}
                    for network in self._networks.values()
                ],
            }
